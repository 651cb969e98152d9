from datetime import date, timedelta

import pytest

from conftest import NOW, at
from models import db
from services.availability import add_rule, overlaps, peak_occupancy
from services.errors import Conflict, InvalidWindow, NotFound
from utils.timeparse import parse_hhmm


def _book(lifecycle, customer, resource, start, end):
    return lifecycle.create_booking(customer.id, resource.id, start, end)


def test_overlap_predicate_uses_half_open_intervals():
    assert not overlaps(at(10), at(11), at(11), at(12))
    assert not overlaps(at(11), at(12), at(10), at(11))
    assert overlaps(at(10), at(11), at(10, 30), at(11, 30))
    assert overlaps(at(10, 30), at(11, 30), at(10), at(11))
    assert overlaps(at(10), at(12), at(10, 30), at(11))
    assert overlaps(at(10), at(11), at(10), at(11))


def test_booked_window_blocks_only_overlapping_requests(resolver, lifecycle, customer, resource):
    booking = _book(lifecycle, customer, resource, at(10), at(11))

    after = resolver.check(resource.id, at(11), at(12))
    assert after.available is True
    assert after.conflicts == []

    overlapping = resolver.check(resource.id, at(10, 30), at(11, 30))
    assert overlapping.available is False
    assert overlapping.reason == "booked"
    assert [(c.id, c.type) for c in overlapping.conflicts] == [(booking.id, "booking")]

    before = resolver.check(resource.id, at(9), at(10))
    assert before.available is True


def test_disjoint_window_stays_available_after_booking(resolver, lifecycle, customer, resource):
    _book(lifecycle, customer, resource, at(13), at(14))
    assert resolver.check(resource.id, at(15), at(16)).available is True


def test_buffer_extends_existing_booking(resolver, lifecycle, customer, make_resource, provider):
    resource = make_resource(provider, buffer_minutes=15)
    booking = _book(lifecycle, customer, resource, at(10), at(11))

    blocked = resolver.check(resource.id, at(11, 10), at(11, 30))
    assert blocked.available is False
    assert blocked.conflicts[0].id == booking.id
    assert blocked.conflicts[0].reason == "buffer"

    assert resolver.check(resource.id, at(11, 15), at(11, 45)).available is True


def test_check_is_idempotent(resolver, lifecycle, customer, resource):
    _book(lifecycle, customer, resource, at(10), at(11))

    first = resolver.check(resource.id, at(10), at(12)).to_dict()
    second = resolver.check(resource.id, at(10), at(12)).to_dict()
    assert first == second
    assert first["conflicts"][0]["startTime"] == at(10).isoformat()


def test_cancelled_booking_frees_the_window(resolver, lifecycle, customer, resource):
    booking = _book(lifecycle, customer, resource, at(10), at(11))
    lifecycle.transition(booking.id, customer.id, "client", "cancelled")

    assert resolver.check(resource.id, at(10), at(11)).available is True


def test_missing_resource_is_not_found(resolver):
    with pytest.raises(NotFound):
        resolver.check(9999, at(10), at(11))


@pytest.mark.parametrize("start,end", [(at(11), at(10)), (at(10), at(10)), (None, at(10))])
def test_malformed_window_is_rejected(resolver, resource, start, end):
    with pytest.raises(InvalidWindow):
        resolver.check(resource.id, start, end)


def test_hold_blocks_window(resolver, lifecycle, resource, provider):
    hold = lifecycle.place_hold(resource.id, provider.id, at(12), at(14), reason="Deep clean")

    result = resolver.check(resource.id, at(13), at(15))
    assert result.available is False
    assert result.reason == "held"
    assert result.conflicts[0].to_dict() == {
        "id": hold.id,
        "type": "hold",
        "startTime": at(12).isoformat(),
        "endTime": at(14).isoformat(),
        "reason": "Deep clean",
    }


def test_hold_cannot_cover_active_booking(lifecycle, customer, resource, provider):
    _book(lifecycle, customer, resource, at(10), at(11))
    with pytest.raises(Conflict):
        lifecycle.place_hold(resource.id, provider.id, at(9), at(12))


def test_weekly_rules_limit_open_hours(resolver, resource):
    # Tuesday 09:00-17:00
    add_rule(db.session, resource, 1, None, parse_hhmm("09:00"), parse_hhmm("17:00"))
    db.session.commit()

    assert resolver.check(resource.id, at(10), at(11)).available is True
    assert resolver.check(resource.id, at(8), at(9)).reason == "outside_availability"
    assert resolver.check(resource.id, at(16, 30), at(17, 30)).reason == "outside_availability"
    # Wednesday has no rule
    assert resolver.check(resource.id, at(10, day=9), at(11, day=9)).reason == "outside_availability"


def test_date_closure_blocks_part_of_the_day(resolver, resource):
    add_rule(db.session, resource, 1, None, 9 * 60, 17 * 60)
    add_rule(db.session, resource, None, date(2030, 1, 8), 12 * 60, 13 * 60, is_available=False, reason="Lunch")
    db.session.commit()

    assert resolver.check(resource.id, at(12, 30), at(13)).reason == "closed"
    assert resolver.check(resource.id, at(13), at(14)).available is True


def test_date_exception_replaces_weekly_hours(resolver, resource):
    add_rule(db.session, resource, 1, None, 9 * 60, 17 * 60)
    add_rule(db.session, resource, None, date(2030, 1, 8), 18 * 60, 20 * 60)
    db.session.commit()

    assert resolver.check(resource.id, at(10), at(11)).reason == "outside_availability"
    assert resolver.check(resource.id, at(18), at(19)).available is True
    # the following Tuesday keeps the weekly hours
    assert resolver.check(resource.id, at(10, day=15), at(11, day=15)).available is True


def test_overnight_request_spans_consecutive_open_days(resolver, resource):
    add_rule(db.session, resource, 1, None, 0, 24 * 60)
    add_rule(db.session, resource, 2, None, 0, 24 * 60)
    db.session.commit()

    assert resolver.check(resource.id, at(22), at(2, day=9)).available is True
    # Thursday is closed
    assert resolver.check(resource.id, at(22, day=9), at(2, day=10)).available is False


def test_overlapping_open_rules_rejected_for_single_capacity(resource):
    add_rule(db.session, resource, 0, None, 9 * 60, 12 * 60)
    with pytest.raises(Conflict):
        add_rule(db.session, resource, 0, None, 11 * 60, 14 * 60)
    # adjacent windows are fine
    add_rule(db.session, resource, 0, None, 12 * 60, 14 * 60)


def test_capacity_allows_concurrent_bookings_up_to_the_limit(resolver, lifecycle, customer, stranger,
                                                            make_resource, provider):
    resource = make_resource(provider, kind="venue", capacity=2)
    first = _book(lifecycle, customer, resource, at(10), at(11))
    second = _book(lifecycle, stranger, resource, at(10, 30), at(11, 30))

    full = resolver.check(resource.id, at(10, 45), at(11, 15))
    assert full.available is False
    assert full.reason == "capacity_reached"
    assert {c.id for c in full.conflicts} == {first.id, second.id}

    # only one booking at any instant of 11:30-12:00
    assert resolver.check(resource.id, at(11), at(12)).available is True


def test_capacity_counts_peak_not_total(resolver, lifecycle, customer, make_resource, provider):
    resource = make_resource(provider, capacity=2)
    _book(lifecycle, customer, resource, at(10), at(11))
    _book(lifecycle, customer, resource, at(11), at(12))

    assert resolver.check(resource.id, at(10, 30), at(11, 30)).available is True


def test_peak_occupancy_releases_before_acquiring():
    intervals = [(at(10), at(11)), (at(11), at(12)), (at(10, 30), at(11, 30))]
    assert peak_occupancy(intervals, at(10), at(12)) == 2
    assert peak_occupancy([], at(10), at(12)) == 0


def test_duration_constraints(resolver, make_resource, provider):
    resource = make_resource(provider, min_duration_minutes=30, max_duration_minutes=120,
                             booking_increment_minutes=30)

    with pytest.raises(InvalidWindow):
        resolver.check(resource.id, at(10), at(10, 15))
    with pytest.raises(InvalidWindow):
        resolver.check(resource.id, at(10), at(13))
    with pytest.raises(InvalidWindow):
        resolver.check(resource.id, at(10), at(10, 45))
    assert resolver.check(resource.id, at(10), at(11, 30)).available is True


def test_booking_policy_reasons(resolver, make_resource, provider):
    paused = make_resource(provider, is_active=False)
    assert resolver.check(paused.id, at(10), at(11)).reason == "resource_paused"

    resource = make_resource(provider, advance_notice_minutes=24 * 60, max_advance_days=3)
    assert resolver.check(resource.id, NOW - timedelta(hours=2), NOW - timedelta(hours=1)).reason == "in_past"
    assert resolver.check(resource.id, at(10, day=7), at(11, day=7)).reason == "insufficient_notice"
    assert resolver.check(resource.id, at(10, day=12), at(11, day=12)).reason == "too_far_in_advance"
    assert resolver.check(resource.id, at(10, day=9), at(11, day=9)).available is True


def test_reschedule_check_ignores_the_booking_being_moved(resolver, lifecycle, customer, resource):
    booking = _book(lifecycle, customer, resource, at(10), at(11))

    result = resolver.check(resource.id, at(10, 30), at(11, 30), exclude_booking_id=booking.id)
    assert result.available is True
