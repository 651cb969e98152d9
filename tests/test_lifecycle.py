import threading
from datetime import timedelta

import pytest

from config import Config
from conftest import NOW, at
from models import db
from models.booking import (
    Booking, BOOKING_STATUSES, PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW, RESCHEDULED,
)
from models.hold import Hold
from models.notification import Notification
from services.errors import Conflict, InvalidTransition, InvalidWindow, NotFound, Unauthorized
from services.lifecycle import BookingLifecycle, TRANSITIONS, actor_role_for
from services.notifications import NotificationDispatcher


CLIENT, PROVIDER, ADMIN = "client", "provider", "admin"

# pending -> confirmed -> completed, cancellable while active, plus no-show and reschedule
EXPECTED_TRANSITIONS = {
    (PENDING, CONFIRMED): {PROVIDER, ADMIN},
    (PENDING, CANCELLED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, CANCELLED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, COMPLETED): {PROVIDER, ADMIN},
    (CONFIRMED, NO_SHOW): {PROVIDER, ADMIN},
    (PENDING, RESCHEDULED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, RESCHEDULED): {CLIENT, PROVIDER, ADMIN},
}


@pytest.fixture
def booking(lifecycle, customer, resource):
    return lifecycle.create_booking(customer.id, resource.id, at(10), at(11))


def _force_status(booking, status):
    booking.status = status
    db.session.commit()


def _actor_ids(customer, provider, admin):
    return {"client": customer.id, "provider": provider.id, "admin": admin.id}


def test_create_copies_price_and_notifies_provider(lifecycle, customer, resource, provider, outbox):
    booking = lifecycle.create_booking(customer.id, resource.id, at(10), at(11), client_notes="Nervous dog")

    assert booking.status == PENDING
    assert booking.provider_id == provider.id
    assert (booking.price_amount, booking.price_currency) == (4500, "USD")

    notification = Notification.query.filter_by(booking_id=booking.id).one()
    assert notification.kind == "booking_created"
    assert notification.status == "sent"
    assert [m["to"] for m in outbox.sent] == [provider.email]


def test_price_is_frozen_after_creation(booking, resource):
    resource.price_amount = 9900
    db.session.commit()
    assert db.session.get(Booking, booking.id).price_amount == 4500

    with pytest.raises(ValueError):
        booking.price_amount = 100


def test_create_conflict_reports_existing_booking(lifecycle, stranger, resource, booking):
    with pytest.raises(Conflict) as exc:
        lifecycle.create_booking(stranger.id, resource.id, at(10, 30), at(11, 30))

    assert exc.value.details["reason"] == "booked"
    assert [c["id"] for c in exc.value.details["conflicts"]] == [booking.id]
    assert exc.value.message == "This slot was just booked"
    assert Booking.query.count() == 1


def test_create_for_missing_resource_is_not_found(lifecycle, customer):
    with pytest.raises(NotFound):
        lifecycle.create_booking(customer.id, 424242, at(10), at(11))


def test_transition_table_is_exactly_the_documented_one():
    assert TRANSITIONS == EXPECTED_TRANSITIONS


@pytest.mark.parametrize("from_status", BOOKING_STATUSES)
@pytest.mark.parametrize("target", [CONFIRMED, CANCELLED, COMPLETED, NO_SHOW])
@pytest.mark.parametrize("role", ["client", "provider", "admin"])
def test_transition_table(lifecycle, booking, customer, provider, admin, from_status, target, role):
    _force_status(booking, from_status)
    before = Notification.query.count()
    actor_id = _actor_ids(customer, provider, admin)[role]

    allowed = EXPECTED_TRANSITIONS.get((from_status, target))
    if allowed is None:
        with pytest.raises(InvalidTransition):
            lifecycle.transition(booking.id, actor_id, role, target)
        assert Notification.query.count() == before
    elif role not in allowed:
        with pytest.raises(Unauthorized):
            lifecycle.transition(booking.id, actor_id, role, target)
        assert Notification.query.count() == before
    else:
        updated = lifecycle.transition(booking.id, actor_id, role, target)
        assert updated.status == target
        assert Notification.query.count() == before + 1
        latest = Notification.query.order_by(Notification.id.desc()).first()
        assert latest.kind == f"booking_{target}"

    assert db.session.get(Booking, booking.id).status == (target if allowed and role in allowed else from_status)


def test_confirm_notifies_client(lifecycle, booking, provider, customer, outbox):
    lifecycle.transition(booking.id, provider.id, "provider", CONFIRMED)

    confirmation = outbox.to(customer.email)
    assert len(confirmation) == 1
    assert confirmation[0]["subject"] == f"Booking confirmed #{booking.id}"
    assert "Dog grooming" in confirmation[0]["body"]
    assert "45.00 USD" in confirmation[0]["body"]


def test_client_cancel_notifies_provider(lifecycle, booking, customer, provider, outbox):
    cancelled = lifecycle.transition(booking.id, customer.id, "client", CANCELLED, {"reason": "Vet visit"})

    assert cancelled.status == CANCELLED
    assert cancelled.cancelled_by == "client"
    assert cancelled.cancellation_reason == "Vet visit"
    assert cancelled.cancelled_at == NOW

    latest = Notification.query.order_by(Notification.id.desc()).first()
    assert latest.kind == "booking_cancelled"
    assert latest.recipient_email == provider.email
    assert "Vet visit" in outbox.to(provider.email)[-1]["body"]


def test_provider_cancel_notifies_client_with_default_reason(lifecycle, booking, customer, provider):
    cancelled = lifecycle.transition(booking.id, provider.id, "provider", CANCELLED)

    assert cancelled.cancellation_reason == "No reason provided"
    latest = Notification.query.order_by(Notification.id.desc()).first()
    assert latest.recipient_email == customer.email


def test_unrelated_user_cannot_cancel(lifecycle, booking, stranger, make_user, make_resource):
    with pytest.raises(Unauthorized):
        lifecycle.transition(booking.id, stranger.id, "client", CANCELLED)

    other_provider = make_user("other-provider@example.com", role="PROVIDER")
    make_resource(other_provider, title="Other salon")
    with pytest.raises(Unauthorized):
        lifecycle.transition(booking.id, other_provider.id, "provider", CANCELLED)

    assert db.session.get(Booking, booking.id).status == PENDING


def test_missing_booking_is_not_found(lifecycle, customer):
    with pytest.raises(NotFound):
        lifecycle.transition(31337, customer.id, "client", CANCELLED)


def test_client_cannot_cancel_inside_cutoff(app, outbox, booking, customer, provider):
    strict = BookingLifecycle(
        db.session, NotificationDispatcher(db.session, outbox), clock=lambda: NOW, cancel_cutoff_hours=48
    )

    with pytest.raises(Unauthorized):
        strict.transition(booking.id, customer.id, "client", CANCELLED)

    assert strict.transition(booking.id, provider.id, "provider", CANCELLED).status == CANCELLED


def test_client_may_cancel_close_to_start_by_default(app, outbox, customer, provider, resource):
    default = BookingLifecycle(
        db.session,
        NotificationDispatcher(db.session, outbox),
        clock=lambda: NOW,
        cancel_cutoff_hours=Config.CANCEL_CUTOFF_HOURS,
    )
    # three hours after NOW
    soon = default.create_booking(customer.id, resource.id, at(11, day=7), at(12, day=7))

    cancelled = default.transition(soon.id, customer.id, "client", CANCELLED)

    assert Config.CANCEL_CUTOFF_HOURS == 0
    assert cancelled.status == CANCELLED
    assert outbox.to(provider.email)[-1]["subject"].startswith("Booking cancelled")


def test_concurrent_creates_for_one_window_book_once(app, outbox, customer, stranger, resource):
    client_ids = [customer.id, stranger.id]
    resource_id = resource.id
    db.session.commit()

    barrier = threading.Barrier(len(client_ids))
    outcomes = []

    def attempt(client_id):
        with app.app_context():
            racer = BookingLifecycle(db.session, NotificationDispatcher(db.session, outbox), clock=lambda: NOW)
            barrier.wait(timeout=10)
            try:
                racer.create_booking(client_id, resource_id, at(10), at(11))
                outcomes.append("ok")
            except Conflict:
                outcomes.append("conflict")
            except Exception as exc:
                outcomes.append(repr(exc))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=attempt, args=(client_id,)) for client_id in client_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["conflict", "ok"]
    assert Booking.query.filter_by(resource_id=resource_id).count() == 1


def test_stale_status_is_rejected(lifecycle, booking):
    db.session.query(Booking).filter_by(id=booking.id).update({"status": CANCELLED})
    db.session.commit()

    with pytest.raises(InvalidTransition):
        lifecycle._compare_and_set(booking, PENDING, status=CONFIRMED)


def test_actor_role_is_derived_from_the_booking(booking, customer, provider, admin, stranger):
    assert actor_role_for(customer, booking) == "client"
    assert actor_role_for(provider, booking) == "provider"
    assert actor_role_for(admin, booking) == "admin"
    assert actor_role_for(stranger, booking) is None
    assert actor_role_for(None, booking) is None


# ---------- reschedule ----------

def test_provider_reschedule_keeps_confirmation(lifecycle, booking, provider, customer, outbox):
    lifecycle.transition(booking.id, provider.id, "provider", CONFIRMED)

    original = lifecycle.transition(
        booking.id, provider.id, "provider", "rescheduled",
        {"start_time": at(14), "end_time": at(15)},
    )

    assert original.status == "rescheduled"
    replacement = db.session.get(Booking, original.rescheduled_to_id)
    assert replacement.status == CONFIRMED
    assert (replacement.start_time, replacement.end_time) == (at(14), at(15))
    assert replacement.rescheduled_from_id == booking.id
    assert replacement.price_amount == booking.price_amount

    latest = Notification.query.order_by(Notification.id.desc()).first()
    assert latest.kind == "booking_rescheduled"
    assert latest.recipient_email == customer.email
    assert "2030-01-08 10:00" in outbox.sent[-1]["body"]


def test_client_reschedule_goes_back_to_pending(lifecycle, booking, customer, provider):
    original = lifecycle.reschedule(booking.id, customer.id, "client", at(10, 30), at(11, 30))

    replacement = db.session.get(Booking, original.rescheduled_to_id)
    assert replacement.status == PENDING
    latest = Notification.query.order_by(Notification.id.desc()).first()
    assert latest.recipient_email == provider.email


def test_reschedule_into_conflict_leaves_booking_untouched(lifecycle, booking, stranger, customer, resource):
    lifecycle.create_booking(stranger.id, resource.id, at(14), at(15))

    with pytest.raises(Conflict):
        lifecycle.reschedule(booking.id, customer.id, "client", at(14, 30), at(15, 30))

    assert db.session.get(Booking, booking.id).status == PENDING
    assert Booking.query.count() == 2


def test_reschedule_requires_a_window(lifecycle, booking, customer):
    with pytest.raises(InvalidWindow):
        lifecycle.transition(booking.id, customer.id, "client", "rescheduled")


def test_completed_booking_cannot_be_rescheduled(lifecycle, booking, provider):
    _force_status(booking, COMPLETED)
    with pytest.raises(InvalidTransition):
        lifecycle.reschedule(booking.id, provider.id, "provider", at(14), at(15))


# ---------- reviews ----------

def test_review_requires_completed_booking(lifecycle, booking, customer):
    with pytest.raises(InvalidTransition):
        lifecycle.attach_review(booking.id, customer.id, "client", 5)


def test_review_attached_exactly_once(lifecycle, booking, customer, provider):
    lifecycle.transition(booking.id, provider.id, "provider", CONFIRMED)
    lifecycle.transition(booking.id, provider.id, "provider", COMPLETED)

    review = lifecycle.attach_review(booking.id, customer.id, "client", 4, "Lovely cut")
    assert review.rating == 4
    assert db.session.get(Booking, booking.id).to_dict()["review"]["comment"] == "Lovely cut"

    with pytest.raises(InvalidTransition):
        lifecycle.attach_review(booking.id, customer.id, "client", 5)


def test_only_the_client_may_review(lifecycle, booking, provider, stranger):
    _force_status(booking, COMPLETED)

    with pytest.raises(Unauthorized):
        lifecycle.attach_review(booking.id, provider.id, "provider", 5)
    with pytest.raises(Unauthorized):
        lifecycle.attach_review(booking.id, stranger.id, "client", 5)


# ---------- notes ----------

def test_notes_are_written_by_their_owner(lifecycle, booking, customer, provider):
    lifecycle.update_details(booking.id, customer.id, "client", {"client_notes": "Gate code 1234"})
    lifecycle.update_details(booking.id, provider.id, "provider", {"internal_notes": "Bites"})

    with pytest.raises(Unauthorized):
        lifecycle.update_details(booking.id, customer.id, "client", {"internal_notes": "nope"})

    refreshed = db.session.get(Booking, booking.id)
    assert refreshed.to_dict(include_internal=False)["notes"] == {"client": "Gate code 1234", "provider": None}
    assert refreshed.to_dict()["notes"]["internal"] == "Bites"


def test_assigning_unknown_staff_is_not_found(lifecycle, booking, provider):
    with pytest.raises(NotFound):
        lifecycle.update_details(booking.id, provider.id, "provider", {"assigned_staff_id": 999})


# ---------- holds / reminders ----------

def test_release_hold(lifecycle, resource, provider):
    hold = lifecycle.place_hold(resource.id, provider.id, at(9), at(10))
    lifecycle.release_hold(resource.id, hold.id)

    assert db.session.get(Hold, hold.id) is None
    with pytest.raises(NotFound):
        lifecycle.release_hold(resource.id, hold.id)


def test_reminders_sent_once_per_confirmed_booking(lifecycle, customer, provider, resource, outbox):
    soon = lifecycle.create_booking(customer.id, resource.id, NOW + timedelta(hours=5), NOW + timedelta(hours=6))
    lifecycle.create_booking(customer.id, resource.id, NOW + timedelta(hours=7), NOW + timedelta(hours=8))
    later = lifecycle.create_booking(customer.id, resource.id, NOW + timedelta(days=3), NOW + timedelta(days=3, hours=1))
    lifecycle.transition(soon.id, provider.id, "provider", CONFIRMED)
    lifecycle.transition(later.id, provider.id, "provider", CONFIRMED)

    results = lifecycle.send_due_reminders(within_hours=24)
    assert [r.kind for r in results] == ["booking_reminder"]
    assert results[0].delivered is True
    assert db.session.get(Booking, soon.id).reminder_sent_at == NOW

    assert lifecycle.send_due_reminders(within_hours=24) == []
