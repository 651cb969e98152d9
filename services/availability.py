"""
Availability / conflict resolution for resources (services and venues).

A window [start, end) is available when:
1) the resource accepts bookings at that time (active, notice period, declared
   open windows, no closures), and
2) no hold overlaps it, and
3) overlapping pending/confirmed bookings leave room under the resource capacity.
   For capacity 1 that means no overlapping booking at all.

Existing bookings block [start, end + buffer). Intervals are half-open, so
back-to-back bookings never conflict.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Optional

from sqlalchemy import update

from models.booking import Booking, ACTIVE_STATUSES
from models.hold import Hold
from models.resource import Resource, AvailabilityRule
from services.errors import Conflict, InvalidWindow, NotFound
from utils.timeparse import utcnow

logger = logging.getLogger(__name__)


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and a_end > b_start


@dataclass
class ConflictRecord:
    id: int
    type: str  # booking, hold
    start_time: datetime
    end_time: datetime
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "reason": self.reason,
        }


@dataclass
class AvailabilityResult:
    available: bool
    conflicts: list = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "available": self.available,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "reason": self.reason,
        }


# ---------- window validation ----------

def validate_window(start, end, resource: Optional[Resource] = None):
    if start is None or end is None:
        raise InvalidWindow("start_time and end_time are required")
    if end <= start:
        raise InvalidWindow("end_time must be after start_time")
    if resource is None:
        return

    length = end - start
    if resource.min_duration_minutes and length < timedelta(minutes=resource.min_duration_minutes):
        raise InvalidWindow(f"Booking must last at least {resource.min_duration_minutes} minutes")
    if resource.max_duration_minutes and length > timedelta(minutes=resource.max_duration_minutes):
        raise InvalidWindow(f"Booking cannot last longer than {resource.max_duration_minutes} minutes")
    increment = resource.booking_increment_minutes
    if increment and length % timedelta(minutes=increment):
        raise InvalidWindow(f"Booking length must be a multiple of {increment} minutes")


# ---------- declared open windows ----------

def _rule_interval(rule, day):
    base = datetime.combine(day, time.min)
    return base + timedelta(minutes=rule.start_minute), base + timedelta(minutes=rule.end_minute)


def _days_spanned(start, end):
    day = start.date()
    last = (end - timedelta(microseconds=1)).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def merge_intervals(intervals):
    merged = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def windows_for_day(rules, day):
    """
    Returns (open_intervals, closed_intervals) for one calendar date.
    Date-specific open rules replace the weekly rules for that date.
    """
    weekday = day.weekday()
    dated_open = [r for r in rules if r.is_available and r.specific_date == day]
    if dated_open:
        opening = dated_open
    else:
        opening = [
            r for r in rules
            if r.is_available and r.specific_date is None and r.day_of_week == weekday
        ]
    closures = [
        r for r in rules
        if not r.is_available
        and (r.specific_date == day or (r.specific_date is None and r.day_of_week == weekday))
    ]
    return [_rule_interval(r, day) for r in opening], [_rule_interval(r, day) for r in closures]


def rule_window_reason(rules, start, end) -> Optional[str]:
    opens, closes = [], []
    for day in _days_spanned(start, end):
        day_open, day_closed = windows_for_day(rules, day)
        opens.extend(day_open)
        closes.extend(day_closed)

    # no open rules at all means always open
    if any(r.is_available for r in rules):
        if not any(s <= start and e >= end for s, e in merge_intervals(opens)):
            return "outside_availability"
    if any(overlaps(s, e, start, end) for s, e in closes):
        return "closed"
    return None


def peak_occupancy(intervals, start, end) -> int:
    """Highest number of intervals covering any instant of [start, end)."""
    events = []
    for s, e in intervals:
        s, e = max(s, start), min(e, end)
        if s < e:
            events.append((s, 1))
            events.append((e, -1))
    # an interval ending at t frees its seat before one starting at t takes it
    events.sort(key=lambda ev: (ev[0], ev[1]))
    current = peak = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return peak


# ---------- resolver ----------

class AvailabilityResolver:
    def __init__(self, session, clock=utcnow):
        self.session = session
        self.clock = clock

    def get_resource(self, resource_id) -> Resource:
        resource = self.session.get(Resource, resource_id)
        if resource is None:
            raise NotFound("Resource not found")
        return resource

    def check(self, resource_id, start, end, exclude_booking_id=None) -> AvailabilityResult:
        resource = self.get_resource(resource_id)
        return self.check_resource(resource, start, end, exclude_booking_id=exclude_booking_id)

    def check_resource(self, resource, start, end, exclude_booking_id=None, respect_rules=True):
        """
        respect_rules=False skips opening hours, notice and duration policy; holds use it
        since they only have to stay clear of other bookings and holds.
        """
        validate_window(start, end, resource if respect_rules else None)

        if respect_rules:
            reason = self._policy_reason(resource, start)
            if reason is None:
                reason = rule_window_reason(resource.rules, start, end)
            if reason is not None:
                return AvailabilityResult(available=False, reason=reason)

        holds = self._overlapping_holds(resource, start, end)
        bookings = self._overlapping_bookings(resource, start, end, exclude_booking_id)
        buffer = timedelta(minutes=resource.buffer_minutes or 0)
        conflicts = [self._hold_record(h) for h in holds]
        conflicts += [self._booking_record(b, start, end) for b in bookings]

        if holds:
            return AvailabilityResult(available=False, conflicts=conflicts, reason="held")
        if not bookings:
            return AvailabilityResult(available=True)
        if resource.capacity <= 1:
            return AvailabilityResult(available=False, conflicts=conflicts, reason="booked")

        peak = peak_occupancy([(b.start_time, b.end_time + buffer) for b in bookings], start, end)
        if peak >= resource.capacity:
            return AvailabilityResult(available=False, conflicts=conflicts, reason="capacity_reached")
        return AvailabilityResult(available=True)

    def _policy_reason(self, resource, start) -> Optional[str]:
        now = self.clock()
        if not resource.is_active:
            return "resource_paused"
        if start < now:
            return "in_past"
        if resource.advance_notice_minutes and start < now + timedelta(minutes=resource.advance_notice_minutes):
            return "insufficient_notice"
        if resource.max_advance_days and start > now + timedelta(days=resource.max_advance_days):
            return "too_far_in_advance"
        return None

    def _overlapping_bookings(self, resource, start, end, exclude_booking_id=None):
        buffer = timedelta(minutes=resource.buffer_minutes or 0)
        q = self.session.query(Booking).filter(
            Booking.resource_id == resource.id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.start_time < end,
            Booking.end_time > start - buffer,
        )
        if exclude_booking_id is not None:
            q = q.filter(Booking.id != exclude_booking_id)
        return q.order_by(Booking.start_time.asc(), Booking.id.asc()).all()

    def _overlapping_holds(self, resource, start, end):
        return (
            self.session.query(Hold)
            .filter(
                Hold.resource_id == resource.id,
                Hold.start_time < end,
                Hold.end_time > start,
            )
            .order_by(Hold.start_time.asc(), Hold.id.asc())
            .all()
        )

    @staticmethod
    def _booking_record(booking, start, end):
        # only the buffer after the booking overlaps the request
        reason = None if overlaps(booking.start_time, booking.end_time, start, end) else "buffer"
        return ConflictRecord(booking.id, "booking", booking.start_time, booking.end_time, reason)

    @staticmethod
    def _hold_record(hold):
        return ConflictRecord(hold.id, "hold", hold.start_time, hold.end_time, hold.reason or hold.hold_type)


def claim_resource(session, resource_id) -> Resource:
    """
    Take the resource row's write lock for the rest of the current transaction.

    Every check-then-insert for a resource starts here, so concurrent writers for the
    same resource run one after another and each overlap check sees the rows the
    previous writer committed.
    """
    result = session.execute(
        update(Resource)
        .where(Resource.id == resource_id)
        .values(lock_version=Resource.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("Resource not found")
    return session.get(Resource, resource_id, populate_existing=True)


def add_rule(session, resource, day_of_week, specific_date, start_minute, end_minute,
             is_available=True, reason=None) -> AvailabilityRule:
    if end_minute <= start_minute:
        raise InvalidWindow("end_time must be after start_time")

    if is_available and resource.capacity == 1:
        for existing in resource.rules:
            if not existing.is_available:
                continue
            if existing.day_of_week != day_of_week or existing.specific_date != specific_date:
                continue
            if overlaps(existing.start_minute, existing.end_minute, start_minute, end_minute):
                raise Conflict("Availability rule overlaps an existing rule", rule_id=existing.id)

    rule = AvailabilityRule(
        resource_id=resource.id,
        day_of_week=day_of_week,
        specific_date=specific_date,
        start_minute=start_minute,
        end_minute=end_minute,
        is_available=is_available,
        reason=reason,
    )
    resource.rules.append(rule)
    session.add(rule)
    session.flush()
    logger.info("Added availability rule %s to resource %s", rule.id, resource.id)
    return rule
