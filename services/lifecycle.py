"""
Booking lifecycle.

Coordinates booking creation (conflict check and insert in one transaction),
status transitions, rescheduling, reviews, notes, holds and reminders.

Status flow:
    pending -> confirmed -> completed
    pending/confirmed -> cancelled | rescheduled
    confirmed -> no_show

Each successful transition queues exactly one notification in the same
transaction and delivers it after commit.
"""

import json
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from models.booking import (
    Booking, PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW, RESCHEDULED,
)
from models.hold import Hold
from models.pet import Pet
from models.review import Review
from models.user import User
from services.availability import AvailabilityResolver, claim_resource, validate_window
from services.errors import Conflict, InvalidTransition, NotFound, Unauthorized
from services import notifications as events
from utils.timeparse import utcnow

logger = logging.getLogger(__name__)

CLIENT = "client"
PROVIDER = "provider"
ADMIN = "admin"

TRANSITIONS = {
    (PENDING, CONFIRMED): {PROVIDER, ADMIN},
    (PENDING, CANCELLED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, CANCELLED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, COMPLETED): {PROVIDER, ADMIN},
    (CONFIRMED, NO_SHOW): {PROVIDER, ADMIN},
    (PENDING, RESCHEDULED): {CLIENT, PROVIDER, ADMIN},
    (CONFIRMED, RESCHEDULED): {CLIENT, PROVIDER, ADMIN},
}

TRANSITION_EVENTS = {
    CONFIRMED: events.BOOKING_CONFIRMED,
    CANCELLED: events.BOOKING_CANCELLED,
    COMPLETED: events.BOOKING_COMPLETED,
    NO_SHOW: events.BOOKING_NO_SHOW,
    RESCHEDULED: events.BOOKING_RESCHEDULED,
}

UNAVAILABLE_MESSAGES = {
    "booked": "This slot was just booked",
    "held": "This slot is held by the venue",
    "capacity_reached": "This slot is fully booked",
    "outside_availability": "Requested time is outside the opening hours",
    "closed": "The resource is closed at the requested time",
    "resource_paused": "This resource is not accepting bookings",
    "in_past": "Cannot book past or started slots",
    "insufficient_notice": "Bookings need more advance notice",
    "too_far_in_advance": "Requested time is too far in advance",
}

NOTE_FIELDS = {
    CLIENT: {"client_notes"},
    PROVIDER: {"provider_notes", "internal_notes", "assigned_staff_id"},
    ADMIN: {"provider_notes", "internal_notes", "assigned_staff_id"},
}


def actor_role_for(user, booking) -> Optional[str]:
    """Role the user acts in for this booking, or None for an unrelated user."""
    if user is None:
        return None
    if user.has_role("ADMIN"):
        return ADMIN
    if booking.provider_id == user.id:
        return PROVIDER
    if booking.client_id == user.id:
        return CLIENT
    return None


def unavailable_error(result) -> Conflict:
    message = UNAVAILABLE_MESSAGES.get(result.reason, "Requested time is not available")
    return Conflict(message, reason=result.reason, conflicts=[c.to_dict() for c in result.conflicts])


class BookingLifecycle:
    def __init__(self, session, notifier, resolver=None, clock=utcnow, cancel_cutoff_hours=0):
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.resolver = resolver or AvailabilityResolver(session, clock=clock)
        self.cancel_cutoff_hours = cancel_cutoff_hours

    # ---------- lookups ----------

    def get_booking(self, booking_id) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        return booking

    def _email_of(self, user_id):
        user = self.session.get(User, user_id) if user_id is not None else None
        return user.email if user else None

    def _check_pet(self, pet_id, client_id):
        pet = self.session.get(Pet, pet_id)
        if pet is None:
            raise NotFound("Pet not found")
        if pet.owner_id != client_id:
            raise Unauthorized("You can only book for your own pets")

    def _check_party(self, booking, actor_id, actor_role):
        if actor_role == ADMIN:
            return
        if actor_role == CLIENT and booking.client_id == actor_id:
            return
        if actor_role == PROVIDER and booking.provider_id == actor_id:
            return
        raise Unauthorized("You are not allowed to act on this booking")

    def _check_allowed(self, booking, target_status, actor_role):
        allowed = TRANSITIONS.get((booking.status, target_status))
        if allowed is None:
            raise InvalidTransition(
                f"Cannot change a {booking.status} booking to {target_status}",
                status=booking.status,
            )
        if actor_role not in allowed:
            raise Unauthorized(f"A {actor_role} cannot mark a booking as {target_status}")

    def _compare_and_set(self, booking, expected_status, **values):
        result = self.session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise InvalidTransition("Booking was changed by someone else, reload and try again")

    # ---------- create ----------

    def create_booking(self, client_id, resource_id, start, end, location=None,
                       client_notes=None, assigned_staff_id=None, custom_form_data=None,
                       pet_id=None) -> Booking:
        """
        Check availability and insert the booking in one transaction.

        Raises:
            NotFound: resource (or staff member, or pet) does not exist.
            Unauthorized: the pet belongs to someone else.
            InvalidWindow: malformed window or duration outside the resource's limits.
            Conflict: the window is not available; carries reason and conflicts.
        """
        validate_window(start, end)
        try:
            resource = claim_resource(self.session, resource_id)
            if assigned_staff_id is not None and self.session.get(User, assigned_staff_id) is None:
                raise NotFound("Staff member not found")
            if pet_id is not None:
                self._check_pet(pet_id, client_id)

            result = self.resolver.check_resource(resource, start, end)
            if not result.available:
                raise unavailable_error(result)

            booking = Booking(
                resource_id=resource.id,
                provider_id=resource.provider_id,
                client_id=client_id,
                assigned_staff_id=assigned_staff_id,
                pet_id=pet_id,
                start_time=start,
                end_time=end,
                status=PENDING,
                price_amount=resource.price_amount,
                price_currency=resource.price_currency,
                location=location or resource.location,
                client_notes=client_notes,
                custom_form_json=json.dumps(custom_form_data) if custom_form_data else None,
            )
            self.session.add(booking)
            self.session.flush()

            notification = self.notifier.enqueue(
                events.BOOKING_CREATED, booking, resource, self._email_of(resource.provider_id)
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Booking %s created for resource %s by user %s", booking.id, resource_id, client_id)
        self.notifier.deliver(notification)
        return booking

    # ---------- transitions ----------

    def transition(self, booking_id, actor_id, actor_role, target_status, metadata=None) -> Booking:
        """
        Move a booking to target_status on behalf of actor_id acting as actor_role.

        metadata: optional dict; "reason" for cancellations, "start_time"/"end_time"
        for reschedules.
        """
        metadata = metadata or {}
        if target_status == RESCHEDULED:
            return self.reschedule(
                booking_id, actor_id, actor_role, metadata.get("start_time"), metadata.get("end_time")
            )

        booking = self.get_booking(booking_id)
        self._check_party(booking, actor_id, actor_role)
        self._check_allowed(booking, target_status, actor_role)

        previous = booking.status
        values = {"status": target_status}
        if target_status == CANCELLED:
            self._check_cancellation_window(booking, actor_role)
            values.update(
                cancellation_reason=(metadata.get("reason") or "No reason provided")[:255],
                cancelled_at=self.clock(),
                cancelled_by=actor_role,
            )

        try:
            self._compare_and_set(booking, previous, **values)
            notification = self.notifier.enqueue(
                TRANSITION_EVENTS[target_status],
                booking,
                booking.resource,
                self._email_of(self._recipient_for(booking, target_status, actor_role)),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Booking %s: %s -> %s by %s %s", booking.id, previous, target_status, actor_role, actor_id)
        self.notifier.deliver(notification)
        return booking

    def _recipient_for(self, booking, target_status, actor_role):
        if target_status in (CANCELLED, RESCHEDULED) and actor_role == CLIENT:
            return booking.provider_id
        return booking.client_id

    def _check_cancellation_window(self, booking, actor_role):
        if actor_role != CLIENT or not self.cancel_cutoff_hours:
            return
        if booking.start_time - self.clock() < timedelta(hours=self.cancel_cutoff_hours):
            raise Unauthorized(
                f"Cancellation not allowed within {self.cancel_cutoff_hours} hours of start"
            )

    def reschedule(self, booking_id, actor_id, actor_role, start, end) -> Booking:
        """
        Replace a booking with a new one for a different window.

        The original becomes "rescheduled" and points at the replacement through
        rescheduled_to_id. Returns the original booking.
        """
        booking = self.get_booking(booking_id)
        self._check_party(booking, actor_id, actor_role)
        self._check_allowed(booking, RESCHEDULED, actor_role)
        validate_window(start, end)

        previous = booking.status
        previous_start = booking.start_time
        try:
            resource = claim_resource(self.session, booking.resource_id)
            result = self.resolver.check_resource(resource, start, end, exclude_booking_id=booking.id)
            if not result.available:
                raise unavailable_error(result)

            keep_confirmed = previous == CONFIRMED and actor_role in (PROVIDER, ADMIN)
            replacement = Booking(
                resource_id=booking.resource_id,
                provider_id=booking.provider_id,
                client_id=booking.client_id,
                assigned_staff_id=booking.assigned_staff_id,
                pet_id=booking.pet_id,
                start_time=start,
                end_time=end,
                status=CONFIRMED if keep_confirmed else PENDING,
                price_amount=booking.price_amount,
                price_currency=booking.price_currency,
                location=booking.location,
                client_notes=booking.client_notes,
                provider_notes=booking.provider_notes,
                internal_notes=booking.internal_notes,
                custom_form_json=booking.custom_form_json,
                rescheduled_from_id=booking.id,
            )
            self.session.add(replacement)
            self.session.flush()

            self._compare_and_set(booking, previous, status=RESCHEDULED, rescheduled_to_id=replacement.id)
            notification = self.notifier.enqueue(
                events.BOOKING_RESCHEDULED,
                replacement,
                resource,
                self._email_of(self._recipient_for(booking, RESCHEDULED, actor_role)),
                previous_start=previous_start.strftime("%Y-%m-%d %H:%M"),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info("Booking %s rescheduled to %s by %s %s", booking.id, replacement.id, actor_role, actor_id)
        self.notifier.deliver(notification)
        return booking

    # ---------- reviews ----------

    def attach_review(self, booking_id, actor_id, actor_role, rating, comment=None) -> Review:
        booking = self.get_booking(booking_id)
        if actor_role != CLIENT or booking.client_id != actor_id:
            raise Unauthorized("Only the client who made the booking can review it")
        if booking.status != COMPLETED:
            raise InvalidTransition("Can only review completed bookings", status=booking.status)
        if booking.review is not None:
            raise InvalidTransition("This booking already has a review")

        review = Review(
            booking_id=booking.id,
            resource_id=booking.resource_id,
            client_id=booking.client_id,
            provider_id=booking.provider_id,
            rating=rating,
            comment=comment,
        )
        self.session.add(review)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            # uq_review_booking_once: a concurrent request reviewed it first
            raise InvalidTransition("This booking already has a review")
        return review

    # ---------- notes / staff ----------

    def update_details(self, booking_id, actor_id, actor_role, changes: dict) -> Booking:
        booking = self.get_booking(booking_id)
        self._check_party(booking, actor_id, actor_role)

        forbidden = set(changes) - NOTE_FIELDS.get(actor_role, set())
        if forbidden:
            raise Unauthorized(f"A {actor_role} cannot update {', '.join(sorted(forbidden))}")

        staff_id = changes.get("assigned_staff_id")
        if staff_id is not None and self.session.get(User, staff_id) is None:
            raise NotFound("Staff member not found")

        for key, value in changes.items():
            setattr(booking, key, value)
        self.session.commit()
        return booking

    # ---------- holds ----------

    def place_hold(self, resource_id, created_by, start, end, hold_type="administrative", reason=None) -> Hold:
        validate_window(start, end)
        try:
            resource = claim_resource(self.session, resource_id)
            result = self.resolver.check_resource(resource, start, end, respect_rules=False)
            if not result.available:
                raise unavailable_error(result)

            hold = Hold(
                resource_id=resource.id,
                start_time=start,
                end_time=end,
                hold_type=hold_type or "administrative",
                reason=reason,
                created_by=created_by,
            )
            self.session.add(hold)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return hold

    def release_hold(self, resource_id, hold_id):
        hold = self.session.get(Hold, hold_id)
        if hold is None or hold.resource_id != resource_id:
            raise NotFound("Hold not found")
        self.session.delete(hold)
        self.session.commit()

    # ---------- reminders ----------

    def send_due_reminders(self, within_hours=24):
        """Queue one reminder per confirmed booking starting in the next within_hours."""
        now = self.clock()
        horizon = now + timedelta(hours=within_hours)
        due = (
            self.session.query(Booking)
            .filter(
                Booking.status == CONFIRMED,
                Booking.reminder_sent_at.is_(None),
                Booking.start_time > now,
                Booking.start_time <= horizon,
            )
            .order_by(Booking.start_time.asc())
            .all()
        )

        queued = []
        for booking in due:
            queued.append(
                self.notifier.enqueue(
                    events.BOOKING_REMINDER, booking, booking.resource, self._email_of(booking.client_id)
                )
            )
            booking.reminder_sent_at = now
        self.session.commit()
        return self.notifier.deliver_all(queued)
