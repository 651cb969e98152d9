"""
Booking notifications.

Notifications are written as rows in the same transaction as the booking change
(`enqueue`) and handed to the mail transport after that transaction commits
(`deliver`). A transport failure marks the row failed and is logged; it never
undoes the booking change. There is no retry: delivery is at most once.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from models.notification import Notification, QUEUED, SENT, FAILED
from utils.audit import log_event
from utils.timeparse import utcnow

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking_created"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_COMPLETED = "booking_completed"
BOOKING_NO_SHOW = "booking_no_show"
BOOKING_RESCHEDULED = "booking_rescheduled"
BOOKING_REMINDER = "booking_reminder"

TEMPLATES = {
    BOOKING_CREATED: (
        "New booking request",
        "You have a new booking request for {resource} on {start}.\n"
        "Please log in to your dashboard to confirm or decline.",
    ),
    BOOKING_CONFIRMED: (
        "Booking confirmed",
        "Your booking for {resource} has been confirmed.\n"
        "- Start: {start}\n- End: {end}\n- Price: {price}\n",
    ),
    BOOKING_CANCELLED: (
        "Booking cancelled",
        "The booking for {resource} on {start} has been cancelled.\nReason: {reason}",
    ),
    BOOKING_COMPLETED: (
        "Your appointment is completed",
        "Your booking for {resource} has been marked as completed.\n"
        "We hope you enjoyed the service! Please consider leaving a review.",
    ),
    BOOKING_NO_SHOW: (
        "Missed appointment",
        "Your booking for {resource} on {start} was marked as a no-show.",
    ),
    BOOKING_RESCHEDULED: (
        "Booking rescheduled",
        "The booking for {resource} on {previous_start} has moved to {start} - {end}.",
    ),
    BOOKING_REMINDER: (
        "Reminder: upcoming booking",
        "This is a friendly reminder about your booking for {resource}.\n"
        "- Start: {start}\n- Location: {location}",
    ),
}


@dataclass
class NotificationResult:
    notification_id: int
    kind: str
    delivered: bool
    error: Optional[str] = None


def _format_price(booking) -> str:
    return f"{booking.price_amount / 100:.2f} {booking.price_currency}"


def render(kind, booking, resource, **extra):
    subject, body = TEMPLATES[kind]
    context = {
        "resource": resource.title if resource is not None else "your booking",
        "start": booking.start_time.strftime("%Y-%m-%d %H:%M"),
        "end": booking.end_time.strftime("%Y-%m-%d %H:%M"),
        "price": _format_price(booking),
        "location": booking.location or (resource.location if resource is not None else None) or "-",
        "reason": booking.cancellation_reason or "No reason provided",
        "previous_start": "-",
    }
    context.update(extra)
    return f"{subject} #{booking.id}", body.format(**context)


class NotificationDispatcher:
    """
    transport: callable(to_email, subject, body) -> (ok: bool, error: str | None),
    e.g. utils.emailer.send_email.
    """

    def __init__(self, session, transport):
        self.session = session
        self.transport = transport

    def enqueue(self, kind, booking, resource, recipient_email, **extra) -> Notification:
        subject, body = render(kind, booking, resource, **extra)
        notification = Notification(
            booking_id=booking.id,
            kind=kind,
            recipient_email=recipient_email,
            subject=subject,
            body=body,
            status=QUEUED,
        )
        self.session.add(notification)
        return notification

    def deliver(self, notification) -> NotificationResult:
        if not notification.recipient_email:
            ok, error = False, "Recipient has no email"
        else:
            try:
                ok, error = self.transport(notification.recipient_email, notification.subject, notification.body)
            except Exception as exc:
                logger.exception("Mail transport raised for notification %s", notification.id)
                ok, error = False, str(exc) or exc.__class__.__name__

        if ok:
            notification.status = SENT
            notification.sent_at = utcnow()
            notification.error = None
        else:
            notification.status = FAILED
            notification.error = (error or "unknown error")[:500]
            logger.warning(
                "Notification %s (%s) to %s failed: %s",
                notification.id, notification.kind, notification.recipient_email, notification.error,
            )
        result = NotificationResult(notification.id, notification.kind, ok, None if ok else notification.error)
        try:
            self.session.commit()
            if not ok:
                log_event(
                    "NOTIFICATION_FAILED",
                    entity="notification",
                    entity_id=notification.id,
                    metadata={"kind": notification.kind, "booking_id": notification.booking_id, "error": notification.error},
                )
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Could not record delivery status of notification %s", result.notification_id)
        return result

    def deliver_all(self, notifications):
        return [self.deliver(n) for n in notifications]

    def notify(self, kind, booking, resource, recipient_email, **extra) -> NotificationResult:
        """Enqueue, commit and deliver in one go, for events outside a booking transaction."""
        notification = self.enqueue(kind, booking, resource, recipient_email, **extra)
        self.session.commit()
        return self.deliver(notification)
