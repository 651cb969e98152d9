import json

from sqlalchemy.orm import validates

from models.db import db
from utils.timeparse import utcnow

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"
RESCHEDULED = "rescheduled"

BOOKING_STATUSES = (PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW, RESCHEDULED)

# statuses that occupy the resource for conflict checks
ACTIVE_STATUSES = (PENDING, CONFIRMED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    resource_id = db.Column(db.Integer, db.ForeignKey("resources.id"), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_staff_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    pet_id = db.Column(db.Integer, db.ForeignKey("pets.id"), nullable=True, index=True)

    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)

    # copied from the resource when the booking is created
    price_amount = db.Column(db.Integer, nullable=False)
    price_currency = db.Column(db.String(10), nullable=False)

    location = db.Column(db.String(255), nullable=True)
    client_notes = db.Column(db.Text, nullable=True)
    provider_notes = db.Column(db.Text, nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)
    custom_form_json = db.Column(db.Text, nullable=True)

    cancellation_reason = db.Column(db.String(255), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancelled_by = db.Column(db.String(20), nullable=True)  # client, provider, admin

    rescheduled_to_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True)
    rescheduled_from_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True)

    reminder_sent_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    resource = db.relationship("Resource", foreign_keys=[resource_id])
    review = db.relationship("Review", back_populates="booking", uselist=False)

    __table_args__ = (
        db.CheckConstraint("end_time > start_time", name="ck_booking_window_order"),
        db.Index("ix_bookings_resource_window", "resource_id", "start_time", "end_time"),
    )

    @validates("price_amount", "price_currency")
    def _freeze_price(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} cannot change after the booking is created")
        return value

    @property
    def custom_form_data(self):
        return json.loads(self.custom_form_json) if self.custom_form_json else None

    def to_dict(self, include_internal: bool = True):
        out = {
            "id": self.id,
            "resource_id": self.resource_id,
            "provider_id": self.provider_id,
            "client_id": self.client_id,
            "assigned_staff_id": self.assigned_staff_id,
            "pet_id": self.pet_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status,
            "price": {"amount": self.price_amount, "currency": self.price_currency},
            "location": self.location,
            "notes": {
                "client": self.client_notes,
                "provider": self.provider_notes,
            },
            "custom_form_data": self.custom_form_data,
            "rescheduled_to_id": self.rescheduled_to_id,
            "rescheduled_from_id": self.rescheduled_from_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_internal:
            out["notes"]["internal"] = self.internal_notes
        if self.status == CANCELLED:
            out["cancellation"] = {
                "reason": self.cancellation_reason,
                "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
                "cancelled_by": self.cancelled_by,
            }
        if self.review is not None:
            out["review"] = self.review.to_dict()
        return out
