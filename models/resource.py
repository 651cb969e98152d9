from models.db import db
from utils.timeparse import utcnow, format_hhmm

RESOURCE_KINDS = ("service", "venue")


class Resource(db.Model):
    """A bookable service or venue owned by a provider."""

    __tablename__ = "resources"

    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    kind = db.Column(db.String(20), nullable=False, default="service")  # service, venue
    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(60), nullable=True, index=True)
    location = db.Column(db.String(255), nullable=True)

    price_amount = db.Column(db.Integer, nullable=False, default=0)  # smallest unit (e.g. cents)
    price_currency = db.Column(db.String(10), nullable=False, default="USD")

    capacity = db.Column(db.Integer, nullable=False, default=1)
    min_duration_minutes = db.Column(db.Integer, nullable=True)
    max_duration_minutes = db.Column(db.Integer, nullable=True)
    booking_increment_minutes = db.Column(db.Integer, nullable=True)
    buffer_minutes = db.Column(db.Integer, nullable=False, default=0)
    advance_notice_minutes = db.Column(db.Integer, nullable=False, default=0)
    max_advance_days = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # bumped by every writer that checks-then-inserts bookings/holds for this resource
    lock_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    rules = db.relationship(
        "AvailabilityRule",
        back_populates="resource",
        cascade="all, delete-orphan",
        order_by="AvailabilityRule.id",
    )

    __table_args__ = (
        db.CheckConstraint("capacity >= 1", name="ck_resource_capacity_positive"),
        db.CheckConstraint("buffer_minutes >= 0", name="ck_resource_buffer_non_negative"),
    )

    def to_dict(self, include_rules: bool = False):
        out = {
            "id": self.id,
            "provider_id": self.provider_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "location": self.location,
            "price": {"amount": self.price_amount, "currency": self.price_currency},
            "capacity": self.capacity,
            "min_duration_minutes": self.min_duration_minutes,
            "max_duration_minutes": self.max_duration_minutes,
            "booking_increment_minutes": self.booking_increment_minutes,
            "buffer_minutes": self.buffer_minutes,
            "advance_notice_minutes": self.advance_notice_minutes,
            "max_advance_days": self.max_advance_days,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_rules:
            out["availability_rules"] = [r.to_dict() for r in self.rules]
        return out


class AvailabilityRule(db.Model):
    """
    One open (or closed) window for a resource.

    Weekly rules set day_of_week (0 = Monday). Date exceptions set specific_date;
    with is_available=False they close the resource for that window.
    Times are minutes from midnight, 0..1440.
    """

    __tablename__ = "availability_rules"

    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.id"), nullable=False, index=True)

    day_of_week = db.Column(db.Integer, nullable=True)
    specific_date = db.Column(db.Date, nullable=True, index=True)
    start_minute = db.Column(db.Integer, nullable=False)
    end_minute = db.Column(db.Integer, nullable=False)

    is_available = db.Column(db.Boolean, default=True, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    resource = db.relationship("Resource", back_populates="rules")

    __table_args__ = (
        db.CheckConstraint("end_minute > start_minute", name="ck_rule_window_order"),
        db.CheckConstraint(
            "(day_of_week IS NULL) <> (specific_date IS NULL)",
            name="ck_rule_weekly_or_dated",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "day_of_week": self.day_of_week,
            "specific_date": self.specific_date.isoformat() if self.specific_date else None,
            "start_time": format_hhmm(self.start_minute),
            "end_time": format_hhmm(self.end_minute),
            "is_available": self.is_available,
            "reason": self.reason,
        }
