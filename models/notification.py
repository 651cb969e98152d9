from models.db import db
from utils.timeparse import utcnow

QUEUED = "queued"
SENT = "sent"
FAILED = "failed"
NOTIFICATION_STATUSES = (QUEUED, SENT, FAILED)


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True, index=True)

    kind = db.Column(db.String(40), nullable=False)  # booking_created, booking_confirmed, ...
    recipient_email = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=QUEUED, index=True)  # queued, sent, failed
    error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "kind": self.kind,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "status": self.status,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
