from models.db import db
from utils.timeparse import utcnow

class Hold(db.Model):
    __tablename__ = "holds"

    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.id"), nullable=False, index=True)

    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)

    hold_type = db.Column(db.String(40), nullable=False, default="administrative")
    reason = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("end_time > start_time", name="ck_hold_window_order"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "hold_type": self.hold_type,
            "reason": self.reason,
            "created_by": self.created_by,
        }
