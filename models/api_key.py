from models.db import db
from utils.timeparse import utcnow

class WidgetApiKey(db.Model):
    __tablename__ = "widget_api_keys"

    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False, default="Widget API Key")

    # store only hashed key in DB, plus a short prefix so owners can tell keys apart
    key_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    key_prefix = db.Column(db.String(12), nullable=False)

    revoked = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_used_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "key_prefix": self.key_prefix,
            "revoked": self.revoked,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }
