from models.db import db
from utils.timeparse import utcnow

class Pet(db.Model):
    __tablename__ = "pets"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(120), nullable=False)
    species = db.Column(db.String(60), nullable=False, default="dog")
    breed = db.Column(db.String(120), nullable=True)
    age_years = db.Column(db.Integer, nullable=True)
    weight_kg = db.Column(db.Float, nullable=True)
    special_requirements = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "species": self.species,
            "breed": self.breed,
            "age_years": self.age_years,
            "weight_kg": self.weight_kg,
            "special_requirements": self.special_requirements,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
