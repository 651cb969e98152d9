from flask import Blueprint, request, jsonify, g

from models import db
from models.booking import Booking
from models.pet import Pet
from schemas import PetCreate, PetUpdate
from security.rbac import is_owner_or_admin
from services.errors import Conflict, NotFound, Unauthorized
from utils.audit import log_event
from utils.auth_context import login_required

pets_bp = Blueprint("pets", __name__, url_prefix="/pets")


def _json_body():
    return request.get_json(silent=True) or {}


def _get_pet(pet_id) -> Pet:
    pet = db.session.get(Pet, pet_id)
    if pet is None:
        raise NotFound("Pet not found")
    return pet


def _owned_pet(pet_id) -> Pet:
    pet = _get_pet(pet_id)
    if not is_owner_or_admin(pet.owner_id):
        raise Unauthorized("This pet belongs to another client")
    return pet


def _provider_has_booked(pet) -> bool:
    return (
        Booking.query
        .filter(Booking.pet_id == pet.id, Booking.provider_id == g.user.id)
        .first()
        is not None
    )


@pets_bp.post("")
@login_required
def create_pet():
    data = PetCreate.model_validate(_json_body())

    pet = Pet(owner_id=g.user.id, **data.model_dump(exclude_none=True))
    db.session.add(pet)
    db.session.commit()

    log_event("PET_CREATE", user_id=g.user.id, entity="pet", entity_id=pet.id)
    return jsonify(pet.to_dict()), 201


@pets_bp.get("")
@login_required
def list_pets():
    owner_id = g.user.id
    if g.user.has_role("ADMIN"):
        owner_id = request.args.get("owner_id", type=int) or owner_id

    pets = Pet.query.filter_by(owner_id=owner_id).order_by(Pet.name.asc(), Pet.id.asc()).all()
    return jsonify([p.to_dict() for p in pets]), 200


@pets_bp.get("/<int:pet_id>")
@login_required
def get_pet(pet_id):
    pet = _get_pet(pet_id)
    # providers see the pets booked with them
    if not is_owner_or_admin(pet.owner_id) and not _provider_has_booked(pet):
        raise Unauthorized("This pet belongs to another client")
    return jsonify(pet.to_dict()), 200


@pets_bp.patch("/<int:pet_id>")
@login_required
def update_pet(pet_id):
    pet = _owned_pet(pet_id)
    changes = PetUpdate.model_validate(_json_body()).model_dump(exclude_unset=True)

    for key, value in changes.items():
        if value is None and key in ("name", "species"):
            return jsonify(error=f"{key} cannot be null"), 400
        setattr(pet, key, value)
    db.session.commit()

    log_event("PET_UPDATE", user_id=g.user.id, entity="pet", entity_id=pet.id, metadata={"fields": sorted(changes)})
    return jsonify(pet.to_dict()), 200


@pets_bp.delete("/<int:pet_id>")
@login_required
def delete_pet(pet_id):
    pet = _owned_pet(pet_id)
    if Booking.query.filter_by(pet_id=pet.id).first() is not None:
        raise Conflict("This pet has bookings and cannot be deleted")

    db.session.delete(pet)
    db.session.commit()

    log_event("PET_DELETE", user_id=g.user.id, entity="pet", entity_id=pet_id)
    return jsonify(message="Pet deleted"), 200
