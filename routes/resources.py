from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy import func, or_

from models import db
from models.booking import Booking
from models.hold import Hold
from models.resource import Resource, AvailabilityRule
from models.review import Review
from routes.booking import build_lifecycle
from schemas import ResourceCreate, ResourceUpdate, AvailabilityRuleCreate, HoldCreate, AvailabilityQuery
from security.rbac import require_roles, is_owner_or_admin
from services.availability import AvailabilityResolver, add_rule
from services.errors import InvalidWindow, NotFound, Unauthorized
from utils.audit import log_event
from utils.auth_context import login_required, current_user
from utils.timeparse import parse_iso

resources_bp = Blueprint("resources", __name__, url_prefix="/resources")


def _json_body():
    return request.get_json(silent=True) or {}


def _get_resource(resource_id) -> Resource:
    resource = db.session.get(Resource, resource_id)
    if resource is None:
        raise NotFound("Resource not found")
    return resource


def _owned_resource(resource_id) -> Resource:
    resource = _get_resource(resource_id)
    if not is_owner_or_admin(resource.provider_id):
        raise Unauthorized("You do not manage this resource")
    return resource


def _range_args():
    try:
        start = parse_iso(request.args["start"]) if request.args.get("start") else None
        end = parse_iso(request.args["end"]) if request.args.get("end") else None
    except ValueError:
        raise InvalidWindow("Invalid datetime format. Use ISO e.g. 2030-01-20T18:00:00")
    if start and end and end <= start:
        raise InvalidWindow("end must be after start")
    return start, end


def _rating_summary(resource_id):
    avg, count = (
        db.session.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.resource_id == resource_id)
        .one()
    )
    return {"average": round(float(avg), 2) if avg is not None else None, "count": count}


# ---------- resources ----------
@resources_bp.post("")
@require_roles("PROVIDER")
def create_resource():
    data = ResourceCreate.model_validate(_json_body())
    fields = data.model_dump(exclude_none=True)
    fields.setdefault("price_currency", current_app.config.get("DEFAULT_CURRENCY", "USD"))

    resource = Resource(provider_id=g.user.id, **fields)
    db.session.add(resource)
    db.session.commit()

    log_event("RESOURCE_CREATE", user_id=g.user.id, entity="resource", entity_id=resource.id)
    return jsonify(resource.to_dict(include_rules=True)), 201


@resources_bp.get("")
def list_resources():
    q = Resource.query

    user = current_user()
    if request.args.get("include_inactive") == "true" and user is not None:
        if not user.has_role("ADMIN"):
            q = q.filter(or_(Resource.is_active.is_(True), Resource.provider_id == user.id))
    else:
        q = q.filter(Resource.is_active.is_(True))

    kind = request.args.get("kind")
    if kind:
        q = q.filter(Resource.kind == kind)
    category = request.args.get("category")
    if category:
        q = q.filter(Resource.category == category)
    provider_id = request.args.get("provider_id", type=int)
    if provider_id:
        q = q.filter(Resource.provider_id == provider_id)
    min_capacity = request.args.get("min_capacity", type=int)
    if min_capacity:
        q = q.filter(Resource.capacity >= min_capacity)
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Resource.title.ilike(f"%{search}%"))

    resources = q.order_by(Resource.created_at.desc(), Resource.id.desc()).all()
    return jsonify([r.to_dict() for r in resources]), 200


@resources_bp.get("/<int:resource_id>")
def get_resource(resource_id):
    resource = _get_resource(resource_id)
    if not resource.is_active and not is_owner_or_admin(resource.provider_id):
        raise NotFound("Resource not found")

    out = resource.to_dict(include_rules=True)
    out["rating"] = _rating_summary(resource.id)
    return jsonify(out), 200


@resources_bp.patch("/<int:resource_id>")
@login_required
def update_resource(resource_id):
    resource = _owned_resource(resource_id)
    data = ResourceUpdate.model_validate(_json_body())
    changes = data.model_dump(exclude_unset=True)

    for key, value in changes.items():
        if value is None and key in ("kind", "title", "price_amount", "price_currency", "capacity",
                                     "buffer_minutes", "advance_notice_minutes", "is_active"):
            return jsonify(error=f"{key} cannot be null"), 400
        setattr(resource, key, value)

    if (
        resource.min_duration_minutes is not None
        and resource.max_duration_minutes is not None
        and resource.min_duration_minutes > resource.max_duration_minutes
    ):
        db.session.rollback()
        return jsonify(error="min_duration_minutes cannot exceed max_duration_minutes"), 400

    db.session.commit()
    log_event(
        "RESOURCE_UPDATE",
        user_id=g.user.id,
        entity="resource",
        entity_id=resource.id,
        metadata={"fields": sorted(changes)},
    )
    return jsonify(resource.to_dict(include_rules=True)), 200


# ---------- availability rules ----------
@resources_bp.post("/<int:resource_id>/availability-rules")
@login_required
def create_rule(resource_id):
    resource = _owned_resource(resource_id)
    data = AvailabilityRuleCreate.model_validate(_json_body())

    rule = add_rule(
        db.session,
        resource,
        day_of_week=data.day_of_week,
        specific_date=data.specific_date,
        start_minute=data.start_minute,
        end_minute=data.end_minute,
        is_available=data.is_available,
        reason=data.reason,
    )
    db.session.commit()

    log_event("AVAILABILITY_RULE_CREATE", user_id=g.user.id, entity="availability_rule", entity_id=rule.id)
    return jsonify(rule.to_dict()), 201


@resources_bp.get("/<int:resource_id>/availability-rules")
def list_rules(resource_id):
    resource = _get_resource(resource_id)
    return jsonify([r.to_dict() for r in resource.rules]), 200


@resources_bp.delete("/<int:resource_id>/availability-rules/<int:rule_id>")
@login_required
def delete_rule(resource_id, rule_id):
    resource = _owned_resource(resource_id)
    rule = db.session.get(AvailabilityRule, rule_id)
    if rule is None or rule.resource_id != resource.id:
        raise NotFound("Availability rule not found")

    db.session.delete(rule)
    db.session.commit()

    log_event("AVAILABILITY_RULE_DELETE", user_id=g.user.id, entity="availability_rule", entity_id=rule_id)
    return jsonify(message="Availability rule deleted"), 200


# ---------- holds ----------
@resources_bp.post("/<int:resource_id>/holds")
@login_required
def create_hold(resource_id):
    _owned_resource(resource_id)
    data = HoldCreate.model_validate(_json_body())

    hold = build_lifecycle().place_hold(
        resource_id,
        created_by=g.user.id,
        start=data.start_time,
        end=data.end_time,
        hold_type=data.hold_type,
        reason=data.reason,
    )

    log_event("HOLD_CREATE", user_id=g.user.id, entity="hold", entity_id=hold.id)
    return jsonify(hold.to_dict()), 201


@resources_bp.get("/<int:resource_id>/holds")
@login_required
def list_holds(resource_id):
    resource = _owned_resource(resource_id)
    start, end = _range_args()

    q = Hold.query.filter(Hold.resource_id == resource.id)
    if start:
        q = q.filter(Hold.end_time > start)
    if end:
        q = q.filter(Hold.start_time < end)
    return jsonify([h.to_dict() for h in q.order_by(Hold.start_time.asc()).all()]), 200


@resources_bp.delete("/<int:resource_id>/holds/<int:hold_id>")
@login_required
def delete_hold(resource_id, hold_id):
    _owned_resource(resource_id)
    build_lifecycle().release_hold(resource_id, hold_id)

    log_event("HOLD_DELETE", user_id=g.user.id, entity="hold", entity_id=hold_id)
    return jsonify(message="Hold released"), 200


# ---------- availability / calendar ----------
@resources_bp.get("/<int:resource_id>/availability")
def check_availability(resource_id):
    query = AvailabilityQuery.from_args(request.args.to_dict())
    result = AvailabilityResolver(db.session).check(resource_id, query.start_time, query.end_time)
    return jsonify(result.to_dict()), 200


@resources_bp.get("/<int:resource_id>/calendar")
@login_required
def calendar(resource_id):
    resource = _owned_resource(resource_id)
    start, end = _range_args()

    bookings_q = Booking.query.filter(Booking.resource_id == resource.id)
    holds_q = Hold.query.filter(Hold.resource_id == resource.id)
    if start:
        bookings_q = bookings_q.filter(Booking.end_time > start)
        holds_q = holds_q.filter(Hold.end_time > start)
    if end:
        bookings_q = bookings_q.filter(Booking.start_time < end)
        holds_q = holds_q.filter(Hold.start_time < end)

    events = [
        {
            "type": "booking",
            "id": b.id,
            "title": resource.title,
            "start": b.start_time.isoformat(),
            "end": b.end_time.isoformat(),
            "status": b.status,
            "client_id": b.client_id,
        }
        for b in bookings_q.all()
    ]
    events += [
        {
            "type": "hold",
            "id": h.id,
            "title": h.reason or h.hold_type,
            "start": h.start_time.isoformat(),
            "end": h.end_time.isoformat(),
            "status": h.hold_type,
        }
        for h in holds_q.all()
    ]
    events.sort(key=lambda e: (e["start"], e["type"], e["id"]))
    return jsonify(resource_id=resource.id, events=events), 200


# ---------- reviews ----------
@resources_bp.get("/<int:resource_id>/reviews")
def list_reviews(resource_id):
    resource = _get_resource(resource_id)
    reviews = (
        Review.query
        .filter_by(resource_id=resource.id)
        .order_by(Review.created_at.desc())
        .all()
    )
    return jsonify(reviews=[r.to_dict() for r in reviews], rating=_rating_summary(resource.id)), 200
