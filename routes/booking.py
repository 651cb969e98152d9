from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy import or_

from models import db
from models.booking import Booking, BOOKING_STATUSES, CONFIRMED, CANCELLED, COMPLETED, NO_SHOW, RESCHEDULED
from schemas import BookingCreate, BookingUpdate, StatusChange, ReviewCreate, WindowFields
from services.errors import InvalidWindow, Unauthorized
from services.lifecycle import BookingLifecycle, actor_role_for, CLIENT
from services.notifications import NotificationDispatcher
from utils import emailer
from utils.audit import log_event
from utils.auth_context import login_required
from utils.timeparse import parse_iso

booking_bp = Blueprint("booking", __name__)


def build_lifecycle() -> BookingLifecycle:
    notifier = NotificationDispatcher(db.session, emailer.send_email)
    return BookingLifecycle(
        db.session,
        notifier,
        cancel_cutoff_hours=current_app.config.get("CANCEL_CUTOFF_HOURS", 0),
    )


def _json_body():
    return request.get_json(silent=True) or {}


def _actor(booking):
    role = actor_role_for(g.user, booking)
    if role is None:
        raise Unauthorized("You are not allowed to access this booking")
    return role


def _booking_view(booking, role):
    out = booking.to_dict(include_internal=role != CLIENT)
    if booking.rescheduled_to_id:
        replacement = db.session.get(Booking, booking.rescheduled_to_id)
        if replacement is not None:
            out["replacement"] = replacement.to_dict(include_internal=role != CLIENT)
    return out


# ---------- create / list ----------
@booking_bp.post("/bookings")
@login_required
def create_booking():
    data = BookingCreate.model_validate(_json_body())

    booking = build_lifecycle().create_booking(
        client_id=g.user.id,
        resource_id=data.resource_id,
        start=data.start_time,
        end=data.end_time,
        location=data.location,
        client_notes=data.client_notes,
        assigned_staff_id=data.staff_id,
        custom_form_data=data.custom_form_data,
        pet_id=data.pet_id,
    )

    log_event("BOOKING_CREATE", user_id=g.user.id, entity="booking", entity_id=booking.id)
    return jsonify(message="Booking created", booking=booking.to_dict(include_internal=False)), 201


@booking_bp.get("/bookings")
@login_required
def list_bookings():
    status = request.args.get("status")
    if status and status not in BOOKING_STATUSES:
        return jsonify(error="Invalid status filter"), 400

    try:
        start = parse_iso(request.args["start"]) if request.args.get("start") else None
        end = parse_iso(request.args["end"]) if request.args.get("end") else None
    except ValueError:
        raise InvalidWindow("Invalid datetime format. Use ISO e.g. 2030-01-20T18:00:00")

    q = Booking.query
    if not g.user.has_role("ADMIN"):
        q = q.filter(or_(Booking.client_id == g.user.id, Booking.provider_id == g.user.id))
    if status:
        q = q.filter(Booking.status == status)
    if start:
        q = q.filter(Booking.end_time > start)
    if end:
        q = q.filter(Booking.start_time < end)

    bookings = q.order_by(Booking.start_time.asc()).all()
    return jsonify([_booking_view(b, actor_role_for(g.user, b)) for b in bookings]), 200


@booking_bp.get("/bookings/<int:booking_id>")
@login_required
def get_booking(booking_id):
    booking = build_lifecycle().get_booking(booking_id)
    return jsonify(_booking_view(booking, _actor(booking))), 200


@booking_bp.patch("/bookings/<int:booking_id>")
@login_required
def update_booking(booking_id):
    data = BookingUpdate.model_validate(_json_body())
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        return jsonify(error="Nothing to update"), 400

    lifecycle = build_lifecycle()
    booking = lifecycle.get_booking(booking_id)
    role = _actor(booking)
    booking = lifecycle.update_details(booking_id, g.user.id, role, changes)

    log_event(
        "BOOKING_UPDATE",
        user_id=g.user.id,
        entity="booking",
        entity_id=booking.id,
        metadata={"fields": sorted(changes)},
    )
    return jsonify(_booking_view(booking, role)), 200


# ---------- status changes ----------
def _change_status(booking_id, target_status, metadata=None):
    lifecycle = build_lifecycle()
    booking = lifecycle.get_booking(booking_id)
    role = _actor(booking)
    previous = booking.status

    booking = lifecycle.transition(booking_id, g.user.id, role, target_status, metadata or {})

    log_event(
        "BOOKING_STATUS_CHANGE",
        user_id=g.user.id,
        entity="booking",
        entity_id=booking.id,
        metadata={"from": previous, "to": target_status, "actor_role": role},
    )
    return jsonify(_booking_view(booking, role)), 200


@booking_bp.post("/bookings/<int:booking_id>/status")
@login_required
def change_status(booking_id):
    data = StatusChange.model_validate(_json_body())
    return _change_status(
        booking_id,
        data.status,
        {"reason": data.reason, "start_time": data.start_time, "end_time": data.end_time},
    )


@booking_bp.post("/bookings/<int:booking_id>/confirm")
@login_required
def confirm_booking(booking_id):
    return _change_status(booking_id, CONFIRMED)


@booking_bp.post("/bookings/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id):
    reason = _json_body().get("reason")
    if reason is not None and not isinstance(reason, str):
        return jsonify(error="reason must be a string"), 400
    return _change_status(booking_id, CANCELLED, {"reason": reason})


@booking_bp.post("/bookings/<int:booking_id>/complete")
@login_required
def complete_booking(booking_id):
    return _change_status(booking_id, COMPLETED)


@booking_bp.post("/bookings/<int:booking_id>/no-show")
@login_required
def no_show_booking(booking_id):
    return _change_status(booking_id, NO_SHOW)


@booking_bp.post("/bookings/<int:booking_id>/reschedule")
@login_required
def reschedule_booking(booking_id):
    window = WindowFields.model_validate(_json_body())
    return _change_status(
        booking_id,
        RESCHEDULED,
        {"start_time": window.start_time, "end_time": window.end_time},
    )


# ---------- reviews ----------
@booking_bp.post("/bookings/<int:booking_id>/review")
@login_required
def review_booking(booking_id):
    data = ReviewCreate.model_validate(_json_body())

    lifecycle = build_lifecycle()
    booking = lifecycle.get_booking(booking_id)
    # an admin reviewing their own booking acts as its client
    role = CLIENT if booking.client_id == g.user.id else _actor(booking)
    review = lifecycle.attach_review(booking_id, g.user.id, role, data.rating, data.comment)

    log_event("REVIEW_CREATE", user_id=g.user.id, entity="review", entity_id=review.id)
    return jsonify(review.to_dict()), 201
