from flask import Blueprint, jsonify, g, request
from sqlalchemy import func

from models import db
from models.audit_log import AuditLog
from models.booking import Booking, BOOKING_STATUSES
from models.notification import Notification, FAILED, NOTIFICATION_STATUSES
from models.resource import Resource
from models.user import User
from security.rbac import require_roles
from utils.audit import log_event

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _limit_arg(default=200):
    limit = request.args.get("limit", type=int) or default
    return max(1, min(limit, 500))


@admin_bp.get("/dashboard")
@require_roles("ADMIN")
def dashboard():
    by_status = dict(
        db.session.query(Booking.status, func.count(Booking.id)).group_by(Booking.status).all()
    )

    log_event("ADMIN_DASHBOARD_VIEW", user_id=g.user.id)
    return jsonify(
        users=User.query.count(),
        resources=Resource.query.count(),
        active_resources=Resource.query.filter_by(is_active=True).count(),
        bookings={status: by_status.get(status, 0) for status in BOOKING_STATUSES},
        failed_notifications=Notification.query.filter_by(status=FAILED).count(),
    ), 200


@admin_bp.get("/audit-logs")
@require_roles("ADMIN")
def list_audit_logs():
    action = request.args.get("action")
    user_id = request.args.get("user_id", type=int)

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(_limit_arg()).all()
    return jsonify([
        {
            "id": r.id,
            "created_at": r.timestamp.isoformat() if r.timestamp else None,
            "user_id": r.user_id,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "ip": r.ip,
            "user_agent": r.user_agent,
            "metadata": r.metadata_json,
        }
        for r in rows
    ]), 200


@admin_bp.get("/notifications")
@require_roles("ADMIN")
def list_notifications():
    status = request.args.get("status")
    if status and status not in NOTIFICATION_STATUSES:
        return jsonify(error="Invalid status filter"), 400

    q = Notification.query
    if status:
        q = q.filter(Notification.status == status)

    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(_limit_arg()).all()
    return jsonify([n.to_dict() for n in rows]), 200
