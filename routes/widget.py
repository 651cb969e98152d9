from functools import wraps

from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.api_key import WidgetApiKey
from models.resource import Resource
from schemas import ApiKeyCreate, WidgetTokenRequest, EmbedCodeQuery, AvailabilityQuery
from security.rbac import require_roles
from services.availability import AvailabilityResolver
from services.errors import NotFound
from services.widget import (
    generate_api_key, find_api_key, revoke_api_key, issue_widget_token, verify_widget_token, embed_code,
)
from utils.audit import log_event

widget_bp = Blueprint("widget", __name__, url_prefix="/widget")


def _secret():
    return current_app.config.get("WIDGET_JWT_SECRET") or current_app.config["SECRET_KEY"]


def widget_token_required(fn):
    """Bearer widget token; sets g.widget_claims."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return jsonify(error="Widget token required"), 401

        claims = verify_widget_token(token.strip(), _secret())
        if claims is None:
            return jsonify(error="Invalid or expired widget token"), 401

        g.widget_claims = claims
        return fn(*args, **kwargs)
    return wrapper


# ---------- provider: API keys ----------
@widget_bp.post("/api-keys")
@require_roles("PROVIDER")
def create_api_key():
    data = ApiKeyCreate.model_validate(request.get_json(silent=True) or {})
    row, raw_key = generate_api_key(db.session, g.user.id, data.name)

    log_event("WIDGET_API_KEY_CREATE", user_id=g.user.id, entity="widget_api_key", entity_id=row.id)
    out = row.to_dict()
    out["api_key"] = raw_key
    return jsonify(out), 201


@widget_bp.get("/api-keys")
@require_roles("PROVIDER")
def list_api_keys():
    rows = (
        WidgetApiKey.query
        .filter_by(provider_id=g.user.id)
        .order_by(WidgetApiKey.created_at.desc())
        .all()
    )
    return jsonify([r.to_dict() for r in rows]), 200


@widget_bp.delete("/api-keys/<int:key_id>")
@require_roles("PROVIDER")
def delete_api_key(key_id):
    revoke_api_key(db.session, g.user.id, key_id)
    log_event("WIDGET_API_KEY_REVOKE", user_id=g.user.id, entity="widget_api_key", entity_id=key_id)
    return jsonify(message="API key revoked"), 200


@widget_bp.get("/embed-code")
@require_roles("PROVIDER")
def get_embed_code():
    query = EmbedCodeQuery.model_validate(request.args.to_dict())
    key = find_api_key(db.session, query.api_key)
    if key is None or key.provider_id != g.user.id:
        raise NotFound("API key not found")

    api_url = current_app.config.get("PUBLIC_API_URL") or request.host_url
    code = embed_code(query.api_key, api_url, primary_color=query.primary_color, layout=query.layout)
    return jsonify(embed_code=code, instructions="Paste this snippet where the widget should appear."), 200


# ---------- public: token exchange ----------
@widget_bp.post("/token")
def create_token():
    data = WidgetTokenRequest.model_validate(request.get_json(silent=True) or {})
    ttl = current_app.config.get("WIDGET_TOKEN_TTL_SECONDS", 24 * 60 * 60)

    token, provider = issue_widget_token(db.session, data.api_key, _secret(), ttl, data.customization)
    return jsonify(
        token=token,
        expires_in=ttl,
        provider={"id": provider.id, "business_name": provider.business_name or provider.full_name},
    ), 200


# ---------- widget token holders ----------
@widget_bp.get("/verify-token")
@widget_token_required
def verify_token():
    return jsonify(
        valid=True,
        provider_id=g.widget_claims["provider_id"],
        customization=g.widget_claims.get("customization") or {},
    ), 200


@widget_bp.get("/services")
@widget_token_required
def list_services():
    resources = (
        Resource.query
        .filter_by(provider_id=g.widget_claims["provider_id"], is_active=True)
        .order_by(Resource.title.asc())
        .all()
    )
    return jsonify(
        services=[r.to_dict() for r in resources],
        customization=g.widget_claims.get("customization") or {},
    ), 200


@widget_bp.get("/resources/<int:resource_id>/availability")
@widget_token_required
def resource_availability(resource_id):
    resource = db.session.get(Resource, resource_id)
    if resource is None or resource.provider_id != g.widget_claims["provider_id"]:
        raise NotFound("Resource not found")

    query = AvailabilityQuery.from_args(request.args.to_dict())
    result = AvailabilityResolver(db.session).check_resource(resource, query.start_time, query.end_time)
    return jsonify(result.to_dict()), 200
