from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.user import User, Role
from schemas import RegisterRequest, LoginRequest
from security.password import hash_password, verify_password
from security.session import create_session, revoke_session, revoke_all_sessions
from security.csrf import issue_csrf_token
from utils.audit import log_event
from utils.auth_context import login_required


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _cookie_name():
    return current_app.config.get("AUTH_COOKIE_NAME", "servicebook_session")


def _user_payload(user: User):
    return {
        "id": user.id,
        "email": user.email,
        "roles": sorted(user.role_names),
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "business_name": user.business_name,
    }


@auth_bp.post("/register")
def register():
    data = RegisterRequest.model_validate(request.get_json(silent=True) or {})

    if User.query.filter_by(email=data.email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": data.email})
        return jsonify(error="Email already registered"), 409

    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    user = User(
        email=data.email,
        password_hash=hash_password(data.password, rounds=rounds),
        full_name=data.full_name,
        phone_number=data.phone_number,
        business_name=data.business_name,
    )
    db.session.add(user)
    db.session.flush()

    role = Role.query.filter_by(name=data.role).first()
    if role:
        user.roles.append(role)

    db.session.commit()
    log_event("REGISTER_SUCCESS", user_id=user.id, metadata={"role": data.role})

    return jsonify(message="Registered successfully", user=_user_payload(user)), 201


@auth_bp.post("/login")
def login():
    data = LoginRequest.model_validate(request.get_json(silent=True) or {})

    user = User.query.filter_by(email=data.email).first()
    if not user or not verify_password(data.password, user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": data.email})
        return jsonify(error="Invalid credentials"), 401

    # Rotate: revoke any existing sessions for this user
    revoked_count = revoke_all_sessions(user.id)

    raw_token = create_session(user.id)
    max_age = current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60)

    resp = jsonify(message="Login OK", user=_user_payload(user))
    resp.set_cookie(
        _cookie_name(),
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=max_age,
        path="/",
    )
    resp = issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(_user_payload(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = _cookie_name()
    revoke_session(request.cookies.get(cookie_name))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200
