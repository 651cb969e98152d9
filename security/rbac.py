from functools import wraps
from flask import g, jsonify

def is_owner_or_admin(owner_id) -> bool:
    user = getattr(g, "user", None)
    if not user:
        return False
    return user.id == owner_id or user.has_role("ADMIN")

def require_roles(*role_names: str):
    """
    Usage: @require_roles("PROVIDER")
    ADMIN passes every role check.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401

            user_roles = user.role_names
            if "ADMIN" not in user_roles and not user_roles.intersection(role_names):
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
