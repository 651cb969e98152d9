"""
Embeddable booking widget for third-party sites.

Providers create API keys; a site exchanges its key for a short-lived widget token
(HS256 JWT) and uses that token to read the provider's services and availability.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from jose import JWTError
from jose import jwt as jose_jwt

from models.api_key import WidgetApiKey
from models.user import User
from services.errors import NotFound, Unauthorized
from utils.timeparse import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(session, provider_id: int, name: Optional[str] = None):
    """Returns (row, raw_key). The raw key is only available here."""
    raw_key = secrets.token_hex(16)
    row = WidgetApiKey(
        provider_id=provider_id,
        name=(name or "Widget API Key")[:120],
        key_hash=_hash_key(raw_key),
        key_prefix=raw_key[:8],
    )
    session.add(row)
    session.commit()
    return row, raw_key


def find_api_key(session, raw_key: str) -> Optional[WidgetApiKey]:
    if not raw_key:
        return None
    return (
        session.query(WidgetApiKey)
        .filter_by(key_hash=_hash_key(raw_key), revoked=False)
        .first()
    )


def revoke_api_key(session, provider_id: int, key_id: int):
    row = session.get(WidgetApiKey, key_id)
    if row is None or row.provider_id != provider_id:
        raise NotFound("API key not found")
    row.revoked = True
    session.commit()


def issue_widget_token(session, raw_key: str, secret: str, ttl_seconds: int, customization=None):
    """
    Raises Unauthorized for unknown or revoked keys.
    Returns (token, provider).
    """
    key = find_api_key(session, raw_key)
    if key is None:
        raise Unauthorized("Invalid API key")
    provider = session.get(User, key.provider_id)
    if provider is None or not provider.has_role("PROVIDER"):
        raise Unauthorized("API key must belong to a service provider")

    now = utcnow()
    key.last_used_at = now
    session.commit()

    payload = {
        "provider_id": provider.id,
        "widget": True,
        "customization": customization or {},
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jose_jwt.encode(payload, secret, algorithm=ALGORITHM), provider


def verify_widget_token(token: str, secret: str) -> Optional[dict]:
    """Decoded claims of a valid widget token, else None."""
    if not token:
        return None
    try:
        claims = jose_jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"Widget token verification failed: {e}")
        return None
    if not claims.get("widget"):
        return None
    return claims


def embed_code(raw_key: str, api_url: str, primary_color: Optional[str] = None, layout: Optional[str] = None) -> str:
    attrs = [f'js.setAttribute("data-api-key", "{raw_key}");']
    if primary_color:
        attrs.append(f'js.setAttribute("data-primary-color", "{primary_color}");')
    if layout:
        attrs.append(f'js.setAttribute("data-layout", "{layout}");')
    attr_lines = "\n    ".join(attrs)
    return f"""<!-- Booking Widget -->
<div id="booking-widget"></div>
<script>
  (function(d, s, id) {{
    var js, fjs = d.getElementsByTagName(s)[0];
    if (d.getElementById(id)) return;
    js = d.createElement(s); js.id = id;
    js.src = "{api_url.rstrip('/')}/widget.js";
    {attr_lines}
    fjs.parentNode.insertBefore(js, fjs);
  }}(document, "script", "booking-widget-js"));
</script>
<!-- End Booking Widget -->
"""
