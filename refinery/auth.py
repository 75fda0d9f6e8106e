"""
Refinery Batch Tracker
Authentication & Authorization Middleware.

Provides:
    - Identity resolution into ``g.current_user`` (CurrentUser)
    - Role-based access control (RBAC) decorator
    - Content-Type enforcement for state-changing requests

Identity sources, first match wins:
    1. ``Authorization: Bearer <jwt>``  — HS256, SECRET_KEY, claims sub/name/role
    2. ``X-API-Key: <key>``             — mapped through API_KEYS
    3. auth disabled (dev/test)         — X-User-Id / X-User-Name / X-User-Role
                                          headers, default system/admin

Configuration:
    API_KEYS          — comma-separated "<key>:<role>:<user_id>" entries
                        e.g. "k1:admin:alice,k2:operator:bob"
    API_AUTH_ENABLED  — set to "false" to disable auth (development only)
"""

import functools
import logging
import os
from dataclasses import dataclass
from typing import Optional

import jwt
from flask import current_app, g, request

from refinery.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLES = {"admin", "supervisor", "operator", "viewer"}

# Role hierarchy: admin > supervisor > operator > viewer
ROLE_HIERARCHY = {
    "admin": {"admin", "supervisor", "operator", "viewer"},
    "supervisor": {"supervisor", "operator", "viewer"},
    "operator": {"operator", "viewer"},
    "viewer": {"viewer"},
}


@dataclass(frozen=True)
class CurrentUser:
    """Authenticated identity handed to the services."""
    id: str
    name: Optional[str] = None
    role: str = "viewer"

    def has_role(self, minimum_role: str) -> bool:
        return minimum_role in ROLE_HIERARCHY.get(self.role, set())


SYSTEM_USER = CurrentUser(id="system", name="System", role="admin")


def _parse_api_keys() -> dict[str, CurrentUser]:
    """
    Parse API_KEYS into {key: CurrentUser}.

    Format: "key1:admin:alice,key2:operator:bob". The user id defaults to
    the key's role, an unknown role to 'viewer'.
    """
    raw = current_app.config.get("API_KEYS") or os.getenv("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(":")]
        key = parts[0]
        role = parts[1].lower() if len(parts) > 1 and parts[1] else "viewer"
        if role not in ROLES:
            logger.warning("Unknown role '%s' for API key, defaulting to 'viewer'", role)
            role = "viewer"
        user_id = parts[2] if len(parts) > 2 and parts[2] else role
        keys[key] = CurrentUser(id=user_id, name=user_id, role=role)
    return keys


def _is_auth_enabled() -> bool:
    """Check whether authentication is enabled (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in (
            "false", "0", "no", "off",
        )
    except RuntimeError:
        # Outside app context
        return True


def _user_from_bearer() -> Optional[CurrentUser]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    payload = jwt.decode(
        token,
        current_app.config["SECRET_KEY"],
        algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
    )
    role = str(payload.get("role", "viewer")).lower()
    if role not in ROLES:
        role = "viewer"
    return CurrentUser(
        id=str(payload["sub"]),
        name=payload.get("name") or str(payload["sub"]),
        role=role,
    )


def _user_from_headers() -> CurrentUser:
    """Development identity: trust the X-User-* headers."""
    role = request.headers.get("X-User-Role", "admin").strip().lower()
    if role not in ROLES:
        role = "viewer"
    user_id = request.headers.get("X-User-Id", "").strip() or SYSTEM_USER.id
    name = request.headers.get("X-User-Name", "").strip() or (
        SYSTEM_USER.name if user_id == SYSTEM_USER.id else user_id
    )
    return CurrentUser(id=user_id, name=name, role=role)


def issue_token(user: CurrentUser, expires_in_seconds: int = 8 * 3600) -> str:
    """Sign a bearer token for ``user`` (used by tooling and tests)."""
    from datetime import datetime, timedelta, timezone

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "name": user.name,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in_seconds),
    }
    return jwt.encode(
        payload,
        current_app.config["SECRET_KEY"],
        algorithm=current_app.config.get("JWT_ALGORITHM", "HS256"),
    )


def get_current_user() -> CurrentUser:
    return getattr(g, "current_user", None) or SYSTEM_USER


# ── Authorization decorator ──────────────────────────────────────────────────

def require_role(minimum_role: str):
    """
    Decorator: require a minimum role level.

    Usage:
        @require_role("supervisor")
        def approve_exception(batch_id): ...

    Role hierarchy: admin > supervisor > operator > viewer
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")

            if not user.has_role(minimum_role):
                logger.warning(
                    "Access denied: %s (role '%s') tried to access '%s'-level endpoint %s",
                    user.id, user.role, minimum_role, request.path,
                )
                return api_error(
                    E.FORBIDDEN, "Insufficient permissions",
                    details={"required_role": minimum_role, "role": user.role},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. HTML forms cannot send that type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(
                E.UNSUPPORTED_MEDIA,
                "Content-Type must be application/json for state-changing requests",
            )
    return None


# ── before_request hook installer ────────────────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    Health routes and pre-flight requests are skipped.
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        try:
            user = _user_from_bearer()
        except jwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token expired")
        except (jwt.InvalidTokenError, KeyError):
            logger.warning("Invalid bearer token on %s", request.path)
            return api_error(E.UNAUTHORIZED, "Invalid token")
        if user is not None:
            g.current_user = user
            return None

        api_key = request.headers.get("X-API-Key", "").strip()
        if api_key:
            user = _parse_api_keys().get(api_key)
            if user is None:
                logger.warning("Invalid API key attempt: %s...", api_key[:8])
                return api_error(E.UNAUTHORIZED, "Invalid API key")
            g.current_user = user
            return None

        if not _is_auth_enabled():
            g.current_user = _user_from_headers()
            return None

        return api_error(
            E.UNAUTHORIZED, "Authentication required. Provide a Bearer token or X-API-Key header.",
        )

    logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
