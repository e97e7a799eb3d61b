# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import SecurityEvent
from .services import session_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def _log_access_denied(user, required: tuple[str, ...]) -> None:
    db.session.add(SecurityEvent(
        user_id=user.id,
        event_type="ACCESS_DENIED",
        resource=request.path,
        action=request.method,
        success=False,
        reason=f"Requires role: {', '.join(required)} (has {user.role})",
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    ))
    db.session.commit()


def require_auth(f):
    """
    Require a valid bearer session token.

    Sets on Flask g:
    - g.current_user: the authenticated User
    - g.session_context: SessionContext (user + session row)
    - g.session_token: the plaintext token (for logout)

    Returns 401 if the header is missing, the token is unknown, expired,
    revoked, idle too long, or the account is deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication required", "kind": "UNAUTHORIZED"}), 401

        context = session_service.validate_session(token)
        if not context:
            return jsonify({"error": "Invalid or expired token", "kind": "UNAUTHORIZED"}), 401

        g.current_user = context.user
        g.session_context = context
        g.session_token = token

        return f(*args, **kwargs)

    return decorated_function


def optional_auth(f):
    """Like require_auth, but anonymous requests pass with g.current_user = None."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = None
        token = _bearer_token()
        if token:
            context = session_service.validate_session(token)
            if context:
                g.current_user = context.user
                g.session_context = context
                g.session_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """
    Require the authenticated user to hold one of the given roles.

    Must be stacked under @require_auth. Denials are written to
    security_events.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return jsonify({"error": "Authentication required", "kind": "UNAUTHORIZED"}), 401

            if user.role not in roles:
                _log_access_denied(user, roles)
                return jsonify({
                    "error": "Permission denied",
                    "kind": "FORBIDDEN",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
