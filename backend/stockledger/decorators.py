# Overview: Request decorators for API routes (bearer auth, role gates).

from functools import wraps
from flask import request, jsonify, g, current_app

from .services import session_service


def _is_authenticated() -> bool:
    return getattr(g, "actor", None) is not None


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.actor = SessionContext(user_id, role, session_id). Routes pass
    g.actor.user_id to services as actor_user_id; services never read g.

    Returns 401 when the Authorization header is missing or the token is
    unknown, expired, revoked, or belongs to a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_token(token)
        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.actor = context
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Allow only actors whose role is in `roles`. Use after @require_auth."""
    allowed = {r.upper() for r in roles}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.actor.role not in allowed:
                current_app.logger.warning(
                    "Role denied user=%s role=%s path=%s", g.actor.user_id, g.actor.role, request.path
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": sorted(allowed),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
