# Overview: Request identity and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .models.states import VALID_ROLES
from .services import profile_service


USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"


def require_auth(f):
    """
    Resolve the caller from the identity provider's trusted headers.

    The upstream gateway authenticates the user and sets:
    - X-User-Id:   opaque identity-provider id
    - X-User-Role: customer | driver | merchant | admin

    Sets g.current_user to the mirrored Profile.

    Returns 401 if the headers are missing or the user is unknown, 403 if
    the asserted role does not match the mirrored profile.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = (request.headers.get(USER_HEADER) or "").strip()
        role = (request.headers.get(ROLE_HEADER) or "").strip().lower()

        if not user_id:
            return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401

        profile = profile_service.get_profile(user_id)
        if profile is None:
            return jsonify({"error": "Unknown user", "code": "UNAUTHENTICATED"}), 401

        if role and (role not in VALID_ROLES or role != profile.role):
            return jsonify({"error": "Role mismatch", "code": "FORBIDDEN"}), 403

        g.current_user = profile
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require the authenticated user to hold one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "current_user"):
                return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401
            if g.current_user.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "code": "FORBIDDEN",
                    "required_roles": list(roles),
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
