# Overview: Request and capability decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .permissions import DEFAULT_ROLE_CAPABILITIES, Requester


def _has_requester() -> bool:
    return isinstance(getattr(g, "requester", None), Requester)


def require_staff(f):
    """
    Establish the requester from the upstream auth layer.

    Sets g.requester from X-Staff-Id / X-Staff-Role. Authentication itself
    happens in front of this service.

    Returns 401 if:
    - X-Staff-Role header is missing
    - The role is not a known staff role
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        role = (request.headers.get("X-Staff-Role") or "").strip().lower()
        staff_id = (request.headers.get("X-Staff-Id") or "").strip() or None

        if not role:
            return jsonify({"error": "authentication_required", "message": "Staff context required"}), 401
        if role not in DEFAULT_ROLE_CAPABILITIES:
            return jsonify({"error": "authentication_required", "message": f"Unknown staff role: {role}"}), 401

        g.requester = Requester.for_role(staff_id, role)
        return f(*args, **kwargs)

    return decorated_function


def require_capability(code: str):
    """Require a specific capability; use after @require_staff."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _has_requester():
                return jsonify({"error": "authentication_required", "message": "Staff context required"}), 401

            if not g.requester.can(code):
                return jsonify({
                    "error": "permission_denied",
                    "message": f"Requires capability {code}",
                    "details": {"required_capability": code, "role": g.requester.role},
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
