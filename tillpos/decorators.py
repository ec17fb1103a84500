# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

from .services import session_service


def require_auth(f):
    """
    Require a bearer token and establish the caller context.

    Sets on Flask g:
    - g.caller: the CallerContext every service call receives
    - g.session_context: the full SessionContext

    Returns 401 when the header is missing or the token does not validate.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token)
        if context is None:
            return jsonify({"error": "Invalid or expired token", "code": "UNAUTHENTICATED"}), 401

        g.caller = context.caller
        g.session_context = context
        return f(*args, **kwargs)

    return decorated_function
