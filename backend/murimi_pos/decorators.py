# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import current_app, request, g

from .errors import AuthenticationError, AuthorizationError, error_response
from .permissions import has_permission
from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require authentication.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return error_response(AuthenticationError())

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token) if token else None

        if not context:
            return error_response(AuthenticationError("Invalid or expired token"))

        g.current_user = context.user
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require a specific permission. Must be stacked under @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return error_response(AuthenticationError())

            user = g.current_user
            if not has_permission(user, permission_code):
                current_app.logger.warning(
                    "Permission denied: user=%s role=%s permission=%s path=%s ip=%s",
                    user.id, user.role, permission_code, request.path, request.remote_addr,
                )
                return error_response(AuthorizationError())

            return f(*args, **kwargs)

        return decorated_function
    return decorator
