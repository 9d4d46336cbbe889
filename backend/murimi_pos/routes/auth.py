# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

- POST /api/auth/login   username + password -> bearer token
- POST /api/auth/logout  revoke the presented token
- GET  /api/auth/me      current user and permissions

Self-registration does not exist. Users are created with the CLI
(`flask users create`).
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth
from ..errors import AppError, AuthenticationError, ValidationError, error_response, internal_error_response, success_response
from ..permissions import get_role_permissions
from ..services import auth_service, session_service
from ..security import client_identifier

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included as `Authorization: Bearer <token>` on protected routes.
    """
    data = {}
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        username = data.get("username")
        password = data.get("password")
        if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
            raise ValidationError("username and password required")

        user = auth_service.authenticate(username.strip(), password)
        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=client_identifier(),
        )
        current_app.logger.info("User %s logged in", user.username)
        return success_response({
            "user": user.to_dict(),
            "permissions": sorted(get_role_permissions(user.role)),
            "token": token,
            "expiresAt": session.to_dict()["expires_at"],
        })
    except AppError as e:
        if isinstance(e, AuthenticationError):
            current_app.logger.warning("Failed login for %r from %s", data.get("username"), client_identifier())
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to login user")
        return internal_error_response()


@auth_bp.post("/logout")
def logout_route():
    """Revoke session token (logout)."""
    try:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            raise AuthenticationError("Authorization header required")

        token = auth_header.split(" ", 1)[1].strip()
        if not session_service.revoke_session(token, reason="User logout"):
            raise AuthenticationError("Invalid or expired token")

        return success_response({"message": "Logout successful"})
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return internal_error_response()


@auth_bp.get("/me")
@require_auth
def me_route():
    user = g.current_user
    return success_response({
        "user": user.to_dict(),
        "permissions": sorted(get_role_permissions(user.role)),
    })
