# Overview: Flask API routes for auth operations; issues and revokes bearer session tokens.

# backend/cinepos/routes/auth.py
"""
Authentication API routes

Users are created by administrators through the CLI (flask users create);
there is no self-registration. Tokens are returned once at login and only
their SHA-256 hash is stored.
"""

from flask import Blueprint, jsonify, current_app, g

from ..services import identity_service
from ..errors import CoreError, ValidationFailedError, error_response, INTERNAL_ERROR_BODY
from ..decorators import require_auth
from ..validation import json_body, parse_int
from cinepos.time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate a user and create a session token.

    Body: {username, password, tenantId?}. tenantId disambiguates users that
    share a username across theaters.
    """
    try:
        data = json_body()
        username = data.get("username")
        password = data.get("password")
        if not all([username, password]):
            raise ValidationFailedError("username and password required")

        tenant_id = data.get("tenant_id")
        if tenant_id is not None:
            tenant_id = parse_int(tenant_id, "tenantId")

        user, session, token = identity_service.login(username, password, tenant_id)
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": to_utc_z(session.expires_at),
        })
    except CoreError as e:
        if isinstance(e, ValidationFailedError):
            return error_response(e)
        # Same answer for unknown users and wrong passwords
        return {"code": "ACCESS_DENIED", "message": "Invalid credentials"}, 401
    except Exception:
        current_app.logger.exception("Login failed")
        return INTERNAL_ERROR_BODY, 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    identity_service.logout(g.token)
    return jsonify({"message": "Logged out successfully"})


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"principal": g.principal.to_dict()})
