# Overview: Request decorators for API routes; bearer authentication and role gating.

from functools import wraps
from flask import request, g

from .errors import AccessDeniedError, error_response
from .services import identity_service


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid bearer token and establish the caller.

    Sets the following Flask g attributes:
    - g.principal: identity_service.Principal (user_id, role, tenant_id)
    - g.token: the plaintext token (for logout)

    Returns 401 when the header is missing or the token is invalid, expired
    or revoked.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            return {"code": "ACCESS_DENIED", "message": "Authentication required"}, 401

        principal = identity_service.resolve_principal(token)
        if principal is None:
            return {"code": "ACCESS_DENIED", "message": "Invalid or expired token"}, 401

        g.principal = principal
        g.token = token
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the caller's role to be one of `roles` (use after @require_auth).

    Answers 403 ACCESS_DENIED otherwise.
    """
    allowed = frozenset(roles)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = getattr(g, "principal", None)
            if principal is None:
                return {"code": "ACCESS_DENIED", "message": "Authentication required"}, 401
            if principal.role not in allowed:
                return error_response(AccessDeniedError(
                    "Role not permitted",
                    details={"role": principal.role, "allowed": sorted(allowed)},
                ))
            return f(*args, **kwargs)

        return decorated_function

    return decorator


def scoped_theater_id(requested=None) -> int:
    """
    Theater id for this request: `requested` (tenantId) or the caller's own.

    Raises AccessDeniedError on cross-tenant access or an inactive theater.
    """
    from .services.tenant_service import require_tenant, resolve_tenant_id

    theater_id = resolve_tenant_id(g.principal, requested)
    require_tenant(g.principal, theater_id)
    return theater_id
