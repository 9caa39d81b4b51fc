"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

Every request is scoped to one theater, and cross-tenant access is denied.

SECURITY INVARIANTS:
1. A principal acts only on its own theater (super_admin on any theater)
2. A theater must be active and inside its agreement window to transact
3. Resources of another theater are reported as not found so their
   existence is not revealed

USAGE:
    theater = require_tenant(principal, theater_id)
    order = get_scoped(Order, order_id, theater.id)
"""

from __future__ import annotations

from datetime import date

from ..errors import AccessDeniedError, NotFoundError, ValidationFailedError
from ..extensions import db
from ..models import Theater
from cinepos.time_utils import utcnow


def resolve_tenant_id(principal, requested=None) -> int:
    """
    Theater id for this call: the requested one, or the principal's own.

    super_admin has no home theater and must name one.
    """
    if requested in (None, ""):
        if principal.tenant_id is None:
            raise ValidationFailedError("tenantId is required")
        return principal.tenant_id
    try:
        return int(requested)
    except (TypeError, ValueError):
        raise ValidationFailedError("tenantId must be an integer")


def require_active_theater(theater_id: int, today: date | None = None) -> Theater:
    theater = db.session.get(Theater, theater_id)
    if theater is None:
        raise NotFoundError("Theater not found")
    if not theater.is_active:
        raise AccessDeniedError("Theater is not active", details={"theater_id": theater_id})
    if not theater.agreement_covers(today or utcnow().date()):
        raise AccessDeniedError(
            "Theater agreement is not in effect",
            details={"theater_id": theater_id},
        )
    return theater


def require_tenant(principal, theater_id: int, today: date | None = None) -> Theater:
    """
    Validate that `principal` may act on `theater_id`.

    Raises AccessDeniedError on a cross-tenant attempt or an inactive /
    out-of-agreement theater.
    """
    if principal is None:
        raise AccessDeniedError("Authentication required")
    if not principal.is_super_admin and principal.tenant_id != theater_id:
        raise AccessDeniedError(
            "Cross-tenant access denied",
            details={"theater_id": theater_id},
        )
    return require_active_theater(theater_id, today)


def get_scoped(model, entity_id: int, theater_id: int, label: str | None = None):
    """Fetch a tenant-owned row; foreign rows raise NotFoundError like missing ones."""
    row = db.session.get(model, entity_id)
    if row is None or row.theater_id != theater_id:
        raise NotFoundError(f"{label or model.__name__} not found")
    return row
