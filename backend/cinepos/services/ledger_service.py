# Overview: Service-layer operations for the append-only domain event ledger.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import LedgerEvent
"""
Ledger invariants

- Append-only audit log for cross-cutting domain events.
- No domain/business logic in the ledger itself.
- Events are written inside the same DB transaction as the change they record.
- occurred_at is business time; created_at is system time (DB default).
"""


def append_ledger_event(
    *,
    theater_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> LedgerEvent:
    """
    Stage a ledger event on the current session.

    The caller commits (or rolls back) together with the domain change.
    """
    ev = LedgerEvent(
        theater_id=theater_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        order_id=order_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note,
        payload=payload,
    )
    db.session.add(ev)
    return ev
