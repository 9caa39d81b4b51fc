# Overview: Service-layer allocation of human-readable order numbers.

from __future__ import annotations

import re

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence, Theater


ORDER_DOCUMENT = "ORDER"


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _allocate(theater_id: int, document_type: str) -> int:
    """
    Reserve the next number for (theater_id, document_type).

    Runs inside the caller's transaction. The UPDATE takes the row lock on
    databases that have one; a lost insert race falls back to the UPDATE
    inside a savepoint so the caller's pending work survives.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.theater_id == theater_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(theater_id=theater_id, document_type=document_type)
            .scalar()
        )
        return current - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current()

    try:
        with db.session.begin_nested():
            db.session.add(
                DocumentSequence(theater_id=theater_id, document_type=document_type, next_number=2)
            )
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current()


def order_number_prefix(theater_name: str | None) -> str:
    """First two letters of the theater name ("Grand Cinema" -> "Gr")."""
    letters = re.sub(r"[^A-Za-z]", "", theater_name or "")
    prefix = letters[:2]
    if not prefix:
        return "OR"
    return prefix[0].upper() + prefix[1:].lower()


def next_order_number(theater_id: int, *, pad: int = 4) -> str:
    """Allocate "<prefix><number>", e.g. "Gr0001"."""
    if not theater_id:
        raise DocumentSequenceError("theater_id is required")
    theater = db.session.get(Theater, theater_id)
    if theater is None:
        raise DocumentSequenceError(f"Theater {theater_id} not found")
    number = _allocate(theater_id, ORDER_DOCUMENT)
    return f"{order_number_prefix(theater.name)}{number:0{pad}d}"
