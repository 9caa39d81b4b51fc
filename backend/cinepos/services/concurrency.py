# Overview: Service-layer helpers for row locking, bounded retries and request deadlines.

from __future__ import annotations

import time

from flask import current_app, g, has_app_context, has_request_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import DeadlineExceededError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Version columns on the locked rows still catch lost updates there.
    """
    return query.with_for_update()


def request_deadline() -> float | None:
    """Monotonic deadline of the current request, if any."""
    if not has_request_context():
        return None
    return getattr(g, "deadline", None)


def seconds_left() -> float | None:
    deadline = request_deadline()
    if deadline is None:
        return None
    return deadline - time.monotonic()


def check_deadline() -> None:
    remaining = seconds_left()
    if remaining is not None and remaining <= 0:
        raise DeadlineExceededError("Request deadline exceeded")


def _retry_settings(attempts, backoff_base) -> tuple[int, float]:
    if has_app_context():
        if attempts is None:
            attempts = current_app.config.get("RETRY_ATTEMPTS", 3)
        if backoff_base is None:
            backoff_base = current_app.config.get("RETRY_BACKOFF_BASE", 0.1)
    return attempts or 3, 0.1 if backoff_base is None else backoff_base


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    deadline_bound: bool = True,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks) and StaleDataError (optimistic
    locking conflicts). Only wrap operations that are safe to replay: the
    whole unit of work is rolled back before the next attempt.

    The request deadline bounds the loop: no attempt starts after it, and a
    backoff that would overrun it raises DeadlineExceededError instead.
    Compensating writes (releasing reservations) pass deadline_bound=False
    so they still run once the deadline has passed.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    last_exc = None
    for attempt in range(attempts):
        if deadline_bound:
            check_deadline()
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            delay = backoff_base * (2 ** attempt)
            remaining = seconds_left() if deadline_bound else None
            if remaining is not None and remaining <= delay:
                raise DeadlineExceededError("Request deadline exceeded during retry") from exc
            time.sleep(delay)
    if last_exc:
        raise last_exc
