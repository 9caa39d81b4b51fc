# Overview: Read projections over orders; per-channel aggregates and the theater dashboard summary.

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import case, func

from cinepos.errors import ValidationFailedError
from cinepos.extensions import db
from cinepos.models import Order
from cinepos.time_utils import parse_iso_datetime, to_utc_z, utcnow
from .order_service import (
    CHANNELS,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SERVED,
)


def parse_stats_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError:
        raise ValidationFailedError("from/to must be ISO-8601 datetimes")
    if start_dt and end_dt and end_dt < start_dt:
        raise ValidationFailedError("to must not be before from")
    return start_dt, end_dt


def _revenue_expr():
    return func.coalesce(
        func.sum(case((Order.status != STATUS_CANCELLED, Order.grand_total_cents), else_=0)),
        0,
    )


def channel_stats(
    theater_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    channel: str | None = None,
    include_cancelled: bool = False,
) -> list[dict]:
    """
    Per-channel aggregates for orders created in [start, end).

    Returns [{channel, count, sum_grand_total_cents}] ordered by channel.
    Failed orders never count. Cancelled orders count only when
    include_cancelled is set and never add to revenue.
    """
    if channel is not None and channel not in CHANNELS:
        raise ValidationFailedError(
            f"channel must be one of {', '.join(CHANNELS)}",
            details={"channel": channel},
        )

    excluded = [STATUS_FAILED]
    if not include_cancelled:
        excluded.append(STATUS_CANCELLED)

    query = (
        db.session.query(
            Order.channel,
            func.count(Order.id),
            _revenue_expr(),
        )
        .filter(Order.theater_id == theater_id, Order.status.notin_(excluded))
    )
    if start is not None:
        query = query.filter(Order.created_at >= start)
    if end is not None:
        query = query.filter(Order.created_at < end)
    if channel is not None:
        query = query.filter(Order.channel == channel)

    rows = query.group_by(Order.channel).order_by(Order.channel.asc()).all()
    return [
        {
            "channel": row_channel,
            "count": int(count),
            "sum_grand_total_cents": int(revenue or 0),
        }
        for row_channel, count, revenue in rows
    ]


def theater_summary(theater_id: int, now: datetime | None = None) -> dict:
    """
    Dashboard counters: orders total / today / completed / pending and
    revenue today / total. Failed orders are ignored; cancelled orders count
    as orders but bring no revenue.
    """
    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)

    base = db.session.query(Order).filter(
        Order.theater_id == theater_id,
        Order.status != STATUS_FAILED,
    )
    today = base.filter(Order.created_at >= day_start, Order.created_at < day_end)

    total_orders = base.count()
    today_orders = today.count()
    completed = base.filter(Order.status.in_([STATUS_SERVED, STATUS_COMPLETED])).count()
    pending = base.filter(Order.status == STATUS_PENDING).count()

    revenue_total = base.with_entities(_revenue_expr()).scalar()
    revenue_today = today.with_entities(_revenue_expr()).scalar()

    return {
        "theater_id": theater_id,
        "as_of": to_utc_z(now),
        "orders": {
            "total": total_orders,
            "today": today_orders,
            "completed": completed,
            "pending": pending,
        },
        "revenue_cents": {
            "today": int(revenue_today or 0),
            "total": int(revenue_total or 0),
        },
    }

