"""
Overdue classification of loans.

Days are counted on calendar dates: both ends are reduced to a local date
before subtracting, so a loan started yesterday evening is one day old this
morning regardless of the hours in between.
"""
from datetime import date, datetime
from typing import Iterable

from medpool.config import settings
from medpool.schemas.asset import Asset
from medpool.schemas.borrow import BorrowRecord
from medpool.schemas.report import DashboardSummary
from medpool.services.invariants import active_asset_ids


def to_local_date(value: date | datetime | str | None) -> date | None:
    """Parse ``value`` to a local calendar date; ``None`` when it cannot be parsed."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    if isinstance(value, date):
        return value
    return None


def elapsed_days(start_date: date | datetime | str | None, reference: date | datetime | str | None = None) -> int:
    start = to_local_date(start_date)
    end = to_local_date(reference if reference is not None else datetime.now().astimezone())
    if start is None or end is None:
        return 0
    return (end - start).days


def is_overdue(
    record: BorrowRecord,
    threshold_days: int | None = None,
    reference: date | datetime | None = None,
) -> bool:
    if threshold_days is None:
        threshold_days = settings.OVERDUE_THRESHOLD_DAYS
    return record.returned_at is None and elapsed_days(record.start_date, reference) >= threshold_days


def partition_active(
    records: Iterable[BorrowRecord],
    threshold_days: int | None = None,
    reference: date | datetime | None = None,
) -> tuple[list[BorrowRecord], list[BorrowRecord]]:
    """Split active loans into ``(overdue, normal)``, keeping input order."""
    overdue, normal = [], []
    for r in records:
        if r.returned_at is not None:
            continue
        if is_overdue(r, threshold_days, reference):
            overdue.append(r)
        else:
            normal.append(r)
    return overdue, normal


def summarize(
    assets: Iterable[Asset],
    records: Iterable[BorrowRecord],
    threshold_days: int | None = None,
    reference: date | datetime | None = None,
) -> DashboardSummary:
    records = list(records)
    total = len(list(assets))
    borrowed = len(active_asset_ids(records))
    overdue, _normal = partition_active(records, threshold_days, reference)
    return DashboardSummary(
        borrowed=borrowed,
        available=max(total - borrowed, 0),
        total=total,
        overdue=len(overdue),
    )
