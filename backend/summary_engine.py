from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional

MILLIUNITS_PER_UNIT = 1000
MAX_MILLIUNITS = 2**63 - 1
TOP_CATEGORY_COUNT = 3
OTHER_CATEGORY = "Other"


@dataclass(frozen=True)
class PeriodTotals:
    income: int = 0
    expenses: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    value: int


@dataclass(frozen=True)
class DayPoint:
    date: date
    income: int = 0
    expenses: int = 0


def percent_change(current: float, previous: float) -> float:
    """Signed change from ``previous`` to ``current`` in percent.

    A zero baseline reports a full swing (100, or -100 when ``current`` is
    negative) instead of dividing by zero.
    """
    if previous == 0:
        if current == 0:
            return 0.0
        return 100.0 if current > 0 else -100.0
    return ((current - previous) / abs(previous)) * 100


def comparison_period(start_date: date, end_date: date) -> tuple[date, date]:
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")
    length = (end_date - start_date).days + 1
    return start_date - timedelta(days=length), end_date - timedelta(days=length)


def trailing_period(end_date: date, days: int = 30) -> tuple[date, date]:
    return end_date - timedelta(days=days), end_date


def rank_categories(
    totals: Mapping[str, int] | Iterable[CategoryTotal],
    limit: int = TOP_CATEGORY_COUNT,
) -> list[CategoryTotal]:
    if isinstance(totals, Mapping):
        entries = [CategoryTotal(name=name, value=value) for name, value in totals.items()]
    else:
        entries = list(totals)
    ordered = sorted(entries, key=lambda entry: (-entry.value, entry.name))
    ranked = ordered[:limit]
    overflow = ordered[limit:]
    if overflow:
        ranked.append(
            CategoryTotal(name=OTHER_CATEGORY, value=sum(entry.value for entry in overflow))
        )
    return ranked


def fill_missing_days(
    active_days: Iterable[DayPoint],
    start_date: date,
    end_date: date,
) -> list[DayPoint]:
    by_day: dict[date, DayPoint] = {}
    for point in active_days:
        day = _normalize_day(point.date)
        by_day[day] = DayPoint(date=day, income=point.income, expenses=point.expenses)

    filled: list[DayPoint] = []
    cursor = _normalize_day(start_date)
    last_day = _normalize_day(end_date)
    while cursor <= last_day:
        filled.append(by_day.get(cursor, DayPoint(date=cursor)))
        cursor += timedelta(days=1)
    return filled


def to_milliunits(amount: Decimal | float | int | str) -> int:
    """Convert a currency amount to integer milliunits.

    Raises ``ValueError`` for non-numeric input and for results outside the
    signed 64-bit range the ``transactions.amount`` column can hold.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        milliunits = int(
            (value * MILLIUNITS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
    except (InvalidOperation, OverflowError) as exc:
        raise ValueError(f"Invalid amount: {amount}") from exc
    if abs(milliunits) > MAX_MILLIUNITS:
        raise ValueError("Amount is too large.")
    return milliunits


def from_milliunits(value: Optional[int]) -> Decimal:
    return Decimal(value or 0) / MILLIUNITS_PER_UNIT


def format_milliunits(value: Optional[int]) -> str:
    return str(from_milliunits(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _normalize_day(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
