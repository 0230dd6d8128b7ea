"""Dashboard and report figures derived from a flat transaction list.

Every function here is pure: it reads the sequences it is given, never
mutates them, and performs no I/O. Records only need ``amount_cents``,
``type``, ``date`` and ``category_id`` attributes, so ORM rows and
``schemas.TransactionOut`` both work. Amounts are non-negative integer
cents; the sign comes from ``type``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional, Protocol, Sequence, Union

from models import TransactionType
from periods import Period, local_today, resolve_period, shift_months

UNKNOWN_CATEGORY = "Unknown"


class TransactionLike(Protocol):
    amount_cents: int
    type: TransactionType
    date: date
    category_id: Optional[str]


class CategoryLike(Protocol):
    id: str
    name: str
    type: TransactionType


@dataclass(frozen=True)
class DailyTotals:
    day: date
    income: int
    expense: int


@dataclass(frozen=True)
class MonthlyTotals:
    year: int
    month: int
    income: int
    expense: int

    @property
    def net(self) -> int:
        return self.income - self.expense


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    type: TransactionType
    total: int


@dataclass(frozen=True)
class PeriodSummary:
    income: int
    expense: int
    net: int
    count: int


def total_by_type(
    transactions: Iterable[TransactionLike], txn_type: TransactionType
) -> int:
    return sum(t.amount_cents for t in transactions if t.type == txn_type)


def _in_month(txn: TransactionLike, year: int, month: int) -> bool:
    return txn.date.year == year and txn.date.month == month


def monthly_net(transactions: Sequence[TransactionLike], year: int, month: int) -> int:
    in_month = [t for t in transactions if _in_month(t, year, month)]
    return total_by_type(in_month, TransactionType.income) - total_by_type(
        in_month, TransactionType.expense
    )


def all_time_profit(transactions: Sequence[TransactionLike]) -> int:
    return total_by_type(transactions, TransactionType.income) - total_by_type(
        transactions, TransactionType.expense
    )


def weekly_series(
    transactions: Sequence[TransactionLike], *, today: Optional[date] = None
) -> list[DailyTotals]:
    """Income/expense per calendar day for the trailing seven days, oldest first."""
    today = today or local_today()
    days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
    income = {d: 0 for d in days}
    expense = {d: 0 for d in days}
    for txn in transactions:
        if txn.date not in income:
            continue
        if txn.type == TransactionType.income:
            income[txn.date] += txn.amount_cents
        else:
            expense[txn.date] += txn.amount_cents
    return [DailyTotals(day=d, income=income[d], expense=expense[d]) for d in days]


def monthly_series(
    transactions: Sequence[TransactionLike],
    *,
    months: int = 6,
    today: Optional[date] = None,
) -> list[MonthlyTotals]:
    """Income/expense per calendar month for the trailing ``months`` months."""
    if months < 1:
        raise ValueError("months must be positive")
    today = today or local_today()
    first_of_month = today.replace(day=1)
    starts = [shift_months(first_of_month, -n) for n in range(months - 1, -1, -1)]
    keys = [(d.year, d.month) for d in starts]
    income = {k: 0 for k in keys}
    expense = {k: 0 for k in keys}
    for txn in transactions:
        key = (txn.date.year, txn.date.month)
        if key not in income:
            continue
        if txn.type == TransactionType.income:
            income[key] += txn.amount_cents
        else:
            expense[key] += txn.amount_cents
    return [
        MonthlyTotals(year=y, month=m, income=income[(y, m)], expense=expense[(y, m)])
        for y, m in keys
    ]


def month_over_month(
    transactions: Sequence[TransactionLike],
    txn_type: TransactionType,
    *,
    today: Optional[date] = None,
) -> Optional[float]:
    """Percent change of one type's total against the previous calendar month.

    Returns ``None`` when the previous month has nothing to compare against.
    """
    today = today or local_today()
    previous = shift_months(today.replace(day=1), -1)
    current_total = total_by_type(
        (t for t in transactions if _in_month(t, today.year, today.month)), txn_type
    )
    previous_total = total_by_type(
        (t for t in transactions if _in_month(t, previous.year, previous.month)),
        txn_type,
    )
    if previous_total == 0:
        return None
    return (current_total - previous_total) / previous_total * 100


def category_distribution(
    transactions: Sequence[TransactionLike], categories: Sequence[CategoryLike]
) -> list[CategoryTotal]:
    names = {c.id: c.name for c in categories}
    totals: dict[str, int] = {}
    types: dict[str, TransactionType] = {}
    for txn in transactions:
        name = names.get(txn.category_id, UNKNOWN_CATEGORY)
        if name not in totals:
            totals[name] = 0
            types[name] = txn.type
        totals[name] += txn.amount_cents
    return [
        CategoryTotal(name=name, type=types[name], total=total)
        for name, total in totals.items()
    ]


def filter_for_period(
    transactions: Sequence[TransactionLike], period: Period
) -> list[TransactionLike]:
    return [t for t in transactions if period.contains(t.date)]


def period_summary(
    transactions: Sequence[TransactionLike],
    period: Union[str, Period],
    *,
    today: Optional[date] = None,
) -> PeriodSummary:
    if not isinstance(period, Period):
        period = resolve_period(period, today=today)
    filtered = filter_for_period(transactions, period)
    income = total_by_type(filtered, TransactionType.income)
    expense = total_by_type(filtered, TransactionType.expense)
    return PeriodSummary(
        income=income, expense=expense, net=income - expense, count=len(filtered)
    )


def recent_transactions(
    transactions: Sequence[TransactionLike], limit: int = 5
) -> list[TransactionLike]:
    ordered = sorted(transactions, key=lambda t: t.date, reverse=True)
    return ordered[:limit]
