from datetime import date, datetime
from typing import Optional, Sequence

from aggregation import (
    UNKNOWN_CATEGORY,
    category_distribution,
    filter_for_period,
    monthly_series,
    period_summary,
)
from config import get_settings
from models import TransactionType
from periods import local_today, resolve_period
from schemas import CategoryOut, ReportOptions, TransactionOut

PERIOD_LABELS = {
    "weekly": "Last 7 days",
    "monthly": "Last month",
    "all": "All time",
}

MONTH_ABBR = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def format_currency(cents: int, include_cents: bool = True) -> str:
    """Indonesian-style grouping: ``1.250.000,00``."""
    if include_cents:
        text = f"{cents / 100:,.2f}"
    else:
        text = f"{cents / 100:,.0f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


class ReportService:
    def __init__(
        self,
        transactions: Sequence[TransactionOut],
        categories: Sequence[CategoryOut],
    ) -> None:
        self.transactions = transactions
        self.categories = categories

    def gather_data(
        self, options: ReportOptions, *, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        period = resolve_period(options.period, today=today)
        in_period = filter_for_period(self.transactions, period)
        summary = period_summary(self.transactions, period)

        income_rows = category_distribution(
            [t for t in in_period if t.type == TransactionType.income], self.categories
        )
        expense_rows = category_distribution(
            [t for t in in_period if t.type == TransactionType.expense], self.categories
        )

        def with_percent(rows):
            total = sum(r.total for r in rows)
            return [
                {
                    "name": r.name,
                    "amount_cents": r.total,
                    "percent": (r.total / total * 100) if total else 0,
                }
                for r in rows
            ]

        series = monthly_series(self.transactions, months=options.months, today=today)
        category_names = {c.id: c.name for c in self.categories}
        rows = sorted(in_period, key=lambda t: t.date, reverse=True)

        return {
            "period": period,
            "period_label": PERIOD_LABELS[period.slug],
            "today": today,
            "summary": summary,
            "income_breakdown": with_percent(income_rows),
            "expense_breakdown": with_percent(expense_rows),
            "monthly_series": [
                {
                    "label": f"{MONTH_ABBR[m.month - 1]} {m.year}",
                    "income": m.income,
                    "expense": m.expense,
                    "net": m.net,
                }
                for m in series
            ],
            "transactions": [
                {
                    "date": t.date,
                    "description": t.description,
                    "type": t.type.value,
                    "amount_cents": t.amount_cents,
                    "category": category_names.get(t.category_id, UNKNOWN_CATEGORY),
                    "employee": t.employee_name or "",
                }
                for t in rows
            ],
            "include_cents": options.include_cents,
            "notes": options.notes,
            "currency": get_settings().currency,
            "generated_at": datetime.now(),
        }
