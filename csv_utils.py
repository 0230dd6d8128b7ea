import csv
import re
from io import StringIO
from typing import Mapping, Optional, Sequence

from aggregation import UNKNOWN_CATEGORY
from schemas import TransactionOut


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def export_transactions(
    transactions: Sequence[TransactionOut],
    category_names: Optional[Mapping[str, str]] = None,
) -> str:
    category_names = category_names or {}
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Description", "Type", "Amount", "Category", "Employee"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(category_names.get(txn.category_id, UNKNOWN_CATEGORY)),
                sanitize_csv_value(txn.employee_name or ""),
            ]
        )
    return output.getvalue()
