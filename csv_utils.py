import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any

from models import PaymentMethod
from schemas import CSVRow


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


def parse_date(value: str):
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def parse_amount(value: str) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_payment_method(value: str) -> PaymentMethod:
    token = re.sub(r"[\s\-]+", "_", value.strip()).upper()
    if not token:
        return PaymentMethod.cash
    try:
        return PaymentMethod(token)
    except ValueError as exc:
        raise ValueError(f"Unknown payment method: {value!r}") from exc


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            description = (raw.get("Description") or "").strip()
            if not description:
                raise ValueError("Description is required")
            category = (raw.get("Category") or "").strip() or None
            merchant = (raw.get("Merchant") or "").strip() or None
            notes = (raw.get("Notes") or "").strip() or None
            rows.append(
                CSVRow(
                    date=parse_date(raw.get("Date") or ""),
                    amount_cents=parse_amount(raw.get("Amount") or "0"),
                    description=description,
                    category=category,
                    merchant=merchant,
                    payment_method=parse_payment_method(
                        raw.get("Payment Method") or raw.get("PaymentMethod") or ""
                    ),
                    notes=notes,
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def report_to_csv(data: dict[str, Any]) -> str:
    summary = data["summary"]
    date_range = summary["dateRange"]
    output = StringIO()
    output.write("# Expense Report\n")
    output.write(f"# Period: {date_range['start']} to {date_range['end']}\n")
    output.write(f"# Total Expenses: {summary['totalExpenses']:.2f}\n")
    output.write(f"# Transaction Count: {summary['transactionCount']}\n")
    output.write("\n")

    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(
        ["Date", "Description", "Amount", "Category", "Merchant", "Payment Method", "Recurring"]
    )
    for txn in data["rawTransactions"]:
        writer.writerow(
            [
                txn["date"],
                sanitize_csv_value(txn["description"]),
                f"{txn['amount']:.2f}",
                sanitize_csv_value(txn["category"]),
                sanitize_csv_value(txn["merchant"] or ""),
                txn["paymentMethod"],
                "Yes" if txn["isRecurring"] else "No",
            ]
        )

    output.write("\n")
    output.write("# Category Summary\n")
    writer.writerow(["Category", "Amount", "Count", "Percentage"])
    for row in data["categoryBreakdown"]:
        writer.writerow(
            [
                sanitize_csv_value(row["name"]),
                f"{row['total']:.2f}",
                row["count"],
                f"{row['percentage']:.2f}%",
            ]
        )
    return output.getvalue()
