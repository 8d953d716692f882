"""Spreadsheet and PDF renderers for data produced by ``ReportService.gather_data``."""

from __future__ import annotations

import logging
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader, select_autoescape
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

if TYPE_CHECKING:  # pragma: no cover
    from weasyprint import HTML, CSS  # noqa: F401

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill("solid", fgColor="2563EB")

PDF_CSS = """
    @page {
        size: A4;
        margin: 18mm 16mm 20mm 16mm;
        @bottom-center {
            content: "Page " counter(page) " of " counter(pages);
            color: #64748b;
            font-size: 9pt;
        }
    }
    body { font-family: "Helvetica", "Arial", sans-serif; color: #0f172a; font-size: 10pt; }
    h1 { font-size: 18pt; margin: 0 0 2mm 0; }
    h2 { font-size: 12pt; margin: 6mm 0 2mm 0; color: #2563eb; }
    table { width: 100%; border-collapse: collapse; }
    th, td { border-bottom: 1px solid #e2e8f0; padding: 1.5mm 2mm; text-align: left; }
    th { background: #f1f5f9; }
    td.num, th.num { text-align: right; }
    .muted { color: #64748b; }
    .kpis td { border: none; }
    .bar { height: 3mm; background: #2563eb; }
"""


def format_money(value: float) -> str:
    return f"{value:,.2f}"


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["money"] = format_money
    return env


def render_report_html(data: dict[str, Any], report_name: str) -> str:
    return _environment().get_template("report.html").render(
        report_name=report_name, generated_at=datetime.now(), **data
    )


def report_to_pdf(data: dict[str, Any], report_name: str) -> bytes:
    from weasyprint import CSS, HTML

    html = render_report_html(data, report_name)
    start_time = datetime.now()
    pdf_bytes = HTML(string=html).write_pdf(stylesheets=[CSS(string=PDF_CSS)])
    duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"report_pdf_rendered: name={report_name!r} "
        f"pdf_size_bytes={len(pdf_bytes)} pdf_duration={duration:.2f}s"
    )
    return pdf_bytes


def _header(sheet, values: list[str]) -> None:
    sheet.append(values)
    for cell in sheet[sheet.max_row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL


def report_to_xlsx(data: dict[str, Any], report_name: str) -> bytes:
    summary = data["summary"]
    workbook = Workbook()

    sheet = workbook.active
    sheet.title = "Summary"
    sheet.append([report_name])
    sheet["A1"].font = Font(bold=True, size=14)
    sheet.append(["Period", f"{summary['dateRange']['start']} to {summary['dateRange']['end']}"])
    sheet.append(["Total Expenses", summary["totalExpenses"]])
    sheet.append(["Transaction Count", summary["transactionCount"]])
    sheet.append(["Average Transaction", summary["averageTransaction"]])
    sheet.append([])
    _header(sheet, ["Category", "Amount", "Count", "Percentage"])
    for row in data["categoryBreakdown"]:
        sheet.append([row["name"], row["total"], row["count"], row["percentage"] / 100])
        sheet.cell(row=sheet.max_row, column=4).number_format = "0.00%"
    sheet.column_dimensions["A"].width = 28
    sheet.column_dimensions["B"].width = 16

    txns = workbook.create_sheet("Transactions")
    _header(
        txns,
        ["Date", "Description", "Amount", "Category", "Merchant", "Payment Method", "Recurring"],
    )
    for txn in data["rawTransactions"]:
        txns.append(
            [
                txn["date"],
                txn["description"],
                txn["amount"],
                txn["category"],
                txn["merchant"] or "",
                txn["paymentMethod"],
                "Yes" if txn["isRecurring"] else "No",
            ]
        )
        txns.cell(row=txns.max_row, column=3).number_format = "#,##0.00"
    txns.column_dimensions["B"].width = 40

    trends = workbook.create_sheet("Monthly Trends")
    _header(trends, ["Period", "Total", "Count", "Average"])
    for row in data["monthlyTrends"]:
        trends.append([row["period"], row["total"], row["count"], row["average"]])

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
