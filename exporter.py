"""Export of a user's records as one JSON document or a ZIP of CSV tables."""
import csv
import datetime as dt
import io
import json
import re
import zipfile
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models import (
    Budget,
    CashSnapshot,
    Category,
    Expense,
    Income,
    Investment,
    InvestmentProduct,
    User,
)

FORMATS = ("zip", "json")
SCOPES = ("all", "month")
CSV_DELIMITER = ";"
_LINE_BREAKS = re.compile(r"\r\n|\r|\n")

# Table name -> columns written for it. Order here is the order in the archive.
EXPORT_COLUMNS: dict[str, tuple[str, ...]] = {
    "incomes": ("id", "date", "amount", "category", "source", "notes"),
    "expenses": (
        "id", "date", "amount", "category", "subcategory",
        "payment_method", "expense_type", "notes",
    ),
    "budgets": ("id", "category", "monthly_amount"),
    "cash_snapshots": ("id", "date", "account", "current_value", "notes"),
    "investments": (
        "id", "date", "account", "asset_type", "contribution", "current_value", "notes",
    ),
    "investment_products": ("id", "name", "asset_type"),
    "expense_categories": ("id", "name"),
    "income_categories": ("id", "name"),
}


class ExportError(Exception):
    """Raised when any part of an export fails; nothing is returned to the user."""


def format_day(value: Any) -> Any:
    """Dates and datetimes become YYYY-MM-DD, anything else is returned as is."""
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    return value


def _json_value(value: Any) -> Any:
    value = format_day(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _csv_value(value: Any) -> str:
    """One CSV cell, kept free of anything the writer would have to quote.

    The importer splits lines on the delimiter without quoting support, so
    line breaks become spaces, the delimiter becomes ',' and '"' becomes "'".
    """
    value = format_day(value)
    if value is None:
        return ""
    text = _LINE_BREAKS.sub(" ", str(value))
    return text.replace(CSV_DELIMITER, ",").replace('"', "'")


def project(records: Iterable[Any], columns: tuple[str, ...]) -> list[dict[str, Any]]:
    """Keep only the exported columns of each record, with dates normalized."""
    return [
        {col: _json_value(getattr(r, col, None)) for col in columns}
        for r in records
    ]


def fetch_tables(
    session: Session,
    user_id: int,
    date_range: Optional[tuple[dt.date, dt.date]] = None,
) -> dict[str, list[dict[str, Any]]]:
    """Load every exported table for a user.

    date_range applies to dated movements only; budgets, products and
    categories are configuration and are always exported whole.
    """
    def dated(model):
        stmt = select(model).where(model.user_id == user_id)
        if date_range is not None:
            start, end = date_range
            stmt = stmt.where(model.date >= start, model.date <= end)
        return session.exec(stmt.order_by(model.date, model.id)).all()

    def owned(model, *criteria):
        stmt = select(model).where(model.user_id == user_id, *criteria)
        return session.exec(stmt.order_by(model.id)).all()

    records = {
        "incomes": dated(Income),
        "expenses": dated(Expense),
        "budgets": owned(Budget),
        "cash_snapshots": dated(CashSnapshot),
        "investments": dated(Investment),
        "investment_products": owned(InvestmentProduct),
        "expense_categories": owned(Category, Category.type == "expense"),
        "income_categories": owned(Category, Category.type == "income"),
    }
    return {name: project(records[name], cols) for name, cols in EXPORT_COLUMNS.items()}


def build_metadata(
    user: User,
    export_format: str,
    scope: str,
    generated_at: dt.datetime,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> dict[str, Any]:
    metadata = {
        "user_id": user.id,
        "user_email": user.email,
        "generated_at": generated_at.isoformat(),
        "scope": scope,
        "format": export_format,
    }
    if scope == "month":
        metadata["year"] = year
        metadata["month"] = month
    return metadata


def render_json(metadata: dict[str, Any], tables: dict[str, list[dict[str, Any]]]) -> str:
    document = {"metadata": metadata, **tables}
    return json.dumps(document, indent=2, ensure_ascii=False)


def render_csv(rows: list[dict[str, Any]], columns: tuple[str, ...]) -> str:
    """Semicolon-delimited table; the header is written even with no rows."""
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=columns,
        delimiter=CSV_DELIMITER,
        extrasaction="ignore",
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
    writer.writeheader()
    for row in rows:
        writer.writerow({col: _csv_value(row.get(col)) for col in columns})
    return buffer.getvalue()


def render_zip(metadata: dict[str, Any], tables: dict[str, list[dict[str, Any]]]) -> bytes:
    """metadata.json plus one <table>.csv per exported table."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("metadata.json", json.dumps(metadata, indent=2, ensure_ascii=False))
        for name, columns in EXPORT_COLUMNS.items():
            archive.writestr(f"{name}.csv", render_csv(tables.get(name, []), columns))
    return buffer.getvalue()


def build_export(
    session: Session,
    user: User,
    export_format: str,
    scope: str,
    generated_at: dt.datetime,
    date_range: Optional[tuple[dt.date, dt.date]] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> tuple[bytes, str]:
    """Build the whole export in memory and return (content, media type).

    Any failure is raised as ExportError so the caller never sends a
    partial file.
    """
    try:
        tables = fetch_tables(session, user.id, date_range)
        metadata = build_metadata(user, export_format, scope, generated_at, year, month)
        if export_format == "json":
            return render_json(metadata, tables).encode("utf-8"), "application/json"
        return render_zip(metadata, tables), "application/zip"
    except (SQLAlchemyError, ValueError, TypeError, OSError, zipfile.BadZipFile) as exc:
        raise ExportError(str(exc)) from exc


def export_filename(prefix: str, generated_at: dt.datetime, extension: str) -> str:
    """e.g. finance-export_2025-01-31_18-05.zip"""
    return f"{prefix}_{generated_at.strftime('%Y-%m-%d_%H-%M')}.{extension}"
