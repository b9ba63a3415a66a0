"""CSV import: parse delimited text and validate rows before anything is written.

The parser is deliberately simple: the first non-blank line is the header,
every other line is split on the delimiter and zipped positionally against it.
There is no quoting or escaping support.
"""
import datetime as dt
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from schemas import LABEL_FORBIDDEN, NAME_MAX_LEN, NOTE_MAX_LEN

EXPENSE = "expense"
INCOME = "income"

# Logical field -> accepted header names (lower-case), English first.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "fecha"),
    "amount": ("amount", "importe"),
    "category": ("category", "categoria", "categoría"),
    "subcategory": ("subcategory", "subcategoria"),
    "payment_method": ("payment_method", "metodo_pago"),
    "expense_type": ("expense_type", "tipo"),
    "notes": ("notes", "notas"),
    "source": ("source", "fuente"),
}

FIELDS_BY_KIND: dict[str, tuple[str, ...]] = {
    EXPENSE: ("date", "amount", "category", "subcategory", "payment_method", "expense_type", "notes"),
    INCOME: ("date", "amount", "source", "category", "notes"),
}

EXPENSE_TYPES = {
    "fixed": "Fixed",
    "fijo": "Fixed",
    "variable": "Variable",
}

_ISO_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_EU_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")

CENT = Decimal("0.01")
# Numeric(12, 2): at most ten digits before the decimal point.
MAX_AMOUNT = Decimal(10) ** 10


@dataclass
class ImportRow:
    """One data line of the file, with its validation outcome."""
    index: int
    values: dict[str, str]
    record: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class ImportResult:
    kind: str
    rows: list[ImportRow]

    @property
    def valid_rows(self) -> list[ImportRow]:
        return [r for r in self.rows if r.valid]

    @property
    def total(self) -> int:
        return len(self.rows)

    @property
    def valid(self) -> int:
        return len(self.valid_rows)

    @property
    def invalid(self) -> int:
        return self.total - self.valid

    @property
    def total_amount(self) -> Decimal:
        return sum((r.record["amount"] for r in self.valid_rows), Decimal("0"))


def parse_csv(text: str, delimiter: str = ",") -> list[dict[str, str]]:
    """Split text into rows keyed by lower-cased header names.

    Blank lines are ignored. A file without at least a header and one data
    line yields no rows. Short lines produce empty strings for the missing
    columns; extra values are dropped.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return []

    headers = [h.strip().lower() for h in lines[0].split(delimiter)]
    rows = []
    for line in lines[1:]:
        values = line.split(delimiter)
        rows.append({
            h: (values[idx].strip() if idx < len(values) else "")
            for idx, h in enumerate(headers)
        })
    return rows


def resolve_columns(headers: list[str]) -> dict[str, Optional[str]]:
    """Map each logical field to the header that carries it (or None)."""
    present = set(headers)
    columns: dict[str, Optional[str]] = {}
    for name, aliases in FIELD_ALIASES.items():
        columns[name] = next((a for a in aliases if a in present), None)
    return columns


def parse_import_date(value: str) -> dt.date:
    """Parse YYYY-MM-DD (optionally followed by a time) or DD/MM/YYYY."""
    value = value.strip()
    iso = _ISO_DATE.match(value)
    if iso:
        return dt.date.fromisoformat(iso.group(1))
    eu = _EU_DATE.match(value)
    if eu:
        day, month, year = (int(part) for part in eu.groups())
        return dt.date(year, month, day)
    raise ValueError(f"Unrecognised date '{value}'")


def parse_import_amount(value: str) -> Decimal:
    """Parse a '.' decimal string into a positive Decimal rounded to cents.

    Rounding is HALF_UP, the way stored amounts are rounded everywhere else.
    """
    try:
        amount = Decimal(value.strip()).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Not a number: '{value}'")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Amount must be a positive number: '{value}'")
    if amount >= MAX_AMOUNT:
        raise ValueError(f"Amount is too large: '{value}'")
    return amount


def validate_row(index: int, values: dict[str, str], kind: str) -> ImportRow:
    """Check one row and build the record it would create.

    Every rule runs, so a row can collect several errors at once.
    """
    errors: list[str] = []

    date_value: Optional[dt.date] = None
    raw_date = values.get("date", "")
    if not raw_date:
        errors.append("missing date")
    else:
        try:
            date_value = parse_import_date(raw_date)
        except ValueError:
            errors.append("invalid date")

    amount: Optional[Decimal] = None
    raw_amount = values.get("amount", "")
    if not raw_amount:
        errors.append("missing amount")
    else:
        try:
            amount = parse_import_amount(raw_amount)
        except ValueError:
            errors.append("invalid amount")

    category = values.get("category", "")
    if not category:
        errors.append("missing category")
    elif any(ch in category for ch in LABEL_FORBIDDEN):
        errors.append("invalid category")

    limits = {name: NAME_MAX_LEN for name in ("category", "subcategory", "payment_method", "source")}
    limits["notes"] = NOTE_MAX_LEN
    for name in FIELDS_BY_KIND[kind]:
        if name in limits and len(values.get(name, "")) > limits[name]:
            errors.append(f"{name.replace('_', ' ')} too long")

    expense_type = "Variable"
    if kind == EXPENSE and values.get("expense_type"):
        expense_type = EXPENSE_TYPES.get(values["expense_type"].lower())
        if expense_type is None:
            errors.append("invalid expense type")

    row = ImportRow(index=index, values=values, errors=errors)
    if errors:
        return row

    record: dict[str, Any] = {
        "date": date_value,
        "amount": amount,
        "category": category,
        "notes": values.get("notes") or None,
    }
    if kind == EXPENSE:
        record["subcategory"] = values.get("subcategory") or None
        record["payment_method"] = values.get("payment_method") or None
        record["expense_type"] = expense_type
    else:
        record["source"] = values.get("source") or None
    row.record = record
    return row


def validate_csv(text: str, kind: str, delimiter: str = ",") -> ImportResult:
    """Parse and validate a whole file for the given record kind."""
    if kind not in FIELDS_BY_KIND:
        raise ValueError(f"Unknown import kind '{kind}'")

    raw_rows = parse_csv(text, delimiter)
    if not raw_rows:
        return ImportResult(kind=kind, rows=[])

    columns = resolve_columns(list(raw_rows[0].keys()))
    rows = []
    for index, raw in enumerate(raw_rows):
        values = {
            name: (raw.get(columns[name], "") if columns[name] else "")
            for name in FIELDS_BY_KIND[kind]
        }
        rows.append(validate_row(index, values, kind))
    return ImportResult(kind=kind, rows=rows)
