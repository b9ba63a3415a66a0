# tests/test_csv_import.py
import os
import sys
import datetime as dt
from decimal import Decimal

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from csv_import import (
    parse_csv,
    parse_import_amount,
    parse_import_date,
    resolve_columns,
    validate_csv,
    validate_row,
)


# ---------- parse_csv ----------

def test_parse_csv_lowercases_headers_and_trims():
    rows = parse_csv("Date, Amount ,Category\n2025-01-01, 10 , Food \n")
    assert rows == [{"date": "2025-01-01", "amount": "10", "category": "Food"}]


def test_parse_csv_ignores_blank_lines():
    text = "date,amount\n\n2025-01-01,5\n   \n2025-01-02,6\n"
    assert len(parse_csv(text)) == 2


def test_parse_csv_header_only_is_empty():
    assert parse_csv("date,amount,category\n") == []
    assert parse_csv("") == []


def test_parse_csv_short_rows_are_padded():
    rows = parse_csv("date,amount,category\n2025-01-01\n")
    assert rows == [{"date": "2025-01-01", "amount": "", "category": ""}]


def test_parse_csv_custom_delimiter():
    rows = parse_csv("date;amount\n2025-01-01;3.5\n", delimiter=";")
    assert rows[0]["amount"] == "3.5"


def test_resolve_columns_accepts_spanish_headers():
    cols = resolve_columns(["fecha", "importe", "categoría", "notas"])
    assert cols["date"] == "fecha"
    assert cols["amount"] == "importe"
    assert cols["category"] == "categoría"
    assert cols["notes"] == "notas"
    assert cols["source"] is None


# ---------- field parsers ----------

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2025-03-04", dt.date(2025, 3, 4)),
        ("2025-03-04T10:00:00", dt.date(2025, 3, 4)),
        ("04/03/2025", dt.date(2025, 3, 4)),
        ("4/3/2025", dt.date(2025, 3, 4)),
    ],
)
def test_parse_import_date_formats(raw, expected):
    assert parse_import_date(raw) == expected


@pytest.mark.parametrize("raw", ["2025-13-01", "31/02/2025", "yesterday", "03-04-2025"])
def test_parse_import_date_rejects(raw):
    with pytest.raises(ValueError):
        parse_import_date(raw)


def test_parse_import_amount():
    assert parse_import_amount(" 12.50 ") == Decimal("12.50")
    for raw in ("abc", "0", "-3", "NaN", "Infinity", "1,5", "0.004", "10000000000", "1e30"):
        with pytest.raises(ValueError):
            parse_import_amount(raw)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("12.345", Decimal("12.35")),
        ("12.344", Decimal("12.34")),
        ("0.005", Decimal("0.01")),
        ("9999999999.99", Decimal("9999999999.99")),
    ],
)
def test_parse_import_amount_rounds_to_cents(raw, expected):
    amount = parse_import_amount(raw)
    assert amount == expected
    assert amount.as_tuple().exponent == -2


# ---------- row validation ----------

def test_validate_row_collects_every_error():
    row = validate_row(0, {"date": "", "amount": "x", "category": ""}, "expense")
    assert not row.valid
    assert row.errors == ["missing date", "invalid amount", "missing category"]
    assert row.record is None


def test_validate_row_builds_expense_record():
    values = {
        "date": "01/02/2025",
        "amount": "9.99",
        "category": "Food",
        "subcategory": "",
        "payment_method": "Card",
        "expense_type": "fijo",
        "notes": "",
    }
    row = validate_row(3, values, "expense")
    assert row.valid
    assert row.record == {
        "date": dt.date(2025, 2, 1),
        "amount": Decimal("9.99"),
        "category": "Food",
        "notes": None,
        "subcategory": None,
        "payment_method": "Card",
        "expense_type": "Fixed",
    }


def test_validate_row_unknown_expense_type():
    values = {"date": "2025-01-01", "amount": "1", "category": "Food", "expense_type": "weekly"}
    row = validate_row(0, values, "expense")
    assert row.errors == ["invalid expense type"]


def test_validate_row_rejects_what_the_schema_would_reject():
    values = {
        "date": "2025-01-01",
        "amount": "1",
        "category": "C" * 81,
        "payment_method": "P" * 81,
        "notes": "n" * 301,
    }
    row = validate_row(0, values, "expense")
    assert row.errors == ["category too long", "payment method too long", "notes too long"]

    income = validate_row(0, {"date": "2025-01-01", "amount": "1", "category": "Salary", "source": "S" * 81}, "income")
    assert income.errors == ["source too long"]


def test_validate_row_category_with_separator():
    values = {"date": "2025-01-01", "amount": "1", "category": "Food;Drinks"}
    row = validate_row(0, values, "expense")
    assert row.errors == ["invalid category"]


def test_validate_row_income_keeps_source():
    values = {"date": "2025-01-31", "amount": "2000", "category": "Salary", "source": "ACME"}
    row = validate_row(0, values, "income")
    assert row.record["source"] == "ACME"
    assert "expense_type" not in row.record


# ---------- whole file ----------

def test_validate_csv_summary():
    text = (
        "date,amount,category\n"
        "2025-01-15,12.50,Food\n"
        "bad-date,10,Food\n"
        "2025-01-16,-5,Food\n"
    )
    result = validate_csv(text, "expense")
    assert result.total == 3
    assert result.valid == 1
    assert result.invalid == 2
    assert result.total_amount == Decimal("12.50")
    assert [r.index for r in result.rows] == [0, 1, 2]


def test_validate_csv_missing_column_marks_rows_invalid():
    result = validate_csv("date,amount\n2025-01-01,5\n", "expense")
    assert result.rows[0].errors == ["missing category"]


def test_validate_csv_unknown_kind():
    with pytest.raises(ValueError):
        validate_csv("date,amount\n2025-01-01,5\n", "transfer")
