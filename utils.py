"""Utility functions for dates and dashboard aggregation.

Everything here is a pure function of (records, reference values) -> numbers,
so the dashboard endpoints stay thin and each figure can be unit-tested.
Records are duck-typed: anything with the attributes the helper reads works
(ORM rows, SimpleNamespace in tests).
"""
import calendar
import datetime as dt
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Hashable, Iterable, Mapping, Optional

MONTH_NAMES = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]

ON_TRACK = "on_track"
AT_RISK = "at_risk"
OVER = "over"
AT_RISK_THRESHOLD = 70.0
OVER_THRESHOLD = 100.0


def _round_money(dec: Decimal) -> float:
    """Round a Decimal to 2 decimal places with HALF_UP (normal money rounding)."""
    return float(dec.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _sum_amounts(records: Iterable[Any], attr: str = "amount") -> Decimal:
    total = Decimal("0")
    for r in records:
        total += _to_decimal(getattr(r, attr, None))
    return total


def _as_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    return value


def normalize_iso_date(value: Any) -> dt.date:
    """Normalize a value to a date or raise a ValueError."""
    if isinstance(value, dt.date):
        return value

    if isinstance(value, str):
        try:
            return dt.date.fromisoformat(value)
        except ValueError:
            raise ValueError("Invalid date format. Expected YYYY-MM-DD.")

    raise ValueError("Invalid date format. Expected YYYY-MM-DD.")


# Periods

def month_bounds(year: int, month: int) -> tuple[dt.date, dt.date]:
    """First and last day of a 1-based month, both inclusive."""
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    last_day = calendar.monthrange(year, month)[1]
    return dt.date(year, month, 1), dt.date(year, month, last_day)


def period_bounds(year: int, month: Optional[int], period: str) -> tuple[dt.date, dt.date]:
    """Bounds of a 'year' period, or of a 'month' period when a month is given."""
    if period == "year" or month is None:
        return dt.date(year, 1, 1), dt.date(year, 12, 31)
    return month_bounds(year, month)


def previous_period(year: int, month: Optional[int], period: str) -> tuple[int, Optional[int]]:
    """The (year, month) of the period before the given one."""
    if period == "year" or month is None:
        return year - 1, None
    if month == 1:
        return year - 1, 12
    return year, month - 1


def in_period(records: Iterable[Any], start: dt.date, end: dt.date) -> list[Any]:
    """Records whose date falls within [start, end]."""
    return [r for r in records if start <= _as_date(r.date) <= end]


# Totals, averages and shares

def compute_summary(
    incomes: Iterable[Any],
    expenses: Iterable[Any],
) -> dict[str, float]:
    """Income total, expense total and balance, rounded like money."""
    income_total = _round_money(_sum_amounts(incomes))
    expense_total = _round_money(_sum_amounts(expenses))
    balance = _round_money(Decimal(str(income_total)) - Decimal(str(expense_total)))
    return {
        "income_total": income_total,
        "expense_total": expense_total,
        "balance": balance,
    }


def category_totals(records: Iterable[Any], key: str = "category") -> dict[str, float]:
    """Sum of amounts per category (or any other attribute named by key)."""
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for r in records:
        totals[getattr(r, key)] += _to_decimal(r.amount)
    return {name: _round_money(total) for name, total in totals.items()}


def monthly_average(records: Iterable[Any]) -> float:
    """Total amount divided by the number of distinct months with activity.

    The divisor is at least 1, so an empty list averages to 0.
    """
    records = list(records)
    months = {(_as_date(r.date).year, _as_date(r.date).month) for r in records}
    divisor = max(len(months), 1)
    return _round_money(_sum_amounts(records) / divisor)


def monthly_averages(records: Iterable[Any]) -> dict[str, float]:
    """monthly_average for each category present in records."""
    by_category: dict[str, list] = defaultdict(list)
    for r in records:
        by_category[r.category].append(r)
    return {name: monthly_average(rows) for name, rows in by_category.items()}


def percentage_of_total(totals: Mapping[Hashable, float]) -> dict[Hashable, float]:
    """Share of each value in the grand total, in percent (0 when the total is 0)."""
    grand_total = sum(float(v) for v in totals.values())
    if grand_total == 0:
        return {k: 0.0 for k in totals}
    return {k: float(v) / grand_total * 100 for k, v in totals.items()}


def calc_trend(current: float, previous: float, signed: bool = False) -> float:
    """Percent change from previous to current.

    Unsigned aggregates (income, expenses) only compare against a positive
    previous value. Signed aggregates (savings) divide by |previous| so the
    direction of the change is kept when the sign flips.
    """
    current = float(current)
    previous = float(previous)
    if signed:
        if previous == 0:
            return 0.0
        return (current - previous) / abs(previous) * 100
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


def savings_rate(income: float, expenses: float) -> float:
    income = float(income)
    if income <= 0:
        return 0.0
    return (income - float(expenses)) / income * 100


# Budgets

def budget_ratio(spent: float, budgeted: float) -> float:
    """Spent as a percentage of budgeted; 0 when nothing is budgeted."""
    budgeted = float(budgeted)
    if budgeted <= 0:
        return 0.0
    return float(spent) / budgeted * 100


def budget_status(ratio: float) -> str:
    """Classify a consumption ratio for progress bars and alerts."""
    if ratio >= OVER_THRESHOLD:
        return OVER
    if ratio >= AT_RISK_THRESHOLD:
        return AT_RISK
    return ON_TRACK


def projected_month_end(spent: float, reference_date: dt.date) -> float:
    """Linear projection of spend for the month containing reference_date."""
    days_in_month = calendar.monthrange(reference_date.year, reference_date.month)[1]
    return float(spent) / reference_date.day * days_in_month


# Snapshots (cash accounts, investment accounts)

def latest_per_account(records: Iterable[Any]) -> dict[str, Any]:
    """Most recent record for each account.

    Records on the same date are ordered by id, the highest id wins.
    """
    latest: dict[str, Any] = {}
    for r in records:
        key = (_as_date(r.date), getattr(r, "id", None) or 0)
        current = latest.get(r.account)
        if current is None or key > (_as_date(current.date), getattr(current, "id", None) or 0):
            latest[r.account] = r
    return latest


def latest_as_of(records: Iterable[Any], as_of: dt.date) -> dict[str, Any]:
    """latest_per_account restricted to records dated on or before as_of."""
    return latest_per_account(r for r in records if _as_date(r.date) <= as_of)


def current_total(records: Iterable[Any]) -> float:
    """Sum of the current value of every account."""
    latest = latest_per_account(records)
    return _round_money(_sum_amounts(latest.values(), "current_value"))


def total_contributions(investments: Iterable[Any]) -> float:
    """Net money put in across all investment movements (withdrawals are negative)."""
    return _round_money(_sum_amounts(investments, "contribution"))


def asset_type_totals(investments: Iterable[Any]) -> dict[str, float]:
    """Current value per asset type, from the latest movement of each account."""
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for inv in latest_per_account(investments).values():
        totals[inv.asset_type] += _to_decimal(inv.current_value)
    return {name: _round_money(total) for name, total in totals.items()}


def investment_performance(investments: Iterable[Any]) -> list[dict[str, Any]]:
    """Per-account contributed amount, current value, gain, return and weight.

    Sorted by weight, biggest position first.
    """
    investments = list(investments)
    latest = latest_per_account(investments)

    contributed: dict[str, Decimal] = defaultdict(Decimal)
    for inv in investments:
        contributed[inv.account] += _to_decimal(inv.contribution)

    total_value = _sum_amounts(latest.values(), "current_value")
    rows = []
    for account, last in latest.items():
        value = _to_decimal(last.current_value)
        paid_in = contributed[account]
        gain = value - paid_in
        rows.append({
            "account": account,
            "asset_type": last.asset_type,
            "contributed": _round_money(paid_in),
            "value": _round_money(value),
            "gain": _round_money(gain),
            "return_pct": float(gain / paid_in * 100) if paid_in != 0 else 0.0,
            "weight": float(value / total_value * 100) if total_value > 0 else 0.0,
        })
    rows.sort(key=lambda row: row["weight"], reverse=True)
    return rows


# Charts

def monthly_series(
    incomes: Iterable[Any],
    expenses: Iterable[Any],
    year: int,
) -> list[dict[str, Any]]:
    """Income, expenses and savings for each month of a year (12 buckets)."""
    income_by_month = [Decimal("0")] * 12
    expense_by_month = [Decimal("0")] * 12

    for i in incomes:
        d = _as_date(i.date)
        if d.year == year:
            income_by_month[d.month - 1] += _to_decimal(i.amount)
    for e in expenses:
        d = _as_date(e.date)
        if d.year == year:
            expense_by_month[d.month - 1] += _to_decimal(e.amount)

    return [
        {
            "month": idx + 1,
            "name": MONTH_NAMES[idx],
            "income": _round_money(income_by_month[idx]),
            "expenses": _round_money(expense_by_month[idx]),
            "savings": _round_money(income_by_month[idx] - expense_by_month[idx]),
        }
        for idx in range(12)
    ]


def breakdown(totals: Mapping[str, float]) -> list[dict[str, Any]]:
    """Chart rows {name, value, percentage}, biggest value first."""
    shares = percentage_of_total(totals)
    rows = [
        {"name": name, "value": value, "percentage": shares[name]}
        for name, value in totals.items()
    ]
    rows.sort(key=lambda row: row["value"], reverse=True)
    return rows
