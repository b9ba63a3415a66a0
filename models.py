from typing import Optional
from decimal import Decimal
import datetime as dt
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint

# These classes describe what data will be stored in the database.
# Each class = one table, every row belongs to exactly one user.
# Money columns are Numeric(12, 2); timestamps are timezone-aware UTC.


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """Account owner. Email is stored lower-cased and is the login identity."""
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    hashed_password: str
    onboarding_step: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_login_at: Optional[datetime] = None


class UserPreference(SQLModel, table=True):
    """Per-user settings that the client used to keep in local storage."""
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    last_used_date: Optional[dt.date] = None # date of the last recorded movement
    currency: str = "EUR"


class Category(SQLModel, table=True):
    """Expense or income category.
    Transactions and budgets reference a category by its name, not its id.
    """
    __table_args__ = (UniqueConstraint("user_id", "type", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str = Field(index=True, max_length=80)
    type: str = "expense" # 'expense' or 'income'
    created_at: datetime = Field(default_factory=utc_now)


class Expense(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    date: dt.date = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2) # always > 0
    category: str = Field(index=True)
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None
    expense_type: str = "Variable" # 'Fixed' or 'Variable'
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Income(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    date: dt.date = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2) # always > 0
    source: Optional[str] = None
    category: str = Field(index=True)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Budget(SQLModel, table=True):
    """Monthly spending target for one expense category."""
    __table_args__ = (UniqueConstraint("user_id", "category"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    category: str
    monthly_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CashSnapshot(SQLModel, table=True):
    """Balance of a cash account on a given day."""
    __table_args__ = (UniqueConstraint("user_id", "account", "date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    date: dt.date = Field(index=True)
    account: str
    current_value: Decimal = Field(max_digits=12, decimal_places=2)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class InvestmentProduct(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    asset_type: str
    created_at: datetime = Field(default_factory=utc_now)


class Investment(SQLModel, table=True):
    """One movement on an investment account.
    - 'contribution' is signed: money put in (+) or taken out (-)
    - 'current_value' is the total account value after the movement
    - 'account' should match an InvestmentProduct.name (not enforced)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    date: dt.date = Field(index=True)
    account: str
    asset_type: str
    contribution: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    current_value: Decimal = Field(max_digits=12, decimal_places=2)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
