"""Pydantic/SQLModel schemas for API payloads and validation."""
import re
from typing import Literal, Optional
from decimal import Decimal
import datetime as dt

from sqlmodel import SQLModel, Field
from pydantic import field_validator, BaseModel, constr

from utils import normalize_iso_date

NAME_MAX_LEN = 80
NOTE_MAX_LEN = 300
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CategoryType = Literal["expense", "income"]
ExpenseType = Literal["Fixed", "Variable"]

# Names end up as CSV cells that are split without quoting.
LABEL_FORBIDDEN = (";", ",", "\n", "\r")


def check_label(v):
    """Reject names containing a CSV separator or a line break."""
    if isinstance(v, str) and any(ch in v for ch in LABEL_FORBIDDEN):
        raise ValueError("must not contain ';', ',' or line breaks")
    return v


class NotesDateMixin:
    """Shared validators for text trimming and date normalization."""
    @field_validator("notes", "source", "subcategory", "payment_method", mode="before", check_fields=False)
    @classmethod
    def strip_optional_text(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("category", "account", "asset_type", "name", mode="before", check_fields=False)
    @classmethod
    def strip_required_text(cls, v):
        return check_label(v.strip() if isinstance(v, str) else v)

    @field_validator("date", mode="before", check_fields=False)
    @classmethod
    def normalize_date(cls, v):
        if v is None:
            return None
        return normalize_iso_date(v)


# Categories

class CategoryCreate(BaseModel):
    """Payload for creating a category."""
    name: constr(strip_whitespace=True, min_length=1, max_length=NAME_MAX_LEN)
    type: CategoryType = "expense"

    @field_validator("name")
    @classmethod
    def name_is_label(cls, v):
        return check_label(v)


class CategoryRead(BaseModel):
    """Response model for a category."""
    id: int
    name: str
    type: str

    class Config:
        from_attributes = True


class CategoryRename(BaseModel):
    """Payload for renaming a category; the new name is applied everywhere."""
    old_name: constr(strip_whitespace=True, min_length=1)
    new_name: constr(strip_whitespace=True, min_length=1, max_length=NAME_MAX_LEN)
    type: CategoryType = "expense"

    @field_validator("new_name")
    @classmethod
    def new_name_is_label(cls, v):
        return check_label(v)


# Expenses & income

class ExpenseCreate(NotesDateMixin, SQLModel):
    """Payload for creating an expense."""
    date: dt.date
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    category: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    subcategory: Optional[str] = Field(default=None, max_length=NAME_MAX_LEN)
    payment_method: Optional[str] = Field(default=None, max_length=NAME_MAX_LEN)
    expense_type: ExpenseType = "Variable"
    notes: Optional[str] = Field(default=None, max_length=NOTE_MAX_LEN)


class ExpenseUpdate(ExpenseCreate):
    """Full replacement of an existing expense."""
    id: int


class IncomeCreate(NotesDateMixin, SQLModel):
    """Payload for creating income."""
    date: dt.date
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    source: Optional[str] = Field(default=None, max_length=NAME_MAX_LEN)
    category: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    notes: Optional[str] = Field(default=None, max_length=NOTE_MAX_LEN)


class IncomeUpdate(IncomeCreate):
    id: int


# Budgets

class BudgetItem(SQLModel):
    category: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    monthly_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)

    @field_validator("category", mode="before")
    @classmethod
    def category_is_label(cls, v):
        return check_label(v.strip() if isinstance(v, str) else v)


class BudgetSave(SQLModel):
    """The complete budget set; whatever is not listed is removed."""
    budgets: list[BudgetItem]


# Cash & investments

class CashSnapshotCreate(NotesDateMixin, SQLModel):
    date: dt.date
    account: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    current_value: Decimal = Field(max_digits=12, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=NOTE_MAX_LEN)


class CashSnapshotUpdate(CashSnapshotCreate):
    id: int


class InvestmentProductCreate(NotesDateMixin, SQLModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=NAME_MAX_LEN)
    asset_type: str = Field(min_length=1, max_length=NAME_MAX_LEN)


class InvestmentProductUpdate(InvestmentProductCreate):
    id: int


class InvestmentCreate(NotesDateMixin, SQLModel):
    """A contribution (+) or withdrawal (-) and the account value after it."""
    date: dt.date
    account: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    asset_type: str = Field(min_length=1, max_length=NAME_MAX_LEN)
    contribution: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    current_value: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=NOTE_MAX_LEN)


class InvestmentUpdate(InvestmentCreate):
    id: int


# Import

class ImportRequest(BaseModel):
    """Raw CSV text to validate (and optionally import)."""
    kind: CategoryType
    text: str
    delimiter: constr(min_length=1, max_length=1) = ","


class ImportRowRead(BaseModel):
    index: int
    values: dict[str, str]
    valid: bool
    errors: list[str]

    class Config:
        from_attributes = True


class ImportSummary(BaseModel):
    total: int
    valid: int
    invalid: int
    total_amount: float


class ImportPreview(BaseModel):
    rows: list[ImportRowRead]
    summary: ImportSummary


class ImportRowResult(BaseModel):
    index: int
    status: Literal["created", "failed", "skipped"]
    id: Optional[int] = None
    errors: list[str] = []


class ImportOutcome(BaseModel):
    summary: ImportSummary
    created: int
    failed: int
    results: list[ImportRowResult]


# User & Auth schemas

class UserRead(SQLModel):
    """Response model for a user."""
    id: int
    email: str
    name: str


class UserCreate(SQLModel):
    """Payload for creating a user."""
    email: str
    password: str = Field(min_length=8, max_length=256)
    name: str = Field(min_length=1, max_length=50)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if EMAIL_RE.match(v):
                return v
        raise ValueError("Invalid email format.")

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class UserLogin(SQLModel):
    """Payload for logging in."""
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class Token(BaseModel):
    """Token response model."""
    access_token: str
    token_type: str


class PasswordChange(BaseModel):
    """Payload to change password."""
    current_password: str
    new_password: constr(min_length=8, max_length=256)


class ProfileUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=50)


class OnboardingUpdate(BaseModel):
    step: int = Field(ge=0, le=5)


class PreferencesRead(BaseModel):
    last_used_date: Optional[dt.date] = None
    currency: str

    class Config:
        from_attributes = True


class PreferencesUpdate(BaseModel):
    last_used_date: Optional[dt.date] = None
    currency: Optional[constr(strip_whitespace=True, to_upper=True, min_length=3, max_length=3)] = None
