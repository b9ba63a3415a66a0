"""Main FastAPI application for the Finance Tracker."""
import time
import datetime as dt
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from pydantic import ValidationError
from sqlmodel import SQLModel, create_engine, Session, select
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from prometheus_fastapi_instrumentator import Instrumentator

import exporter
import utils
from config import settings
from csv_import import EXPENSE, ImportResult, validate_csv
from logging_config import setup_logging, get_logger
from models import (
    Budget,
    CashSnapshot,
    Category,
    Expense,
    Income,
    Investment,
    InvestmentProduct,
    User,
    UserPreference,
    utc_now,
)
from schemas import (
    BudgetSave,
    CashSnapshotCreate,
    CashSnapshotUpdate,
    CategoryCreate,
    CategoryRead,
    CategoryRename,
    ExpenseCreate,
    ExpenseUpdate,
    ImportOutcome,
    ImportPreview,
    ImportRequest,
    ImportRowRead,
    ImportRowResult,
    ImportSummary,
    IncomeCreate,
    IncomeUpdate,
    InvestmentCreate,
    InvestmentProductCreate,
    InvestmentProductUpdate,
    InvestmentUpdate,
    OnboardingUpdate,
    PasswordChange,
    PreferencesRead,
    PreferencesUpdate,
    ProfileUpdate,
    Token,
    UserCreate,
    UserLogin,
    UserRead,
)
from auth import (
    verify_password,
    get_password_hash,
    create_access_token,
    password_needs_rehash,
    decode_access_token,
)

setup_logging(settings)
logger = get_logger("main")

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)
instrumentator = Instrumentator().instrument(app)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

engine = create_engine(settings.DATABASE_URL, **settings.engine_options())

# Suggested categories offered to new users (POST /api/categories/defaults).
DEFAULT_CATEGORIES = {
    "expense": [
        "Food",
        "Transport",
        "Home",
        "Leisure",
        "Health",
        "Clothing",
        "Restaurants",
        "Subscriptions",
    ],
    "income": [
        "Salary",
        "Freelance",
        "Dividends",
        "Rent",
        "Other income",
    ],
}


# ERROR HANDLING
# Every error leaves the API as {"error": "<message>"}.

def format_validation_errors(errors) -> list[str]:
    """Short "field: message" strings from pydantic error dicts."""
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return parts


def _validation_message(exc: RequestValidationError) -> str:
    return "; ".join(format_validation_errors(exc.errors())) or "Invalid request"


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": _validation_message(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


#API endpoint for quick health checks
@app.get("/")
def root():
    return {"message": "Finance Tracker API is running. See /health for status."}

@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": utc_now().isoformat(),
        "app": settings.APP_SLUG,
        "version": settings.VERSION,
    }


# SESSION & LOOKUP HELPERS

def get_session():
    """Provide a database session per request."""
    with Session(engine) as session:
        yield session


def save_and_refresh(session: Session, instance):
    """Persist and refresh an instance in the current session."""
    session.add(instance)
    session.commit()
    session.refresh(instance)
    return instance


def get_user_by_email(session: Session, email: str) -> User | None:
    """Fetch a user by email or return None."""
    stmt = select(User).where(User.email == email)
    return session.exec(stmt).first()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Resolve the current user from a bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        email: str | None = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = get_user_by_email(session, email=email)
    if user is None:
        raise credentials_exception
    return user


def get_owned_or_404(session: Session, model, row_id: int, user_id: int, label: str):
    """Fetch a row by id, hiding rows owned by other users behind a 404."""
    row = session.get(model, row_id)
    if not row or row.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def get_preferences(session: Session, user_id: int) -> UserPreference:
    """Return the user's preference row, adding a default one if missing."""
    prefs = session.get(UserPreference, user_id)
    if prefs is None:
        prefs = UserPreference(user_id=user_id)
        session.add(prefs)
    return prefs


def remember_last_used_date(session: Session, user_id: int, date: dt.date) -> None:
    prefs = get_preferences(session, user_id)
    prefs.last_used_date = date
    session.add(prefs)


def find_category(session: Session, user_id: int, type_: str, name: str) -> Category | None:
    stmt = select(Category).where(
        Category.user_id == user_id,
        Category.type == type_,
        Category.name == name,
    )
    return session.exec(stmt).first()


def ensure_category(session: Session, user_id: int, type_: str, name: str) -> Category:
    """Create the category if it does not exist yet (idempotent)."""
    existing = find_category(session, user_id, type_, name)
    if existing:
        return existing
    return save_and_refresh(session, Category(user_id=user_id, type=type_, name=name))


def category_in_use(session: Session, user_id: int, type_: str, name: str) -> bool:
    """Income categories are used by income; expense categories by expenses and budgets."""
    if type_ == "income":
        targets = (Income,)
    else:
        targets = (Expense, Budget)
    for model in targets:
        stmt = select(model).where(model.user_id == user_id, model.category == name)
        if session.exec(stmt).first():
            return True
    return False


def seed_default_categories(session: Session, user_id: int, type_: str) -> int:
    """Add the suggested categories the user does not have yet; returns how many."""
    existing = set(
        session.exec(
            select(Category.name).where(Category.user_id == user_id, Category.type == type_)
        ).all()
    )
    missing = [name for name in DEFAULT_CATEGORIES[type_] if name not in existing]
    session.add_all([Category(user_id=user_id, type=type_, name=name) for name in missing])
    session.commit()
    return len(missing)


@app.on_event("startup")
def on_startup() -> None:
    """
    Run once when the app starts:
    - Wait for the database to be ready
    - Create tables
    - Expose Prometheus /metrics
    """
    retries = settings.DB_CONNECT_RETRIES
    delay = settings.DB_CONNECT_DELAY
    last_exc: Exception | None = None

    for attempt in range(1, retries + 1):
        try:
            SQLModel.metadata.create_all(engine)
            instrumentator.expose(app)
            logger.info("Database ready, tables created.")
            return
        except OperationalError as exc:
            last_exc = exc
            logger.warning(
                "DB not ready yet (attempt %s/%s); waiting %ss...",
                attempt, retries, delay,
            )
            time.sleep(delay)

    logger.error("Giving up connecting to the database.")
    if last_exc:
        raise last_exc
    raise RuntimeError("Database not reachable on startup.")


# AUTH ENDPOINTS
@app.post("/auth/register", response_model=UserRead, status_code=201)
def register_user(
    user_in: UserCreate,
    session: Session = Depends(get_session),
):
    """Register a new user if the email is free."""
    if get_user_by_email(session, user_in.email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=user_in.email,
        name=user_in.name,
        hashed_password=get_password_hash(user_in.password),
    )
    user = save_and_refresh(session, user)
    logger.info("Registered user %s", user.id)
    return user


@app.post("/auth/login", response_model=Token)
def login(
    user_in: UserLogin,
    session: Session = Depends(get_session),
):
    """Authenticate a user and return a bearer token."""
    user = get_user_by_email(session, user_in.email)
    if not user or not verify_password(user_in.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Incorrect email or password",
        )

    if password_needs_rehash(user.hashed_password):
        user.hashed_password = get_password_hash(user_in.password)
    user.last_login_at = utc_now()
    save_and_refresh(session, user)

    access_token = create_access_token({"sub": user.email, "user_id": user.id})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me")
def read_current_user(current_user: User = Depends(get_current_user)):
    """Return the current authenticated user."""
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "onboarding_step": current_user.onboarding_step,
        "created_at": current_user.created_at,
    }


@app.post("/auth/change-password")
def change_password(
    payload: PasswordChange,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Change the current user's password."""
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")

    current_user.hashed_password = get_password_hash(payload.new_password)
    save_and_refresh(session, current_user)

    return {"message": "password-updated"}


# USER ENDPOINTS
@app.get("/api/user/profile", response_model=UserRead)
def read_profile(current_user: User = Depends(get_current_user)):
    return current_user


@app.patch("/api/user/profile", response_model=UserRead)
def update_profile(
    payload: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Change the display name."""
    current_user.name = payload.name
    return save_and_refresh(session, current_user)


@app.get("/api/user/onboarding")
def read_onboarding(current_user: User = Depends(get_current_user)):
    return {"onboarding_step": current_user.onboarding_step}


@app.patch("/api/user/onboarding")
def update_onboarding(
    payload: OnboardingUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    current_user.onboarding_step = payload.step
    save_and_refresh(session, current_user)
    return {"onboarding_step": current_user.onboarding_step}


@app.get("/api/user/preferences", response_model=PreferencesRead)
def read_preferences(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return get_preferences(session, current_user.id)


@app.patch("/api/user/preferences", response_model=PreferencesRead)
def update_preferences(
    payload: PreferencesUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Patch preferences; only the fields sent are changed."""
    prefs = get_preferences(session, current_user.id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "currency" and value is None:
            continue
        setattr(prefs, field, value)
    return save_and_refresh(session, prefs)


# CATEGORY ENDPOINTS
@app.get("/api/categories", response_model=list[CategoryRead])
def list_categories(
    type: str = Query("expense", pattern="^(expense|income)$"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List the user's categories of one type ordered by name."""
    stmt = (
        select(Category)
        .where(Category.user_id == current_user.id, Category.type == type)
        .order_by(Category.name)
    )
    return session.exec(stmt).all()


@app.post("/api/categories", response_model=CategoryRead, status_code=201)
def create_category(
    payload: CategoryCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Create a new category. Names are unique per user and type."""
    if find_category(session, current_user.id, payload.type, payload.name):
        raise HTTPException(status_code=400, detail="Category already exists")
    row = Category(user_id=current_user.id, type=payload.type, name=payload.name)
    return save_and_refresh(session, row)


@app.post("/api/categories/defaults")
def create_default_categories(
    type: str = Query("expense", pattern="^(expense|income)$"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Add the suggested categories the user is missing."""
    added = seed_default_categories(session, current_user.id, type)
    return {"added": added}


# Renaming also rewrites every transaction (and budget) that used the old name.
@app.put("/api/categories", response_model=CategoryRead)
def rename_category(
    payload: CategoryRename,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Rename a category, enforcing uniqueness and cascading the new name."""
    category = find_category(session, current_user.id, payload.type, payload.old_name)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    if payload.new_name != payload.old_name and find_category(
        session, current_user.id, payload.type, payload.new_name
    ):
        raise HTTPException(status_code=400, detail="Category with this name already exists")

    category.name = payload.new_name
    session.add(category)

    targets = (Income,) if payload.type == "income" else (Expense, Budget)
    for model in targets:
        session.execute(
            update(model)
            .where(model.user_id == current_user.id, model.category == payload.old_name)
            .values(category=payload.new_name)
        )

    session.commit()
    session.refresh(category)
    return category


@app.delete("/api/categories", status_code=204)
def delete_category(
    name: str,
    type: str = Query("expense", pattern="^(expense|income)$"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Delete a category if nothing references it."""
    category = find_category(session, current_user.id, type, name)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    if category_in_use(session, current_user.id, type, name):
        raise HTTPException(
            status_code=400,
            detail="Category is in use and cannot be deleted",
        )

    session.delete(category)
    session.commit()
    return None


# INCOME ENDPOINTS
# Newest first, paginated with limit/offset.
@app.get("/api/income", response_model=list[Income])
def list_income(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List income ordered by date descending."""
    stmt = (
        select(Income)
        .where(Income.user_id == current_user.id)
        .order_by(Income.date.desc(), Income.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return session.exec(stmt).all()


@app.post("/api/income", response_model=Income, status_code=201)
def create_income(
    payload: IncomeCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Create an income record."""
    row = Income(user_id=current_user.id, **payload.model_dump())
    remember_last_used_date(session, current_user.id, payload.date)
    return save_and_refresh(session, row)


@app.put("/api/income", response_model=Income)
def update_income(
    payload: IncomeUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Replace an income record owned by the user."""
    row = get_owned_or_404(session, Income, payload.id, current_user.id, "Income")
    for field, value in payload.model_dump(exclude={"id"}).items():
        setattr(row, field, value)
    return save_and_refresh(session, row)


@app.delete("/api/income", status_code=204)
def delete_income(
    id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Delete an income record."""
    row = get_owned_or_404(session, Income, id, current_user.id, "Income")
    session.delete(row)
    session.commit()
    return None


# EXPENSE ENDPOINTS
@app.get("/api/expenses", response_model=list[Expense])
def list_expenses(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List expenses ordered by date descending."""
    stmt = (
        select(Expense)
        .where(Expense.user_id == current_user.id)
        .order_by(Expense.date.desc(), Expense.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return session.exec(stmt).all()


@app.post("/api/expenses", response_model=Expense, status_code=201)
def create_expense(
    payload: ExpenseCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Create an expense. The category is a free-text name."""
    row = Expense(user_id=current_user.id, **payload.model_dump())
    remember_last_used_date(session, current_user.id, payload.date)
    return save_and_refresh(session, row)


@app.put("/api/expenses", response_model=Expense)
def update_expense(
    payload: ExpenseUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Replace an expense owned by the user."""
    row = get_owned_or_404(session, Expense, payload.id, current_user.id, "Expense")
    for field, value in payload.model_dump(exclude={"id"}).items():
        setattr(row, field, value)
    return save_and_refresh(session, row)


@app.delete("/api/expenses", status_code=204)
def delete_expense(
    id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Delete an expense."""
    row = get_owned_or_404(session, Expense, id, current_user.id, "Expense")
    session.delete(row)
    session.commit()
    return None


# BUDGET ENDPOINTS
@app.get("/api/budgets", response_model=list[Budget])
def list_budgets(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stmt = (
        select(Budget)
        .where(Budget.user_id == current_user.id)
        .order_by(Budget.category)
    )
    return session.exec(stmt).all()


# Saving budgets replaces the whole set: anything not sent is removed.
@app.post("/api/budgets")
def save_budgets(
    payload: BudgetSave,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Replace the user's budgets with the given list."""
    categories = [b.category for b in payload.budgets]
    if len(categories) != len(set(categories)):
        raise HTTPException(status_code=400, detail="Each category can only have one budget")

    session.execute(delete(Budget).where(Budget.user_id == current_user.id))
    now = utc_now()
    session.add_all([
        Budget(
            user_id=current_user.id,
            category=b.category,
            monthly_amount=b.monthly_amount,
            created_at=now,
            updated_at=now,
        )
        for b in payload.budgets
    ])
    session.commit()
    return {"message": "Budgets saved", "count": len(payload.budgets)}


@app.get("/api/budgets/progress")
def budget_progress(
    year: Optional[int] = Query(None, ge=1900, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Spend vs budget for each budgeted category in one month."""
    today = dt.date.today()
    year = year or today.year
    month = month or today.month
    start, end = utils.month_bounds(year, month)

    budgets = session.exec(
        select(Budget).where(Budget.user_id == current_user.id).order_by(Budget.category)
    ).all()
    expenses = session.exec(
        select(Expense).where(Expense.user_id == current_user.id)
    ).all()

    spent_by_category = utils.category_totals(utils.in_period(expenses, start, end))
    averages = utils.monthly_averages(expenses)

    rows = []
    for b in budgets:
        spent = spent_by_category.get(b.category, 0.0)
        ratio = utils.budget_ratio(spent, b.monthly_amount)
        rows.append({
            "category": b.category,
            "budgeted": float(b.monthly_amount),
            "spent": spent,
            "ratio": ratio,
            "status": utils.budget_status(ratio),
            "monthly_average": averages.get(b.category, 0.0),
        })

    total_budgeted = sum(row["budgeted"] for row in rows)
    total_spent = sum(row["spent"] for row in rows)
    total_ratio = utils.budget_ratio(total_spent, total_budgeted)
    return {
        "year": year,
        "month": month,
        "categories": rows,
        "total": {
            "budgeted": round(total_budgeted, 2),
            "spent": round(total_spent, 2),
            "ratio": total_ratio,
            "status": utils.budget_status(total_ratio),
        },
    }


# CASH ENDPOINTS
@app.get("/api/cash", response_model=list[CashSnapshot])
def list_cash(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stmt = (
        select(CashSnapshot)
        .where(CashSnapshot.user_id == current_user.id)
        .order_by(CashSnapshot.date.desc(), CashSnapshot.id.desc())
    )
    return session.exec(stmt).all()


def _save_snapshot(session: Session, row: CashSnapshot) -> CashSnapshot:
    try:
        return save_and_refresh(session, row)
    except IntegrityError:
        session.rollback()
        raise HTTPException(
            status_code=400,
            detail="A snapshot for this account and date already exists",
        )


@app.post("/api/cash", response_model=CashSnapshot, status_code=201)
def create_cash(
    payload: CashSnapshotCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Record the balance of a cash account on a day."""
    row = CashSnapshot(user_id=current_user.id, **payload.model_dump())
    return _save_snapshot(session, row)


@app.put("/api/cash", response_model=CashSnapshot)
def update_cash(
    payload: CashSnapshotUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, CashSnapshot, payload.id, current_user.id, "Snapshot")
    for field, value in payload.model_dump(exclude={"id"}).items():
        setattr(row, field, value)
    return _save_snapshot(session, row)


@app.delete("/api/cash", status_code=204)
def delete_cash(
    id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, CashSnapshot, id, current_user.id, "Snapshot")
    session.delete(row)
    session.commit()
    return None


# INVESTMENT PRODUCT ENDPOINTS
@app.get("/api/investment-products", response_model=list[InvestmentProduct])
def list_investment_products(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stmt = (
        select(InvestmentProduct)
        .where(InvestmentProduct.user_id == current_user.id)
        .order_by(InvestmentProduct.name)
    )
    return session.exec(stmt).all()


def _save_product(session: Session, row: InvestmentProduct) -> InvestmentProduct:
    try:
        return save_and_refresh(session, row)
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=400, detail="Product already exists")


@app.post("/api/investment-products", response_model=InvestmentProduct, status_code=201)
def create_investment_product(
    payload: InvestmentProductCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = InvestmentProduct(user_id=current_user.id, **payload.model_dump())
    return _save_product(session, row)


@app.put("/api/investment-products", response_model=InvestmentProduct)
def update_investment_product(
    payload: InvestmentProductUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, InvestmentProduct, payload.id, current_user.id, "Product")
    row.name = payload.name
    row.asset_type = payload.asset_type
    return _save_product(session, row)


# Products can be removed even while investments still name them;
# the client asks for confirmation first.
@app.delete("/api/investment-products", status_code=204)
def delete_investment_product(
    id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, InvestmentProduct, id, current_user.id, "Product")
    session.delete(row)
    session.commit()
    return None


# INVESTMENT ENDPOINTS
@app.get("/api/investments", response_model=list[Investment])
def list_investments(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stmt = (
        select(Investment)
        .where(Investment.user_id == current_user.id)
        .order_by(Investment.date.desc(), Investment.id.desc())
    )
    return session.exec(stmt).all()


@app.post("/api/investments", response_model=Investment, status_code=201)
def create_investment(
    payload: InvestmentCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Record a movement on an investment account."""
    row = Investment(user_id=current_user.id, **payload.model_dump())
    return save_and_refresh(session, row)


@app.put("/api/investments", response_model=Investment)
def update_investment(
    payload: InvestmentUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, Investment, payload.id, current_user.id, "Investment")
    for field, value in payload.model_dump(exclude={"id"}).items():
        setattr(row, field, value)
    return save_and_refresh(session, row)


@app.delete("/api/investments", status_code=204)
def delete_investment(
    id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = get_owned_or_404(session, Investment, id, current_user.id, "Investment")
    session.delete(row)
    session.commit()
    return None


# IMPORT ENDPOINTS

def _import_summary(result: ImportResult) -> ImportSummary:
    return ImportSummary(
        total=result.total,
        valid=result.valid,
        invalid=result.invalid,
        total_amount=round(float(result.total_amount), 2),
    )


@app.post("/api/import/preview", response_model=ImportPreview)
def preview_import(
    payload: ImportRequest,
    current_user: User = Depends(get_current_user),
):
    """Validate a CSV file without writing anything."""
    result = validate_csv(payload.text, payload.kind, payload.delimiter)
    return ImportPreview(
        rows=[ImportRowRead.model_validate(row) for row in result.rows],
        summary=_import_summary(result),
    )


# Rows are written one at a time and committed individually: a failing row
# is rolled back and reported, the rest of the file is still imported.
@app.post("/api/import", response_model=ImportOutcome)
def run_import(
    payload: ImportRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Import the valid rows of a CSV file as expenses or income."""
    result = validate_csv(payload.text, payload.kind, payload.delimiter)
    if result.total == 0:
        raise HTTPException(status_code=400, detail="The file is empty or has no data rows")

    model, schema = (Expense, ExpenseCreate) if payload.kind == EXPENSE else (Income, IncomeCreate)
    results: list[ImportRowResult] = []
    created = failed = 0

    for row in result.rows:
        if not row.valid:
            results.append(ImportRowResult(index=row.index, status="skipped", errors=row.errors))
            continue
        try:
            data = schema(**row.record)
            ensure_category(session, current_user.id, payload.kind, data.category)
            record = save_and_refresh(session, model(user_id=current_user.id, **data.model_dump()))
        except (ValueError, SQLAlchemyError) as exc:
            session.rollback()
            failed += 1
            logger.warning("Import row %s failed for user %s: %s", row.index, current_user.id, exc)
            if isinstance(exc, ValidationError):
                errors = format_validation_errors(exc.errors())
            elif isinstance(exc, SQLAlchemyError):
                errors = ["could not be saved"]
            else:
                errors = [str(exc)]
            results.append(ImportRowResult(index=row.index, status="failed", errors=errors))
            continue
        created += 1
        results.append(ImportRowResult(index=row.index, status="created", id=record.id))

    logger.info(
        "Imported %s %s rows for user %s (%s failed, %s skipped)",
        created, payload.kind, current_user.id, failed, result.invalid,
    )
    return ImportOutcome(
        summary=_import_summary(result),
        created=created,
        failed=failed,
        results=results,
    )


# EXPORT
@app.get("/api/export")
def export_data(
    format: str = "zip",
    scope: str = "all",
    year: Optional[int] = Query(None, ge=1900, le=9999),
    month: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Download every record as JSON or as a ZIP of CSV tables."""
    if format not in exporter.FORMATS:
        raise HTTPException(status_code=400, detail="Invalid format (zip or json)")
    if scope not in exporter.SCOPES:
        raise HTTPException(status_code=400, detail="Invalid scope (all or month)")

    today = dt.date.today()
    year = year or today.year
    month = month or today.month
    date_range = None
    if scope == "month":
        try:
            date_range = utils.month_bounds(year, month)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    generated_at = dt.datetime.now(dt.timezone.utc)
    try:
        content, media_type = exporter.build_export(
            session,
            current_user,
            export_format=format,
            scope=scope,
            generated_at=generated_at,
            date_range=date_range,
            year=year,
            month=month,
        )
    except exporter.ExportError as exc:
        logger.error("Export failed for user %s: %s", current_user.id, exc)
        raise HTTPException(status_code=500, detail="Export failed")

    filename = exporter.export_filename(settings.EXPORT_PREFIX, generated_at, format)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# SUMMARY / STATS
@app.get("/api/summary")
def get_summary(
    year: Optional[int] = Query(None, ge=1900, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    period: str = Query("month", pattern="^(month|year)$"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """KPIs, budget usage and chart series for a month or a whole year."""
    today = dt.date.today()
    year = year or today.year
    if period == "year":
        month = None
    elif month is None:
        month = today.month

    start, end = utils.period_bounds(year, month, period)
    prev_year, prev_month = utils.previous_period(year, month, period)
    prev_start, prev_end = utils.period_bounds(prev_year, prev_month, period)
    year_start, year_end = dt.date(year, 1, 1), dt.date(year, 12, 31)

    # one query per table covering the previous period and the whole year
    window_start = min(prev_start, year_start)
    incomes = session.exec(
        select(Income).where(
            Income.user_id == current_user.id,
            Income.date >= window_start,
            Income.date <= year_end,
        )
    ).all()
    expenses = session.exec(
        select(Expense).where(
            Expense.user_id == current_user.id,
            Expense.date >= window_start,
            Expense.date <= year_end,
        )
    ).all()
    budgets = session.exec(select(Budget).where(Budget.user_id == current_user.id)).all()

    current_expenses = utils.in_period(expenses, start, end)
    current = utils.compute_summary(utils.in_period(incomes, start, end), current_expenses)
    previous = utils.compute_summary(
        utils.in_period(incomes, prev_start, prev_end),
        utils.in_period(expenses, prev_start, prev_end),
    )

    monthly_budget = sum(float(b.monthly_amount) for b in budgets)
    displayed_budget = monthly_budget * 12 if period == "year" else monthly_budget
    ratio = utils.budget_ratio(current["expense_total"], displayed_budget)

    projected = None
    if period == "month" and (year, month) == (today.year, today.month):
        projected = utils.projected_month_end(current["expense_total"], today)

    return {
        "kpi": {
            "income": current["income_total"],
            "expenses": current["expense_total"],
            "savings": current["balance"],
            "savings_rate": utils.savings_rate(current["income_total"], current["expense_total"]),
            "trends": {
                "income": utils.calc_trend(current["income_total"], previous["income_total"]),
                "expenses": utils.calc_trend(current["expense_total"], previous["expense_total"]),
                "savings": utils.calc_trend(current["balance"], previous["balance"], signed=True),
            },
        },
        "budget": {
            "total": round(displayed_budget, 2),
            "usage": current["expense_total"],
            "ratio": ratio,
            "status": utils.budget_status(ratio),
            "projected": projected,
        },
        "charts": {
            "monthly": utils.monthly_series(
                utils.in_period(incomes, year_start, year_end),
                utils.in_period(expenses, year_start, year_end),
                year,
            ),
            "categories": utils.breakdown(utils.category_totals(current_expenses)),
            "types": utils.breakdown(utils.category_totals(current_expenses, key="expense_type")),
        },
        "meta": {"year": year, "month": month, "period": period},
    }


@app.get("/api/net-worth")
def get_net_worth(
    as_of: Optional[dt.date] = None,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Cash plus investments, from the latest snapshot of every account."""
    cash = session.exec(select(CashSnapshot).where(CashSnapshot.user_id == current_user.id)).all()
    investments = session.exec(
        select(Investment).where(Investment.user_id == current_user.id)
    ).all()
    if as_of is not None:
        cash = [c for c in cash if c.date <= as_of]
        investments = [i for i in investments if i.date <= as_of]

    cash_total = utils.current_total(cash)
    investment_total = utils.current_total(investments)
    contributions = utils.total_contributions(investments)

    account_values = {
        ("cash", account): float(snap.current_value)
        for account, snap in utils.latest_per_account(cash).items()
    }
    account_values.update({
        ("investment", account): float(inv.current_value)
        for account, inv in utils.latest_per_account(investments).items()
    })
    weights = utils.percentage_of_total(account_values)
    accounts = sorted(
        (
            {"type": kind, "account": account, "value": value, "weight": weights[(kind, account)]}
            for (kind, account), value in account_values.items()
        ),
        key=lambda row: row["value"],
        reverse=True,
    )

    return {
        "as_of": as_of,
        "cash": cash_total,
        "investments": investment_total,
        "contributions": contributions,
        "investment_gain": round(investment_total - contributions, 2),
        "net_worth": round(cash_total + investment_total, 2),
        "accounts": accounts,
        "asset_types": utils.breakdown(utils.asset_type_totals(investments)),
        "performance": utils.investment_performance(investments),
    }
