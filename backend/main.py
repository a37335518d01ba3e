import logging
import os
import uuid
from datetime import date, datetime

import bcrypt
from fastapi import Depends, FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    case,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from backend.assistant import (
    ChatMessage,
    Command,
    GeminiAssistant,
    build_financial_context,
    build_prompt,
    load_assistant_config,
    load_images,
    parse_command,
    route_message,
)
from backend.billing import (
    BillingConfig,
    BillingProviderError,
    InvalidWebhookPayload,
    LemonSqueezyClient,
    WebhookEvent,
    load_billing_config,
    parse_webhook_event,
    verify_signature,
)
from backend.summary_engine import (
    DayPoint,
    MAX_MILLIUNITS,
    PeriodTotals,
    comparison_period,
    fill_missing_days,
    format_milliunits,
    percent_change,
    rank_categories,
    trailing_period,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./vorifi.db")
engine_options: dict = {}
if database_url.startswith("sqlite"):
    engine_options["connect_args"] = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        engine_options["poolclass"] = StaticPool

engine = create_engine(database_url, **engine_options)
metadata = MetaData()

SUMMARY_DAYS = 30

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", BigInteger, nullable=False),
    Column("payee", String(255)),
    Column("date", Date, nullable=False),
    Column("notes", String(500)),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("subscription_id", String(255), unique=True, nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("status", String(50), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class AccountPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    account_id: int
    category_id: int | None = None
    amount: int
    payee: str | None = None
    date: date
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.payee = payload.payee.strip() if payload.payee else None
        payload.notes = payload.notes.strip() if payload.notes else None
        if payload.payee and len(payload.payee) > 255:
            raise ValueError("Payee must be at most 255 characters.")
        if abs(payload.amount) > MAX_MILLIUNITS:
            raise ValueError("Amount is too large.")
        return payload


class TransactionResponse(TransactionPayload):
    id: int
    account: str | None = None
    category: str | None = None


class SummaryCategory(BaseModel):
    name: str
    value: int


class SummaryDay(BaseModel):
    date: date
    income: int
    expenses: int


class SummaryData(BaseModel):
    remainingAmount: int
    remainingChange: float
    incomeAmount: int
    incomeChange: float
    expensesAmount: int
    expensesChange: float
    categories: list[SummaryCategory]
    days: list[SummaryDay]


class SummaryResponse(BaseModel):
    data: SummaryData


class ChatMessagePayload(BaseModel):
    role: str = "user"
    content: str = ""


class ChatData(BaseModel):
    images: str | list[str] | None = None


class ChatPayload(BaseModel):
    messages: list[ChatMessagePayload] = []
    data: ChatData | None = None
    intent: str | None = None


class CommandPayload(BaseModel):
    text: str


class CommandResponse(BaseModel):
    text: str
    command: str
    record_id: int | None = None


class SubscriptionResponse(BaseModel):
    id: str
    subscription_id: str
    user_id: int
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CurrentSubscriptionResponse(BaseModel):
    data: SubscriptionResponse | None = None


class CheckoutResponse(BaseModel):
    data: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Unauthorized.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=401, detail="Unauthorized.")
    return user_id


def get_billing_config() -> BillingConfig:
    return load_billing_config()


def get_billing_client(config: BillingConfig = Depends(get_billing_config)) -> LemonSqueezyClient:
    return LemonSqueezyClient(config)


def get_assistant() -> GeminiAssistant:
    return GeminiAssistant(load_assistant_config())


def parse_date_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Invalid date format. Use YYYY-MM-DD.") from exc


def resolve_period(from_value: str | None, to_value: str | None, today: date) -> tuple[date, date]:
    default_start, default_end = trailing_period(today, SUMMARY_DAYS)
    start_date = parse_date_value(from_value) if from_value else default_start
    end_date = parse_date_value(to_value) if to_value else default_end
    if start_date > end_date:
        raise ValueError("Start date must be on or before end date.")
    return start_date, end_date


def owned_transaction_conditions(
    user_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    account_id: int | None = None,
) -> list:
    conditions = [accounts.c.user_id == user_id]
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    return conditions


def owned_account_ids(user_id: int):
    return select(accounts.c.id).where(accounts.c.user_id == user_id)


def fetch_period_totals(
    user_id: int, start_date: date, end_date: date, account_id: int | None = None
) -> PeriodTotals:
    income_expr = func.coalesce(
        func.sum(case((transactions.c.amount >= 0, transactions.c.amount), else_=0)), 0
    ).label("income")
    expenses_expr = func.coalesce(
        func.sum(case((transactions.c.amount < 0, transactions.c.amount), else_=0)), 0
    ).label("expenses")
    remaining_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("remaining")
    stmt = (
        select(income_expr, expenses_expr, remaining_expr)
        .select_from(transactions.join(accounts, transactions.c.account_id == accounts.c.id))
        .where(*owned_transaction_conditions(user_id, start_date, end_date, account_id))
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().one()
    return PeriodTotals(
        income=int(row["income"]),
        expenses=int(row["expenses"]),
        remaining=int(row["remaining"]),
    )


def fetch_category_totals(
    user_id: int, start_date: date, end_date: date, account_id: int | None = None
) -> dict[str, int]:
    total_expr = func.sum(func.abs(transactions.c.amount)).label("total")
    stmt = (
        select(categories.c.name, total_expr)
        .select_from(
            transactions.join(accounts, transactions.c.account_id == accounts.c.id).join(
                categories, transactions.c.category_id == categories.c.id
            )
        )
        .where(
            *owned_transaction_conditions(user_id, start_date, end_date, account_id),
            transactions.c.amount < 0,
        )
        .group_by(categories.c.name)
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return {row["name"]: int(row["total"] or 0) for row in rows}


def fetch_active_days(
    user_id: int, start_date: date, end_date: date, account_id: int | None = None
) -> list[DayPoint]:
    income_expr = func.sum(
        case((transactions.c.amount >= 0, transactions.c.amount), else_=0)
    ).label("income")
    expenses_expr = func.sum(
        case((transactions.c.amount < 0, -transactions.c.amount), else_=0)
    ).label("expenses")
    stmt = (
        select(transactions.c.date, income_expr, expenses_expr)
        .select_from(transactions.join(accounts, transactions.c.account_id == accounts.c.id))
        .where(*owned_transaction_conditions(user_id, start_date, end_date, account_id))
        .group_by(transactions.c.date)
        .order_by(transactions.c.date.asc())
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [
        DayPoint(date=row["date"], income=int(row["income"] or 0), expenses=int(row["expenses"] or 0))
        for row in rows
    ]


def ensure_account_owned(conn, user_id: int, account_id: int) -> None:
    account_exists = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    if not account_exists:
        raise HTTPException(status_code=404, detail="Account not found.")


def ensure_category_owned(conn, user_id: int, category_id: int | None) -> None:
    if category_id is None:
        return
    category_exists = conn.execute(
        select(categories.c.id).where(categories.c.id == category_id, categories.c.user_id == user_id)
    ).first()
    if not category_exists:
        raise HTTPException(status_code=404, detail="Category not found.")


def category_in_use(conn, category_id: int) -> bool:
    txn_match = conn.execute(
        select(transactions.c.id).where(transactions.c.category_id == category_id).limit(1)
    ).first()
    return bool(txn_match)


def fetch_transaction(conn, user_id: int, transaction_id: int) -> TransactionResponse | None:
    stmt = (
        select(
            transactions,
            accounts.c.name.label("account"),
            categories.c.name.label("category"),
        )
        .select_from(
            transactions.join(accounts, transactions.c.account_id == accounts.c.id).outerjoin(
                categories, transactions.c.category_id == categories.c.id
            )
        )
        .where(transactions.c.id == transaction_id, accounts.c.user_id == user_id)
    )
    row = conn.execute(stmt).mappings().first()
    return transaction_from_row(row) if row else None


def transaction_from_row(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        amount=row["amount"],
        payee=row["payee"],
        date=row["date"],
        notes=row["notes"],
        account=row["account"],
        category=row["category"],
    )


def find_by_name(conn, table: Table, user_id: int, name: str) -> int | None:
    return conn.execute(
        select(table.c.id)
        .where(table.c.user_id == user_id, func.lower(table.c.name) == name.strip().lower())
        .order_by(table.c.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def resolve_command_account(conn, user_id: int, name: str | None) -> int:
    if name:
        account_id = find_by_name(conn, accounts, user_id, name)
        if account_id is None:
            raise HTTPException(status_code=404, detail=f"Account '{name}' not found.")
        return account_id
    owned = conn.execute(owned_account_ids(user_id).limit(2)).scalars().all()
    if len(owned) != 1:
        raise HTTPException(status_code=400, detail="Say which account to use, e.g. 'to Checking'.")
    return owned[0]


def execute_command(user_id: int, command: Command) -> CommandResponse:
    if command.action == "create_account":
        with engine.begin() as conn:
            record_id = conn.execute(
                insert(accounts).values(user_id=user_id, name=command.name).returning(accounts.c.id)
            ).scalar_one()
        return CommandResponse(
            text=f"Created account {command.name}.", command=command.action, record_id=record_id
        )

    if command.action == "create_category":
        try:
            with engine.begin() as conn:
                record_id = conn.execute(
                    insert(categories)
                    .values(user_id=user_id, name=command.name)
                    .returning(categories.c.id)
                ).scalar_one()
        except IntegrityError as exc:
            raise HTTPException(status_code=409, detail="Category already exists.") from exc
        return CommandResponse(
            text=f"Created category {command.name}.", command=command.action, record_id=record_id
        )

    if command.action == "create_transaction":
        with engine.begin() as conn:
            account_id = resolve_command_account(conn, user_id, command.account)
            category_id = None
            if command.category:
                category_id = find_by_name(conn, categories, user_id, command.category)
                if category_id is None:
                    raise HTTPException(
                        status_code=404, detail=f"Category '{command.category}' not found."
                    )
            record_id = conn.execute(
                insert(transactions)
                .values(
                    account_id=account_id,
                    category_id=category_id,
                    amount=command.amount,
                    payee=command.payee,
                    date=date.today(),
                )
                .returning(transactions.c.id)
            ).scalar_one()
        kind = "income" if command.amount >= 0 else "expense"
        return CommandResponse(
            text=f"Recorded {kind} of {format_milliunits(abs(command.amount))}.",
            command=command.action,
            record_id=record_id,
        )

    raise HTTPException(status_code=400, detail="Unsupported command.")


def record_subscription_event(event: WebhookEvent) -> None:
    with engine.begin() as conn:
        user_exists = conn.execute(select(users.c.id).where(users.c.id == event.user_id)).first()
        if not user_exists:
            raise HTTPException(status_code=400, detail="Unknown user.")
        existing = conn.execute(
            select(subscriptions.c.id).where(
                subscriptions.c.subscription_id == event.subscription_id
            )
        ).first()
        if existing:
            conn.execute(
                update(subscriptions)
                .where(subscriptions.c.id == existing[0])
                .values(user_id=event.user_id, status=event.status, updated_at=func.now())
            )
        else:
            conn.execute(
                insert(subscriptions).values(
                    id=uuid.uuid4().hex,
                    subscription_id=event.subscription_id,
                    user_id=event.user_id,
                    status=event.status,
                )
            )
    logger.info(
        "Recorded %s for subscription %s (status=%s)",
        event.event_name,
        event.subscription_id,
        event.status,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.name.asc(), accounts.c.id.asc())
        )
        rows = result.mappings().all()
    return [
        AccountResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(accounts)
        .values(user_id=user_id, name=payload.name)
        .returning(accounts.c.id, accounts.c.user_id, accounts.c.name, accounts.c.created_at)
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        row = result.mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(name=payload.name)
        .returning(accounts.c.id, accounts.c.user_id, accounts.c.name, accounts.c.created_at)
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        row = result.mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_account_owned(conn, user_id, account_id)
        conn.execute(transactions.delete().where(transactions.c.account_id == account_id))
        conn.execute(accounts.delete().where(accounts.c.id == account_id))
    return {"status": "deleted"}


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            select(categories)
            .where(categories.c.user_id == user_id)
            .order_by(categories.c.name.asc(), categories.c.id.asc())
        )
        rows = result.mappings().all()
    return [
        CategoryResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name)
        .returning(
            categories.c.id,
            categories.c.user_id,
            categories.c.name,
            categories.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(categories)
        .where(categories.c.id == category_id, categories.c.user_id == user_id)
        .values(name=payload.name)
        .returning(
            categories.c.id,
            categories.c.user_id,
            categories.c.name,
            categories.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_category_owned(conn, user_id, category_id)
        if category_in_use(conn, category_id):
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(categories.delete().where(categories.c.id == category_id))
    return {"status": "deleted"}


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    account_id: int | None = Query(None, alias="accountId"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        start_date, end_date = resolve_period(from_value, to_value, date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        select(
            transactions,
            accounts.c.name.label("account"),
            categories.c.name.label("category"),
        )
        .select_from(
            transactions.join(accounts, transactions.c.account_id == accounts.c.id).outerjoin(
                categories, transactions.c.category_id == categories.c.id
            )
        )
        .where(*owned_transaction_conditions(user_id, start_date, end_date, account_id))
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
    )
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [transaction_from_row(row) for row in rows]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_account_owned(conn, user_id, payload.account_id)
        ensure_category_owned(conn, user_id, payload.category_id)
        transaction_id = conn.execute(
            insert(transactions)
            .values(
                account_id=payload.account_id,
                category_id=payload.category_id,
                amount=payload.amount,
                payee=payload.payee,
                date=payload.date,
                notes=payload.notes,
            )
            .returning(transactions.c.id)
        ).scalar_one()
        created = fetch_transaction(conn, user_id, transaction_id)

    if not created:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return created


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if not fetch_transaction(conn, user_id, transaction_id):
            raise HTTPException(status_code=404, detail="Transaction not found.")
        ensure_account_owned(conn, user_id, payload.account_id)
        ensure_category_owned(conn, user_id, payload.category_id)
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id)
            .values(
                account_id=payload.account_id,
                category_id=payload.category_id,
                amount=payload.amount,
                payee=payload.payee,
                date=payload.date,
                notes=payload.notes,
            )
        )
        updated = fetch_transaction(conn, user_id, transaction_id)

    if not updated:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return updated


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = transactions.delete().where(
        transactions.c.id == transaction_id,
        transactions.c.account_id.in_(owned_account_ids(user_id)),
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@app.get("/summary", response_model=SummaryResponse)
def financial_summary(
    from_value: str | None = Query(None, alias="from"),
    to_value: str | None = Query(None, alias="to"),
    account_id: int | None = Query(None, alias="accountId"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SummaryResponse:
    user_id = get_user_id(x_user_id)
    try:
        start_date, end_date = resolve_period(from_value, to_value, date.today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    last_start_date, last_end_date = comparison_period(start_date, end_date)

    current_period = fetch_period_totals(user_id, start_date, end_date, account_id)
    last_period = fetch_period_totals(user_id, last_start_date, last_end_date, account_id)
    ranked_categories = rank_categories(
        fetch_category_totals(user_id, start_date, end_date, account_id)
    )
    days = fill_missing_days(
        fetch_active_days(user_id, start_date, end_date, account_id), start_date, end_date
    )

    return SummaryResponse(
        data=SummaryData(
            remainingAmount=current_period.remaining,
            remainingChange=percent_change(current_period.remaining, last_period.remaining),
            incomeAmount=current_period.income,
            incomeChange=percent_change(current_period.income, last_period.income),
            expensesAmount=current_period.expenses,
            expensesChange=percent_change(current_period.expenses, last_period.expenses),
            categories=[
                SummaryCategory(name=entry.name, value=entry.value) for entry in ranked_categories
            ],
            days=[
                SummaryDay(date=point.date, income=point.income, expenses=point.expenses)
                for point in days
            ],
        )
    )


@app.post("/ai", response_model=None)
def chat(
    payload: ChatPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    assistant: GeminiAssistant = Depends(get_assistant),
):
    user_id = get_user_id(x_user_id)
    try:
        messages = [ChatMessage(role=item.role, content=item.content) for item in payload.messages]
        if not messages:
            raise ValueError("No content is provided for sending chat message.")
        latest = messages[-1].content
        command = route_message(payload.intent, latest)
        if command is not None:
            reply = execute_command(user_id, command)
            return {"text": reply.text, "command": reply.command}

        images = load_images(payload.data.images if payload.data else None)
        start_date, end_date = trailing_period(date.today(), SUMMARY_DAYS)
        context = build_financial_context(fetch_period_totals(user_id, start_date, end_date))
        text = assistant.generate(build_prompt(context, messages, images))
    except Exception:
        logger.exception("Chat request failed for user %s", user_id)
        return PlainTextResponse("Internal Server Error", status_code=500)
    return {"text": text}


@app.post("/ai/command", response_model=CommandResponse)
def run_command(
    payload: CommandPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CommandResponse:
    user_id = get_user_id(x_user_id)
    try:
        command = parse_command(payload.text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return execute_command(user_id, command)


@app.get("/subscriptions/current", response_model=CurrentSubscriptionResponse)
def current_subscription(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrentSubscriptionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.updated_at.desc(), subscriptions.c.created_at.desc())
            .limit(1)
        ).mappings().first()
    if not row:
        return CurrentSubscriptionResponse(data=None)
    return CurrentSubscriptionResponse(data=SubscriptionResponse(**row))


@app.post("/subscriptions/checkout", response_model=CheckoutResponse)
def create_subscription_checkout(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    billing: LemonSqueezyClient = Depends(get_billing_client),
):
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing_subscription_id = conn.execute(
            select(subscriptions.c.subscription_id)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.updated_at.desc())
            .limit(1)
        ).scalar_one_or_none()
    try:
        if existing_subscription_id:
            url = billing.get_customer_portal_url(existing_subscription_id)
        else:
            url = billing.create_checkout(user_id)
    except BillingProviderError:
        logger.exception("Checkout failed for user %s", user_id)
        return JSONResponse({"error": "Internal error"}, status_code=500)
    return CheckoutResponse(data=url)


@app.post("/subscriptions/webhook")
async def subscription_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="x-signature"),
    config: BillingConfig = Depends(get_billing_config),
) -> dict:
    body = await request.body()
    if not config.webhook_secret:
        logger.warning("Webhook received but LEMONSQUEEZY_WEBHOOK_SECRET is not set.")
    if not verify_signature(body, x_signature, config.webhook_secret):
        logger.warning("Rejected webhook with invalid signature.")
        raise HTTPException(status_code=401, detail="Unauthorized.")
    try:
        event = parse_webhook_event(body)
    except InvalidWebhookPayload as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if event is not None:
        record_subscription_event(event)
    return {}
