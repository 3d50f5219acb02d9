import logging
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError

from investment_tracker import config
from investment_tracker.errors import InvestmentTrackerError, LockedPeriodError
from investment_tracker.interest_engine import (
    Investment,
    MonthlyInterest,
    ScheduleEntry,
    month_start,
    normalize_rate_type,
    normalize_reinvestment_type,
    validate_initial_capital,
    validate_interest_rate,
    validate_profit_lock_period,
)
from investment_tracker.interest_service import (
    change_interest_rate,
    confirm_monthly_interest,
    load_schedule,
)
from investment_tracker.portfolio import (
    compound_projection,
    months_since_start,
    portfolio_metrics,
    total_earnings,
)
from investment_tracker.store import (
    InvestmentStore,
    investment_from_row,
    metadata,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if config.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(config.DATABASE_URL, connect_args=connect_args)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(InvestmentTrackerError)
async def handle_tracker_error(request: Request, exc: InvestmentTrackerError) -> JSONResponse:
    content = {"detail": exc.message}
    if isinstance(exc, LockedPeriodError) and exc.earliest_month is not None:
        content["earliest_month"] = exc.earliest_month.isoformat()
    return JSONResponse(status_code=exc.status_code, content=content)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class SignupPayload(CredentialsPayload):
    name: str

    @classmethod
    def validate_payload(cls, payload: "SignupPayload") -> "SignupPayload":
        payload.name = payload.name.strip()
        payload.email = payload.email.strip().lower()
        if not payload.name or not payload.email or not payload.password:
            raise ValueError("Name, email and password required.")
        return payload


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    preferred_currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    preferred_currency: str


class InvestmentPayload(BaseModel):
    name: str
    initial_capital: Decimal
    interest_rate: Decimal
    rate_type: str
    start_date: date
    profit_lock_period: int = 1
    reinvestment_type: str = "COMPOUND"

    @classmethod
    def validate_payload(cls, payload: "InvestmentPayload") -> "InvestmentPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Investment name required.")
        payload.rate_type = normalize_rate_type(payload.rate_type)
        payload.reinvestment_type = normalize_reinvestment_type(payload.reinvestment_type)
        payload.initial_capital = validate_initial_capital(payload.initial_capital)
        payload.interest_rate = validate_interest_rate(payload.interest_rate, payload.rate_type)
        payload.profit_lock_period = validate_profit_lock_period(payload.profit_lock_period)
        return payload


class InvestmentUpdatePayload(BaseModel):
    name: str | None = None
    interest_rate: Decimal | None = None
    reinvestment_type: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "InvestmentUpdatePayload"
    ) -> "InvestmentUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Investment name required.")
        if payload.reinvestment_type is not None:
            payload.reinvestment_type = normalize_reinvestment_type(
                payload.reinvestment_type
            )
        return payload


class MonthlyInterestResponse(BaseModel):
    id: int | None = None
    investment_id: int | None = None
    month: date
    amount: Decimal
    reinvested: bool
    reinvested_amount: Decimal
    expenses_amount: Decimal
    confirmed: bool
    confirmed_at: datetime | None = None
    interest_rate: Decimal


class InvestmentResponse(BaseModel):
    id: int
    user_id: int
    name: str
    initial_capital: Decimal
    current_capital: Decimal
    interest_rate: Decimal
    rate_type: str
    reinvestment_type: str
    start_date: date
    profit_lock_period: int
    total_interest_earned: Decimal
    total_reinvested: Decimal
    total_expenses: Decimal
    created_at: datetime | None = None
    updated_at: datetime | None = None
    monthly_interests: list[MonthlyInterestResponse] | None = None


class ScheduleEntryResponse(BaseModel):
    month: date
    state: str
    claimable: bool
    expected_amount: Decimal
    record: MonthlyInterestResponse | None = None


class ConfirmInterestPayload(BaseModel):
    month: str
    amount: Decimal | None = None
    reinvested_amount: Decimal | None = None


class ConfirmInterestResponse(BaseModel):
    investment: InvestmentResponse
    record: MonthlyInterestResponse


class ProjectionResponse(BaseModel):
    investment_id: int
    months: int
    months_elapsed: int
    principal: Decimal
    projected_capital: Decimal
    projected_earnings: Decimal
    total_earnings: Decimal


class PortfolioSummaryResponse(BaseModel):
    investment_count: int
    total_invested: Decimal
    total_current: Decimal
    total_earned: Decimal
    total_interest_earned: Decimal
    total_reinvested: Decimal
    total_expenses: Decimal
    average_interest_rate: Decimal


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        if not InvestmentStore(conn).find_user(user_id):
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        try:
            return month_start(datetime.strptime(value, "%Y-%m-%d").date())
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def monthly_interest_response(record: MonthlyInterest) -> MonthlyInterestResponse:
    return MonthlyInterestResponse(
        id=record.id,
        investment_id=record.investment_id,
        month=record.month,
        amount=record.amount,
        reinvested=record.reinvested,
        reinvested_amount=record.reinvested_amount,
        expenses_amount=record.expenses_amount,
        confirmed=record.confirmed,
        confirmed_at=record.confirmed_at,
        interest_rate=record.interest_rate,
    )


def investment_response(
    row, records: list[MonthlyInterest] | None = None
) -> InvestmentResponse:
    return InvestmentResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        initial_capital=row["initial_capital"],
        current_capital=row["current_capital"],
        interest_rate=row["interest_rate"],
        rate_type=row["rate_type"],
        reinvestment_type=row["reinvestment_type"],
        start_date=row["start_date"],
        profit_lock_period=row["profit_lock_period"],
        total_interest_earned=row["total_interest_earned"],
        total_reinvested=row["total_reinvested"],
        total_expenses=row["total_expenses"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        monthly_interests=(
            [monthly_interest_response(record) for record in records]
            if records is not None
            else None
        ),
    )


def schedule_entry_response(entry: ScheduleEntry) -> ScheduleEntryResponse:
    return ScheduleEntryResponse(
        month=entry.month,
        state=entry.state,
        claimable=entry.claimable,
        expected_amount=entry.expected_amount,
        record=monthly_interest_response(entry.record) if entry.record else None,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: SignupPayload) -> UserResponse:
    try:
        payload = SignupPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    hashed_password = hash_password(payload.password)

    try:
        with engine.begin() as conn:
            row = InvestmentStore(conn).create_user(
                name=payload.name,
                email=payload.email,
                hashed_password=hashed_password,
                preferred_currency=config.SYSTEM_DEFAULT_CURRENCY,
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    logger.info("Registered user %s", row["id"])
    return UserResponse(
        id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"]
    )


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = InvestmentStore(conn).find_user_by_email(email)

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(
        id=row["id"], name=row["name"], email=row["email"], created_at=row["created_at"]
    )


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = InvestmentStore(conn).find_user(user_id)
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        preferred_currency=row["preferred_currency"] or config.SYSTEM_DEFAULT_CURRENCY,
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.preferred_currency is None:
        raise HTTPException(status_code=400, detail="Preferred currency required.")
    try:
        currency = config.normalize_currency(payload.preferred_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        row = InvestmentStore(conn).update_preferred_currency(user_id, currency)
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        preferred_currency=row["preferred_currency"],
    )


@app.delete("/users/me")
def delete_user(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        InvestmentStore(conn).delete_user(user_id)
    logger.info("Deleted user %s and their investments", user_id)
    return {"status": "deleted"}


@app.get("/investments", response_model=list[InvestmentResponse])
def list_investments(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvestmentResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        store = InvestmentStore(conn)
        rows = store.list_investments(user_id)
        return [
            investment_response(row, store.list_monthly_interests(row["id"]))
            for row in rows
        ]


@app.post("/investments", response_model=InvestmentResponse)
def create_investment(
    payload: InvestmentPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvestmentPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = InvestmentStore(conn).create_investment(
            user_id=user_id,
            name=payload.name,
            initial_capital=payload.initial_capital,
            interest_rate=payload.interest_rate,
            rate_type=payload.rate_type,
            start_date=payload.start_date,
            profit_lock_period=payload.profit_lock_period,
            reinvestment_type=payload.reinvestment_type,
        )

    logger.info("Created investment %s for user %s", row["id"], user_id)
    return investment_response(row, [])


@app.get("/investments/{investment_id}", response_model=InvestmentResponse)
def get_investment(
    investment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        store = InvestmentStore(conn)
        row = store.find_investment(investment_id, user_id)
        records = store.list_monthly_interests(investment_id)
    return investment_response(row, records)


@app.patch("/investments/{investment_id}", response_model=InvestmentResponse)
def update_investment(
    investment_id: int,
    payload: InvestmentUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvestmentUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {}
    if payload.name is not None:
        values["name"] = payload.name
    if payload.reinvestment_type is not None:
        values["reinvestment_type"] = payload.reinvestment_type

    with engine.begin() as conn:
        store = InvestmentStore(conn)
        if payload.interest_rate is not None:
            change_interest_rate(store, user_id, investment_id, payload.interest_rate)
        if values:
            store.update_investment(investment_id, user_id, **values)
        row = store.find_investment(investment_id, user_id)
        records = store.list_monthly_interests(investment_id)
    return investment_response(row, records)


@app.delete("/investments/{investment_id}")
def delete_investment(
    investment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        InvestmentStore(conn).delete_investment(investment_id, user_id)
    logger.info("Deleted investment %s for user %s", investment_id, user_id)
    return {"status": "deleted"}


@app.get(
    "/investments/{investment_id}/monthly-interest",
    response_model=list[ScheduleEntryResponse],
)
def get_interest_schedule(
    investment_id: int,
    horizon: int | None = Query(None, ge=0, le=120),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduleEntryResponse]:
    user_id = get_user_id(x_user_id)
    horizon_months = config.CONFIRMATION_HORIZON_MONTHS if horizon is None else horizon
    with engine.begin() as conn:
        entries = load_schedule(InvestmentStore(conn), user_id, investment_id, horizon_months)
    return [schedule_entry_response(entry) for entry in entries]


@app.post(
    "/investments/{investment_id}/confirm-interest",
    response_model=ConfirmInterestResponse,
)
def confirm_interest(
    investment_id: int,
    payload: ConfirmInterestPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ConfirmInterestResponse:
    user_id = get_user_id(x_user_id)
    try:
        month = parse_month_value(payload.month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        store = InvestmentStore(conn)
        result = confirm_monthly_interest(
            store,
            user_id,
            investment_id,
            month,
            payload.amount,
            payload.reinvested_amount,
            horizon_months=config.CONFIRMATION_HORIZON_MONTHS,
        )
        row = store.find_investment(investment_id, user_id)
        records = store.list_monthly_interests(investment_id)

    return ConfirmInterestResponse(
        investment=investment_response(row, records),
        record=monthly_interest_response(result.record),
    )


@app.get("/investments/{investment_id}/projection", response_model=ProjectionResponse)
def get_projection(
    investment_id: int,
    months: int = Query(12, ge=0, le=600),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ProjectionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        investment = investment_from_row(
            InvestmentStore(conn).find_investment(investment_id, user_id)
        )
    projected = compound_projection(
        investment.current_capital,
        investment.interest_rate,
        months,
        investment.rate_type,
    )
    return ProjectionResponse(
        investment_id=investment.id,
        months=months,
        months_elapsed=months_since_start(investment.start_date),
        principal=investment.current_capital,
        projected_capital=projected,
        projected_earnings=projected - investment.current_capital,
        total_earnings=total_earnings(investment),
    )


@app.get("/portfolio/summary", response_model=PortfolioSummaryResponse)
def portfolio_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PortfolioSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = InvestmentStore(conn).list_investments(user_id)
    investments: list[Investment] = [investment_from_row(row) for row in rows]
    metrics = portfolio_metrics(investments)
    return PortfolioSummaryResponse(
        investment_count=metrics.investment_count,
        total_invested=metrics.total_invested,
        total_current=metrics.total_current,
        total_earned=metrics.total_earned,
        total_interest_earned=metrics.total_interest_earned,
        total_reinvested=metrics.total_reinvested,
        total_expenses=metrics.total_expenses,
        average_interest_rate=metrics.average_interest_rate,
    )
