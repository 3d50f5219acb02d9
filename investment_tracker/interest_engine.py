from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from investment_tracker.errors import (
    AlreadyConfirmedError,
    LockedPeriodError,
    ValidationError,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
MONTHS_PER_YEAR = Decimal("12")
PERCENT = Decimal("100")
DEFAULT_HORIZON_MONTHS = 12
MAX_PROFIT_LOCK_PERIOD = 60

RATE_TYPES = {"MONTHLY", "ANNUAL"}
REINVESTMENT_TYPES = {"COMPOUND", "WITHDRAWAL"}
RATE_BOUNDS = {
    "ANNUAL": Decimal("100"),
    "MONTHLY": Decimal("20"),
}

STATE_LOCKED = "locked"
STATE_PENDING = "pending"
STATE_CONFIRMED = "confirmed"


@dataclass(frozen=True)
class Investment:
    id: int
    name: str
    initial_capital: Decimal
    current_capital: Decimal
    interest_rate: Decimal
    rate_type: str
    start_date: date
    profit_lock_period: int
    reinvestment_type: str = "COMPOUND"
    total_interest_earned: Decimal = ZERO
    total_reinvested: Decimal = ZERO
    total_expenses: Decimal = ZERO


@dataclass(frozen=True)
class MonthlyInterest:
    month: date
    amount: Decimal
    reinvested_amount: Decimal
    expenses_amount: Decimal
    interest_rate: Decimal
    confirmed: bool = True
    confirmed_at: Optional[datetime] = None
    investment_id: Optional[int] = None
    id: Optional[int] = None

    @property
    def reinvested(self) -> bool:
        return self.reinvested_amount > ZERO


@dataclass(frozen=True)
class AggregateDeltas:
    current_capital: Decimal
    total_interest_earned: Decimal
    total_reinvested: Decimal
    total_expenses: Decimal


@dataclass(frozen=True)
class Confirmation:
    record: MonthlyInterest
    deltas: AggregateDeltas
    investment: Investment


@dataclass(frozen=True)
class ScheduleEntry:
    month: date
    state: str
    claimable: bool
    expected_amount: Decimal
    record: Optional[MonthlyInterest] = None


def month_start(value: date) -> date:
    if isinstance(value, datetime):
        value = value.date()
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def months_between(later: date, earlier: date) -> int:
    """Calendar-month distance, ignoring the day of month."""
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def normalize_rate_type(value: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in RATE_TYPES:
        raise ValidationError("Rate type must be either 'MONTHLY' or 'ANNUAL'.")
    return normalized


def normalize_reinvestment_type(value: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in REINVESTMENT_TYPES:
        raise ValidationError(
            "Reinvestment type must be either 'COMPOUND' or 'WITHDRAWAL'."
        )
    return normalized


def validate_interest_rate(interest_rate: Decimal, rate_type: str) -> Decimal:
    rate_type = normalize_rate_type(rate_type)
    rate = _coerce_amount(interest_rate)
    upper = RATE_BOUNDS[rate_type]
    if not _has_max_places(rate, RATE_PLACES):
        raise ValidationError("Interest rate can have at most 4 decimal places.")
    if rate < ZERO or rate > upper:
        period = "annual" if rate_type == "ANNUAL" else "monthly"
        raise ValidationError(
            f"The {period} interest rate must be between 0 and {upper}%."
        )
    return rate


def validate_profit_lock_period(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Profit lock period must be a whole number of months.")
    if value < 0 or value > MAX_PROFIT_LOCK_PERIOD:
        raise ValidationError(
            f"Profit lock period must be between 0 and {MAX_PROFIT_LOCK_PERIOD} months."
        )
    return value


def validate_initial_capital(value: Decimal) -> Decimal:
    amount = _coerce_amount(value)
    if amount <= ZERO:
        raise ValidationError("Initial capital must be greater than zero.")
    if not _has_max_places(amount, CENT):
        raise ValidationError("Initial capital cannot have fractions of a cent.")
    return amount


def compute_monthly_rate(interest_rate: Decimal, rate_type: str) -> Decimal:
    rate = _coerce_amount(interest_rate)
    if normalize_rate_type(rate_type) == "ANNUAL":
        return rate / MONTHS_PER_YEAR / PERCENT
    return rate / PERCENT


def first_eligible_month(investment: Investment) -> date:
    return shift_month(month_start(investment.start_date), 1)


def max_future_month(today: date, horizon_months: int = DEFAULT_HORIZON_MONTHS) -> date:
    return shift_month(month_start(today), horizon_months)


def earliest_claimable_month(investment: Investment) -> date:
    unlocked = shift_month(
        month_start(investment.start_date), investment.profit_lock_period
    )
    return max(first_eligible_month(investment), unlocked)


def is_claimable(investment: Investment, month: date) -> bool:
    months_from_start = months_between(
        month_start(month), month_start(investment.start_date)
    )
    return months_from_start >= investment.profit_lock_period


def eligible_months(
    investment: Investment,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
    today: Optional[date] = None,
) -> List[date]:
    if today is None:
        today = date.today()
    cursor = first_eligible_month(investment)
    last = max_future_month(today, horizon_months)
    months: List[date] = []
    while cursor <= last:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def effective_capital(
    investment: Investment,
    target_month: date,
    records: Iterable[MonthlyInterest] = (),
) -> Decimal:
    target = month_start(target_month)
    capital = _coerce_amount(investment.initial_capital)
    for record in records:
        if record.confirmed and month_start(record.month) < target:
            capital += _coerce_amount(record.reinvested_amount)
    return capital


def expected_interest(
    investment: Investment,
    target_month: date,
    records: Iterable[MonthlyInterest] = (),
) -> Decimal:
    records = list(records)
    existing = _find_confirmed(records, target_month)
    if existing is not None:
        return _coerce_amount(existing.amount)
    capital = effective_capital(investment, target_month, records)
    rate = compute_monthly_rate(investment.interest_rate, investment.rate_type)
    return _round_cents(capital * rate)


def interest_schedule(
    investment: Investment,
    records: Iterable[MonthlyInterest] = (),
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
    today: Optional[date] = None,
) -> List[ScheduleEntry]:
    records = list(records)
    entries: List[ScheduleEntry] = []
    for month in eligible_months(investment, horizon_months, today):
        record = _find_confirmed(records, month)
        claimable = is_claimable(investment, month)
        if record is not None:
            state = STATE_CONFIRMED
        elif claimable:
            state = STATE_PENDING
        else:
            state = STATE_LOCKED
        entries.append(
            ScheduleEntry(
                month=month,
                state=state,
                claimable=claimable,
                expected_amount=expected_interest(investment, month, records),
                record=record,
            )
        )
    return entries


def confirm_interest(
    investment: Investment,
    month: date,
    total_amount: Decimal,
    reinvested_amount: Decimal,
    records: Iterable[MonthlyInterest] = (),
    now: Optional[datetime] = None,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
) -> Confirmation:
    if now is None:
        now = datetime.now()
    target = month_start(month)
    label = target.strftime("%B %Y")

    if _find_confirmed(records, target) is not None:
        raise AlreadyConfirmedError(f"Interest for {label} is already confirmed.")

    earliest = earliest_claimable_month(investment)
    first = first_eligible_month(investment)
    if target < first:
        raise LockedPeriodError(
            f"Interest starts accruing from {first.strftime('%B %Y')}.",
            earliest_month=earliest,
        )
    if target > max_future_month(now.date(), horizon_months):
        raise LockedPeriodError(
            f"Cannot confirm interest more than {horizon_months} months ahead.",
            earliest_month=earliest,
        )
    if not is_claimable(investment, target):
        raise LockedPeriodError(
            f"{label} is locked. Interest can be claimed from "
            f"{earliest.strftime('%B %Y')}.",
            earliest_month=earliest,
        )

    if total_amount is None:
        raise ValidationError("Interest amount is required.")
    total = _coerce_amount(total_amount)
    reinvested = _coerce_amount(reinvested_amount if reinvested_amount is not None else ZERO)
    if total <= ZERO:
        raise ValidationError("Interest amount must be greater than zero.")
    if reinvested < ZERO:
        raise ValidationError("Reinvested amount cannot be negative.")
    if not _has_max_places(total, CENT) or not _has_max_places(reinvested, CENT):
        raise ValidationError("Amounts cannot have fractions of a cent.")
    if reinvested > total:
        raise ValidationError("Reinvested amount cannot exceed the interest amount.")

    expenses = total - reinvested
    record = MonthlyInterest(
        month=target,
        amount=total,
        reinvested_amount=reinvested,
        expenses_amount=expenses,
        interest_rate=_coerce_amount(investment.interest_rate),
        confirmed=True,
        confirmed_at=now,
        investment_id=investment.id,
    )
    deltas = AggregateDeltas(
        current_capital=reinvested,
        total_interest_earned=total,
        total_reinvested=reinvested,
        total_expenses=expenses,
    )
    return Confirmation(
        record=record,
        deltas=deltas,
        investment=apply_deltas(investment, deltas),
    )


def apply_deltas(investment: Investment, deltas: AggregateDeltas) -> Investment:
    return replace(
        investment,
        current_capital=_coerce_amount(investment.current_capital) + deltas.current_capital,
        total_interest_earned=_coerce_amount(investment.total_interest_earned)
        + deltas.total_interest_earned,
        total_reinvested=_coerce_amount(investment.total_reinvested)
        + deltas.total_reinvested,
        total_expenses=_coerce_amount(investment.total_expenses) + deltas.total_expenses,
    )


def update_interest_rate(investment: Investment, new_rate: Decimal) -> Investment:
    rate = validate_interest_rate(new_rate, investment.rate_type)
    return replace(investment, interest_rate=rate)


def default_reinvested_amount(investment: Investment, total_amount: Decimal) -> Decimal:
    if investment.reinvestment_type == "WITHDRAWAL":
        return ZERO
    return _coerce_amount(total_amount)


def _find_confirmed(
    records: Iterable[MonthlyInterest], month: date
) -> Optional[MonthlyInterest]:
    target = month_start(month)
    for record in records:
        if record.confirmed and month_start(record.month) == target:
            return record
    return None


def _has_max_places(amount: Decimal, exponent: Decimal) -> bool:
    return amount == amount.quantize(exponent, rounding=ROUND_HALF_UP)


def _round_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
