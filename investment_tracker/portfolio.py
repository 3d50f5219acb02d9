from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from investment_tracker.interest_engine import (
    ZERO,
    Investment,
    compute_monthly_rate,
    month_start,
    months_between,
)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PortfolioMetrics:
    investment_count: int
    total_invested: Decimal
    total_current: Decimal
    total_earned: Decimal
    total_interest_earned: Decimal
    total_reinvested: Decimal
    total_expenses: Decimal
    average_interest_rate: Decimal


def total_earnings(investment: Investment) -> Decimal:
    return _coerce_amount(investment.current_capital) - _coerce_amount(
        investment.initial_capital
    )


def months_since_start(start_date: date, today: Optional[date] = None) -> int:
    if today is None:
        today = date.today()
    return months_between(month_start(today), month_start(start_date))


def compound_projection(
    principal: Decimal,
    interest_rate: Decimal,
    months: int,
    rate_type: str = "ANNUAL",
) -> Decimal:
    if months < 0:
        raise ValueError("months must be zero or greater.")
    monthly_rate = compute_monthly_rate(interest_rate, rate_type)
    projected = _coerce_amount(principal) * (Decimal("1") + monthly_rate) ** months
    return projected.quantize(CENT, rounding=ROUND_HALF_UP)


def portfolio_metrics(investments: Iterable[Investment]) -> PortfolioMetrics:
    items = list(investments)
    total_invested = sum((_coerce_amount(i.initial_capital) for i in items), ZERO)
    total_current = sum((_coerce_amount(i.current_capital) for i in items), ZERO)
    rate_sum = sum((_coerce_amount(i.interest_rate) for i in items), ZERO)
    average_rate = (rate_sum / len(items)).quantize(CENT) if items else ZERO
    return PortfolioMetrics(
        investment_count=len(items),
        total_invested=total_invested,
        total_current=total_current,
        total_earned=total_current - total_invested,
        total_interest_earned=sum(
            (_coerce_amount(i.total_interest_earned) for i in items), ZERO
        ),
        total_reinvested=sum((_coerce_amount(i.total_reinvested) for i in items), ZERO),
        total_expenses=sum((_coerce_amount(i.total_expenses) for i in items), ZERO),
        average_interest_rate=average_rate,
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
