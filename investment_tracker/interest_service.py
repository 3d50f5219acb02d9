from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from investment_tracker.errors import PersistenceError, ValidationError
from investment_tracker.interest_engine import (
    DEFAULT_HORIZON_MONTHS,
    Investment,
    MonthlyInterest,
    ScheduleEntry,
    confirm_interest,
    default_reinvested_amount,
    interest_schedule,
    update_interest_rate,
)
from investment_tracker.store import InvestmentStore, investment_from_row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    investment: Investment
    record: MonthlyInterest


def confirm_monthly_interest(
    store: InvestmentStore,
    user_id: int,
    investment_id: int,
    month: date,
    amount: Optional[Decimal],
    reinvested_amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
) -> ConfirmationResult:
    """Confirm one month of interest and roll it into the investment totals.

    The record write and the aggregate update share the store's connection,
    so they commit or roll back as one unit with the caller's transaction.
    Store failures other than classified ones surface as ``PersistenceError``.
    """
    try:
        investment = investment_from_row(store.find_investment(investment_id, user_id))
        records = store.list_monthly_interests(investment_id)

        if reinvested_amount is None and amount is not None:
            reinvested_amount = default_reinvested_amount(investment, amount)

        confirmation = confirm_interest(
            investment,
            month,
            amount,
            reinvested_amount,
            records=records,
            now=now,
            horizon_months=horizon_months,
        )
        record = store.upsert_monthly_interest(confirmation.record)
        updated = investment_from_row(
            store.update_investment_aggregates(investment_id, confirmation.deltas)
        )
    except SQLAlchemyError as exc:
        logger.exception("Failed to confirm interest for investment %s", investment_id)
        raise PersistenceError("Failed to confirm interest.") from exc

    logger.info(
        "Confirmed interest for investment %s, month %s: amount=%s reinvested=%s",
        investment_id,
        record.month,
        record.amount,
        record.reinvested_amount,
    )
    return ConfirmationResult(investment=updated, record=record)


def change_interest_rate(
    store: InvestmentStore,
    user_id: int,
    investment_id: int,
    new_rate: Decimal,
) -> Investment:
    if new_rate is None:
        raise ValidationError("Interest rate is required.")
    try:
        investment = investment_from_row(store.find_investment(investment_id, user_id))
        updated = update_interest_rate(investment, new_rate)
        row = store.update_investment(
            investment_id, user_id, interest_rate=updated.interest_rate
        )
    except SQLAlchemyError as exc:
        logger.exception("Failed to update interest rate for investment %s", investment_id)
        raise PersistenceError("Failed to update interest rate.") from exc

    logger.info(
        "Interest rate for investment %s changed from %s to %s",
        investment_id,
        investment.interest_rate,
        updated.interest_rate,
    )
    return investment_from_row(row)


def load_schedule(
    store: InvestmentStore,
    user_id: int,
    investment_id: int,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
    today: Optional[date] = None,
) -> List[ScheduleEntry]:
    investment = investment_from_row(store.find_investment(investment_id, user_id))
    records = store.list_monthly_interests(investment_id)
    return interest_schedule(investment, records, horizon_months, today)
