from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, RowMapping
from sqlalchemy.exc import IntegrityError

from investment_tracker.errors import AlreadyConfirmedError, NotFoundError
from investment_tracker.interest_engine import (
    AggregateDeltas,
    Investment,
    MonthlyInterest,
    month_start,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("preferred_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

investments = Table(
    "investments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "user_id",
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(255), nullable=False),
    Column("initial_capital", Numeric(14, 2), nullable=False),
    Column("current_capital", Numeric(14, 2), nullable=False),
    Column("interest_rate", Numeric(7, 4), nullable=False),
    Column("rate_type", String(10), nullable=False, server_default="ANNUAL"),
    Column("reinvestment_type", String(20), nullable=False, server_default="COMPOUND"),
    Column("start_date", Date, nullable=False),
    Column("profit_lock_period", Integer, nullable=False, server_default="1"),
    Column("total_interest_earned", Numeric(14, 2), nullable=False, server_default="0"),
    Column("total_reinvested", Numeric(14, 2), nullable=False, server_default="0"),
    Column("total_expenses", Numeric(14, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

monthly_interests = Table(
    "monthly_interests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "investment_id",
        Integer,
        ForeignKey("investments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("month", Date, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("reinvested", Boolean, nullable=False, server_default="0"),
    Column("reinvested_amount", Numeric(14, 2), nullable=False, server_default="0"),
    Column("expenses_amount", Numeric(14, 2), nullable=False, server_default="0"),
    Column("confirmed", Boolean, nullable=False, server_default="0"),
    Column("confirmed_at", DateTime),
    Column("interest_rate", Numeric(7, 4), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("investment_id", "month", name="uq_monthly_interests_investment_month"),
)


def investment_from_row(row: RowMapping) -> Investment:
    return Investment(
        id=row["id"],
        name=row["name"],
        initial_capital=coerce_decimal(row["initial_capital"]),
        current_capital=coerce_decimal(row["current_capital"]),
        interest_rate=coerce_decimal(row["interest_rate"]),
        rate_type=row["rate_type"],
        start_date=row["start_date"],
        profit_lock_period=row["profit_lock_period"],
        reinvestment_type=row["reinvestment_type"],
        total_interest_earned=coerce_decimal(row["total_interest_earned"]),
        total_reinvested=coerce_decimal(row["total_reinvested"]),
        total_expenses=coerce_decimal(row["total_expenses"]),
    )


def monthly_interest_from_row(row: RowMapping) -> MonthlyInterest:
    return MonthlyInterest(
        id=row["id"],
        investment_id=row["investment_id"],
        month=row["month"],
        amount=coerce_decimal(row["amount"]),
        reinvested_amount=coerce_decimal(row["reinvested_amount"]),
        expenses_amount=coerce_decimal(row["expenses_amount"]),
        interest_rate=coerce_decimal(row["interest_rate"]),
        confirmed=bool(row["confirmed"]),
        confirmed_at=row["confirmed_at"],
    )


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class InvestmentStore:
    """Request-scoped data access over a single open connection.

    The caller owns the transaction, typically via ``engine.begin()``, so
    everything done through one store commits or rolls back together.
    """

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    # users

    def create_user(
        self, name: str, email: str, hashed_password: str, preferred_currency: str
    ) -> RowMapping:
        stmt = (
            insert(users)
            .values(
                name=name,
                email=email,
                hashed_password=hashed_password,
                preferred_currency=preferred_currency,
            )
            .returning(*users.c)
        )
        return self.conn.execute(stmt).mappings().one()

    def find_user(self, user_id: int) -> Optional[RowMapping]:
        return (
            self.conn.execute(select(users).where(users.c.id == user_id))
            .mappings()
            .first()
        )

    def find_user_by_email(self, email: str) -> Optional[RowMapping]:
        return (
            self.conn.execute(select(users).where(users.c.email == email))
            .mappings()
            .first()
        )

    def update_preferred_currency(self, user_id: int, currency: str) -> Optional[RowMapping]:
        stmt = (
            update(users)
            .where(users.c.id == user_id)
            .values(preferred_currency=currency)
            .returning(*users.c)
        )
        return self.conn.execute(stmt).mappings().first()

    def delete_user(self, user_id: int) -> None:
        owned = select(investments.c.id).where(investments.c.user_id == user_id)
        self.conn.execute(
            delete(monthly_interests).where(monthly_interests.c.investment_id.in_(owned))
        )
        self.conn.execute(delete(investments).where(investments.c.user_id == user_id))
        result = self.conn.execute(delete(users).where(users.c.id == user_id))
        if result.rowcount == 0:
            raise NotFoundError("User not found.")

    # investments

    def list_investments(self, user_id: int) -> List[RowMapping]:
        stmt = (
            select(investments)
            .where(investments.c.user_id == user_id)
            .order_by(investments.c.created_at.desc(), investments.c.id.desc())
        )
        return list(self.conn.execute(stmt).mappings().all())

    def find_investment(self, investment_id: int, user_id: int | None = None) -> RowMapping:
        conditions = [investments.c.id == investment_id]
        if user_id is not None:
            conditions.append(investments.c.user_id == user_id)
        row = self.conn.execute(select(investments).where(*conditions)).mappings().first()
        if not row:
            raise NotFoundError("Investment not found.")
        return row

    def create_investment(
        self,
        user_id: int,
        name: str,
        initial_capital: Decimal,
        interest_rate: Decimal,
        rate_type: str,
        start_date: date,
        profit_lock_period: int,
        reinvestment_type: str = "COMPOUND",
    ) -> RowMapping:
        stmt = (
            insert(investments)
            .values(
                user_id=user_id,
                name=name,
                initial_capital=initial_capital,
                current_capital=initial_capital,
                interest_rate=interest_rate,
                rate_type=rate_type,
                reinvestment_type=reinvestment_type,
                start_date=start_date,
                profit_lock_period=profit_lock_period,
                total_interest_earned=0,
                total_reinvested=0,
                total_expenses=0,
            )
            .returning(*investments.c)
        )
        return self.conn.execute(stmt).mappings().one()

    def update_investment(self, investment_id: int, user_id: int, **values) -> RowMapping:
        stmt = (
            update(investments)
            .where(investments.c.id == investment_id, investments.c.user_id == user_id)
            .values(updated_at=datetime.now(), **values)
            .returning(*investments.c)
        )
        row = self.conn.execute(stmt).mappings().first()
        if not row:
            raise NotFoundError("Investment not found.")
        return row

    def delete_investment(self, investment_id: int, user_id: int) -> None:
        self.find_investment(investment_id, user_id)
        self.conn.execute(
            delete(monthly_interests).where(
                monthly_interests.c.investment_id == investment_id
            )
        )
        self.conn.execute(
            delete(investments).where(
                investments.c.id == investment_id, investments.c.user_id == user_id
            )
        )

    def update_investment_aggregates(
        self, investment_id: int, deltas: AggregateDeltas
    ) -> RowMapping:
        stmt = (
            update(investments)
            .where(investments.c.id == investment_id)
            .values(
                current_capital=investments.c.current_capital + deltas.current_capital,
                total_interest_earned=investments.c.total_interest_earned
                + deltas.total_interest_earned,
                total_reinvested=investments.c.total_reinvested + deltas.total_reinvested,
                total_expenses=investments.c.total_expenses + deltas.total_expenses,
                updated_at=datetime.now(),
            )
            .returning(*investments.c)
        )
        row = self.conn.execute(stmt).mappings().first()
        if not row:
            raise NotFoundError("Investment not found.")
        return row

    # monthly interests

    def list_monthly_interests(self, investment_id: int) -> List[MonthlyInterest]:
        stmt = (
            select(monthly_interests)
            .where(monthly_interests.c.investment_id == investment_id)
            .order_by(monthly_interests.c.month.asc())
        )
        rows = self.conn.execute(stmt).mappings().all()
        return [monthly_interest_from_row(row) for row in rows]

    def find_monthly_interest(
        self, investment_id: int, month: date
    ) -> Optional[MonthlyInterest]:
        stmt = select(monthly_interests).where(
            monthly_interests.c.investment_id == investment_id,
            monthly_interests.c.month == month_start(month),
        )
        row = self.conn.execute(stmt).mappings().first()
        return monthly_interest_from_row(row) if row else None

    def upsert_monthly_interest(self, record: MonthlyInterest) -> MonthlyInterest:
        """Store a confirmed record, keyed by (investment_id, month).

        An unconfirmed placeholder for the month is completed in place. A
        confirmed one is never overwritten.
        """
        month = month_start(record.month)
        values = {
            "amount": record.amount,
            "reinvested": record.reinvested,
            "reinvested_amount": record.reinvested_amount,
            "expenses_amount": record.expenses_amount,
            "confirmed": record.confirmed,
            "confirmed_at": record.confirmed_at,
            "interest_rate": record.interest_rate,
        }
        existing = self.find_monthly_interest(record.investment_id, month)
        if existing is not None and existing.confirmed:
            raise AlreadyConfirmedError(
                f"Interest for {month.strftime('%B %Y')} is already confirmed."
            )
        try:
            if existing is not None:
                stmt = (
                    update(monthly_interests)
                    .where(
                        monthly_interests.c.id == existing.id,
                        monthly_interests.c.confirmed.is_(False),
                    )
                    .values(**values)
                    .returning(*monthly_interests.c)
                )
            else:
                stmt = (
                    insert(monthly_interests)
                    .values(investment_id=record.investment_id, month=month, **values)
                    .returning(*monthly_interests.c)
                )
            row = self.conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            logger.warning(
                "Duplicate confirmation for investment %s, month %s",
                record.investment_id,
                month,
            )
            raise AlreadyConfirmedError(
                f"Interest for {month.strftime('%B %Y')} is already confirmed."
            ) from exc
        if not row:
            raise AlreadyConfirmedError(
                f"Interest for {month.strftime('%B %Y')} is already confirmed."
            )
        return monthly_interest_from_row(row)
