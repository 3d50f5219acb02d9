import unittest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from investment_tracker.errors import (
    AlreadyConfirmedError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from investment_tracker.interest_service import (
    change_interest_rate,
    confirm_monthly_interest,
    load_schedule,
)
from investment_tracker.store import (
    InvestmentStore,
    investments,
    metadata,
    monthly_interests,
)

NOW = datetime(2024, 6, 10, 12, 0)


class FailingAggregateStore(InvestmentStore):
    def update_investment_aggregates(self, investment_id, deltas):
        raise OperationalError("UPDATE investments", {}, Exception("disk I/O error"))


class StaleReadStore(InvestmentStore):
    """Sees no confirmations, as a concurrent request would before commit."""

    def list_monthly_interests(self, investment_id):
        return []

    def find_monthly_interest(self, investment_id, month):
        return None


class InterestServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            store = InvestmentStore(conn)
            self.user_id = store.create_user("Ada", "ada@example.com", "hash", "USD")["id"]
            self.other_user_id = store.create_user(
                "Grace", "grace@example.com", "hash", "EUR"
            )["id"]
            self.investment_id = store.create_investment(
                user_id=self.user_id,
                name="Fixed deposit",
                initial_capital=Decimal("10000"),
                interest_rate=Decimal("12"),
                rate_type="ANNUAL",
                start_date=date(2024, 1, 15),
                profit_lock_period=2,
            )["id"]

    def tearDown(self) -> None:
        self.engine.dispose()

    def confirm(self, month, amount, reinvested=None, store_cls=InvestmentStore, user_id=None):
        with self.engine.begin() as conn:
            return confirm_monthly_interest(
                store_cls(conn),
                user_id or self.user_id,
                self.investment_id,
                month,
                amount,
                reinvested,
                now=NOW,
            )

    def read_investment(self):
        with self.engine.begin() as conn:
            return conn.execute(
                select(investments).where(investments.c.id == self.investment_id)
            ).mappings().one()

    def count_records(self) -> int:
        with self.engine.begin() as conn:
            return len(conn.execute(select(monthly_interests)).all())

    def test_confirmation_persists_record_and_totals(self) -> None:
        result = self.confirm(date(2024, 3, 1), Decimal("100"), Decimal("70"))

        self.assertEqual(result.investment.current_capital, Decimal("10070"))
        self.assertEqual(result.record.expenses_amount, Decimal("30"))
        self.assertTrue(result.record.reinvested)

        row = self.read_investment()
        self.assertEqual(Decimal(str(row["current_capital"])), Decimal("10070"))
        self.assertEqual(Decimal(str(row["total_interest_earned"])), Decimal("100"))
        self.assertEqual(Decimal(str(row["total_reinvested"])), Decimal("70"))
        self.assertEqual(Decimal(str(row["total_expenses"])), Decimal("30"))
        self.assertEqual(
            Decimal(str(row["current_capital"])), result.investment.current_capital
        )

    def test_omitted_reinvested_amount_uses_compound_default(self) -> None:
        result = self.confirm(date(2024, 3, 1), Decimal("100"))

        self.assertEqual(result.record.reinvested_amount, Decimal("100"))
        self.assertEqual(result.investment.current_capital, Decimal("10100"))

    def test_duplicate_confirmation_is_rejected_and_first_kept(self) -> None:
        self.confirm(date(2024, 3, 1), Decimal("100"), Decimal("70"))

        with self.assertRaises(AlreadyConfirmedError):
            self.confirm(date(2024, 3, 1), Decimal("100"), Decimal("100"))

        with self.engine.begin() as conn:
            records = InvestmentStore(conn).list_monthly_interests(self.investment_id)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].reinvested_amount, Decimal("70"))
        self.assertEqual(Decimal(str(self.read_investment()["current_capital"])), Decimal("10070"))

    def test_unique_constraint_catches_concurrent_confirmation(self) -> None:
        self.confirm(date(2024, 3, 1), Decimal("100"), Decimal("70"))

        with self.assertRaises(AlreadyConfirmedError):
            self.confirm(
                date(2024, 3, 1), Decimal("100"), Decimal("100"), store_cls=StaleReadStore
            )

        self.assertEqual(self.count_records(), 1)
        self.assertEqual(Decimal(str(self.read_investment()["total_interest_earned"])), Decimal("100"))

    def test_failed_aggregate_update_rolls_back_record(self) -> None:
        with self.assertRaises(PersistenceError):
            self.confirm(
                date(2024, 3, 1),
                Decimal("100"),
                Decimal("70"),
                store_cls=FailingAggregateStore,
            )

        self.assertEqual(self.count_records(), 0)
        self.assertEqual(Decimal(str(self.read_investment()["current_capital"])), Decimal("10000"))

    def test_other_users_investment_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.confirm(
                date(2024, 3, 1), Decimal("100"), Decimal("0"), user_id=self.other_user_id
            )

    def test_rate_change_keeps_confirmed_snapshot(self) -> None:
        self.confirm(date(2024, 3, 1), Decimal("100"), Decimal("70"))

        with self.engine.begin() as conn:
            updated = change_interest_rate(
                InvestmentStore(conn), self.user_id, self.investment_id, Decimal("24")
            )
        self.assertEqual(updated.interest_rate, Decimal("24"))

        with self.engine.begin() as conn:
            store = InvestmentStore(conn)
            record = store.find_monthly_interest(self.investment_id, date(2024, 3, 1))
            schedule = load_schedule(
                store, self.user_id, self.investment_id, horizon_months=0, today=date(2024, 4, 2)
            )
        self.assertEqual(record.interest_rate, Decimal("12"))
        self.assertEqual(record.amount, Decimal("100"))
        self.assertEqual(
            [(entry.month, entry.state, entry.expected_amount) for entry in schedule],
            [
                (date(2024, 2, 1), "locked", Decimal("200.00")),
                (date(2024, 3, 1), "confirmed", Decimal("100")),
                (date(2024, 4, 1), "pending", Decimal("201.40")),
            ],
        )

    def test_sub_cent_amounts_are_rejected_without_changing_totals(self) -> None:
        with self.assertRaises(ValidationError):
            self.confirm(date(2024, 3, 1), Decimal("0.015"), Decimal("0.005"))

        self.assertEqual(self.count_records(), 0)
        self.assertEqual(
            Decimal(str(self.read_investment()["total_interest_earned"])), Decimal("0")
        )

    def test_totals_match_sum_of_confirmed_records(self) -> None:
        for month in (3, 4, 5, 6):
            self.confirm(date(2024, month, 1), Decimal("0.03"), Decimal("0.01"))

        with self.engine.begin() as conn:
            records = InvestmentStore(conn).list_monthly_interests(self.investment_id)
        row = self.read_investment()
        for record in records:
            self.assertEqual(
                record.reinvested_amount + record.expenses_amount, record.amount
            )
        self.assertEqual(
            Decimal(str(row["total_interest_earned"])),
            sum(record.amount for record in records),
        )
        self.assertEqual(
            Decimal(str(row["total_reinvested"])),
            sum(record.reinvested_amount for record in records),
        )
        self.assertEqual(
            Decimal(str(row["total_expenses"])),
            sum(record.expenses_amount for record in records),
        )

    def test_invalid_rate_change_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            with self.engine.begin() as conn:
                change_interest_rate(
                    InvestmentStore(conn), self.user_id, self.investment_id, Decimal("150")
                )

        self.assertEqual(Decimal(str(self.read_investment()["interest_rate"])), Decimal("12"))


if __name__ == "__main__":
    unittest.main()
