import unittest
from datetime import date
from decimal import Decimal

from investment_tracker.interest_engine import Investment
from investment_tracker.portfolio import (
    compound_projection,
    months_since_start,
    portfolio_metrics,
    total_earnings,
)


def make_investment(**overrides) -> Investment:
    values = dict(
        id=1,
        name="Bond ladder",
        initial_capital=Decimal("1000"),
        current_capital=Decimal("1000"),
        interest_rate=Decimal("12"),
        rate_type="ANNUAL",
        start_date=date(2024, 1, 15),
        profit_lock_period=1,
    )
    values.update(overrides)
    return Investment(**values)


class CompoundProjectionTests(unittest.TestCase):
    def test_annual_rate_compounds_monthly(self) -> None:
        projected = compound_projection(Decimal("1000"), Decimal("12"), 12, "ANNUAL")

        self.assertEqual(projected, Decimal("1126.83"))

    def test_monthly_rate(self) -> None:
        projected = compound_projection(Decimal("1000"), Decimal("1"), 2, "MONTHLY")

        self.assertEqual(projected, Decimal("1020.10"))

    def test_zero_months_returns_principal(self) -> None:
        self.assertEqual(
            compound_projection(Decimal("2500"), Decimal("5"), 0), Decimal("2500.00")
        )

    def test_negative_months_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            compound_projection(Decimal("1000"), Decimal("5"), -1)


class PortfolioMetricsTests(unittest.TestCase):
    def test_empty_portfolio(self) -> None:
        metrics = portfolio_metrics([])

        self.assertEqual(metrics.investment_count, 0)
        self.assertEqual(metrics.total_invested, Decimal("0"))
        self.assertEqual(metrics.average_interest_rate, Decimal("0"))

    def test_aggregates_investments(self) -> None:
        investments = [
            make_investment(
                current_capital=Decimal("1070"),
                total_interest_earned=Decimal("100"),
                total_reinvested=Decimal("70"),
                total_expenses=Decimal("30"),
            ),
            make_investment(
                id=2,
                initial_capital=Decimal("3000"),
                current_capital=Decimal("3000"),
                interest_rate=Decimal("1"),
                rate_type="MONTHLY",
            ),
        ]

        metrics = portfolio_metrics(investments)

        self.assertEqual(metrics.investment_count, 2)
        self.assertEqual(metrics.total_invested, Decimal("4000"))
        self.assertEqual(metrics.total_current, Decimal("4070"))
        self.assertEqual(metrics.total_earned, Decimal("70"))
        self.assertEqual(metrics.total_interest_earned, Decimal("100"))
        self.assertEqual(metrics.total_reinvested, Decimal("70"))
        self.assertEqual(metrics.total_expenses, Decimal("30"))
        self.assertEqual(metrics.average_interest_rate, Decimal("6.50"))

    def test_total_earnings_is_capital_growth(self) -> None:
        investment = make_investment(current_capital=Decimal("1250.50"))

        self.assertEqual(total_earnings(investment), Decimal("250.50"))

    def test_months_since_start_ignores_day_of_month(self) -> None:
        self.assertEqual(months_since_start(date(2024, 1, 31), date(2024, 3, 1)), 2)
        self.assertEqual(months_since_start(date(2024, 1, 1), date(2024, 1, 31)), 0)


if __name__ == "__main__":
    unittest.main()
