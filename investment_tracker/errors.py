from __future__ import annotations

from datetime import date


class InvestmentTrackerError(Exception):
    """Base class for classified failures surfaced to the API layer."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(InvestmentTrackerError, ValueError):
    status_code = 400


class NotFoundError(InvestmentTrackerError):
    status_code = 404


class AlreadyConfirmedError(InvestmentTrackerError):
    status_code = 409


class LockedPeriodError(InvestmentTrackerError):
    """Raised when a month falls outside the confirmable window.

    ``earliest_month`` is the first month the investment can be confirmed for.
    """

    status_code = 400

    def __init__(self, message: str, earliest_month: date | None = None) -> None:
        super().__init__(message)
        self.earliest_month = earliest_month


class PersistenceError(InvestmentTrackerError):
    status_code = 500
