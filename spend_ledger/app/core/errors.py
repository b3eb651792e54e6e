from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """Base class for every failure raised by the ledger core."""

    code = "ledger_error"


class NotFoundError(LedgerError):
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    """Raised when an account id is missing from the store."""

    code = "wallet_not_found"


class LedgerEntryNotFoundError(NotFoundError):
    """Raised when a refund points at a debit that was never recorded."""

    code = "entry_not_found"


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class DuplicateTransactionError(LedgerError):
    """Raised when a debit idempotency key has already been used."""

    code = "duplicate_transaction"

    def __init__(self, message: str, existing: Optional[Any] = None) -> None:
        super().__init__(message)
        self.existing = existing


class IdempotencyConflictError(LedgerError):
    """Raised when the same idempotency key is reused with different input."""

    code = "idempotency_conflict"


class InsufficientBalanceError(LedgerError):
    """Raised when a non-adjustment debit would drop balance below zero."""

    code = "insufficient_balance"

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(
            f"Insufficient balance: required {required}, available {balance}"
        )
        self.balance = balance
        self.required = required

    @property
    def shortfall(self) -> int:
        return self.required - self.balance


class InvalidAmountError(LedgerError, ValueError):
    code = "invalid_amount"


class MissingReferenceError(LedgerError, ValueError):
    code = "missing_reference"
