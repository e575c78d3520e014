"""
Ledger Error Taxonomy

Every failure is raised synchronously and leaves the ledger exactly as it was
before the call. Each error carries a stable ``code`` for API consumers.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures."""
    code = "LEDGER_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InsufficientFunds(LedgerError):
    """Caller's spendable balance is below the required payment."""
    code = "INSUFFICIENT_FUNDS"


class AlreadySubscribed(LedgerError):
    """Caller already holds an active subscription."""
    code = "ALREADY_SUBSCRIBED"


class NoSubscription(LedgerError):
    """Caller has no subscription."""
    code = "NO_SUBSCRIPTION"


class EmptyReserve(LedgerError):
    """No eligible funds to withdraw."""
    code = "EMPTY_RESERVE"


class InsufficientReserve(LedgerError):
    """Withdraw amount exceeds the caller's reserve."""
    code = "INSUFFICIENT_RESERVE"


class Unauthorized(LedgerError):
    """Caller is not the privileged operator."""
    code = "UNAUTHORIZED"


class InvalidAmount(LedgerError):
    """Amount must be a positive integer."""
    code = "INVALID_AMOUNT"


class TransferFailed(LedgerError):
    """Value-transfer service rejected the transfer."""
    code = "TRANSFER_FAILED"


class LedgerIntegrityError(LedgerError):
    """Ledger aggregates do not match per-account state."""
    code = "INTEGRITY_VIOLATION"
