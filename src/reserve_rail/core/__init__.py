"""
RESERVE RAIL - Core Module

Reserve/period accounting engine: subscription records, lazy rollover,
conservation of reserved funds.
"""

from .errors import (
    LedgerError,
    InsufficientFunds,
    AlreadySubscribed,
    NoSubscription,
    EmptyReserve,
    InsufficientReserve,
    Unauthorized,
    InvalidAmount,
    TransferFailed,
    LedgerIntegrityError,
)
from .subscription import BillingTerms, CallContext, Subscription
from .rollover import RolloverOutcome, RolloverResult, roll_over
from .transfer import ValueTransferService
from .access import AccessControl, OwnerAccessControl
from .ledger import BillingLedger, LedgerEvent, EventKind

__all__ = [
    "LedgerError",
    "InsufficientFunds",
    "AlreadySubscribed",
    "NoSubscription",
    "EmptyReserve",
    "InsufficientReserve",
    "Unauthorized",
    "InvalidAmount",
    "TransferFailed",
    "LedgerIntegrityError",
    "BillingTerms",
    "CallContext",
    "Subscription",
    "RolloverOutcome",
    "RolloverResult",
    "roll_over",
    "ValueTransferService",
    "AccessControl",
    "OwnerAccessControl",
    "BillingLedger",
    "LedgerEvent",
    "EventKind",
]
