"""
RESERVE RAIL - Billing Module

Value-transfer backends for the ledger.
"""

from .token import FungibleToken, TokenTransferService

__all__ = [
    "FungibleToken",
    "TokenTransferService",
]
