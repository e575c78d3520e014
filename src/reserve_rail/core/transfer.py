"""
Value-Transfer Interface

The ledger moves funds only through this interface:

- pull(source, amount): take pre-authorized funds from an account
- push(destination, amount): send funds held by the ledger
- balance_of(account): spendable balance of any account

A rejected transfer raises TransferFailed, which aborts the whole ledger
operation that issued it.
"""

from abc import ABC, abstractmethod


class ValueTransferService(ABC):
    """Transfer service bound to the ledger's own account."""

    @abstractmethod
    def pull(self, source: str, amount: int) -> None:
        """Move ``amount`` from ``source`` into the ledger."""
        pass

    @abstractmethod
    def push(self, destination: str, amount: int) -> None:
        """Move ``amount`` from the ledger to ``destination``."""
        pass

    @abstractmethod
    def balance_of(self, account: str) -> int:
        pass

    @abstractmethod
    def held_balance(self) -> int:
        """Funds currently held by the ledger."""
        pass
