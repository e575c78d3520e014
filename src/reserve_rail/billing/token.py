"""
In-Memory Fungible Token

Backs the ledger's value-transfer interface in development deployments and
tests. Balances and allowances behave like a standard fungible token:
transfer_from spends an allowance granted by approve, and every failing call
raises TransferFailed with balances untouched.
"""

from threading import Lock
from typing import Any, Dict, Tuple
import structlog

from ..core.errors import TransferFailed
from ..core.transfer import ValueTransferService

logger = structlog.get_logger()


class FungibleToken:
    """Minimal fungible token with allowances. Amounts are non-negative ints."""

    def __init__(self, symbol: str = "RSV"):
        self.symbol = symbol
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._total_supply = 0
        self._lock = Lock()

    @property
    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def mint(self, account: str, amount: int) -> None:
        _check_amount(amount)
        with self._lock:
            self._balances[account] = self.balance_of(account) + amount
            self._total_supply += amount

        logger.debug("token_minted", symbol=self.symbol, account=account, amount=amount)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        """Set (not add to) the amount ``spender`` may pull from ``owner``."""
        _check_amount(amount)
        with self._lock:
            self._allowances[(owner, spender)] = amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        _check_amount(amount)
        with self._lock:
            self._move(sender, recipient, amount)

    def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        """Spend part of ``owner``'s allowance to ``spender``."""
        _check_amount(amount)
        with self._lock:
            allowed = self.allowance(owner, spender)
            if allowed < amount:
                raise TransferFailed(
                    f"Allowance exceeded: {owner} approved {allowed} to {spender}, needs {amount}"
                )
            self._move(owner, recipient, amount)
            self._allowances[(owner, spender)] = allowed - amount

    def export_state(self) -> Dict[str, Any]:
        """Export balances and allowances for persistence."""
        with self._lock:
            return {
                "symbol": self.symbol,
                "balances": {a: b for a, b in self._balances.items() if b},
                "allowances": [
                    {"owner": owner, "spender": spender, "amount": amount}
                    for (owner, spender), amount in self._allowances.items()
                    if amount
                ],
            }

    def import_state(self, state: Dict[str, Any]) -> None:
        """Restore balances and allowances saved by export_state()."""
        balances = {a: int(b) for a, b in state.get("balances", {}).items()}
        allowances = {
            (entry["owner"], entry["spender"]): int(entry["amount"])
            for entry in state.get("allowances", [])
        }
        for amount in list(balances.values()) + list(allowances.values()):
            _check_amount(amount)

        with self._lock:
            self._balances = balances
            self._allowances = allowances
            self._total_supply = sum(balances.values())

        logger.info("token_state_restored", symbol=self.symbol, accounts=len(balances))

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        balance = self.balance_of(sender)
        if balance < amount:
            raise TransferFailed(
                f"Transfer amount exceeds balance: {sender} holds {balance}, needs {amount}"
            )
        self._balances[sender] = balance - amount
        self._balances[recipient] = self.balance_of(recipient) + amount


class TokenTransferService(ValueTransferService):
    """Binds a FungibleToken to the ledger's account identity."""

    def __init__(self, token: FungibleToken, ledger_account: str):
        self.token = token
        self.ledger_account = ledger_account

    def pull(self, source: str, amount: int) -> None:
        self.token.transfer_from(self.ledger_account, source, self.ledger_account, amount)
        logger.debug("funds_pulled", source=source, amount=amount)

    def push(self, destination: str, amount: int) -> None:
        self.token.transfer(self.ledger_account, destination, amount)
        logger.debug("funds_pushed", destination=destination, amount=amount)

    def balance_of(self, account: str) -> int:
        return self.token.balance_of(account)

    def held_balance(self) -> int:
        return self.token.balance_of(self.ledger_account)


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise TransferFailed(f"Invalid transfer amount: {amount!r}")
