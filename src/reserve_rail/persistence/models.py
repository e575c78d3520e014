"""
Data Models for Persistence Layer

Row-shaped mirrors of the ledger's per-account and aggregate state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class SubscriptionRecord:
    """Persisted subscription record plus reserve balance for one account."""
    account_id: str
    period_count: int = 0
    period_anchor: int = 0
    active: bool = False
    reserve: int = 0

    def to_db_tuple(self) -> tuple:
        return (
            self.account_id,
            self.period_count,
            self.period_anchor,
            1 if self.active else 0,
            self.reserve,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            account_id=row["account_id"],
            period_count=row["period_count"],
            period_anchor=row["period_anchor"],
            active=bool(row["active"]),
            reserve=row["reserve"],
        )


@dataclass
class LedgerStateRecord:
    """Persisted ledger terms and aggregates (single row)."""
    fee_per_period: int
    period_length: int
    total_reserved: int = 0
    subscriber_count: int = 0
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_db_tuple(self) -> tuple:
        return (
            1,
            self.fee_per_period,
            self.period_length,
            self.total_reserved,
            self.subscriber_count,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerStateRecord":
        return cls(
            fee_per_period=row["fee_per_period"],
            period_length=row["period_length"],
            total_reserved=row["total_reserved"],
            subscriber_count=row["subscriber_count"],
            updated_at=row["updated_at"],
        )


@dataclass
class EventRecord:
    """Persisted ledger event."""
    kind: str
    account_id: str
    amount: int
    period_count: int
    timestamp: int
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "account": self.account_id,
            "amount": self.amount,
            "period_count": self.period_count,
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.kind,
            self.account_id,
            self.amount,
            self.period_count,
            self.timestamp,
            self.recorded_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EventRecord":
        return cls(
            id=row.get("id"),
            kind=row["kind"],
            account_id=row["account_id"],
            amount=row["amount"],
            period_count=row["period_count"],
            timestamp=row["timestamp"],
            recorded_at=row["recorded_at"],
        )


@dataclass
class TokenBalanceRecord:
    """Persisted development-token balance."""
    account_id: str
    balance: int

    def to_db_tuple(self) -> tuple:
        return (self.account_id, self.balance)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TokenBalanceRecord":
        return cls(account_id=row["account_id"], balance=row["balance"])


@dataclass
class AllowanceRecord:
    """Persisted development-token allowance."""
    owner: str
    spender: str
    amount: int

    def to_db_tuple(self) -> tuple:
        return (self.owner, self.spender, self.amount)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AllowanceRecord":
        return cls(owner=row["owner"], spender=row["spender"], amount=row["amount"])
