"""
Subscription Value Types

Account subscription records, the immutable billing terms fixed at ledger
construction, and the per-call identity/time context.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict


@dataclass(frozen=True)
class BillingTerms:
    """
    Construction-time constants of a ledger.

    Amounts are integer fee-units, durations integer seconds.
    """
    fee_per_period: int
    period_length: int

    def __post_init__(self):
        if self.fee_per_period <= 0:
            raise ValueError("fee_per_period must be positive")
        if self.period_length <= 0:
            raise ValueError("period_length must be positive")

    def cost(self, periods: int) -> int:
        """Price of a number of periods."""
        return periods * self.fee_per_period

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fee_per_period": self.fee_per_period,
            "period_length": self.period_length,
        }


@dataclass(frozen=True)
class CallContext:
    """Invoking account and current timestamp, supplied with every call."""
    caller: str
    now: int


@dataclass(frozen=True)
class Subscription:
    """
    Subscription record for one account.

    A zeroed record (period_count == 0) means the account never subscribed
    or has unsubscribed.
    """
    period_count: int = 0
    period_anchor: int = 0
    active: bool = False

    @classmethod
    def start(cls, now: int) -> "Subscription":
        """Fresh record for a new subscriber entering its first period."""
        return cls(period_count=1, period_anchor=now, active=True)

    @property
    def exists(self) -> bool:
        return self.period_count > 0

    def next_anchor(self, period_length: int) -> int:
        return self.period_anchor + period_length

    def advanced(self, period_length: int, active: bool) -> "Subscription":
        """Record moved forward by exactly one period."""
        return replace(
            self,
            period_count=self.period_count + 1,
            period_anchor=self.next_anchor(period_length),
            active=active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_count": self.period_count,
            "period_anchor": self.period_anchor,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        return cls(
            period_count=int(data.get("period_count", 0)),
            period_anchor=int(data.get("period_anchor", 0)),
            active=bool(data.get("active", False)),
        )
