"""
Lazy Period Rollover

There is no scheduler. An account's billing period is advanced only when the
account is touched, by at most ONE boundary per invocation:

    next_anchor = period_anchor + period_length
    now <  next_anchor  -> nothing to do
    now >= next_anchor  -> period_count += 1, period_anchor = next_anchor
                           reserve <  fee -> lapse (inactive, reserve untouched)
                           reserve >= fee -> active, debit one fee

An account left untouched for several periods is walked forward one boundary
per call. The debited fee leaves the reserve and becomes undistributed
operator revenue.
"""

from dataclasses import dataclass
from enum import Enum

from .subscription import BillingTerms, Subscription


class RolloverOutcome(Enum):
    """What a rollover did to the account."""
    NOOP = "NOOP"  # Still inside the current period
    DEBITED = "DEBITED"  # Boundary crossed, fee taken from reserve
    LAPSED = "LAPSED"  # Boundary crossed, reserve too small


@dataclass(frozen=True)
class RolloverResult:
    """Outcome of a single rollover step. Nothing is applied yet."""
    outcome: RolloverOutcome
    subscription: Subscription
    reserve: int
    debit: int = 0

    @property
    def changed(self) -> bool:
        return self.outcome != RolloverOutcome.NOOP


def roll_over(
    subscription: Subscription,
    reserve: int,
    terms: BillingTerms,
    now: int,
) -> RolloverResult:
    """
    Compute the effect of one rollover step for an account.

    Pure: returns the new record and reserve, the caller applies them
    together with the aggregate change.
    """
    if now < subscription.next_anchor(terms.period_length):
        return RolloverResult(
            outcome=RolloverOutcome.NOOP,
            subscription=subscription,
            reserve=reserve,
        )

    if reserve < terms.fee_per_period:
        return RolloverResult(
            outcome=RolloverOutcome.LAPSED,
            subscription=subscription.advanced(terms.period_length, active=False),
            reserve=reserve,
        )

    return RolloverResult(
        outcome=RolloverOutcome.DEBITED,
        subscription=subscription.advanced(terms.period_length, active=True),
        reserve=reserve - terms.fee_per_period,
        debit=terms.fee_per_period,
    )


def periods_due(subscription: Subscription, terms: BillingTerms, now: int) -> int:
    """Number of period boundaries elapsed since the record's anchor."""
    if not subscription.exists or now < subscription.period_anchor:
        return 0
    return (now - subscription.period_anchor) // terms.period_length
