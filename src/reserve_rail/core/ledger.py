"""
Billing Ledger

Reserve/period accounting engine for recurring subscriptions.

Accounts prepay a fixed fee per period. The first period is paid on subscribe
and consumed immediately; anything paid beyond it sits in the account's
reserve. Periods are advanced lazily (see rollover.py): every mutating
account operation first rolls the caller's subscription forward, debiting one
fee from the reserve or lapsing the subscription.

Invariants held after every committed call:
- total_reserved == sum of all reserve balances
- subscriber_count == number of active subscriptions
- ledger_held_funds >= total_reserved (the surplus is operator revenue)

Aggregates are updated only through _set_reserve / _set_subscription, in the
same atomic unit as the account record. No operation scans all accounts.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
import structlog

from .access import AccessControl
from .errors import (
    AlreadySubscribed,
    EmptyReserve,
    InsufficientFunds,
    InsufficientReserve,
    InvalidAmount,
    LedgerIntegrityError,
    NoSubscription,
    Unauthorized,
)
from .rollover import RolloverOutcome, RolloverResult, periods_due, roll_over
from .subscription import BillingTerms, CallContext, Subscription
from .transfer import ValueTransferService

logger = structlog.get_logger()


class EventKind(Enum):
    """Committed ledger state changes."""
    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    DEPOSITED = "DEPOSITED"
    WITHDRAWN = "WITHDRAWN"
    PERIOD_ADVANCED = "PERIOD_ADVANCED"
    LAPSED = "LAPSED"
    FEES_WITHDRAWN = "FEES_WITHDRAWN"


@dataclass(frozen=True)
class LedgerEvent:
    """Audit record of a committed state change."""
    kind: EventKind
    account: str
    amount: int
    period_count: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "account": self.account,
            "amount": self.amount,
            "period_count": self.period_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEvent":
        return cls(
            kind=EventKind(data["kind"]),
            account=data["account"],
            amount=int(data["amount"]),
            period_count=int(data["period_count"]),
            timestamp=int(data["timestamp"]),
        )


class BillingLedger:
    """
    The recurring-billing ledger.

    All mutating operations are serialized by a lock and run as an atomic
    unit: if anything raises (including the value-transfer service), the
    touched account and both aggregates are restored and no event is
    published.

    Read accessors never trigger rollover; they report the stored record,
    which may lag behind wall-clock time until the account is touched.
    """

    def __init__(
        self,
        terms: BillingTerms,
        transfers: ValueTransferService,
        access_control: AccessControl,
    ):
        self.terms = terms
        self._transfers = transfers
        self._access = access_control

        self._subscriptions: Dict[str, Subscription] = {}
        self._reserves: Dict[str, int] = {}
        self._total_reserved = 0
        self._subscriber_count = 0

        self._lock = Lock()
        self._history: List[LedgerEvent] = []
        self._callbacks: List[Callable[[LedgerEvent], None]] = []

    # ------------------------------------------------------------------
    # Account operations
    # ------------------------------------------------------------------

    def subscribe(self, ctx: CallContext, period_amount: int) -> Subscription:
        """
        Start a subscription prepaying ``period_amount`` periods.

        The first period's fee is consumed at once; the remaining
        ``period_amount - 1`` fees go to the caller's reserve.
        """
        _require_positive(period_amount)
        cost = self.terms.cost(period_amount)

        with self._atomic("subscribe", ctx.caller) as pending:
            current = self._subscriptions.get(ctx.caller)
            if current is not None and current.active:
                raise AlreadySubscribed()

            self._require_funds(ctx.caller, cost)

            subscription = Subscription.start(ctx.now)
            self._set_subscription(ctx.caller, subscription)

            forward = cost - self.terms.fee_per_period
            if forward > 0:
                self._set_reserve(ctx.caller, self.reserve_amount(ctx.caller) + forward)

            self._transfers.pull(ctx.caller, cost)

            pending.append(self._event(EventKind.SUBSCRIBED, ctx, cost))

        logger.info(
            "subscription_created",
            account=ctx.caller,
            periods=period_amount,
            paid=cost,
            reserve=self.reserve_amount(ctx.caller),
        )
        return subscription

    def unsubscribe(self, ctx: CallContext) -> int:
        """
        End the caller's subscription and refund its whole reserve.

        Returns the refunded amount (zero refunds make no transfer).
        """
        with self._atomic("unsubscribe", ctx.caller) as pending:
            self._require_active(ctx.caller)

            refund = self.reserve_amount(ctx.caller)
            self._set_subscription(ctx.caller, Subscription())
            self._set_reserve(ctx.caller, 0)

            if refund > 0:
                self._transfers.push(ctx.caller, refund)

            pending.append(self._event(EventKind.UNSUBSCRIBED, ctx, refund))

        logger.info("subscription_cancelled", account=ctx.caller, refund=refund)
        return refund

    def deposit(self, ctx: CallContext, amount: int) -> int:
        """
        Add ``amount`` periods' worth of fees to the caller's reserve.

        Returns the new reserve balance.
        """
        _require_positive(amount)
        cost = self.terms.cost(amount)

        with self._atomic("deposit", ctx.caller) as pending:
            self._require_active(ctx.caller)
            self._require_funds(ctx.caller, cost)

            self._apply_rollover(ctx, pending)

            reserve = self.reserve_amount(ctx.caller) + cost
            self._set_reserve(ctx.caller, reserve)
            self._transfers.pull(ctx.caller, cost)

            pending.append(self._event(EventKind.DEPOSITED, ctx, cost))

        logger.info("reserve_deposited", account=ctx.caller, amount=cost, reserve=reserve)
        return reserve

    def withdraw(self, ctx: CallContext, amount: int) -> int:
        """
        Return ``amount`` periods' worth of fees from the reserve to the caller.

        Returns the new reserve balance.
        """
        _require_positive(amount)

        with self._atomic("withdraw", ctx.caller) as pending:
            self._require_active(ctx.caller)
            self._apply_rollover(ctx, pending)

            reserve = self.reserve_amount(ctx.caller)
            if reserve == 0:
                raise EmptyReserve("Reserve is empty")

            value = self.terms.cost(amount)
            if value > reserve:
                raise InsufficientReserve(
                    f"Requested {value} exceeds reserve {reserve}"
                )

            reserve -= value
            self._set_reserve(ctx.caller, reserve)
            self._transfers.push(ctx.caller, value)

            pending.append(self._event(EventKind.WITHDRAWN, ctx, value))

        logger.info("reserve_withdrawn", account=ctx.caller, amount=value, reserve=reserve)
        return reserve

    def update_subscription(self, ctx: CallContext) -> RolloverResult:
        """
        Run one rollover step for the caller.

        Works on lapsed records too, so a record whose reserve was topped up
        can be reactivated. Never-subscribed accounts are rejected.
        """
        with self._atomic("update_subscription", ctx.caller) as pending:
            current = self._subscriptions.get(ctx.caller)
            if current is None or not current.exists:
                raise NoSubscription()

            return self._apply_rollover(ctx, pending)

    # ------------------------------------------------------------------
    # Operator
    # ------------------------------------------------------------------

    def withdraw_fees(self, ctx: CallContext) -> int:
        """
        Send all undistributed revenue to the operator.

        Only funds not backing a reserve are ever transferred.
        """
        with self._atomic("withdraw_fees", None) as pending:
            if not self._access.is_privileged(ctx.caller):
                raise Unauthorized(f"Caller is not the owner: {ctx.caller}")

            held = self._transfers.held_balance()
            if held == 0:
                raise EmptyReserve("Ledger holds no funds")

            if held < self._total_reserved:
                logger.error(
                    "ledger_underfunded",
                    held=held,
                    total_reserved=self._total_reserved,
                )
                raise LedgerIntegrityError(
                    f"Ledger holds {held} but reserves total {self._total_reserved}"
                )

            available = held - self._total_reserved
            if available == 0:
                raise EmptyReserve("No fees have accumulated")

            self._transfers.push(ctx.caller, available)

            pending.append(self._event(EventKind.FEES_WITHDRAWN, ctx, available, period_count=0))

        logger.info("fees_withdrawn", operator=ctx.caller, amount=available)
        return available

    # ------------------------------------------------------------------
    # Read accessors (never roll over)
    # ------------------------------------------------------------------

    def get_subscription(self, account: str) -> Subscription:
        return self._subscriptions.get(account, Subscription())

    def is_subscribed(self, account: str) -> bool:
        return self.get_subscription(account).active

    def reserve_amount(self, account: str) -> int:
        return self._reserves.get(account, 0)

    @property
    def total_reserved(self) -> int:
        return self._total_reserved

    @property
    def subscriber_count(self) -> int:
        return self._subscriber_count

    def ledger_held_funds(self) -> int:
        return self._transfers.held_balance()

    def available_fees(self) -> int:
        """Undistributed revenue the operator could withdraw right now."""
        return max(0, self.ledger_held_funds() - self._total_reserved)

    def periods_due(self, account: str, now: int) -> int:
        """Elapsed period boundaries not yet rolled over for ``account``."""
        return periods_due(self.get_subscription(account), self.terms, now)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def register_callback(self, callback: Callable[[LedgerEvent], None]) -> None:
        """Register a listener for committed events."""
        self._callbacks.append(callback)

    def get_history(self) -> List[LedgerEvent]:
        return self._history.copy()

    # ------------------------------------------------------------------
    # State export / audit
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """Export ledger state for persistence."""
        with self._lock:
            return {
                "terms": self.terms.to_dict(),
                "subscriptions": {
                    account: sub.to_dict()
                    for account, sub in self._subscriptions.items()
                },
                "reserves": dict(self._reserves),
                "total_reserved": self._total_reserved,
                "subscriber_count": self._subscriber_count,
                "exported_at": datetime.now(timezone.utc).isoformat(),
            }

    def import_state(self, state: Dict[str, Any]) -> None:
        """
        Restore ledger state from persistence.

        Rejects state whose aggregates disagree with its per-account data or
        whose terms differ from this ledger's.
        """
        terms = state.get("terms")
        if terms is not None and BillingTerms(**terms) != self.terms:
            raise LedgerIntegrityError(
                f"Stored terms {terms} differ from ledger terms {self.terms.to_dict()}"
            )

        subscriptions = {
            account: Subscription.from_dict(data)
            for account, data in state.get("subscriptions", {}).items()
        }
        reserves = {
            account: int(amount)
            for account, amount in state.get("reserves", {}).items()
        }

        valid, error = _check_aggregates(
            subscriptions,
            reserves,
            int(state.get("total_reserved", 0)),
            int(state.get("subscriber_count", 0)),
        )
        if not valid:
            logger.error("ledger_state_rejected", error=error)
            raise LedgerIntegrityError(error)

        with self._lock:
            self._subscriptions = subscriptions
            self._reserves = reserves
            self._total_reserved = int(state.get("total_reserved", 0))
            self._subscriber_count = int(state.get("subscriber_count", 0))

        logger.info(
            "ledger_state_restored",
            accounts=len(subscriptions),
            total_reserved=self._total_reserved,
            subscriber_count=self._subscriber_count,
        )

    def verify_invariants(self) -> Tuple[bool, Optional[str]]:
        """
        Audit the conservation invariants.

        Scans every account; meant for operators, not for the operation path.
        Returns (is_valid, error_message).
        """
        with self._lock:
            valid, error = _check_aggregates(
                self._subscriptions,
                self._reserves,
                self._total_reserved,
                self._subscriber_count,
            )
            if valid:
                held = self._transfers.held_balance()
                if held < self._total_reserved:
                    valid = False
                    error = f"Ledger holds {held} but reserves total {self._total_reserved}"

        if not valid:
            logger.error("ledger_invariant_violated", error=error)
        return valid, error

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _atomic(
        self,
        operation: str,
        account: Optional[str],
    ) -> Generator[List[LedgerEvent], None, None]:
        """
        Serialize and make one operation all-or-nothing.

        Snapshots the touched account and the aggregates; restores them if
        the body raises. Collected events are published only on commit.
        """
        pending: List[LedgerEvent] = []

        with self._lock:
            snapshot = (
                self._subscriptions.get(account) if account else None,
                self._reserves.get(account) if account else None,
                self._total_reserved,
                self._subscriber_count,
            )
            try:
                yield pending
            except Exception as e:
                if account:
                    _restore(self._subscriptions, account, snapshot[0])
                    _restore(self._reserves, account, snapshot[1])
                self._total_reserved = snapshot[2]
                self._subscriber_count = snapshot[3]

                logger.warning(
                    "ledger_operation_aborted",
                    operation=operation,
                    account=account,
                    error=getattr(e, "code", type(e).__name__),
                    detail=str(e),
                )
                raise

            self._history.extend(pending)

        for event in pending:
            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.error("ledger_callback_error", kind=event.kind.value, error=str(e))

    def _apply_rollover(self, ctx: CallContext, pending: List[LedgerEvent]) -> RolloverResult:
        """Roll the caller's subscription forward by at most one period."""
        result = roll_over(
            self.get_subscription(ctx.caller),
            self.reserve_amount(ctx.caller),
            self.terms,
            ctx.now,
        )
        if not result.changed:
            return result

        self._set_subscription(ctx.caller, result.subscription)
        self._set_reserve(ctx.caller, result.reserve)

        if result.outcome == RolloverOutcome.DEBITED:
            pending.append(self._event(EventKind.PERIOD_ADVANCED, ctx, result.debit))
            logger.info(
                "period_advanced",
                account=ctx.caller,
                period=result.subscription.period_count,
                debit=result.debit,
                reserve=result.reserve,
            )
        else:
            pending.append(self._event(EventKind.LAPSED, ctx, 0))
            logger.warning(
                "subscription_lapsed",
                account=ctx.caller,
                period=result.subscription.period_count,
                reserve=result.reserve,
            )

        return result

    def _set_subscription(self, account: str, subscription: Subscription) -> None:
        previous = self._subscriptions.get(account, Subscription())
        self._subscriber_count += int(subscription.active) - int(previous.active)
        self._subscriptions[account] = subscription

    def _set_reserve(self, account: str, amount: int) -> None:
        if amount < 0:
            raise LedgerIntegrityError(f"Reserve of {account} would become negative")
        self._total_reserved += amount - self._reserves.get(account, 0)
        self._reserves[account] = amount

    def _require_active(self, account: str) -> Subscription:
        subscription = self._subscriptions.get(account)
        if subscription is None or not subscription.active:
            raise NoSubscription()
        return subscription

    def _require_funds(self, account: str, cost: int) -> None:
        balance = self._transfers.balance_of(account)
        if balance < cost:
            raise InsufficientFunds(f"Balance {balance} is below required {cost}")

    def _event(
        self,
        kind: EventKind,
        ctx: CallContext,
        amount: int,
        period_count: Optional[int] = None,
    ) -> LedgerEvent:
        if period_count is None:
            period_count = self.get_subscription(ctx.caller).period_count
        return LedgerEvent(
            kind=kind,
            account=ctx.caller,
            amount=amount,
            period_count=period_count,
            timestamp=ctx.now,
        )


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 1:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")


def _restore(mapping: Dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        mapping.pop(key, None)
    else:
        mapping[key] = value


def _check_aggregates(
    subscriptions: Dict[str, Subscription],
    reserves: Dict[str, int],
    total_reserved: int,
    subscriber_count: int,
) -> Tuple[bool, Optional[str]]:
    negative = [account for account, amount in reserves.items() if amount < 0]
    if negative:
        return False, f"Negative reserve for accounts: {sorted(negative)}"

    reserve_sum = sum(reserves.values())
    if reserve_sum != total_reserved:
        return False, f"total_reserved {total_reserved} != sum of reserves {reserve_sum}"

    active = sum(1 for sub in subscriptions.values() if sub.active)
    if active != subscriber_count:
        return False, f"subscriber_count {subscriber_count} != active subscriptions {active}"

    return True, None
