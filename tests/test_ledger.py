"""
Tests for the Billing Ledger

Covers subscribe/unsubscribe/deposit/withdraw/fee withdrawal, lazy rollover
through the ledger, all-or-nothing semantics and reserve conservation.
"""

import random
import pytest
from reserve_rail.billing.token import FungibleToken, TokenTransferService
from reserve_rail.core.access import OwnerAccessControl
from reserve_rail.core.errors import (
    AlreadySubscribed,
    EmptyReserve,
    InsufficientFunds,
    InsufficientReserve,
    InvalidAmount,
    LedgerError,
    LedgerIntegrityError,
    NoSubscription,
    TransferFailed,
    Unauthorized,
)
from reserve_rail.core.ledger import BillingLedger, EventKind
from reserve_rail.core.rollover import RolloverOutcome
from reserve_rail.core.subscription import BillingTerms

LEDGER = "ledger"
PERIOD = 30 * 24 * 60 * 60
DAY = 24 * 60 * 60


def assert_conserved(ledger, token, accounts):
    """Aggregates match per-account state and the ledger is fully funded."""
    assert ledger.total_reserved == sum(ledger.reserve_amount(a) for a in accounts)
    assert ledger.subscriber_count == sum(1 for a in accounts if ledger.is_subscribed(a))
    assert token.balance_of(LEDGER) >= ledger.total_reserved
    assert ledger.verify_invariants() == (True, None)


class RejectingPushes(TokenTransferService):
    """Transfer service whose outgoing transfers always fail."""

    def push(self, destination, amount):
        raise TransferFailed("push rejected")


class TestSubscribe:
    """Test subscription creation."""

    def test_adds_new_subscription(self, ledger, token, clock):
        """subscribe(1) pulls one fee and reserves nothing."""
        sub = ledger.subscribe(clock.ctx("alice"), 1)

        assert token.balance_of(LEDGER) == 10
        assert token.balance_of("alice") == 9990
        assert ledger.is_subscribed("alice") is True
        assert ledger.subscriber_count == 1
        assert sub.period_count == 1
        assert sub.period_anchor == clock.now
        assert ledger.reserve_amount("alice") == 0
        assert ledger.total_reserved == 0

    def test_forward_payment_goes_to_reserve(self, ledger, token, clock):
        """subscribe(10) pulls 100 and reserves 90."""
        ledger.subscribe(clock.ctx("alice"), 10)

        assert token.balance_of(LEDGER) == 100
        assert ledger.total_reserved == 90
        assert ledger.reserve_amount("alice") == 90

    def test_insufficient_funds(self, ledger, token, clock):
        """Balance below the payment is rejected before any transfer."""
        token.transfer("alice", "bob", 5)
        token.approve("bob", LEDGER, 10)

        with pytest.raises(InsufficientFunds):
            ledger.subscribe(clock.ctx("bob"), 1)

        assert token.balance_of("bob") == 5
        assert ledger.is_subscribed("bob") is False

    def test_already_subscribed(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        with pytest.raises(AlreadySubscribed):
            ledger.subscribe(clock.ctx("alice"), 1)

    def test_already_subscribed_regardless_of_reserve_state(self, ledger, clock):
        """A stale active record still blocks a new subscribe."""
        ledger.subscribe(clock.ctx("alice"), 1)
        clock.advance(PERIOD * 3)

        with pytest.raises(AlreadySubscribed):
            ledger.subscribe(clock.ctx("alice"), 5)

        assert ledger.get_subscription("alice").period_count == 1

    @pytest.mark.parametrize("amount", [0, -1])
    def test_invalid_period_amount(self, ledger, clock, amount):
        with pytest.raises(InvalidAmount):
            ledger.subscribe(clock.ctx("alice"), amount)

    def test_failed_pull_leaves_no_trace(self, ledger, token, clock):
        """Allowance too small: the transfer fails and nothing is recorded."""
        token.approve("alice", LEDGER, 5)

        with pytest.raises(TransferFailed):
            ledger.subscribe(clock.ctx("alice"), 10)

        assert ledger.is_subscribed("alice") is False
        assert ledger.get_subscription("alice").period_count == 0
        assert ledger.subscriber_count == 0
        assert ledger.total_reserved == 0
        assert ledger.get_history() == []


class TestUnsubscribe:
    """Test cancellation and refunds."""

    def test_removes_subscription(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        refund = ledger.unsubscribe(clock.ctx("alice"))

        assert refund == 0
        assert ledger.is_subscribed("alice") is False
        assert ledger.subscriber_count == 0
        assert ledger.get_subscription("alice").period_count == 0

    def test_refunds_whole_reserve(self, ledger, token, clock):
        """Reserve of 90 is refunded in full, the consumed period is kept."""
        ledger.subscribe(clock.ctx("alice"), 10)

        refund = ledger.unsubscribe(clock.ctx("alice"))

        assert refund == 90
        assert ledger.total_reserved == 0
        assert ledger.reserve_amount("alice") == 0
        assert ledger.subscriber_count == 0
        assert token.balance_of(LEDGER) == 10
        assert token.balance_of("alice") == 9990

    def test_not_subscribed(self, ledger, clock):
        with pytest.raises(NoSubscription):
            ledger.unsubscribe(clock.ctx("alice"))

    def test_failed_refund_rolls_back(self, token, access, clock):
        """A rejected refund keeps the subscription and the reserve."""
        ledger = BillingLedger(
            terms=BillingTerms(fee_per_period=10, period_length=PERIOD),
            transfers=RejectingPushes(token, LEDGER),
            access_control=access,
        )
        ledger.subscribe(clock.ctx("alice"), 10)

        with pytest.raises(TransferFailed):
            ledger.unsubscribe(clock.ctx("alice"))

        assert ledger.is_subscribed("alice") is True
        assert ledger.reserve_amount("alice") == 90
        assert ledger.total_reserved == 90
        assert ledger.subscriber_count == 1
        assert [e.kind for e in ledger.get_history()] == [EventKind.SUBSCRIBED]


class TestDeposit:
    """Test reserve top-ups."""

    def test_deposits_into_reserve(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        reserve = ledger.deposit(clock.ctx("alice"), 9)

        assert reserve == 90
        assert ledger.total_reserved == 90
        assert ledger.reserve_amount("alice") == 90

    def test_not_subscribed(self, ledger, clock):
        with pytest.raises(NoSubscription):
            ledger.deposit(clock.ctx("alice"), 1)

    def test_insufficient_funds(self, ledger, token, clock):
        token.transfer("alice", "bob", 15)
        token.approve("bob", LEDGER, 15)
        ledger.subscribe(clock.ctx("bob"), 1)

        with pytest.raises(InsufficientFunds):
            ledger.deposit(clock.ctx("bob"), 1)

    def test_rolls_over_before_crediting(self, ledger, clock):
        """The elapsed period is charged before the deposit lands."""
        ledger.subscribe(clock.ctx("alice"), 3)
        clock.advance(PERIOD)

        reserve = ledger.deposit(clock.ctx("alice"), 1)

        assert reserve == 20 - 10 + 10
        assert ledger.get_subscription("alice").period_count == 2

    def test_failed_pull_undoes_rollover(self, ledger, token, clock):
        """If the deposit transfer fails the rollover is reverted too."""
        ledger.subscribe(clock.ctx("alice"), 10)
        token.approve("alice", LEDGER, 0)
        clock.advance(PERIOD)

        with pytest.raises(TransferFailed):
            ledger.deposit(clock.ctx("alice"), 1)

        sub = ledger.get_subscription("alice")
        assert sub.period_count == 1
        assert ledger.reserve_amount("alice") == 90
        assert ledger.total_reserved == 90

    def test_deposit_on_lapse_then_reactivate(self, ledger, clock):
        """Deposit lapses an empty reserve, the next rollover reactivates it."""
        ledger.subscribe(clock.ctx("alice"), 1)
        clock.advance(PERIOD)

        reserve = ledger.deposit(clock.ctx("alice"), 2)

        assert reserve == 20
        assert ledger.is_subscribed("alice") is False
        assert ledger.subscriber_count == 0

        clock.advance(PERIOD)
        result = ledger.update_subscription(clock.ctx("alice"))

        assert result.outcome == RolloverOutcome.DEBITED
        assert ledger.is_subscribed("alice") is True
        assert ledger.subscriber_count == 1
        assert ledger.reserve_amount("alice") == 10
        assert ledger.get_subscription("alice").period_count == 3


class TestWithdraw:
    """Test reserve withdrawals."""

    def test_withdraws_to_caller(self, ledger, token, clock):
        ledger.subscribe(clock.ctx("alice"), 10)

        reserve = ledger.withdraw(clock.ctx("alice"), 9)

        assert reserve == 0
        assert ledger.total_reserved == 0
        assert token.balance_of(LEDGER) == 10
        assert token.balance_of("alice") == 9990

    def test_empty_reserve(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        with pytest.raises(EmptyReserve):
            ledger.withdraw(clock.ctx("alice"), 1)

    def test_exceeds_reserve(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 10)

        with pytest.raises(InsufficientReserve):
            ledger.withdraw(clock.ctx("alice"), 10)

        assert ledger.reserve_amount("alice") == 90

    def test_not_subscribed(self, ledger, clock):
        with pytest.raises(NoSubscription):
            ledger.withdraw(clock.ctx("alice"), 1)

    def test_rollover_applies_first(self, ledger, clock):
        """After one period only 80 remains withdrawable."""
        ledger.subscribe(clock.ctx("alice"), 10)
        clock.advance(PERIOD)

        reserve = ledger.withdraw(clock.ctx("alice"), 8)

        assert reserve == 0
        assert ledger.get_subscription("alice").period_count == 2

    def test_rejected_withdraw_undoes_rollover(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 10)
        clock.advance(PERIOD)

        with pytest.raises(InsufficientReserve):
            ledger.withdraw(clock.ctx("alice"), 9)

        assert ledger.get_subscription("alice").period_count == 1
        assert ledger.reserve_amount("alice") == 90
        assert ledger.get_history()[-1].kind == EventKind.SUBSCRIBED


class TestWithdrawFees:
    """Test operator fee withdrawal."""

    def test_withdraws_accumulated_fees(self, ledger, token, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        amount = ledger.withdraw_fees(clock.ctx("alice"))

        assert amount == 10
        assert token.balance_of(LEDGER) == 0
        assert token.balance_of("alice") == 10000

    def test_no_fees(self, ledger, clock):
        with pytest.raises(EmptyReserve):
            ledger.withdraw_fees(clock.ctx("alice"))

    def test_not_owner(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)

        with pytest.raises(Unauthorized):
            ledger.withdraw_fees(clock.ctx("bob"))

    def test_never_touches_reserves(self, ledger, token, clock):
        """Only the surplus over reserves is paid out; a second call finds nothing."""
        ledger.subscribe(clock.ctx("alice"), 10)

        assert ledger.withdraw_fees(clock.ctx("alice")) == 10
        assert token.balance_of(LEDGER) == 90

        with pytest.raises(EmptyReserve):
            ledger.withdraw_fees(clock.ctx("alice"))

    def test_rollover_debits_become_fees(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 10)
        ledger.withdraw_fees(clock.ctx("alice"))
        clock.advance(PERIOD)
        ledger.update_subscription(clock.ctx("alice"))

        assert ledger.available_fees() == 10
        assert ledger.withdraw_fees(clock.ctx("alice")) == 10

    def test_underfunded_ledger_is_refused(self, ledger, token, clock):
        ledger.import_state({
            "subscriptions": {"bob": {"period_count": 1, "period_anchor": clock.now, "active": True}},
            "reserves": {"bob": 50},
            "total_reserved": 50,
            "subscriber_count": 1,
        })
        token.mint(LEDGER, 10)

        with pytest.raises(LedgerIntegrityError):
            ledger.withdraw_fees(clock.ctx("alice"))

    def test_ownership_transfer(self, ledger, access, clock):
        ledger.subscribe(clock.ctx("alice"), 1)
        access.transfer_ownership("alice", "bob")

        with pytest.raises(Unauthorized):
            ledger.withdraw_fees(clock.ctx("alice"))
        assert ledger.withdraw_fees(clock.ctx("bob")) == 10


class TestUpdateSubscription:
    """Test standalone rollover through the ledger."""

    def test_updates_subscription_status(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 2)
        clock.advance(30 * DAY)

        ledger.update_subscription(clock.ctx("alice"))

        sub = ledger.get_subscription("alice")
        assert sub.period_count == 2
        assert sub.active is True

    def test_deactivates_on_insufficient_reserve(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)
        clock.advance(30 * DAY)

        result = ledger.update_subscription(clock.ctx("alice"))

        assert result.outcome == RolloverOutcome.LAPSED
        assert ledger.get_subscription("alice").active is False
        assert ledger.subscriber_count == 0

    def test_takes_periodical_fee(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 2)
        clock.advance(31 * DAY)

        ledger.update_subscription(clock.ctx("alice"))

        assert ledger.reserve_amount("alice") == 0

    def test_idempotent_within_period(self, ledger, clock):
        """A second update in the same period changes nothing."""
        ledger.subscribe(clock.ctx("alice"), 10)
        clock.advance(PERIOD + DAY)

        first = ledger.update_subscription(clock.ctx("alice"))
        snapshot = (ledger.get_subscription("alice"), ledger.reserve_amount("alice"), ledger.total_reserved)
        second = ledger.update_subscription(clock.ctx("alice"))

        assert first.outcome == RolloverOutcome.DEBITED
        assert second.outcome == RolloverOutcome.NOOP
        assert (ledger.get_subscription("alice"), ledger.reserve_amount("alice"), ledger.total_reserved) == snapshot

    def test_period_two_scenario(self, ledger, clock):
        """subscribe(10), one period later: period 2, reserve 80, total down by 10."""
        ledger.subscribe(clock.ctx("alice"), 10)
        clock.advance(PERIOD + 1)

        ledger.update_subscription(clock.ctx("alice"))

        assert ledger.get_subscription("alice").period_count == 2
        assert ledger.reserve_amount("alice") == 80
        assert ledger.total_reserved == 80

    def test_lapse_keeps_partial_reserve(self, ledger, token, clock):
        """Reserve 5 with fee 10: lapses, reserve stays 5."""
        ledger.import_state({
            "subscriptions": {"bob": {"period_count": 1, "period_anchor": clock.now, "active": True}},
            "reserves": {"bob": 5},
            "total_reserved": 5,
            "subscriber_count": 1,
        })
        token.mint(LEDGER, 5)
        clock.advance(PERIOD)

        ledger.update_subscription(clock.ctx("bob"))

        assert ledger.is_subscribed("bob") is False
        assert ledger.reserve_amount("bob") == 5
        assert ledger.total_reserved == 5

    def test_walks_one_boundary_per_call(self, ledger, clock):
        """Untouched for three periods, the account catches up one call at a time."""
        ledger.subscribe(clock.ctx("alice"), 2)
        clock.advance(PERIOD * 3)

        # Reads never roll over
        assert ledger.is_subscribed("alice") is True
        assert ledger.periods_due("alice", clock.now) == 3

        outcomes = [ledger.update_subscription(clock.ctx("alice")).outcome for _ in range(4)]

        assert outcomes == [
            RolloverOutcome.DEBITED,
            RolloverOutcome.LAPSED,
            RolloverOutcome.LAPSED,
            RolloverOutcome.NOOP,
        ]
        assert ledger.get_subscription("alice").period_count == 4
        assert ledger.is_subscribed("alice") is False
        assert ledger.subscriber_count == 0

    def test_never_subscribed(self, ledger, clock):
        with pytest.raises(NoSubscription):
            ledger.update_subscription(clock.ctx("bob"))

    def test_unsubscribed_account_rejected(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 1)
        ledger.unsubscribe(clock.ctx("alice"))

        with pytest.raises(NoSubscription):
            ledger.update_subscription(clock.ctx("alice"))

    def test_resubscribe_after_lapse_keeps_leftover(self, ledger, token, clock):
        ledger.import_state({
            "subscriptions": {"bob": {"period_count": 1, "period_anchor": clock.now, "active": True}},
            "reserves": {"bob": 5},
            "total_reserved": 5,
            "subscriber_count": 1,
        })
        token.mint(LEDGER, 5)
        token.mint("bob", 100)
        token.approve("bob", LEDGER, 100)
        clock.advance(PERIOD)
        ledger.update_subscription(clock.ctx("bob"))

        ledger.subscribe(clock.ctx("bob"), 3)

        assert ledger.get_subscription("bob").period_count == 1
        assert ledger.reserve_amount("bob") == 25
        assert ledger.total_reserved == 25
        assert ledger.subscriber_count == 1


class TestEvents:
    """Test the committed-event history."""

    def test_history_records_committed_operations(self, ledger, clock):
        ledger.subscribe(clock.ctx("alice"), 3)
        clock.advance(PERIOD)
        ledger.deposit(clock.ctx("alice"), 1)
        ledger.unsubscribe(clock.ctx("alice"))

        kinds = [e.kind for e in ledger.get_history()]
        assert kinds == [
            EventKind.SUBSCRIBED,
            EventKind.PERIOD_ADVANCED,
            EventKind.DEPOSITED,
            EventKind.UNSUBSCRIBED,
        ]
        assert ledger.get_history()[-1].amount == 20

    def test_callbacks_receive_events(self, ledger, clock):
        received = []
        ledger.register_callback(received.append)

        ledger.subscribe(clock.ctx("alice"), 1)
        with pytest.raises(AlreadySubscribed):
            ledger.subscribe(clock.ctx("alice"), 1)

        assert [e.kind for e in received] == [EventKind.SUBSCRIBED]
        assert received[0].to_dict()["amount"] == 10

    def test_failing_callback_does_not_abort(self, ledger, clock):
        def broken(event):
            raise RuntimeError("listener down")

        ledger.register_callback(broken)
        ledger.subscribe(clock.ctx("alice"), 1)

        assert ledger.is_subscribed("alice") is True


class TestStateExport:
    """Test export/import and invariant audits."""

    def test_round_trip(self, ledger, transfers, access, clock):
        ledger.subscribe(clock.ctx("alice"), 4)
        state = ledger.export_state()

        restored = BillingLedger(ledger.terms, transfers, access)
        restored.import_state(state)

        assert restored.get_subscription("alice") == ledger.get_subscription("alice")
        assert restored.reserve_amount("alice") == 30
        assert restored.total_reserved == 30
        assert restored.subscriber_count == 1

    def test_rejects_mismatched_total(self, ledger):
        with pytest.raises(LedgerIntegrityError):
            ledger.import_state({
                "subscriptions": {},
                "reserves": {"bob": 20},
                "total_reserved": 10,
                "subscriber_count": 0,
            })

    def test_rejects_mismatched_subscriber_count(self, ledger):
        with pytest.raises(LedgerIntegrityError):
            ledger.import_state({
                "subscriptions": {"bob": {"period_count": 1, "period_anchor": 0, "active": True}},
                "reserves": {},
                "total_reserved": 0,
                "subscriber_count": 0,
            })

    def test_rejects_different_terms(self, ledger):
        state = ledger.export_state()
        state["terms"]["fee_per_period"] = 99

        with pytest.raises(LedgerIntegrityError):
            ledger.import_state(state)

    def test_verify_detects_underfunding(self, ledger, clock):
        ledger.import_state({
            "subscriptions": {"bob": {"period_count": 1, "period_anchor": clock.now, "active": True}},
            "reserves": {"bob": 50},
            "total_reserved": 50,
            "subscriber_count": 1,
        })

        valid, error = ledger.verify_invariants()

        assert valid is False
        assert "reserves total 50" in error


class TestConservation:
    """Reserve conservation under arbitrary interleavings."""

    def test_random_walk_preserves_invariants(self, clock):
        accounts = ["alice", "bob", "carol"]
        token = FungibleToken()
        for account in accounts:
            token.mint(account, 1_000_000)
            token.approve(account, LEDGER, 1_000_000)

        ledger = BillingLedger(
            terms=BillingTerms(fee_per_period=7, period_length=PERIOD),
            transfers=TokenTransferService(token, LEDGER),
            access_control=OwnerAccessControl("alice"),
        )
        rng = random.Random(1234)

        for _ in range(500):
            account = rng.choice(accounts)
            op = rng.choice(["subscribe", "unsubscribe", "deposit", "withdraw", "update", "fees", "wait"])
            try:
                if op == "subscribe":
                    ledger.subscribe(clock.ctx(account), rng.randint(1, 5))
                elif op == "unsubscribe":
                    ledger.unsubscribe(clock.ctx(account))
                elif op == "deposit":
                    ledger.deposit(clock.ctx(account), rng.randint(1, 3))
                elif op == "withdraw":
                    ledger.withdraw(clock.ctx(account), rng.randint(1, 3))
                elif op == "update":
                    ledger.update_subscription(clock.ctx(account))
                elif op == "fees":
                    ledger.withdraw_fees(clock.ctx(account))
                else:
                    clock.advance(rng.randint(0, PERIOD * 2))
            except LedgerError:
                pass

            assert_conserved(ledger, token, accounts)

        # Nothing is created or destroyed
        assert sum(token.balance_of(a) for a in accounts + [LEDGER]) == 3_000_000
