"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["OPERATOR_ACCOUNT"] = "alice"

from reserve_rail.billing.token import FungibleToken, TokenTransferService
from reserve_rail.core.access import OwnerAccessControl
from reserve_rail.core.ledger import BillingLedger
from reserve_rail.core.subscription import BillingTerms, CallContext

LEDGER = "ledger"
FEE = 10
PERIOD = 30 * 24 * 60 * 60
START = 1_700_000_000


class Clock:
    """Manually advanced timestamp source."""

    def __init__(self, now: int = START):
        self.now = now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def ctx(self, caller: str) -> CallContext:
        return CallContext(caller=caller, now=self.now)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def token():
    """Token where alice owns 10000 and has approved the ledger for all of it."""
    token = FungibleToken()
    token.mint("alice", 10000)
    token.approve("alice", LEDGER, 10000)
    return token


@pytest.fixture
def transfers(token):
    return TokenTransferService(token, LEDGER)


@pytest.fixture
def access():
    return OwnerAccessControl("alice")


@pytest.fixture
def ledger(transfers, access):
    return BillingLedger(
        terms=BillingTerms(fee_per_period=FEE, period_length=PERIOD),
        transfers=transfers,
        access_control=access,
    )


@pytest.fixture
def temp_db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"
