"""
RESERVE RAIL - FastAPI Server

HTTP surface for the recurring-billing ledger.

Endpoints:
- POST /subscribe - Start a subscription, prepaying N periods
- POST /unsubscribe - Cancel and refund the reserve
- POST /deposit - Top up the reserve
- POST /withdraw - Take funds back out of the reserve
- POST /update - Roll the caller's subscription forward one period
- POST /fees/withdraw - Operator fee withdrawal
- GET /subscriptions/{account} - Subscription record
- GET /ledger - Aggregates
- GET /ledger/verify - Conservation audit
- POST /token/mint - Credit development tokens (operator only)
- POST /token/approve - Let the ledger pull from the caller
- GET /token/{account} - Development token balance and allowance
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional
import os
import time
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..billing.token import FungibleToken, TokenTransferService
from ..config import LedgerSettings
from ..core.access import OwnerAccessControl
from ..core.errors import (
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
from ..core.ledger import BillingLedger, LedgerEvent
from ..core.subscription import BillingTerms, CallContext
from ..persistence.database import Database
from ..persistence.repository import LedgerRepository

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class SubscribeRequest(BaseModel):
    """Request to start a subscription."""
    period_amount: int = Field(..., ge=1, description="Periods to prepay, including the current one")


class AmountRequest(BaseModel):
    """Deposit/withdraw amount, in periods."""
    amount: int = Field(..., ge=1, description="Number of periods' worth of fees")


class SubscriptionResponse(BaseModel):
    """Stored subscription state for an account."""
    account: str
    period_count: int
    period_anchor: int
    active: bool
    reserve: int
    periods_due: int


class ReserveResponse(BaseModel):
    account: str
    reserve: int


class UpdateResponse(BaseModel):
    outcome: str
    subscription: SubscriptionResponse
    debit: int


class AmountResponse(BaseModel):
    account: str
    amount: int


class LedgerSummary(BaseModel):
    """Ledger aggregates."""
    fee_per_period: int
    period_length: int
    total_reserved: int
    subscriber_count: int
    ledger_held_funds: int
    available_fees: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    subscriber_count: int
    uptime_seconds: float


class TokenMintRequest(BaseModel):
    """Operator request to credit development tokens."""
    account: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1)


class TokenApproveRequest(BaseModel):
    """Allowance the caller grants the ledger, in raw token units."""
    amount: int = Field(..., ge=0)


class TokenBalanceResponse(BaseModel):
    account: str
    balance: int
    allowance: int


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """
    Application state container.

    The FungibleToken stands in for the external value-transfer service. Its
    balances are saved with the ledger so reserves stay funded across restarts.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self.settings = settings or LedgerSettings.from_env()

        self.token = FungibleToken()
        self.transfers = TokenTransferService(self.token, self.settings.ledger_account)
        self.access = OwnerAccessControl(self.settings.operator_account)
        self.ledger = BillingLedger(
            terms=BillingTerms(
                fee_per_period=self.settings.fee_per_period,
                period_length=self.settings.period_length,
            ),
            transfers=self.transfers,
            access_control=self.access,
        )

        self.repository = LedgerRepository(Database(self.settings.database_url))
        self.token.import_state(self.repository.load_token())
        stored = self.repository.load()
        if stored:
            self.ledger.import_state(stored)
            is_valid, error = self.ledger.verify_invariants()
            if not is_valid:
                self.repository.db.close()
                raise LedgerIntegrityError(f"Refusing to load ledger: {error}")

        self._unsaved_events: List[LedgerEvent] = []
        self.ledger.register_callback(self._unsaved_events.append)

        self.clock: Callable[[], int] = lambda: int(time.time())
        self.start_time = datetime.now(timezone.utc)

    def context(self, caller: str) -> CallContext:
        return CallContext(caller=caller, now=self.clock())

    def persist(self) -> None:
        """Save ledger state, token balances and new events together."""
        self.repository.save(
            self.ledger.export_state(),
            token_state=self.token.export_state(),
            events=self._unsaved_events,
        )
        self._unsaved_events.clear()

    def token_view(self, account: str) -> TokenBalanceResponse:
        return TokenBalanceResponse(
            account=account,
            balance=self.token.balance_of(account),
            allowance=self.token.allowance(account, self.settings.ledger_account),
        )


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("reserve_rail_starting", version=__version__)
    app_state = AppState()
    yield
    app_state.repository.db.close()
    logger.info("reserve_rail_stopping")


ERROR_STATUS = {
    InvalidAmount: 400,
    InsufficientFunds: 402,
    Unauthorized: 403,
    NoSubscription: 404,
    AlreadySubscribed: 409,
    EmptyReserve: 409,
    InsufficientReserve: 409,
    LedgerIntegrityError: 500,
    TransferFailed: 502,
}


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map ledger errors to HTTP responses."""
    status = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": exc.message},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = LedgerSettings.from_env()

    application = FastAPI(
        title="Reserve Rail",
        description="""
# Recurring Billing Ledger

Accounts prepay a fixed periodical fee into a per-account reserve. Billing
periods advance lazily: every mutating call first rolls the caller's
subscription forward by at most one period.

Callers identify themselves with `X-Account-Id`.
        """,
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(LedgerError, ledger_error_handler)

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_caller(x_account_id: str = Header(..., alias="X-Account-Id")) -> str:
    """Invoking account identity."""
    if not x_account_id.strip():
        raise HTTPException(status_code=400, detail="X-Account-Id must not be empty")
    return x_account_id.strip()


def subscription_view(state: AppState, account: str) -> SubscriptionResponse:
    sub = state.ledger.get_subscription(account)
    return SubscriptionResponse(
        account=account,
        period_count=sub.period_count,
        period_anchor=sub.period_anchor,
        active=sub.active,
        reserve=state.ledger.reserve_amount(account),
        periods_due=state.ledger.periods_due(account, state.clock()),
    )


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        subscriber_count=state.ledger.subscriber_count,
        uptime_seconds=uptime,
    )


@app.post("/subscribe", response_model=SubscriptionResponse, tags=["Subscriptions"])
async def subscribe(
    request: SubscribeRequest,
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Start a subscription.

    Pulls `period_amount × fee` from the caller. The first period is consumed
    immediately; the rest is held in the caller's reserve.
    """
    state.ledger.subscribe(state.context(caller), request.period_amount)
    state.persist()
    return subscription_view(state, caller)


@app.post("/unsubscribe", response_model=AmountResponse, tags=["Subscriptions"])
async def unsubscribe(
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Cancel the caller's subscription and refund the whole reserve."""
    refund = state.ledger.unsubscribe(state.context(caller))
    state.persist()
    return AmountResponse(account=caller, amount=refund)


@app.post("/deposit", response_model=ReserveResponse, tags=["Reserve"])
async def deposit(
    request: AmountRequest,
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Add `amount` periods' worth of fees to the caller's reserve."""
    reserve = state.ledger.deposit(state.context(caller), request.amount)
    state.persist()
    return ReserveResponse(account=caller, reserve=reserve)


@app.post("/withdraw", response_model=ReserveResponse, tags=["Reserve"])
async def withdraw(
    request: AmountRequest,
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Return `amount` periods' worth of fees from the reserve to the caller."""
    reserve = state.ledger.withdraw(state.context(caller), request.amount)
    state.persist()
    return ReserveResponse(account=caller, reserve=reserve)


@app.post("/update", response_model=UpdateResponse, tags=["Subscriptions"])
async def update_subscription(
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Roll the caller's subscription forward by at most one period."""
    result = state.ledger.update_subscription(state.context(caller))
    state.persist()
    return UpdateResponse(
        outcome=result.outcome.value,
        subscription=subscription_view(state, caller),
        debit=result.debit,
    )


@app.post("/fees/withdraw", response_model=AmountResponse, tags=["Operator"])
async def withdraw_fees(
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Send undistributed revenue to the operator. Operator only."""
    amount = state.ledger.withdraw_fees(state.context(caller))
    state.persist()
    return AmountResponse(account=caller, amount=amount)


@app.post("/token/mint", response_model=TokenBalanceResponse, tags=["Token"])
async def mint_tokens(
    request: TokenMintRequest,
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Credit development tokens to an account. Operator only."""
    state.access.require_owner(caller)
    state.token.mint(request.account, request.amount)
    state.persist()
    return state.token_view(request.account)


@app.post("/token/approve", response_model=TokenBalanceResponse, tags=["Token"])
async def approve_ledger(
    request: TokenApproveRequest,
    caller: str = Depends(get_caller),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Set how many tokens the ledger may pull from the caller."""
    state.token.approve(caller, state.settings.ledger_account, request.amount)
    state.persist()
    return state.token_view(caller)


@app.get("/token/{account}", response_model=TokenBalanceResponse, tags=["Token"])
async def get_token_balance(account: str, state: AppState = Depends(get_state)):
    return state.token_view(account)


@app.get("/subscriptions/{account}", response_model=SubscriptionResponse, tags=["Subscriptions"])
async def get_subscription(account: str, state: AppState = Depends(get_state)):
    """
    Stored subscription record.

    Does not roll over: `active` and `period_count` may lag until the account
    is touched. `periods_due` shows how many boundaries are pending.
    """
    return subscription_view(state, account)


@app.get("/reserves/{account}", response_model=ReserveResponse, tags=["Reserve"])
async def get_reserve(account: str, state: AppState = Depends(get_state)):
    return ReserveResponse(account=account, reserve=state.ledger.reserve_amount(account))


@app.get("/ledger", response_model=LedgerSummary, tags=["Ledger"])
async def get_ledger(state: AppState = Depends(get_state)):
    """Ledger aggregates."""
    ledger = state.ledger
    return LedgerSummary(
        fee_per_period=ledger.terms.fee_per_period,
        period_length=ledger.terms.period_length,
        total_reserved=ledger.total_reserved,
        subscriber_count=ledger.subscriber_count,
        ledger_held_funds=ledger.ledger_held_funds(),
        available_fees=ledger.available_fees(),
    )


@app.get("/ledger/verify", tags=["Ledger"])
async def verify_ledger(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Audit the conservation invariants across all accounts."""
    is_valid, error = state.ledger.verify_invariants()
    return {
        "valid": is_valid,
        "error": error,
        "total_reserved": state.ledger.total_reserved,
        "ledger_held_funds": state.ledger.ledger_held_funds(),
        "verified_at": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/ledger/events", tags=["Ledger"])
async def get_events(
    account: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Persisted audit trail, most recent first."""
    events = state.repository.get_events(account_id=account, limit=limit)
    return {
        "total": len(events),
        "events": [e.to_dict() for e in events],
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "reserve_rail.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
