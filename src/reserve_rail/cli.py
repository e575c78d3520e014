"""
Reserve Rail CLI

Commands:
  serve     - Run the ledger API server
  status    - Show persisted ledger aggregates
  verify    - Audit persisted state against the conservation invariants
"""

import argparse
import os
import sys


def cmd_serve(args):
    """Run the ledger API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Reserve Rail on {host}:{port}")

    # Single process: the ledger and token live in this process's memory
    uvicorn.run(
        "reserve_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
    )


def _load_state(args):
    from .persistence.database import get_database
    from .persistence.repository import LedgerRepository

    repository = LedgerRepository(get_database(args.database_url))
    state = repository.load()
    if state is None:
        print("Error: no ledger state has been persisted yet")
        sys.exit(1)
    return repository, state


def cmd_status(args):
    """Show persisted ledger aggregates."""
    repository, state = _load_state(args)

    active = sum(1 for sub in state["subscriptions"].values() if sub["active"])

    print("Reserve Rail Ledger Status")
    print("=" * 40)
    print(f"Fee per period: {state['terms']['fee_per_period']}")
    print(f"Period length: {state['terms']['period_length']}s")
    print(f"Accounts: {len(state['subscriptions'])}")
    print(f"Active subscriptions: {active}")
    print(f"Subscriber count: {state['subscriber_count']}")
    print(f"Total reserved: {state['total_reserved']}")
    print(f"Events recorded: {repository.count_events()}")
    print(f"Last saved: {state['exported_at']}")


def cmd_verify(args):
    """Audit persisted state against the conservation invariants."""
    from .core.errors import LedgerIntegrityError
    from .core.subscription import BillingTerms

    repository, state = _load_state(args)

    try:
        _check_state(state, repository.load_token(), BillingTerms(**state["terms"]))
    except LedgerIntegrityError as e:
        print(f"Ledger Invalid: {e}")
        sys.exit(1)

    print("Ledger Valid")
    print(f"  Total reserved: {state['total_reserved']}")
    print(f"  Subscriber count: {state['subscriber_count']}")


def _check_state(state, token_state, terms):
    """Replay persisted state through the ledger's integrity checks."""
    from .billing.token import FungibleToken, TokenTransferService
    from .config import LedgerSettings
    from .core.access import OwnerAccessControl
    from .core.errors import LedgerIntegrityError
    from .core.ledger import BillingLedger

    settings = LedgerSettings.from_env()
    token = FungibleToken()
    token.import_state(token_state)

    ledger = BillingLedger(
        terms=terms,
        transfers=TokenTransferService(token, settings.ledger_account),
        access_control=OwnerAccessControl(settings.operator_account),
    )
    ledger.import_state(state)

    is_valid, error = ledger.verify_invariants()
    if not is_valid:
        raise LedgerIntegrityError(error)


def main():
    parser = argparse.ArgumentParser(
        description="Reserve Rail - Recurring Billing Ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")

    # status
    status_parser = subparsers.add_parser("status", help="Show ledger aggregates")
    status_parser.add_argument("--database-url", help="Defaults to DATABASE_URL")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Audit persisted ledger state")
    verify_parser.add_argument("--database-url", help="Defaults to DATABASE_URL")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "verify":
        cmd_verify(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
