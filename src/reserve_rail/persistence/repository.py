"""
Repository Layer for Reserve Rail

Saves and restores ledger state and keeps the event audit trail.
"""

from typing import Any, Dict, Iterable, List, Optional
import structlog

from .database import Database, get_database
from .models import (
    AllowanceRecord,
    EventRecord,
    LedgerStateRecord,
    SubscriptionRecord,
    TokenBalanceRecord,
)
from ..core.ledger import LedgerEvent

logger = structlog.get_logger()


class LedgerRepository:
    """Repository for ledger state and events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()

    def save(
        self,
        state: Dict[str, Any],
        token_state: Optional[Dict[str, Any]] = None,
        events: Iterable[LedgerEvent] = (),
    ) -> None:
        """
        Persist an exported ledger state.

        Accounts, aggregates, token balances and the events that produced
        them are written in one transaction, so a crash never leaves
        aggregates out of step with reserves, funds or the audit trail.
        """
        reserves = state.get("reserves", {})
        subscriptions = state.get("subscriptions", {})
        accounts = set(subscriptions) | set(reserves)

        records = []
        for account in sorted(accounts):
            sub = subscriptions.get(account, {})
            records.append(SubscriptionRecord(
                account_id=account,
                period_count=sub.get("period_count", 0),
                period_anchor=sub.get("period_anchor", 0),
                active=sub.get("active", False),
                reserve=reserves.get(account, 0),
            ))

        ledger_row = LedgerStateRecord(
            fee_per_period=state["terms"]["fee_per_period"],
            period_length=state["terms"]["period_length"],
            total_reserved=state["total_reserved"],
            subscriber_count=state["subscriber_count"],
        )
        event_records = [_event_record(e) for e in events]

        with self.db.connection() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO subscriptions
                   (account_id, period_count, period_anchor, active, reserve)
                   VALUES (?, ?, ?, ?, ?)""",
                [r.to_db_tuple() for r in records]
            )
            conn.execute(
                """INSERT OR REPLACE INTO ledger_state
                   (id, fee_per_period, period_length, total_reserved,
                    subscriber_count, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                ledger_row.to_db_tuple()
            )
            if token_state is not None:
                self._write_token(conn, token_state)
            conn.executemany(
                """INSERT INTO ledger_events
                   (kind, account_id, amount, period_count, timestamp, recorded_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [r.to_db_tuple() for r in event_records]
            )

        logger.debug(
            "ledger_state_saved",
            accounts=len(records),
            total_reserved=ledger_row.total_reserved,
            events=len(event_records),
        )

    def load(self) -> Optional[Dict[str, Any]]:
        """Load the persisted state in export_state() shape, if any."""
        rows = self.db.execute("SELECT * FROM ledger_state WHERE id = 1")
        if not rows:
            return None

        ledger_row = LedgerStateRecord.from_row(rows[0])
        records = [
            SubscriptionRecord.from_row(r)
            for r in self.db.execute("SELECT * FROM subscriptions ORDER BY account_id")
        ]

        return {
            "terms": {
                "fee_per_period": ledger_row.fee_per_period,
                "period_length": ledger_row.period_length,
            },
            "subscriptions": {
                r.account_id: {
                    "period_count": r.period_count,
                    "period_anchor": r.period_anchor,
                    "active": r.active,
                }
                for r in records
            },
            "reserves": {r.account_id: r.reserve for r in records if r.reserve},
            "total_reserved": ledger_row.total_reserved,
            "subscriber_count": ledger_row.subscriber_count,
            "exported_at": ledger_row.updated_at,
        }

    def load_token(self) -> Dict[str, Any]:
        """Load token balances and allowances in FungibleToken.export_state() shape."""
        balances = [
            TokenBalanceRecord.from_row(r)
            for r in self.db.execute("SELECT * FROM token_balances ORDER BY account_id")
        ]
        allowances = [
            AllowanceRecord.from_row(r)
            for r in self.db.execute("SELECT * FROM token_allowances ORDER BY owner, spender")
        ]
        return {
            "balances": {b.account_id: b.balance for b in balances},
            "allowances": [
                {"owner": a.owner, "spender": a.spender, "amount": a.amount}
                for a in allowances
            ],
        }

    def append_event(self, event: LedgerEvent) -> EventRecord:
        """Record a committed ledger event."""
        record = _event_record(event)
        self.db.execute(
            """INSERT INTO ledger_events
               (kind, account_id, amount, period_count, timestamp, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get_events(self, account_id: Optional[str] = None, limit: int = 100) -> List[EventRecord]:
        """Most recent events, optionally for one account."""
        if account_id:
            results = self.db.execute(
                "SELECT * FROM ledger_events WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                (account_id, limit)
            )
        else:
            results = self.db.execute(
                "SELECT * FROM ledger_events ORDER BY id DESC LIMIT ?",
                (limit,)
            )
        return [EventRecord.from_row(r) for r in results]

    def count_events(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM ledger_events")
        return results[0]["cnt"] if results else 0

    @staticmethod
    def _write_token(conn, token_state: Dict[str, Any]) -> None:
        # Full snapshot: rows absent from token_state are dropped
        balances = [
            TokenBalanceRecord(account_id=account, balance=balance)
            for account, balance in sorted(token_state.get("balances", {}).items())
        ]
        allowances = [
            AllowanceRecord(owner=a["owner"], spender=a["spender"], amount=a["amount"])
            for a in token_state.get("allowances", [])
        ]
        conn.execute("DELETE FROM token_balances")
        conn.execute("DELETE FROM token_allowances")
        conn.executemany(
            "INSERT INTO token_balances (account_id, balance) VALUES (?, ?)",
            [b.to_db_tuple() for b in balances]
        )
        conn.executemany(
            "INSERT INTO token_allowances (owner, spender, amount) VALUES (?, ?, ?)",
            [a.to_db_tuple() for a in allowances]
        )


def _event_record(event: LedgerEvent) -> EventRecord:
    return EventRecord(
        kind=event.kind.value,
        account_id=event.account,
        amount=event.amount,
        period_count=event.period_count,
        timestamp=event.timestamp,
    )
