"""
Runtime Settings

All settings come from the environment, with development defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List

THIRTY_DAYS = 30 * 24 * 60 * 60


@dataclass
class LedgerSettings:
    """Configuration for a ledger deployment."""
    fee_per_period: int = 10
    period_length: int = THIRTY_DAYS
    database_url: str = "sqlite:///reserve_rail.db"
    api_key: str = "dev-key-change-in-production"
    operator_account: str = "operator"
    ledger_account: str = "reserve-rail"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        env = os.environ
        return cls(
            fee_per_period=int(env.get("FEE_PER_PERIOD", 10)),
            period_length=int(env.get("PERIOD_LENGTH_SECONDS", THIRTY_DAYS)),
            database_url=env.get("DATABASE_URL", "sqlite:///reserve_rail.db"),
            api_key=env.get("API_KEY", "dev-key-change-in-production"),
            operator_account=env.get("OPERATOR_ACCOUNT", "operator"),
            ledger_account=env.get("LEDGER_ACCOUNT", "reserve-rail"),
            cors_origins=env.get("CORS_ORIGINS", "*").split(","),
        )
