"""
RESERVE RAIL - Recurring Billing Ledger

Accounts prepay a fixed periodical fee into a per-account reserve. Billing
periods are advanced lazily, only when an account is touched.
"""

__version__ = "1.0.0"
