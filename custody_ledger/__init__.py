"""
Custody Ledger

Bookkeeping for a pooled custody account: per-user balances, bounded
deposits, partial withdrawals and a time-gated annual interest payout
funded from the pool. All amounts are integer base units of one asset.
"""

__version__ = "1.0.0"
