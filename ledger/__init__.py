"""
Double-entry Ledger for Money Movement

This module provides:
- The Transaction record shared by every money-moving flow
- Append-only ledger entries with balance snapshots
- Balance derivation from completed transactions, with a best-effort cache
- Escrow balance derived from pending referral payouts
"""

from .models import (
    TransactionType,
    TransactionStatus,
    Transaction,
    LedgerEntry,
    UserBalance,
)
from .service import LedgerService

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "Transaction",
    "LedgerEntry",
    "UserBalance",
    "LedgerService",
]
