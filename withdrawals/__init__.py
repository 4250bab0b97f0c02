"""
Withdrawal Tier Limiter

Four static tiers bound daily and monthly withdrawal totals by account age,
completed-transaction count and KYC status.
"""

from .models import DEFAULT_TIERS, WithdrawalLimitCheck, WithdrawalTier
from .service import WithdrawalLimitsService

__all__ = [
    "DEFAULT_TIERS",
    "WithdrawalLimitCheck",
    "WithdrawalTier",
    "WithdrawalLimitsService",
]
