"""
Referral Escrow Settlement

Referral payouts are held for a configurable delay before they are credited:
escrow → paid on release, escrow → cancelled on cancellation. Each referral is
correlated with one payout transaction by reference ``REF-<referral_id>``.
"""

from .models import Referral, ReferralStatus, referral_reference
from .service import ReferralEscrowService
from .sweep import run_escrow_sweep

__all__ = [
    "Referral",
    "ReferralStatus",
    "referral_reference",
    "ReferralEscrowService",
    "run_escrow_sweep",
]
