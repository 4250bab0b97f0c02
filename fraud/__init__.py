"""
Fraud Risk Gate

Additive risk scoring for signup devices and referral activity. A score of 70
or more (capped at 100) marks a request as fraudulent.
"""

from .fingerprint import extract_from_request, generate_fingerprint
from .models import FingerprintData, FraudCheckResult
from .service import FraudPreventionService

__all__ = [
    "FingerprintData",
    "FraudCheckResult",
    "FraudPreventionService",
    "extract_from_request",
    "generate_fingerprint",
]
