"""
Payment confirmation ingestion

Applies Daraja STK callbacks to pending transactions exactly once per
(merchant, checkout) id pair within a 24 hour window, realizes paid signups
as users, and initiates STK pushes.
"""

from .idempotency import IdempotencyCache, generate_idempotency_key
from .models import DarajaWebhook, IdempotencyStatus, WebhookOutcome
from .service import WebhookIngestionService
from .signup import SignupService
from .stk import DarajaStkClient, PaymentInitiationError

__all__ = [
    "IdempotencyCache",
    "generate_idempotency_key",
    "DarajaWebhook",
    "IdempotencyStatus",
    "WebhookOutcome",
    "WebhookIngestionService",
    "SignupService",
    "DarajaStkClient",
    "PaymentInitiationError",
]
