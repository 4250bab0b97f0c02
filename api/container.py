from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from core.admin import AdminControlsService
from core.audit import AuditLogService
from core.config import Settings, get_settings
from core.models import Clock, now_utc
from core.realtime import RealtimeNotifier
from core.storage import InMemoryStorage
from escrow.service import ReferralEscrowService
from fraud.service import FraudPreventionService
from ledger.service import LedgerService
from webhooks.idempotency import IdempotencyCache
from webhooks.service import WebhookIngestionService
from webhooks.signup import PaymentInitiator, SignupService
from webhooks.stk import DarajaStkClient
from withdrawals.service import WithdrawalLimitsService


@dataclass
class Services:
    storage: InMemoryStorage
    notifier: RealtimeNotifier
    audit: AuditLogService
    controls: AdminControlsService
    ledger: LedgerService
    escrow: ReferralEscrowService
    fraud: FraudPreventionService
    webhooks: WebhookIngestionService
    signup: SignupService
    withdrawals: WithdrawalLimitsService


def build_services(
    settings: Optional[Settings] = None,
    payments: Optional[PaymentInitiator] = None,
    storage: Optional[InMemoryStorage] = None,
    clock: Clock = now_utc,
) -> Services:
    settings = settings or get_settings()
    storage = storage or InMemoryStorage()
    notifier = RealtimeNotifier()
    audit = AuditLogService(storage, clock=clock)
    controls = AdminControlsService(storage, settings, clock=clock)
    ledger = LedgerService(storage, notifier, clock=clock)
    fraud = FraudPreventionService(storage, controls, clock=clock)

    window = timedelta(hours=settings.idempotency_window_hours)
    cache = IdempotencyCache(window, max_size=settings.idempotency_cache_size, clock=clock)

    return Services(
        storage=storage,
        notifier=notifier,
        audit=audit,
        controls=controls,
        ledger=ledger,
        escrow=ReferralEscrowService(storage, ledger, controls, notifier, clock=clock),
        fraud=fraud,
        webhooks=WebhookIngestionService(
            storage, ledger, audit, notifier, cache=cache, idempotency_window=window, clock=clock
        ),
        signup=SignupService(
            storage,
            payments or DarajaStkClient(settings, clock=clock),
            fraud=fraud,
            audit=audit,
            controls=controls,
            signup_amount=settings.signup_amount,
            clock=clock,
        ),
        withdrawals=WithdrawalLimitsService(storage, controls, clock=clock),
    )
