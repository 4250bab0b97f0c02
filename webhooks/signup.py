from decimal import Decimal
from typing import Optional, Protocol
from uuid import uuid4

import structlog

from core.admin import AdminControlsService
from core.audit import AuditLogService
from core.config import SystemSettings
from core.errors import ValidationError
from core.models import Clock, RequestInfo, now_utc
from core.storage import InMemoryStorage
from fraud.service import FraudPreventionService
from ledger.models import TransactionStatus, TransactionType

from .models import SignupRequest, SignupResponse, StkPushResponse

logger = structlog.get_logger(__name__)

DEFAULT_SIGNUP_AMOUNT = Decimal("250")


class PaymentInitiator(Protocol):
    def initiate_signup_payment(self, phone_number: str, email: str, amount: Decimal) -> StkPushResponse:
        ...


class SignupService:
    """Starts a paid signup; the user is created when the payment webhook lands."""

    def __init__(
        self,
        storage: InMemoryStorage,
        payments: PaymentInitiator,
        fraud: Optional[FraudPreventionService] = None,
        audit: Optional[AuditLogService] = None,
        controls: Optional[AdminControlsService] = None,
        signup_amount: Decimal = DEFAULT_SIGNUP_AMOUNT,
        clock: Clock = now_utc,
    ):
        self.storage = storage
        self.payments = payments
        self.fraud = fraud
        self.audit = audit
        self.controls = controls
        self.signup_amount = signup_amount
        self.clock = clock

    def initiate_signup(self, request: SignupRequest, request_info: Optional[RequestInfo] = None) -> SignupResponse:
        request_info = request_info or RequestInfo()
        if self.storage.find_user_by_email(request.email):
            raise ValidationError("User already exists")

        settings = self.controls.get_system_settings() if self.controls else SystemSettings()
        fingerprint = request_info.device_fingerprint
        if self.fraud and settings.fraud_check_enabled and fingerprint:
            check = self.fraud.perform_fraud_check(None, fingerprint, request_info)
            if check.is_fraudulent:
                logger.warning("signup_blocked", email=request.email, risk_score=check.risk_score)
                self._audit("signup_blocked", request.email, {"fraud_check": check.to_dict()}, request_info)
                return SignupResponse(
                    accepted=False,
                    message="Signup blocked due to fraud detection",
                    reasons=check.reasons,
                )

        stk = self.payments.initiate_signup_payment(request.phone_number, request.email, self.signup_amount)

        now = self.clock()
        transaction_id = uuid4()
        self.storage.insert_transaction({
            "id": transaction_id,
            "user_id": None,
            "type": TransactionType.DEPOSIT,
            "amount": self.signup_amount,
            "status": TransactionStatus.PENDING,
            "reference": stk.checkout_request_id,
            "metadata": {
                "is_signup": True,
                "email": request.email,
                "phone_number": request.phone_number,
                "device_fingerprint": fingerprint,
                "merchant_request_id": stk.merchant_request_id,
            },
            "created_at": now,
            "updated_at": now,
            "processed_at": None,
        })

        logger.info("signup_initiated", transaction_id=str(transaction_id), checkout_request_id=stk.checkout_request_id)
        self._audit(
            "signup_initiated",
            request.email,
            {"phone_number": request.phone_number, "checkout_request_id": stk.checkout_request_id},
            request_info,
        )
        return SignupResponse(
            accepted=True,
            message="STK push initiated. Please complete payment on your phone.",
            checkout_request_id=stk.checkout_request_id,
            merchant_request_id=stk.merchant_request_id,
            transaction_id=transaction_id,
        )

    def _audit(self, action: str, resource_id: str, changes: dict, request_info: RequestInfo) -> None:
        if self.audit:
            self.audit.log(action, "user", resource_id, None, changes, request_info)
