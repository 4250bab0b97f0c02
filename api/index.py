from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from core.config import SystemSettings, get_settings
from core.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from core.logging_config import setup_logging
from core.models import AdminControl, AuditLog, AuditLogFilters, RequestInfo, UpdateControlRequest
from escrow.models import CancelReferralRequest, CreateReferralRequest, EscrowSweepResponse, Referral
from escrow.sweep import run_escrow_sweep
from fraud.fingerprint import extract_from_request, generate_fingerprint
from ledger.models import TransactionHistoryResponse, UserBalance
from webhooks.models import DarajaWebhook, SignupRequest, SignupResponse, WebhookOutcome
from webhooks.stk import PaymentInitiationError
from withdrawals.models import (
    CheckWithdrawalRequest,
    UpdateTierLimitsRequest,
    WithdrawalLimitCheck,
    WithdrawalTier,
)

from api.container import Services, build_services


def get_services(request: Request) -> Services:
    return request.app.state.services


def request_info_from(request: Request) -> RequestInfo:
    data = extract_from_request(request.headers, request.client.host if request.client else None)
    return RequestInfo(
        ip_address=data.ip_address,
        user_agent=data.user_agent or None,
        device_fingerprint=request.headers.get("x-device-fingerprint") or generate_fingerprint(data),
    )


def ensure_available(services: Services) -> None:
    if services.controls.get_system_settings().maintenance_mode:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="System under maintenance")


def require_admin(services: Services, user_id: Optional[UUID]) -> UUID:
    if not services.controls.is_admin(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return user_id


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Referral Payments API",
        description="Ledger, referral escrow, payment webhooks, fraud gate and withdrawal limits",
        version="1.0.0",
    )
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-payments"}

    @app.post("/signup", response_model=SignupResponse, tags=["Signup"])
    def signup(body: SignupRequest, request: Request, services: Services = Depends(get_services)) -> SignupResponse:
        ensure_available(services)
        try:
            response = services.signup.initiate_signup(body, request_info_from(request))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except PaymentInitiationError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
        if not response.accepted:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": response.message, "reasons": response.reasons},
            )
        return response

    @app.post("/webhooks/daraja", response_model=WebhookOutcome, tags=["Webhooks"])
    def daraja_webhook(
        webhook: DarajaWebhook, request: Request, services: Services = Depends(get_services)
    ) -> WebhookOutcome:
        try:
            return services.webhooks.process_webhook(webhook, request_info_from(request))
        except Exception as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(
        user_id: UUID, request: Request, recompute: bool = False, services: Services = Depends(get_services)
    ) -> UserBalance:
        balance = services.ledger.get_user_balance(user_id, force_recompute=recompute)
        services.audit.log("balance_viewed", "user_balance", str(user_id), user_id, None, request_info_from(request))
        return balance

    @app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, tags=["Users"])
    def get_transaction_history(
        user_id: UUID, limit: int = 50, offset: int = 0, services: Services = Depends(get_services)
    ) -> TransactionHistoryResponse:
        return services.ledger.get_transaction_history(user_id, limit, offset)

    @app.get("/users/{user_id}/referrals", response_model=list[Referral], tags=["Users"])
    def list_user_referrals(user_id: UUID, services: Services = Depends(get_services)) -> list[Referral]:
        return services.escrow.list_referrals(user_id)

    @app.post("/referrals", response_model=Referral, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
    def create_referral(
        body: CreateReferralRequest, request: Request, services: Services = Depends(get_services)
    ) -> Referral:
        ensure_available(services)
        request_info = request_info_from(request)

        if services.controls.get_system_settings().fraud_check_enabled:
            fraud_check = services.fraud.perform_fraud_check(
                body.referrer_id, request_info.device_fingerprint, request_info, is_referral=True
            )
            if fraud_check.is_fraudulent:
                services.audit.log(
                    "referral_blocked", "referral", "", body.referrer_id,
                    {"fraud_check": fraud_check.to_dict()}, request_info,
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={"error": "Referral blocked due to fraud detection", "reasons": fraud_check.reasons},
                )

        try:
            referral = services.escrow.create_referral(body.referrer_id, body.referred_id, body.amount)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

        services.audit.log(
            "referral_created", "referral", str(referral.id), body.referrer_id,
            {"referral": referral.model_dump(mode="json")}, request_info,
        )
        return referral

    @app.get("/referrals/{referral_id}", response_model=Referral, tags=["Referrals"])
    def get_referral(referral_id: UUID, services: Services = Depends(get_services)) -> Referral:
        try:
            return services.escrow.get_referral(referral_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/referrals/{referral_id}/cancel", response_model=Referral, tags=["Referrals"])
    def cancel_referral(
        referral_id: UUID,
        body: CancelReferralRequest,
        request: Request,
        x_user_id: Optional[UUID] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> Referral:
        admin_id = require_admin(services, x_user_id)
        try:
            referral = services.escrow.cancel_referral(referral_id, body.reason)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        services.audit.log(
            "referral_cancelled", "referral", str(referral_id), admin_id, {"reason": body.reason},
            request_info_from(request),
        )
        return referral

    @app.post("/withdrawals/check", response_model=WithdrawalLimitCheck, tags=["Withdrawals"])
    def check_withdrawal(
        body: CheckWithdrawalRequest, request: Request, services: Services = Depends(get_services)
    ) -> WithdrawalLimitCheck:
        ensure_available(services)
        try:
            check = services.withdrawals.check_withdrawal_limit(body.user_id, body.amount)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        services.audit.log(
            "withdrawal_limit_checked", "withdrawal", "", body.user_id,
            {"amount": str(body.amount), "check": check.model_dump(mode="json")}, request_info_from(request),
        )
        return check

    @app.get("/withdrawals/tiers", response_model=list[WithdrawalTier], tags=["Withdrawals"])
    def list_withdrawal_tiers(services: Services = Depends(get_services)) -> list[WithdrawalTier]:
        return services.withdrawals.get_tiers()

    @app.put("/admin/tiers/{tier}", response_model=WithdrawalTier, tags=["Admin"])
    def update_withdrawal_tier(
        tier: int,
        body: UpdateTierLimitsRequest,
        request: Request,
        x_user_id: Optional[UUID] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> WithdrawalTier:
        admin_id = require_admin(services, x_user_id)
        try:
            updated = services.withdrawals.update_tier_limits(tier, body.daily_limit, body.monthly_limit)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        services.audit.log(
            "withdrawal_tier_updated", "withdrawal_tier", str(tier), admin_id,
            body.model_dump(mode="json", exclude_none=True), request_info_from(request),
        )
        return updated

    @app.get("/admin/settings", response_model=SystemSettings, tags=["Admin"])
    def get_system_settings(
        x_user_id: Optional[UUID] = Header(default=None), services: Services = Depends(get_services)
    ) -> SystemSettings:
        require_admin(services, x_user_id)
        return services.controls.get_system_settings()

    @app.get("/admin/controls", response_model=list[AdminControl], tags=["Admin"])
    def list_admin_controls(
        x_user_id: Optional[UUID] = Header(default=None), services: Services = Depends(get_services)
    ) -> list[AdminControl]:
        require_admin(services, x_user_id)
        return services.controls.get_all_controls()

    @app.put("/admin/controls/{key}", response_model=AdminControl, tags=["Admin"])
    def update_admin_control(
        key: str,
        body: UpdateControlRequest,
        request: Request,
        x_user_id: Optional[UUID] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> AdminControl:
        try:
            control = services.controls.set_control(key, body.value, body.description, x_user_id)
        except UnauthorizedError:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        services.audit.log(
            "admin_control_updated", "admin_control", str(control.id), x_user_id,
            {"key": control.key, "value": str(control.value)}, request_info_from(request),
        )
        return control

    @app.get("/audit-logs", response_model=list[AuditLog], tags=["Audit"])
    def get_audit_logs(
        user_id: Optional[UUID] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        x_user_id: Optional[UUID] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> list[AuditLog]:
        if x_user_id is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
        # Users see their own logs; admins may ask for anyone's.
        if user_id is not None and user_id != x_user_id:
            require_admin(services, x_user_id)
        filters = AuditLogFilters(
            user_id=user_id or x_user_id, action=action, resource_type=resource_type, resource_id=resource_id,
        )
        return services.audit.get_logs(filters, limit, offset)

    @app.post("/cron/process-escrow", response_model=EscrowSweepResponse, tags=["Cron"])
    def process_escrow(services: Services = Depends(get_services)) -> EscrowSweepResponse:
        try:
            return run_escrow_sweep(services.escrow)
        except Exception as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.post("/cron/purge-idempotency", tags=["Cron"])
    def purge_idempotency(services: Services = Depends(get_services)):
        return {"purged": services.webhooks.purge_expired_records()}

    return app


setup_logging(get_settings())
app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
