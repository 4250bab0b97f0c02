from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from core.admin import AdminControlsService
from core.config import SystemSettings
from core.errors import NotFoundError, ValidationError
from core.models import Clock, now_utc
from core.storage import InMemoryStorage
from ledger.models import TransactionStatus, TransactionType

from .models import DEFAULT_TIERS, WithdrawalLimitCheck, WithdrawalTier

logger = structlog.get_logger(__name__)


class WithdrawalLimitsService:
    """
    Tiered daily/monthly withdrawal caps.

    `check_withdrawal_limit` is read-only: it reserves nothing, so two
    concurrent checks can both be approved against the same headroom.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        controls: Optional[AdminControlsService] = None,
        clock: Clock = now_utc,
    ):
        self.storage = storage
        self.controls = controls
        self.clock = clock
        self.tiers: list[WithdrawalTier] = [t.model_copy(deep=True) for t in DEFAULT_TIERS]

    def get_tiers(self) -> list[WithdrawalTier]:
        return list(self.tiers)

    def get_user_tier(self, user_id: UUID) -> WithdrawalTier:
        user = self.storage.get("users", user_id)
        if not user:
            logger.warning("withdrawal_tier_user_missing", user_id=str(user_id))
            return self.tiers[0]

        account_age_days = (self.clock() - user["created_at"]).days
        transaction_count = len(self.storage.select(
            "transactions",
            lambda t: t["user_id"] == user_id and t["status"] == TransactionStatus.COMPLETED,
        ))
        kyc_verified = bool(user.get("kyc_verified"))

        for tier in reversed(self.tiers):
            if tier.requirements.is_met_by(transaction_count, account_age_days, kyc_verified):
                return tier
        return self.tiers[0]

    def check_withdrawal_limit(self, user_id: UUID, amount: Decimal) -> WithdrawalLimitCheck:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")

        tier = self.get_user_tier(user_id)
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)

        withdrawals = self.storage.select(
            "transactions",
            lambda t: t["user_id"] == user_id
            and t["type"] == TransactionType.WITHDRAWAL
            and t["status"] == TransactionStatus.COMPLETED
            and t["processed_at"] is not None
            and t["processed_at"] >= month_start,
        )
        monthly_used = sum((t["amount"] for t in withdrawals), Decimal("0"))
        daily_used = sum((t["amount"] for t in withdrawals if t["processed_at"] >= day_start), Decimal("0"))

        daily_remaining = max(Decimal("0"), tier.daily_limit - daily_used)
        monthly_remaining = max(Decimal("0"), tier.monthly_limit - monthly_used)

        def deny(reason: str) -> WithdrawalLimitCheck:
            logger.info("withdrawal_denied", user_id=str(user_id), amount=str(amount), reason=reason)
            return WithdrawalLimitCheck(
                allowed=False,
                reason=reason,
                daily_remaining=daily_remaining,
                monthly_remaining=monthly_remaining,
                current_tier=tier,
            )

        settings = self._system_settings()
        if amount < settings.min_withdrawal_amount:
            return deny(f"Minimum withdrawal amount is {settings.min_withdrawal_amount}")
        if amount > settings.max_withdrawal_amount:
            return deny(f"Maximum withdrawal amount is {settings.max_withdrawal_amount}")
        if amount > daily_remaining:
            return deny(f"Daily limit exceeded. Remaining: {daily_remaining}")
        if amount > monthly_remaining:
            return deny(f"Monthly limit exceeded. Remaining: {monthly_remaining}")

        return WithdrawalLimitCheck(
            allowed=True,
            daily_remaining=daily_remaining - amount,
            monthly_remaining=monthly_remaining - amount,
            current_tier=tier,
        )

    def update_tier_limits(
        self,
        tier: int,
        daily_limit: Optional[Decimal] = None,
        monthly_limit: Optional[Decimal] = None,
    ) -> WithdrawalTier:
        for index, current in enumerate(self.tiers):
            if current.tier == tier:
                updates = {}
                if daily_limit is not None:
                    updates["daily_limit"] = Decimal(str(daily_limit))
                if monthly_limit is not None:
                    updates["monthly_limit"] = Decimal(str(monthly_limit))
                self.tiers[index] = current.model_copy(update=updates)
                logger.info("withdrawal_tier_updated", tier=tier, **{k: str(v) for k, v in updates.items()})
                return self.tiers[index]
        raise NotFoundError(f"Withdrawal tier {tier} not found")

    def _system_settings(self) -> SystemSettings:
        return self.controls.get_system_settings() if self.controls else SystemSettings()
