from decimal import Decimal
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TierRequirements(BaseModel):
    min_transactions: int = 0
    min_account_age_days: int = 0
    kyc_verified: bool = False

    def is_met_by(self, transaction_count: int, account_age_days: int, kyc_verified: bool) -> bool:
        return (
            transaction_count >= self.min_transactions
            and account_age_days >= self.min_account_age_days
            and (not self.kyc_verified or kyc_verified)
        )


class WithdrawalTier(BaseModel):
    tier: int
    name: str
    daily_limit: Decimal
    monthly_limit: Decimal
    requirements: TierRequirements = Field(default_factory=TierRequirements)


class WithdrawalLimitCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    daily_remaining: Decimal
    monthly_remaining: Decimal
    current_tier: WithdrawalTier


class CheckWithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {"user_id": "550e8400-e29b-41d4-a716-446655440000", "amount": 500.00}
    })


class UpdateTierLimitsRequest(BaseModel):
    daily_limit: Optional[Decimal] = Field(default=None, gt=0)
    monthly_limit: Optional[Decimal] = Field(default=None, gt=0)


DEFAULT_TIERS = (
    WithdrawalTier(
        tier=1, name="Basic",
        daily_limit=Decimal("5000"), monthly_limit=Decimal("50000"),
        requirements=TierRequirements(),
    ),
    WithdrawalTier(
        tier=2, name="Standard",
        daily_limit=Decimal("20000"), monthly_limit=Decimal("200000"),
        requirements=TierRequirements(min_transactions=5, min_account_age_days=7),
    ),
    WithdrawalTier(
        tier=3, name="Premium",
        daily_limit=Decimal("100000"), monthly_limit=Decimal("1000000"),
        requirements=TierRequirements(min_transactions=20, min_account_age_days=30, kyc_verified=True),
    ),
    WithdrawalTier(
        tier=4, name="Enterprise",
        daily_limit=Decimal("500000"), monthly_limit=Decimal("5000000"),
        requirements=TierRequirements(min_transactions=100, min_account_age_days=90, kyc_verified=True),
    ),
)
