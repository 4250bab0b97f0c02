from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ESCROW = "escrow"
    PAID = "paid"
    CANCELLED = "cancelled"


def referral_reference(referral_id: UUID) -> str:
    """Correlation key between a referral and its payout transaction."""
    return f"REF-{referral_id}"


class Referral(BaseModel):
    id: UUID
    referrer_id: UUID
    referred_id: UUID
    amount: Decimal
    status: ReferralStatus
    escrow_release_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    def can_release(self, now: datetime) -> bool:
        return self.status == ReferralStatus.ESCROW and (
            self.escrow_release_date is None or self.escrow_release_date <= now
        )

    def can_cancel(self) -> bool:
        return self.status in (ReferralStatus.PENDING, ReferralStatus.ESCROW)


class CreateReferralRequest(BaseModel):
    referrer_id: UUID
    referred_id: UUID
    amount: Decimal = Field(..., gt=0, le=Decimal("1000000"))

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referrer_id": "550e8400-e29b-41d4-a716-446655440000",
            "referred_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": 100.00,
        }
    })


class CancelReferralRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason for cancellation")


class EscrowSweepResponse(BaseModel):
    processed: int
    message: str
