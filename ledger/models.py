from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REFERRAL_PAYOUT = "referral_payout"
    ESCROW_RELEASE = "escrow_release"
    FEE = "fee"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


CREDIT_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.REFERRAL_PAYOUT,
    TransactionType.ESCROW_RELEASE,
})
DEBIT_TYPES = frozenset({TransactionType.WITHDRAWAL, TransactionType.FEE})


class Transaction(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    status: TransactionStatus
    reference: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_realized(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


class LedgerEntry(BaseModel):
    id: UUID
    transaction_id: UUID
    user_id: UUID
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    balance: Decimal
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: UUID
    available_balance: Decimal
    escrow_balance: Decimal
    total_balance: Decimal
    last_computed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionHistoryResponse(BaseModel):
    user_id: UUID
    transactions: list[Transaction]
    ledger_entries: list[LedgerEntry]
