from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from core.errors import NotFoundError, ValidationError
from core.models import Clock, now_utc
from core.realtime import ChangeEvent, RealtimeNotifier
from core.storage import InMemoryStorage

from .models import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    LedgerEntry,
    Transaction,
    TransactionHistoryResponse,
    TransactionStatus,
    TransactionType,
    UserBalance,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def entry_amounts(transaction_type: TransactionType, amount: Decimal) -> tuple[Decimal, Decimal]:
    """Map a transaction type to its (debit, credit) pair."""
    if transaction_type in CREDIT_TYPES:
        return ZERO, amount
    if transaction_type in DEBIT_TYPES:
        return amount, ZERO
    raise ValidationError(f"Unsupported transaction type: {transaction_type}")


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifier: Optional[RealtimeNotifier] = None,
        clock: Clock = now_utc,
    ):
        self.storage = storage or InMemoryStorage()
        self.notifier = notifier
        self.clock = clock

    def record_transaction(self, transaction: Transaction) -> LedgerEntry:
        # Post from the stored row; the balance snapshot is derived from the store.
        stored = self.storage.get("transactions", transaction.id)
        if stored is None:
            raise NotFoundError(f"Transaction {transaction.id} not found")
        transaction = Transaction(**stored)

        if transaction.user_id is None:
            raise ValidationError(f"Transaction {transaction.id} has no user")
        if not transaction.is_realized():
            raise ValidationError(
                f"Cannot post ledger entry for transaction {transaction.id} in {transaction.status.value} state"
            )

        existing = self._get_ledger_entry_for_transaction(transaction.id)
        if existing:
            logger.info("ledger_entry_already_posted", transaction_id=str(transaction.id))
            return existing

        debit, credit = entry_amounts(transaction.type, transaction.amount)
        return self.create_ledger_entry(
            transaction.id,
            transaction.user_id,
            debit,
            credit,
            f"{transaction.type.value} - {transaction.reference}",
        )

    def create_ledger_entry(
        self,
        transaction_id: UUID,
        user_id: UUID,
        debit: Decimal,
        credit: Decimal,
        description: str,
    ) -> LedgerEntry:
        # The transaction is already completed in the store, so the derived
        # total includes this posting.
        balance = self._derive_balance(user_id)

        entry_data = {
            "id": uuid4(),
            "transaction_id": transaction_id,
            "user_id": user_id,
            "debit": debit,
            "credit": credit,
            "balance": balance.total_balance,
            "description": description,
            "created_at": self.clock(),
        }
        self.storage.insert("ledger_entries", entry_data["id"], entry_data)
        logger.info(
            "ledger_entry_posted",
            transaction_id=str(transaction_id),
            user_id=str(user_id),
            debit=str(debit),
            credit=str(credit),
            balance=str(balance.total_balance),
        )

        self._write_balance_cache(balance)
        return LedgerEntry(**entry_data)

    def compute_balance_from_transactions(self, user_id: UUID) -> UserBalance:
        balance = self._derive_balance(user_id)
        self._write_balance_cache(balance)
        return balance

    def get_user_balance(self, user_id: UUID, force_recompute: bool = False) -> UserBalance:
        if force_recompute:
            return self.compute_balance_from_transactions(user_id)

        cached = self.storage.get("user_balances", user_id)
        if cached is None:
            return self.compute_balance_from_transactions(user_id)
        return UserBalance(**cached)

    def get_transaction_history(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> TransactionHistoryResponse:
        transactions = self.storage.select(
            "transactions", lambda t: t["user_id"] == user_id, order_by="created_at", descending=True
        )
        entries = self.storage.select(
            "ledger_entries", lambda e: e["user_id"] == user_id, order_by="created_at", descending=True
        )
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=[Transaction(**t) for t in transactions[offset:offset + limit]],
            ledger_entries=[LedgerEntry(**e) for e in entries[offset:offset + limit]],
        )

    def get_ledger_entries(self, user_id: UUID) -> list[LedgerEntry]:
        rows = self.storage.select("ledger_entries", lambda e: e["user_id"] == user_id, order_by="created_at")
        return [LedgerEntry(**r) for r in rows]

    def _derive_balance(self, user_id: UUID) -> UserBalance:
        transactions = self.storage.select(
            "transactions",
            lambda t: t["user_id"] == user_id
            and t["status"] in (TransactionStatus.COMPLETED, TransactionStatus.PENDING),
        )

        total_balance = ZERO
        escrow_balance = ZERO
        for tx in transactions:
            if tx["type"] == TransactionType.REFERRAL_PAYOUT and tx["status"] == TransactionStatus.PENDING:
                escrow_balance += tx["amount"]
            elif tx["status"] == TransactionStatus.COMPLETED:
                if tx["type"] in CREDIT_TYPES:
                    total_balance += tx["amount"]
                elif tx["type"] in DEBIT_TYPES:
                    total_balance -= tx["amount"]

        return UserBalance(
            user_id=user_id,
            available_balance=total_balance - escrow_balance,
            escrow_balance=escrow_balance,
            total_balance=total_balance,
            last_computed_at=self.clock(),
        )

    def _write_balance_cache(self, balance: UserBalance) -> None:
        self.storage.upsert("user_balances", balance.user_id, balance.model_dump())
        if self.notifier:
            self.notifier.publish(balance.user_id, ChangeEvent.BALANCE, balance.model_dump(mode="json"))

    def _get_ledger_entry_for_transaction(self, transaction_id: UUID) -> Optional[LedgerEntry]:
        rows = self.storage.select("ledger_entries", lambda e: e["transaction_id"] == transaction_id, limit=1)
        return LedgerEntry(**rows[0]) if rows else None
