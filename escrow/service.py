from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from core.admin import AdminControlsService
from core.config import SystemSettings
from core.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from core.models import Clock, now_utc
from core.realtime import ChangeEvent, RealtimeNotifier
from core.storage import InMemoryStorage
from ledger.models import Transaction, TransactionStatus, TransactionType
from ledger.service import LedgerService

from .models import Referral, ReferralStatus, referral_reference

logger = structlog.get_logger(__name__)


class ReferralEscrowService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        controls: Optional[AdminControlsService] = None,
        notifier: Optional[RealtimeNotifier] = None,
        clock: Clock = now_utc,
        escrow_delay_days: Optional[int] = None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.controls = controls
        self.notifier = notifier
        self.clock = clock
        self.escrow_delay_days = escrow_delay_days

    def create_referral(self, referrer_id: UUID, referred_id: UUID, amount: Decimal) -> Referral:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Referral amount must be positive")
        if referrer_id == referred_id:
            raise ValidationError("A user cannot refer themselves")
        for user_id in (referrer_id, referred_id):
            if self.storage.get("users", user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

        now = self.clock()
        release_date = now + timedelta(days=self._escrow_delay_days())
        referral_id = uuid4()

        referral_data = {
            "id": referral_id,
            "referrer_id": referrer_id,
            "referred_id": referred_id,
            "amount": amount,
            "status": ReferralStatus.ESCROW,
            "escrow_release_date": release_date,
            "created_at": now,
            "updated_at": now,
            "metadata": {},
        }
        self.storage.insert("referrals", referral_id, referral_data)

        # Not atomic with the insert above: a failure here leaves an escrow
        # referral with no payout transaction.
        transaction_data = {
            "id": uuid4(),
            "user_id": referrer_id,
            "type": TransactionType.REFERRAL_PAYOUT,
            "amount": amount,
            "status": TransactionStatus.PENDING,
            "reference": referral_reference(referral_id),
            "metadata": {
                "referral_id": str(referral_id),
                "referred_id": str(referred_id),
                "escrow_release_date": release_date.isoformat(),
            },
            "created_at": now,
            "updated_at": now,
            "processed_at": None,
        }
        self.storage.insert_transaction(transaction_data)

        logger.info(
            "referral_created",
            referral_id=str(referral_id),
            referrer_id=str(referrer_id),
            amount=str(amount),
            escrow_release_date=release_date.isoformat(),
        )
        referral = Referral(**referral_data)
        self._publish(referral)
        return referral

    def process_escrow_releases(self) -> int:
        now = self.clock()
        ready = self.storage.select(
            "referrals",
            lambda r: r["status"] == ReferralStatus.ESCROW
            and r["escrow_release_date"] is not None
            and r["escrow_release_date"] <= now,
            order_by="escrow_release_date",
        )

        processed_count = 0
        for referral_data in ready:
            try:
                if self.release_escrow(referral_data["id"]):
                    processed_count += 1
            except Exception as e:
                logger.error("escrow_release_failed", referral_id=str(referral_data["id"]), error=str(e))

        # A pending payout whose referral is already paid was interrupted
        # mid-release; finish it so a retried sweep converges.
        pending_payouts = self.storage.select(
            "transactions",
            lambda t: t["type"] == TransactionType.REFERRAL_PAYOUT and t["status"] == TransactionStatus.PENDING,
        )
        for tx in pending_payouts:
            referral_id = (tx.get("metadata") or {}).get("referral_id")
            referral_data = self.storage.get("referrals", UUID(referral_id)) if referral_id else None
            if referral_data is None or referral_data["status"] != ReferralStatus.PAID:
                continue
            try:
                self._complete_payout(Referral(**referral_data))
            except Exception as e:
                logger.error("escrow_payout_resume_failed", referral_id=referral_id, error=str(e))

        logger.info("escrow_sweep_completed", due=len(ready), processed=processed_count)
        return processed_count

    def release_escrow(self, referral_id: UUID) -> bool:
        """
        Release one referral from escrow and credit the referrer.

        Returns False when another caller already moved the referral out of
        escrow between our read and our write.
        """
        referral = self.get_referral(referral_id)
        now = self.clock()

        if referral.status != ReferralStatus.ESCROW:
            raise InvalidStateTransitionError(
                f"Referral {referral_id} is not in escrow (status: {referral.status.value})"
            )
        if not referral.can_release(now):
            raise InvalidStateTransitionError(
                f"Escrow release date not reached: {referral.escrow_release_date.isoformat()}"
            )

        updated = self.storage.update(
            "referrals",
            referral_id,
            {"status": ReferralStatus.PAID, "updated_at": now},
            when={"status": ReferralStatus.ESCROW},
        )
        if updated is None:
            logger.info("escrow_release_already_handled", referral_id=str(referral_id))
            return False

        paid = Referral(**updated)
        self._publish(paid)
        self._complete_payout(paid)
        return True

    def _complete_payout(self, referral: Referral) -> None:
        reference = referral_reference(referral.id)
        pending = self.storage.find_transaction(reference, status=TransactionStatus.PENDING)
        if pending is None:
            logger.warning("escrow_release_transaction_missing", referral_id=str(referral.id), reference=reference)
            return

        now = self.clock()
        completed = self.storage.update(
            "transactions",
            pending["id"],
            {
                "status": TransactionStatus.COMPLETED,
                "type": TransactionType.ESCROW_RELEASE,
                "updated_at": now,
                "processed_at": now,
            },
            when={"status": TransactionStatus.PENDING},
        )
        if completed is None:
            logger.info("escrow_transaction_already_completed", referral_id=str(referral.id))
            return

        entry = self.ledger.record_transaction(Transaction(**completed))
        logger.info(
            "escrow_released",
            referral_id=str(referral.id),
            referrer_id=str(referral.referrer_id),
            ledger_entry_id=str(entry.id),
            amount=str(referral.amount),
        )

    def cancel_referral(self, referral_id: UUID, reason: str) -> Referral:
        referral = self.get_referral(referral_id)
        if not referral.can_cancel():
            raise InvalidStateTransitionError(
                f"Cannot cancel referral in {referral.status.value} state"
            )

        now = self.clock()
        updated = self.storage.update(
            "referrals",
            referral_id,
            {
                "status": ReferralStatus.CANCELLED,
                "metadata": {**referral.metadata, "cancellation_reason": reason},
                "updated_at": now,
            },
            when={"status": (ReferralStatus.PENDING, ReferralStatus.ESCROW)},
        )
        if updated is None:
            raise InvalidStateTransitionError(f"Referral {referral_id} changed state during cancellation")

        pending = self.storage.find_transaction(referral_reference(referral_id), status=TransactionStatus.PENDING)
        if pending:
            self.storage.update(
                "transactions",
                pending["id"],
                {"status": TransactionStatus.CANCELLED, "updated_at": now},
                when={"status": TransactionStatus.PENDING},
            )

        logger.info("referral_cancelled", referral_id=str(referral_id), reason=reason)
        cancelled = Referral(**updated)
        self._publish(cancelled)
        return cancelled

    def get_escrow_balance(self, user_id: UUID) -> Decimal:
        referrals = self.storage.select(
            "referrals",
            lambda r: r["referrer_id"] == user_id and r["status"] == ReferralStatus.ESCROW,
        )
        return sum((r["amount"] for r in referrals), Decimal("0"))

    def get_referral(self, referral_id: UUID) -> Referral:
        referral_data = self.storage.get("referrals", referral_id)
        if not referral_data:
            raise NotFoundError(f"Referral {referral_id} not found")
        return Referral(**referral_data)

    def list_referrals(self, referrer_id: UUID) -> list[Referral]:
        rows = self.storage.select(
            "referrals", lambda r: r["referrer_id"] == referrer_id, order_by="created_at", descending=True
        )
        return [Referral(**r) for r in rows]

    def _escrow_delay_days(self) -> int:
        if self.escrow_delay_days is not None:
            return self.escrow_delay_days
        settings = self.controls.get_system_settings() if self.controls else SystemSettings()
        return settings.escrow_delay_days

    def _publish(self, referral: Referral) -> None:
        if self.notifier:
            self.notifier.publish(referral.referrer_id, ChangeEvent.REFERRAL, referral.model_dump(mode="json"))
