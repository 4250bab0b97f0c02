from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from core.audit import AuditLogService
from core.errors import ValidationError
from core.models import Clock, RequestInfo, now_utc
from core.realtime import ChangeEvent, RealtimeNotifier
from core.storage import InMemoryStorage
from ledger.models import Transaction, TransactionStatus
from ledger.service import LedgerService

from .idempotency import IdempotencyCache, generate_idempotency_key
from .models import DarajaWebhook, IdempotencyStatus, StkCallback, WebhookIdempotencyRecord, WebhookOutcome

logger = structlog.get_logger(__name__)

DEFAULT_IDEMPOTENCY_WINDOW = timedelta(hours=24)


class WebhookIngestionService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        audit: Optional[AuditLogService] = None,
        notifier: Optional[RealtimeNotifier] = None,
        cache: Optional[IdempotencyCache] = None,
        idempotency_window: timedelta = DEFAULT_IDEMPOTENCY_WINDOW,
        clock: Clock = now_utc,
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit = audit
        self.notifier = notifier
        self.idempotency_window = idempotency_window
        self.clock = clock
        self.cache = cache or IdempotencyCache(idempotency_window, clock=clock)

    def process_webhook(
        self, webhook: DarajaWebhook, request_info: Optional[RequestInfo] = None
    ) -> WebhookOutcome:
        callback = webhook.callback
        idempotency_key = generate_idempotency_key(callback.checkout_request_id, callback.merchant_request_id)
        log = logger.bind(
            idempotency_key=idempotency_key,
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
        )

        if self.check_idempotency(idempotency_key):
            log.info("webhook_duplicate")
            self._audit(
                "webhook_duplicate",
                callback.checkout_request_id,
                {"idempotency_key": idempotency_key, "merchant_request_id": callback.merchant_request_id},
                request_info,
            )
            return WebhookOutcome(
                idempotency_key=idempotency_key,
                duplicate=True,
                result_code=callback.result_code,
                message="Webhook already processed",
            )

        # Narrows, but does not close, the window for a concurrent duplicate.
        self._mark_processing(idempotency_key)

        try:
            if callback.is_success():
                transaction_id, user_id = self._apply_success(callback)
            else:
                transaction_id, user_id = self._apply_failure(callback)
        except Exception as e:
            log.error("webhook_processing_failed", error=str(e))
            self._mark_failed(idempotency_key, callback, str(e))
            raise

        self._mark_completed(idempotency_key, {
            "result_code": callback.result_code,
            "result_desc": callback.result_desc,
            "processed_at": self.clock().isoformat(),
            "matched": transaction_id is not None,
        })
        log.info("webhook_processed", transaction_id=str(transaction_id) if transaction_id else None)
        self._audit(
            "webhook_processed",
            callback.checkout_request_id,
            {
                "result_code": callback.result_code,
                "result_desc": callback.result_desc,
                "merchant_request_id": callback.merchant_request_id,
            },
            request_info,
            user_id=user_id,
        )
        return WebhookOutcome(
            idempotency_key=idempotency_key,
            result_code=callback.result_code,
            transaction_id=transaction_id,
            user_id=user_id,
            message="Webhook processed successfully",
        )

    def check_idempotency(self, idempotency_key: str) -> bool:
        if self.cache.get(idempotency_key) is not None:
            return True

        record = self.get_idempotency_record(idempotency_key)
        if record is None:
            return False

        seen_at = record.processed_at or record.created_at
        if self.clock() - seen_at < self.idempotency_window:
            if record.status == IdempotencyStatus.FAILED:
                return False
            if record.status == IdempotencyStatus.COMPLETED:
                self.cache.add(idempotency_key, seen_at)
            return True

        self.storage.delete("webhook_idempotency", idempotency_key)
        logger.info("webhook_idempotency_expired", idempotency_key=idempotency_key)
        return False

    def get_idempotency_record(self, idempotency_key: str) -> Optional[WebhookIdempotencyRecord]:
        row = self.storage.get("webhook_idempotency", idempotency_key)
        return WebhookIdempotencyRecord(**row) if row else None

    def purge_expired_records(self) -> int:
        cutoff = self.clock() - self.idempotency_window
        expired = self.storage.select(
            "webhook_idempotency",
            lambda r: (r["processed_at"] or r["created_at"]) <= cutoff,
        )
        for row in expired:
            self.storage.delete("webhook_idempotency", row["idempotency_key"])
            self.cache.discard(row["idempotency_key"])
        if expired:
            logger.info("webhook_idempotency_purged", count=len(expired))
        return len(expired)

    def handle_signup_payment(
        self,
        pending: dict,
        phone_number: str,
        amount: Decimal,
        mpesa_receipt_number: str,
    ) -> tuple[UUID, UUID]:
        metadata = pending.get("metadata") or {}
        email = metadata.get("email")
        if not email:
            raise ValidationError(f"Email not found in metadata of transaction {pending['id']}")

        now = self.clock()
        user = self.storage.find_user_by_email(email)
        if user is None:
            user = self.storage.insert_user({
                "id": uuid4(),
                "email": email,
                "phone_number": phone_number or metadata.get("phone_number"),
                "created_at": now,
                "is_admin": False,
                "kyc_verified": False,
            })
            logger.info("signup_user_created", user_id=str(user["id"]))

            fingerprint = metadata.get("device_fingerprint")
            if fingerprint:
                self.storage.upsert("user_devices", (user["id"], fingerprint), {
                    "user_id": user["id"],
                    "fingerprint_hash": fingerprint,
                    "user_agent": None,
                    "ip_address": None,
                    "created_at": now,
                    "last_seen_at": now,
                })
        else:
            logger.info("signup_user_exists", user_id=str(user["id"]))

        completed = self._complete_transaction(pending, {
            "user_id": user["id"],
            "metadata": {
                **metadata,
                "user_id": str(user["id"]),
                "mpesa_receipt_number": mpesa_receipt_number,
                "phone_number": phone_number,
                "provider_amount": str(amount),
            },
        })
        if completed is not None:
            self.ledger.record_transaction(completed)
        return pending["id"], user["id"]

    def _apply_success(self, callback: StkCallback) -> tuple[Optional[UUID], Optional[UUID]]:
        if callback.callback_metadata is None:
            logger.warning("webhook_success_without_metadata", checkout_request_id=callback.checkout_request_id)
            return None, None

        items = callback.callback_metadata.as_map()
        amount = _to_decimal(items.get("Amount"))
        mpesa_receipt_number = str(items.get("MpesaReceiptNumber") or "")
        phone_number = str(items.get("PhoneNumber") or "")

        pending = self.storage.find_transaction(callback.checkout_request_id, status=TransactionStatus.PENDING)
        if pending is None:
            return self._resume_settled(callback)

        if amount != pending["amount"]:
            logger.warning(
                "webhook_amount_mismatch",
                transaction_id=str(pending["id"]),
                expected=str(pending["amount"]),
                received=str(amount),
            )

        if (pending.get("metadata") or {}).get("is_signup") is True:
            return self.handle_signup_payment(pending, phone_number, amount, mpesa_receipt_number)

        completed = self._complete_transaction(pending, {
            "metadata": {
                **(pending.get("metadata") or {}),
                "mpesa_receipt_number": mpesa_receipt_number,
                "phone_number": phone_number,
                "provider_amount": str(amount),
            },
        })
        if completed is not None and completed.user_id is not None:
            self.ledger.record_transaction(completed)
        elif completed is not None:
            logger.warning("webhook_transaction_without_user", transaction_id=str(completed.id))
        return pending["id"], pending["user_id"]

    def _resume_settled(self, callback: StkCallback) -> tuple[Optional[UUID], Optional[UUID]]:
        # A retry after a failed attempt finds the transaction already
        # completed; posting is idempotent, so make sure the entry exists.
        settled = self.storage.find_transaction(callback.checkout_request_id, status=TransactionStatus.COMPLETED)
        if settled is None or settled["user_id"] is None:
            logger.warning("webhook_transaction_not_found", checkout_request_id=callback.checkout_request_id)
            return None, None
        self.ledger.record_transaction(Transaction(**settled))
        return settled["id"], settled["user_id"]

    def _apply_failure(self, callback: StkCallback) -> tuple[Optional[UUID], Optional[UUID]]:
        pending = self.storage.find_transaction(callback.checkout_request_id, status=TransactionStatus.PENDING)
        if pending is None:
            logger.warning("webhook_transaction_not_found", checkout_request_id=callback.checkout_request_id)
            return None, None

        now = self.clock()
        failed = self.storage.update(
            "transactions",
            pending["id"],
            {
                "status": TransactionStatus.FAILED,
                "updated_at": now,
                "metadata": {
                    **(pending.get("metadata") or {}),
                    "error": callback.result_desc,
                    "result_code": callback.result_code,
                },
            },
            when={"status": TransactionStatus.PENDING},
        )
        if failed is not None:
            self._publish_transaction(Transaction(**failed))
        return pending["id"], pending["user_id"]

    def _complete_transaction(self, pending: dict, updates: dict[str, Any]) -> Optional[Transaction]:
        now = self.clock()
        completed = self.storage.update(
            "transactions",
            pending["id"],
            {"status": TransactionStatus.COMPLETED, "updated_at": now, "processed_at": now, **updates},
            when={"status": TransactionStatus.PENDING},
        )
        if completed is None:
            logger.info("webhook_transaction_already_settled", transaction_id=str(pending["id"]))
            return None
        transaction = Transaction(**completed)
        self._publish_transaction(transaction)
        return transaction

    def _mark_processing(self, idempotency_key: str) -> None:
        self.storage.upsert("webhook_idempotency", idempotency_key, {
            "idempotency_key": idempotency_key,
            "status": IdempotencyStatus.PROCESSING,
            "created_at": self.clock(),
            "processed_at": None,
            "metadata": {},
        })

    def _mark_completed(self, idempotency_key: str, metadata: dict[str, Any]) -> None:
        now = self.clock()
        self.cache.add(idempotency_key, now)
        self.storage.upsert("webhook_idempotency", idempotency_key, {
            "status": IdempotencyStatus.COMPLETED,
            "processed_at": now,
            "metadata": metadata,
        })

    def _mark_failed(self, idempotency_key: str, callback: StkCallback, error: str) -> None:
        self.storage.upsert("webhook_idempotency", idempotency_key, {
            "status": IdempotencyStatus.FAILED,
            "processed_at": self.clock(),
            "metadata": {"result_code": callback.result_code, "error": error},
        })

    def _publish_transaction(self, transaction: Transaction) -> None:
        if self.notifier and transaction.user_id:
            self.notifier.publish(transaction.user_id, ChangeEvent.TRANSACTION, transaction.model_dump(mode="json"))

    def _audit(
        self,
        action: str,
        resource_id: str,
        changes: dict[str, Any],
        request_info: Optional[RequestInfo],
        user_id: Optional[UUID] = None,
    ) -> None:
        if self.audit:
            self.audit.log(action, "webhook", resource_id, user_id, changes, request_info)


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount in webhook metadata: {value!r}")
