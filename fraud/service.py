from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog

from core.admin import AdminControlsService
from core.config import SystemSettings
from core.models import Clock, RequestInfo, now_utc
from core.storage import InMemoryStorage

from .models import FraudCheckResult, MAX_RISK_SCORE

logger = structlog.get_logger(__name__)

SHARED_DEVICE_SCORE = 50
DEVICE_CHURN_SCORE = 30
DEVICE_CHURN_LIMIT = 3
DEVICE_HISTORY_WINDOW = timedelta(days=30)

HIGH_VELOCITY_COUNT = 5
HIGH_VELOCITY_SCORE = 40
MODERATE_VELOCITY_COUNT = 3
MODERATE_VELOCITY_SCORE = 20

CIRCULAR_REFERRAL_SCORE = 60
DUPLICATE_REFERRAL_SCORE = 50
RAPID_PATTERN_SAMPLE = 20
RAPID_PATTERN_MIN_COUNT = 10
RAPID_PATTERN_SPAN = timedelta(hours=24)
RAPID_PATTERN_SCORE = 70


class FraudPreventionService:
    def __init__(
        self,
        storage: InMemoryStorage,
        controls: Optional[AdminControlsService] = None,
        clock: Clock = now_utc,
    ):
        self.storage = storage
        self.controls = controls
        self.clock = clock

    def check_device_fingerprint(
        self,
        user_id: Optional[UUID],
        fingerprint: str,
        request_info: Optional[RequestInfo] = None,
    ) -> FraudCheckResult:
        """
        Score a device fingerprint and record the association.

        With ``user_id=None`` (a signup before the user exists) any existing
        owner of the fingerprint counts as another account, and nothing is
        recorded.
        """
        reasons: list[str] = []
        risk_score = 0
        now = self.clock()

        other_accounts = {
            d["user_id"]
            for d in self.storage.select(
                "user_devices",
                lambda d: d["fingerprint_hash"] == fingerprint and d["user_id"] != user_id,
            )
        }
        if other_accounts:
            risk_score += SHARED_DEVICE_SCORE
            reasons.append(f"Device fingerprint associated with {len(other_accounts)} other account(s)")

        if user_id is None:
            return FraudCheckResult.from_score(risk_score, reasons)

        recent_devices = {
            d["fingerprint_hash"]
            for d in self.storage.select(
                "user_devices",
                lambda d: d["user_id"] == user_id and d["last_seen_at"] >= now - DEVICE_HISTORY_WINDOW,
            )
        }
        if len(recent_devices) > DEVICE_CHURN_LIMIT:
            risk_score += DEVICE_CHURN_SCORE
            reasons.append("Multiple device changes in short period")

        self.record_device(user_id, fingerprint, request_info)
        return FraudCheckResult.from_score(risk_score, reasons)

    def record_device(self, user_id: UUID, fingerprint: str, request_info: Optional[RequestInfo] = None) -> None:
        request_info = request_info or RequestInfo()
        now = self.clock()
        key = (user_id, fingerprint)
        existing = self.storage.get("user_devices", key)
        self.storage.upsert("user_devices", key, {
            "user_id": user_id,
            "fingerprint_hash": fingerprint,
            "user_agent": request_info.user_agent,
            "ip_address": request_info.ip_address,
            "created_at": existing["created_at"] if existing else now,
            "last_seen_at": now,
        })

    def check_referral_velocity(
        self, referrer_id: UUID, time_window_minutes: Optional[int] = None
    ) -> FraudCheckResult:
        settings = self._system_settings()
        window = time_window_minutes or settings.referral_velocity_window_minutes
        since = self.clock() - timedelta(minutes=window)

        referral_count = len(self.storage.select(
            "referrals",
            lambda r: r["referrer_id"] == referrer_id and r["created_at"] >= since,
        ))

        if referral_count >= settings.referral_velocity_limit:
            return FraudCheckResult(
                is_fraudulent=True,
                risk_score=MAX_RISK_SCORE,
                reasons=[f"Excessive referrals: {referral_count} in {window} minutes"],
            )

        if referral_count >= HIGH_VELOCITY_COUNT:
            return FraudCheckResult.from_score(
                HIGH_VELOCITY_SCORE, [f"High referral velocity: {referral_count} in {window} minutes"]
            )
        if referral_count >= MODERATE_VELOCITY_COUNT:
            return FraudCheckResult.from_score(
                MODERATE_VELOCITY_SCORE, [f"Moderate referral velocity: {referral_count} in {window} minutes"]
            )
        return FraudCheckResult()

    def detect_referral_abuse(self, referrer_id: UUID) -> FraudCheckResult:
        reasons: list[str] = []
        risk_score = 0

        referrals = self.storage.select(
            "referrals", lambda r: r["referrer_id"] == referrer_id, order_by="created_at", descending=True
        )
        referred_ids = [r["referred_id"] for r in referrals]

        if referred_ids:
            referred_set = set(referred_ids)
            circular = self.storage.select(
                "referrals",
                lambda r: r["referrer_id"] in referred_set and r["referred_id"] == referrer_id,
                limit=1,
            )
            if circular:
                risk_score += CIRCULAR_REFERRAL_SCORE
                reasons.append("Circular referral pattern detected")

            if len(referred_set) < len(referred_ids):
                risk_score += DUPLICATE_REFERRAL_SCORE
                reasons.append("Duplicate referrals detected")

        recent = referrals[:RAPID_PATTERN_SAMPLE]
        if len(recent) >= RAPID_PATTERN_MIN_COUNT:
            span = recent[0]["created_at"] - recent[-1]["created_at"]
            if span < RAPID_PATTERN_SPAN:
                hours = span.total_seconds() / 3600
                risk_score += RAPID_PATTERN_SCORE
                reasons.append(f"Suspicious pattern: {len(recent)} referrals in {hours:.1f} hours")

        return FraudCheckResult.from_score(risk_score, reasons)

    def perform_fraud_check(
        self,
        user_id: Optional[UUID],
        fingerprint: str,
        request_info: Optional[RequestInfo] = None,
        is_referral: bool = False,
    ) -> FraudCheckResult:
        checks = [self.check_device_fingerprint(user_id, fingerprint, request_info)]
        if is_referral and user_id is not None:
            checks.append(self.check_referral_velocity(user_id))
            checks.append(self.detect_referral_abuse(user_id))

        result = FraudCheckResult.combine(checks)
        if result.risk_score:
            logger.info(
                "fraud_check_scored",
                user_id=str(user_id) if user_id else None,
                risk_score=result.risk_score,
                is_fraudulent=result.is_fraudulent,
                reasons=result.reasons,
            )
        return result

    def _system_settings(self) -> SystemSettings:
        return self.controls.get_system_settings() if self.controls else SystemSettings()
