from typing import Any, Optional
from uuid import UUID, uuid4

import pydantic
import structlog

from .config import ControlKey, Settings, SystemSettings, get_settings
from .errors import UnauthorizedError, ValidationError
from .models import AdminControl, Clock, now_utc
from .storage import InMemoryStorage

logger = structlog.get_logger(__name__)

CONTROL_DESCRIPTIONS = {
    ControlKey.ESCROW_DELAY_DAYS: "Number of days before referral payouts are released from escrow",
    ControlKey.REFERRAL_VELOCITY_WINDOW_MINUTES: "Window used to count recent referrals per referrer",
    ControlKey.REFERRAL_VELOCITY_LIMIT: "Referrals within the window that block further referrals",
    ControlKey.FRAUD_CHECK_ENABLED: "Run the fraud gate on signup and referral requests",
    ControlKey.MAINTENANCE_MODE: "System maintenance mode",
    ControlKey.MIN_WITHDRAWAL_AMOUNT: "Smallest withdrawal accepted",
    ControlKey.MAX_WITHDRAWAL_AMOUNT: "Largest single withdrawal accepted",
}


class AdminControlsService:
    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[Settings] = None,
        clock: Clock = now_utc,
    ):
        self.storage = storage
        self.defaults = SystemSettings.from_settings(settings or get_settings())
        self.clock = clock

    def is_admin(self, user_id: Optional[UUID]) -> bool:
        if user_id is None:
            return False
        user = self.storage.get("users", user_id)
        return bool(user and user.get("is_admin"))

    def get_control(self, key: ControlKey) -> Any:
        row = self.storage.get("admin_controls", key.value)
        return row["value"] if row else None

    def get_all_controls(self) -> list[AdminControl]:
        rows = self.storage.select("admin_controls", order_by="key")
        return [AdminControl(**r) for r in rows]

    def get_system_settings(self) -> SystemSettings:
        overrides = {r["key"]: r["value"] for r in self.storage.select("admin_controls")}
        return self.defaults.model_copy(update=overrides)

    def set_control(
        self,
        key: str,
        value: Any,
        description: str,
        admin_id: UUID,
    ) -> AdminControl:
        if not self.is_admin(admin_id):
            raise UnauthorizedError("Unauthorized: Admin access required")

        try:
            control_key = ControlKey(key)
        except ValueError:
            raise ValidationError(f"Unknown admin control: {key}")

        current = self.get_system_settings().model_dump()
        current[control_key.value] = value
        try:
            validated = SystemSettings.model_validate(current)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid value for {control_key.value}: {e.errors()[0]['msg']}") from e

        row = {
            "id": uuid4(),
            "key": control_key.value,
            "value": getattr(validated, control_key.value),
            "description": description or CONTROL_DESCRIPTIONS[control_key],
            "updated_by": admin_id,
            "updated_at": self.clock(),
        }
        stored = self.storage.upsert("admin_controls", control_key.value, row)
        logger.info("admin_control_updated", key=control_key.value, value=str(row["value"]), admin_id=str(admin_id))
        return AdminControl(**stored)

    def toggle_maintenance_mode(self, admin_id: UUID, enabled: bool) -> AdminControl:
        return self.set_control(ControlKey.MAINTENANCE_MODE.value, enabled, "", admin_id)

    def update_escrow_delay(self, admin_id: UUID, days: int) -> AdminControl:
        if days < 0 or days > 30:
            raise ValidationError("Escrow delay must be between 0 and 30 days")
        return self.set_control(ControlKey.ESCROW_DELAY_DAYS.value, days, "", admin_id)

    def update_referral_velocity_limit(self, admin_id: UUID, limit: int) -> AdminControl:
        if limit < 1 or limit > 100:
            raise ValidationError("Referral velocity limit must be between 1 and 100")
        return self.set_control(ControlKey.REFERRAL_VELOCITY_LIMIT.value, limit, "", admin_id)
