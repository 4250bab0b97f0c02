"""
Unit Tests for the shared core

Tests cover:
1. Storage conditional writes and unique indexes
2. Admin controls and the system settings snapshot
3. Audit log writes and queries
4. Realtime notification fan-out
"""

import pytest
from decimal import Decimal
from uuid import UUID, uuid4

from core.admin import AdminControlsService
from core.audit import AuditLogService
from core.config import ControlKey, Settings, SystemSettings
from core.errors import StoreError, UnauthorizedError, ValidationError
from core.models import AuditLogFilters, RequestInfo
from core.realtime import ChangeEvent, RealtimeNotifier
from core.storage import InMemoryStorage


ADMIN_ID = UUID("11111111-1111-1111-1111-111111111111")
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


def add_user(storage, user_id, clock, is_admin=False, email=None):
    return storage.insert_user({
        "id": user_id,
        "email": email or f"{user_id}@example.com",
        "phone_number": None,
        "created_at": clock(),
        "is_admin": is_admin,
        "kyc_verified": False,
    })


class TestStorage:
    """Tests for the in-memory store."""

    def test_conditional_update_applies_once(self):
        """Test that a status guard lets exactly one writer through."""
        storage = InMemoryStorage()
        storage.insert("referrals", 1, {"id": 1, "status": "escrow"})

        first = storage.update("referrals", 1, {"status": "paid"}, when={"status": "escrow"})
        second = storage.update("referrals", 1, {"status": "paid"}, when={"status": "escrow"})

        assert first["status"] == "paid"
        assert second is None

    def test_conditional_update_accepts_any_of(self):
        """Test that a collection in the guard matches any member."""
        storage = InMemoryStorage()
        storage.insert("referrals", 1, {"id": 1, "status": "pending"})

        updated = storage.update("referrals", 1, {"status": "cancelled"}, when={"status": ("pending", "escrow")})

        assert updated["status"] == "cancelled"

    def test_update_missing_row_returns_none(self):
        """Test that updating an absent row is a no-op."""
        storage = InMemoryStorage()
        assert storage.update("referrals", 42, {"status": "paid"}) is None

    def test_reads_do_not_alias_stored_rows(self):
        """Test that mutating a returned row leaves the store untouched."""
        storage = InMemoryStorage()
        storage.insert("referrals", 1, {"id": 1, "metadata": {"a": 1}})

        row = storage.get("referrals", 1)
        row["metadata"]["a"] = 2

        assert storage.get("referrals", 1)["metadata"]["a"] == 1

    def test_duplicate_insert_rejected(self):
        """Test that primary keys are unique."""
        storage = InMemoryStorage()
        storage.insert("referrals", 1, {"id": 1})

        with pytest.raises(StoreError):
            storage.insert("referrals", 1, {"id": 1})

    def test_transaction_reference_unique(self):
        """Test that two transactions cannot share a reference."""
        storage = InMemoryStorage()
        storage.insert_transaction({"id": uuid4(), "reference": "ws_CO_1", "status": "pending"})

        with pytest.raises(StoreError):
            storage.insert_transaction({"id": uuid4(), "reference": "ws_CO_1", "status": "pending"})

    def test_find_transaction_filters_status(self):
        """Test lookup by reference with an optional status."""
        storage = InMemoryStorage()
        tx_id = uuid4()
        storage.insert_transaction({"id": tx_id, "reference": "ws_CO_1", "status": "completed"})

        assert storage.find_transaction("ws_CO_1")["id"] == tx_id
        assert storage.find_transaction("ws_CO_1", status="pending") is None
        assert storage.find_transaction("missing") is None

    def test_user_email_unique_case_insensitive(self, clock):
        """Test the email index."""
        storage = InMemoryStorage()
        add_user(storage, USER_ID, clock, email="Jane@Example.com")

        assert storage.find_user_by_email("jane@example.com")["id"] == USER_ID
        with pytest.raises(StoreError):
            add_user(storage, uuid4(), clock, email="jane@example.COM")

    def test_unknown_table_rejected(self):
        """Test that table names are checked."""
        storage = InMemoryStorage()
        with pytest.raises(StoreError):
            storage.get("nope", 1)


class TestSettings:
    """Tests for configuration."""

    def test_log_level_normalized(self):
        """Test that the log level is upper-cased."""
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        """Test that unknown levels fail validation."""
        with pytest.raises(ValueError):
            Settings(log_level="chatty")

    def test_velocity_window_bounded_like_controls(self, monkeypatch):
        """Test that the environment cannot set a window the controls would reject."""
        monkeypatch.setenv("REFERRAL_VELOCITY_WINDOW_MINUTES", "1441")
        with pytest.raises(ValueError):
            Settings()

        monkeypatch.setenv("REFERRAL_VELOCITY_WINDOW_MINUTES", "1440")
        settings = Settings()
        assert SystemSettings.from_settings(settings).referral_velocity_window_minutes == 1440

    def test_system_settings_from_environment_defaults(self):
        """Test that runtime defaults come from settings."""
        snapshot = SystemSettings.from_settings(Settings(escrow_delay_days=3, referral_velocity_limit=4))
        assert snapshot.escrow_delay_days == 3
        assert snapshot.referral_velocity_limit == 4
        assert snapshot.fraud_check_enabled is True


class TestAdminControls:
    """Tests for admin-controlled system settings."""

    def test_defaults_without_overrides(self):
        """Test the snapshot with no stored controls."""
        service = AdminControlsService(InMemoryStorage(), Settings())

        settings = service.get_system_settings()

        assert settings.escrow_delay_days == 7
        assert settings.referral_velocity_limit == 10
        assert settings.maintenance_mode is False
        assert settings.min_withdrawal_amount == Decimal("100")

    def test_admin_can_override(self, clock):
        """Test that a stored control overrides the default."""
        storage = InMemoryStorage()
        add_user(storage, ADMIN_ID, clock, is_admin=True)
        service = AdminControlsService(storage, Settings(), clock=clock)

        control = service.set_control("escrow_delay_days", 3, "Shorter hold", ADMIN_ID)

        assert control.key == "escrow_delay_days"
        assert control.value == 3
        assert control.updated_by == ADMIN_ID
        assert service.get_system_settings().escrow_delay_days == 3
        assert service.get_control(ControlKey.ESCROW_DELAY_DAYS) == 3

    def test_value_is_coerced(self, clock):
        """Test that values are validated and coerced to the field type."""
        storage = InMemoryStorage()
        add_user(storage, ADMIN_ID, clock, is_admin=True)
        service = AdminControlsService(storage, Settings(), clock=clock)

        service.set_control("min_withdrawal_amount", "50", "", ADMIN_ID)

        assert service.get_system_settings().min_withdrawal_amount == Decimal("50")

    def test_non_admin_rejected(self, clock):
        """Test that regular users cannot change controls."""
        storage = InMemoryStorage()
        add_user(storage, USER_ID, clock)
        service = AdminControlsService(storage, Settings(), clock=clock)

        with pytest.raises(UnauthorizedError):
            service.set_control("maintenance_mode", True, "", USER_ID)
        with pytest.raises(UnauthorizedError):
            service.set_control("maintenance_mode", True, "", None)

    def test_unknown_key_rejected(self, clock):
        """Test that only known controls can be set."""
        storage = InMemoryStorage()
        add_user(storage, ADMIN_ID, clock, is_admin=True)
        service = AdminControlsService(storage, Settings(), clock=clock)

        with pytest.raises(ValidationError):
            service.set_control("launch_rockets", True, "", ADMIN_ID)

    def test_out_of_range_rejected(self, clock):
        """Test the range helpers and validation."""
        storage = InMemoryStorage()
        add_user(storage, ADMIN_ID, clock, is_admin=True)
        service = AdminControlsService(storage, Settings(), clock=clock)

        with pytest.raises(ValidationError):
            service.update_escrow_delay(ADMIN_ID, 31)
        with pytest.raises(ValidationError):
            service.update_referral_velocity_limit(ADMIN_ID, 0)
        with pytest.raises(ValidationError):
            service.set_control("max_withdrawal_amount", "10", "", ADMIN_ID)

        assert service.get_all_controls() == []

    def test_toggle_maintenance_mode(self, clock):
        """Test the maintenance switch."""
        storage = InMemoryStorage()
        add_user(storage, ADMIN_ID, clock, is_admin=True)
        service = AdminControlsService(storage, Settings(), clock=clock)

        service.toggle_maintenance_mode(ADMIN_ID, True)
        assert service.get_system_settings().maintenance_mode is True

        service.toggle_maintenance_mode(ADMIN_ID, False)
        assert service.get_system_settings().maintenance_mode is False
        assert len(service.get_all_controls()) == 1


class TestAuditLog:
    """Tests for the audit trail."""

    def test_log_and_query(self, clock):
        """Test writing and filtering audit records."""
        service = AuditLogService(InMemoryStorage(), clock=clock)
        info = RequestInfo(ip_address="10.0.0.1", user_agent="pytest", device_fingerprint="abc")

        service.log("referral_created", "referral", "r1", USER_ID, {"amount": "100"}, info)
        clock.advance(seconds=1)
        service.log("balance_viewed", "user_balance", str(USER_ID), USER_ID)
        clock.advance(seconds=1)
        service.log("webhook_processed", "webhook", "ws_CO_1")

        user_logs = service.get_user_logs(USER_ID)
        assert [log.action for log in user_logs] == ["balance_viewed", "referral_created"]
        assert user_logs[1].ip_address == "10.0.0.1"
        assert user_logs[1].device_fingerprint == "abc"

        resource_logs = service.get_resource_logs("webhook", "ws_CO_1")
        assert len(resource_logs) == 1

    def test_date_range_filter(self, clock):
        """Test start/end date filtering."""
        service = AuditLogService(InMemoryStorage(), clock=clock)
        service.log("a", "x", "1")
        start = clock.advance(hours=1)
        service.log("b", "x", "2")

        logs = service.get_logs(AuditLogFilters(start_date=start))

        assert [log.action for log in logs] == ["b"]

    def test_write_failure_is_swallowed(self, clock, monkeypatch):
        """Test that audit failures never reach the caller."""
        storage = InMemoryStorage()
        service = AuditLogService(storage, clock=clock)

        def broken_insert(*args, **kwargs):
            raise StoreError("disk full")

        monkeypatch.setattr(storage, "insert", broken_insert)

        assert service.log("referral_created", "referral", "r1", USER_ID) is None


class TestRealtimeNotifier:
    """Tests for change notification."""

    def test_publish_to_subscribers(self):
        """Test delivery to the subscribed user only."""
        notifier = RealtimeNotifier()
        received = []
        notifier.subscribe(USER_ID, lambda event, payload: received.append((event, payload)))

        assert notifier.publish(USER_ID, ChangeEvent.BALANCE, {"total_balance": "1"}) == 1
        assert notifier.publish(ADMIN_ID, ChangeEvent.BALANCE, {}) == 0
        assert received == [(ChangeEvent.BALANCE, {"total_balance": "1"})]

    def test_failing_subscriber_does_not_block_others(self):
        """Test that one broken callback does not affect delivery."""
        notifier = RealtimeNotifier()
        received = []

        def broken(event, payload):
            raise RuntimeError("boom")

        notifier.subscribe(USER_ID, broken)
        notifier.subscribe(USER_ID, lambda event, payload: received.append(event))

        assert notifier.publish(USER_ID, ChangeEvent.REFERRAL, {}) == 1
        assert received == [ChangeEvent.REFERRAL]

    def test_unsubscribe(self):
        """Test both unsubscribe paths."""
        notifier = RealtimeNotifier()
        unsubscribe = notifier.subscribe(USER_ID, lambda event, payload: None)
        notifier.subscribe(USER_ID, lambda event, payload: None)

        unsubscribe()
        assert notifier.subscriber_count(USER_ID) == 1

        notifier.unsubscribe_all(USER_ID)
        assert notifier.subscriber_count(USER_ID) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
