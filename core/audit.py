from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from .models import AuditLog, AuditLogFilters, Clock, RequestInfo, now_utc
from .storage import InMemoryStorage

logger = structlog.get_logger(__name__)


class AuditLogService:
    def __init__(self, storage: InMemoryStorage, clock: Clock = now_utc):
        self.storage = storage
        self.clock = clock

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        user_id: Optional[UUID] = None,
        changes: Optional[dict[str, Any]] = None,
        request_info: Optional[RequestInfo] = None,
    ) -> Optional[AuditLog]:
        """Write an audit record. Failures are logged, never raised."""
        request_info = request_info or RequestInfo()
        entry = {
            "id": uuid4(),
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "changes": changes,
            "ip_address": request_info.ip_address,
            "user_agent": request_info.user_agent,
            "device_fingerprint": request_info.device_fingerprint,
            "created_at": self.clock(),
        }
        try:
            self.storage.insert("audit_logs", entry["id"], entry)
            return AuditLog(**entry)
        except Exception as e:
            logger.error("audit_log_write_failed", action=action, resource_id=resource_id, error=str(e))
            return None

    def get_logs(
        self,
        filters: Optional[AuditLogFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLog]:
        filters = filters or AuditLogFilters()

        def matches(row: dict) -> bool:
            if filters.user_id and row["user_id"] != filters.user_id:
                return False
            if filters.action and row["action"] != filters.action:
                return False
            if filters.resource_type and row["resource_type"] != filters.resource_type:
                return False
            if filters.resource_id and row["resource_id"] != filters.resource_id:
                return False
            if filters.start_date and row["created_at"] < filters.start_date:
                return False
            if filters.end_date and row["created_at"] > filters.end_date:
                return False
            return True

        rows = self.storage.select("audit_logs", matches, order_by="created_at", descending=True)
        return [AuditLog(**r) for r in rows[offset:offset + limit]]

    def get_resource_logs(self, resource_type: str, resource_id: str, limit: int = 50) -> list[AuditLog]:
        return self.get_logs(AuditLogFilters(resource_type=resource_type, resource_id=resource_id), limit)

    def get_user_logs(self, user_id: UUID, limit: int = 50) -> list[AuditLog]:
        return self.get_logs(AuditLogFilters(user_id=user_id), limit)
