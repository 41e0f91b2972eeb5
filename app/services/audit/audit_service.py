# app/services/audit/audit_service.py
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.core import database
from app.models import AuditLog
from app.utils.date_time_serializer import serialize_dates

logger = logging.getLogger(__name__)

class AuditService:
    """Audit sink for custody operations.

    Records are written in their own session, after the custody change has
    committed. A failed write is logged and queued for retry; it never undoes
    the custody change.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        request_context: Optional[Dict[str, Optional[str]]] = None,
    ):
        self.session_factory = session_factory
        self.request_context = request_context or {}

    async def record(
        self,
        user_id: Optional[int],
        action: str,
        exam_session_id: Optional[int],
        resource_id: Optional[int] = None,
        resource: str = "BatchTransfer",
        changes: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        payload = self.build_payload(
            user_id=user_id,
            action=action,
            exam_session_id=exam_session_id,
            resource_id=resource_id,
            resource=resource,
            changes=changes,
            details=details,
        )
        try:
            return await self.write(payload)
        except Exception as e:
            logger.error(f"Error logging audit event {action} for {resource} {resource_id}: {str(e)}")
            self.schedule_retry(payload)
            return None

    def build_payload(self, **fields: Any) -> Dict[str, Any]:
        payload = {
            **fields,
            "ip_address": self.request_context.get("ip_address"),
            "user_agent": self.request_context.get("user_agent"),
            "endpoint": self.request_context.get("endpoint"),
            "request_id": self.request_context.get("request_id"),
            "timestamp": datetime.now(timezone.utc),
        }
        return serialize_dates(payload)

    async def write(self, payload: Dict[str, Any]) -> AuditLog:
        factory = self.session_factory or database.async_session_maker
        data = dict(payload)
        if isinstance(data.get("timestamp"), str):
            data["timestamp"] = datetime.fromisoformat(data["timestamp"])

        async with factory() as session:
            audit_log = AuditLog(**data)
            session.add(audit_log)
            await session.commit()
            logger.info(
                f"Audit {audit_log.action} by user {audit_log.user_id} on "
                f"{audit_log.resource} {audit_log.resource_id} (exam session {audit_log.exam_session_id})"
            )
            return audit_log

    def schedule_retry(self, payload: Dict[str, Any]) -> None:
        from app.workers.celery_tasks.audit_tasks import retry_audit_log

        try:
            retry_audit_log.delay(payload)
            logger.warning(f"Audit event {payload.get('action')} queued for retry")
        except Exception as e:
            # Last resort: the payload in the audit log file is the record
            logger.critical(f"Audit event could not be queued ({str(e)}); payload: {json.dumps(payload)}")
