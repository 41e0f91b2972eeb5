"""
Out-of-band delivery of audit records whose inline write failed
"""
import asyncio
import logging
from typing import Any, Dict
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool
from app.core.celery_app import celery_app
from app.core.config import settings

logger = logging.getLogger(__name__)


def run_async_in_celery(coro):
    """
    Run a coroutine on a fresh event loop owned by this task execution
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


async def _write_audit_payload(payload: Dict[str, Any]) -> int:
    from app.services.audit.audit_service import AuditService

    # Pooled connections cannot cross event loops, so each run gets its own engine
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool, future=True)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    try:
        audit_log = await AuditService(session_factory=session_factory).write(payload)
        return audit_log.id
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=settings.AUDIT_MAX_RETRIES)
def retry_audit_log(self, payload: Dict[str, Any]):
    """Write an audit record that could not be stored when the custody change happened"""
    try:
        audit_log_id = run_async_in_celery(_write_audit_payload(payload))
        logger.info(f"Audit event {payload.get('action')} stored on retry as audit log {audit_log_id}")
        return {
            "status": "completed",
            "audit_log_id": audit_log_id,
        }
    except Exception as e:
        logger.error(f"Retry of audit event {payload.get('action')} failed: {str(e)}")
        raise self.retry(exc=e, countdown=settings.AUDIT_RETRY_COUNTDOWN_SECONDS)
