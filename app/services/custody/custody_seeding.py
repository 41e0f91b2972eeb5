# app/services/custody/custody_seeding.py
import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.models.custody.batch_transfer import BatchTransfer
from app.models.shared.enums import TransferStatus
from app.services.custody.custody_ledger import CustodyLedger

logger = logging.getLogger(__name__)

class CustodySeeder:
    """Creates the self-issued first link of a batch's custody chain on submission."""

    def __init__(self, db: AsyncSession, ledger: Optional[CustodyLedger] = None):
        self.db = db
        self.ledger = ledger or CustodyLedger(db)

    async def seed_initial_custody(
        self,
        exam_session_id: int,
        submitting_actor_id: int,
        script_count: int,
        note: Optional[str] = None,
    ) -> Optional[BatchTransfer]:
        """Make the submitter the first holder. No-op once the batch has any transfer row."""
        existing = await self.ledger.count_by_batch(exam_session_id)
        if existing:
            logger.debug(f"Exam session {exam_session_id} already has {existing} transfer(s); seeding skipped")
            return None

        now = datetime.now(timezone.utc)
        seed = BatchTransfer(
            exam_session_id=exam_session_id,
            from_handler_id=submitting_actor_id,
            to_handler_id=submitting_actor_id,
            status=TransferStatus.CONFIRMED,
            scripts_expected=script_count,
            scripts_received=script_count,
            requested_at=now,
            confirmed_at=now,
            discrepancy_note=note or settings.INITIAL_CUSTODY_NOTE,
            created_by=submitting_actor_id,
        )
        await self.ledger.append(seed)

        logger.info(
            f"Initial custody of exam session {exam_session_id} established for user "
            f"{submitting_actor_id} with {script_count} script(s)"
        )
        return seed
