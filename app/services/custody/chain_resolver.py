# app/services/custody/chain_resolver.py
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.exceptions import NotFoundError
from app.models.custody.batch_transfer import BatchTransfer
from app.models.exam.exam_session import ExamSession
from app.services.custody.custody_ledger import CustodyLedger
from app.services.custody.transitions import CUSTODY_STATUSES, OPEN_STATUSES

class ChainResolver:
    """Read-side view of a batch's custody chain, derived from ledger rows."""

    def __init__(self, db: AsyncSession, ledger: Optional[CustodyLedger] = None):
        self.db = db
        self.ledger = ledger or CustodyLedger(db)

    async def current_holder(self, exam_session_id: int) -> Optional[int]:
        """Receiver of the latest CONFIRMED/RESOLVED transfer, or None before submission.

        PENDING, DISCREPANCY_REPORTED and REJECTED rows never move custody.
        """
        result = await self.db.execute(
            select(BatchTransfer.to_handler_id)
            .where(and_(
                BatchTransfer.exam_session_id == exam_session_id,
                BatchTransfer.status.in_(CUSTODY_STATUSES),
            ))
            .order_by(desc(BatchTransfer.confirmed_at), desc(BatchTransfer.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def full_chain(self, exam_session_id: int) -> List[BatchTransfer]:
        return await self.ledger.list_by_batch(exam_session_id)

    async def has_open_transfer(self, exam_session_id: int) -> bool:
        return bool(await self.ledger.list_open_by_batch(exam_session_id))

    async def custody_chain(self, exam_session_id: int) -> Dict[str, Any]:
        """Chain of custody for display: the session, every transfer in handover order and the holder."""
        result = await self.db.execute(select(ExamSession).where(ExamSession.id == exam_session_id))
        exam_session = result.scalar_one_or_none()
        if not exam_session:
            raise NotFoundError("Exam session not found", context={"exam_session_id": exam_session_id})

        transfers = await self.full_chain(exam_session_id)
        return {
            "exam_session": exam_session,
            "transfers": transfers,
            "current_holder_id": await self.current_holder(exam_session_id),
            "has_open_transfer": any(t.status in OPEN_STATUSES for t in transfers),
            "count": len(transfers),
        }
