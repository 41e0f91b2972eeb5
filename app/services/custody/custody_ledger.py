# app/services/custody/custody_ledger.py
import logging
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, desc, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from app.models.custody.batch_transfer import BatchTransfer
from app.models.shared.enums import TransferStatus
from app.services.custody.transitions import OPEN_STATUSES, assert_transition, eligible_sources

logger = logging.getLogger(__name__)

class CustodyLedger:
    """Append-and-read store of transfer rows.

    The ledger never commits; the calling service owns the transaction so a
    check and the write that depends on it land together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, transfer: BatchTransfer) -> BatchTransfer:
        exam_session_id = transfer.exam_session_id
        open_transfers = await self.list_open_by_batch(exam_session_id)
        if open_transfers:
            raise self._conflict(open_transfers[0])

        self.db.add(transfer)
        try:
            await self.db.flush()  # Get the ID
        except IntegrityError as e:
            await self.db.rollback()
            if "unique" not in str(e.orig).lower():
                raise
            # Lost the race against a concurrent request for the same batch
            logger.warning(f"Open-transfer index rejected a second transfer for exam session {exam_session_id}")
            open_transfers = await self.list_open_by_batch(exam_session_id)
            if open_transfers:
                raise self._conflict(open_transfers[0])
            raise ConflictError(context={"exam_session_id": exam_session_id})
        return transfer

    async def get(self, transfer_id: int) -> BatchTransfer:
        result = await self.db.execute(
            select(BatchTransfer)
            .where(BatchTransfer.id == transfer_id)
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Transfer not found", context={"transfer_id": transfer_id})
        return transfer

    async def list_by_batch(self, exam_session_id: int) -> List[BatchTransfer]:
        result = await self.db.execute(
            select(BatchTransfer)
            .where(BatchTransfer.exam_session_id == exam_session_id)
            .order_by(BatchTransfer.requested_at, BatchTransfer.id)
        )
        return list(result.scalars().all())

    async def list_open_by_batch(self, exam_session_id: int) -> List[BatchTransfer]:
        result = await self.db.execute(
            select(BatchTransfer)
            .where(and_(
                BatchTransfer.exam_session_id == exam_session_id,
                BatchTransfer.status.in_(OPEN_STATUSES),
            ))
        )
        return list(result.scalars().all())

    async def count_by_batch(self, exam_session_id: int) -> int:
        result = await self.db.execute(
            select(func.count(BatchTransfer.id)).where(BatchTransfer.exam_session_id == exam_session_id)
        )
        return result.scalar() or 0

    async def list_transfers(
        self,
        skip: int = 0,
        limit: int = 100,
        exam_session_id: Optional[int] = None,
        status: Optional[TransferStatus] = None,
        from_handler_id: Optional[int] = None,
        to_handler_id: Optional[int] = None,
        handler_id: Optional[int] = None,
    ) -> List[BatchTransfer]:
        query = select(BatchTransfer).order_by(desc(BatchTransfer.requested_at), desc(BatchTransfer.id))

        conditions = []
        if exam_session_id:
            conditions.append(BatchTransfer.exam_session_id == exam_session_id)
        if status:
            conditions.append(BatchTransfer.status == status)
        if from_handler_id:
            conditions.append(BatchTransfer.from_handler_id == from_handler_id)
        if to_handler_id:
            conditions.append(BatchTransfer.to_handler_id == to_handler_id)
        if handler_id:
            conditions.append(or_(
                BatchTransfer.from_handler_id == handler_id,
                BatchTransfer.to_handler_id == handler_id,
            ))

        if conditions:
            query = query.where(and_(*conditions))

        query = query.offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def finalize(self, transfer_id: int, new_status: TransferStatus, fields: Dict[str, Any]) -> BatchTransfer:
        """Move a row to ``new_status`` only if it is still in an eligible source status.

        The status check and the write are one conditional UPDATE, so a second
        confirmation racing the first updates nothing and fails.
        """
        result = await self.db.execute(
            update(BatchTransfer)
            .where(and_(
                BatchTransfer.id == transfer_id,
                BatchTransfer.status.in_(eligible_sources(new_status)),
            ))
            .values(status=new_status, **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.get(transfer_id)
            assert_transition(current.status, new_status)
            raise InvalidTransitionError(context={"transfer_id": transfer_id, "current_status": current.status.value})
        return await self.get(transfer_id)

    @staticmethod
    def _conflict(open_transfer: BatchTransfer) -> ConflictError:
        return ConflictError(
            context={
                "exam_session_id": open_transfer.exam_session_id,
                "open_transfer_id": open_transfer.id,
                "open_transfer_status": open_transfer.status.value,
            }
        )
