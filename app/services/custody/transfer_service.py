# app/services/custody/transfer_service.py
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.exceptions import (
    NotCurrentHolderError, NotCurrentReceiverError, NotFoundError,
    PermissionDeniedError, SameHandlerError, ValidationError
)
from app.models.auth.user import User
from app.models.custody.batch_transfer import BatchTransfer
from app.models.shared.enums import AuditAction, BatchStatus, HandlerRole, TransferStatus
from app.services.audit.audit_service import AuditService
from app.services.custody.chain_resolver import ChainResolver
from app.services.custody.custody_ledger import CustodyLedger
from app.services.custody.transitions import assert_transition
from app.services.exam.exam_session_service import ExamSessionService

logger = logging.getLogger(__name__)

# Batch lifecycle stage reached when custody lands with a handler of this role
RECEIVER_ROLE_BATCH_STATUS = {
    HandlerRole.LECTURER: BatchStatus.WITH_LECTURER,
    HandlerRole.DEPARTMENT_HEAD: BatchStatus.UNDER_GRADING,
    HandlerRole.FACULTY_OFFICER: BatchStatus.UNDER_GRADING,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransferService:
    """Custody transfer state machine.

    PENDING -> CONFIRMED | DISCREPANCY_REPORTED | REJECTED, and
    DISCREPANCY_REPORTED -> RESOLVED. Every operation is one transaction;
    the audit record is written after it commits.
    """

    def __init__(self, db: AsyncSession, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService()
        self.ledger = CustodyLedger(db)
        self.resolver = ChainResolver(db, self.ledger)
        self.exam_sessions = ExamSessionService(db, self.audit)

    async def request_transfer(
        self,
        exam_session_id: int,
        from_handler_id: int,
        to_handler_id: int,
        expected_count: int,
        location: Optional[str] = None,
    ) -> BatchTransfer:
        if expected_count < 0:
            raise ValidationError("Scripts expected cannot be negative", context={"expected_count": expected_count})
        if from_handler_id == to_handler_id:
            raise SameHandlerError(context={"handler_id": from_handler_id})

        await self._get_active_handler(to_handler_id, "Receiver handler not found")

        # Holder check and append share this transaction and the batch row lock
        exam_session = await self.exam_sessions.get_exam_session(exam_session_id, for_update=True)
        current_holder_id = await self.resolver.current_holder(exam_session_id)
        if current_holder_id != from_handler_id:
            raise NotCurrentHolderError(
                context={"exam_session_id": exam_session_id, "current_holder_id": current_holder_id}
            )

        transfer = BatchTransfer(
            exam_session_id=exam_session_id,
            from_handler_id=from_handler_id,
            to_handler_id=to_handler_id,
            status=TransferStatus.PENDING,
            scripts_expected=expected_count,
            requested_at=_now(),
            location=location,
            created_by=from_handler_id,
        )
        await self.ledger.append(transfer)

        batch_change = None
        if exam_session.status == BatchStatus.SUBMITTED:
            batch_change = self.exam_sessions.apply_custody_status(exam_session, BatchStatus.IN_TRANSIT)

        await self.db.commit()
        await self.db.refresh(transfer)

        logger.info(
            f"Transfer {transfer.id} requested for exam session {exam_session_id}: "
            f"user {from_handler_id} -> user {to_handler_id}, {expected_count} script(s)"
        )

        changes: Dict[str, Any] = {
            "status": {"from": None, "to": TransferStatus.PENDING.value},
            "scripts_expected": {"from": None, "to": expected_count},
        }
        if batch_change:
            changes["batch_status"] = batch_change
        await self.audit.record(
            user_id=from_handler_id,
            action=AuditAction.CREATE_TRANSFER.value,
            exam_session_id=exam_session_id,
            resource_id=transfer.id,
            changes=changes,
            details={
                "from_handler_id": from_handler_id,
                "to_handler_id": to_handler_id,
                "location": location,
                "requested_at": transfer.requested_at,
            },
        )
        return transfer

    async def confirm_transfer(
        self,
        transfer_id: int,
        received_count: int,
        actor_id: int,
        discrepancy_note: Optional[str] = None,
    ) -> BatchTransfer:
        """Receiver acknowledges the handover; a count mismatch is recorded, never accepted silently"""
        if received_count < 0:
            raise ValidationError("Scripts received cannot be negative", context={"received_count": received_count})

        transfer = await self.ledger.get(transfer_id)
        assert_transition(transfer.status, TransferStatus.CONFIRMED)
        self._require_receiver(transfer, actor_id)

        note = discrepancy_note.strip() if discrepancy_note and discrepancy_note.strip() else None
        has_discrepancy = received_count != transfer.scripts_expected
        if has_discrepancy and not note:
            raise ValidationError(
                "A discrepancy note is required when the received count differs from the expected count",
                context={"scripts_expected": transfer.scripts_expected, "scripts_received": received_count},
            )

        previous_status = transfer.status
        new_status = TransferStatus.DISCREPANCY_REPORTED if has_discrepancy else TransferStatus.CONFIRMED
        transfer = await self.ledger.finalize(
            transfer_id,
            new_status,
            {
                "scripts_received": received_count,
                "confirmed_at": _now(),
                "discrepancy_note": note,
                "updated_by": actor_id,
            },
        )

        batch_change = None
        if new_status == TransferStatus.CONFIRMED:
            batch_change = await self._advance_batch_status(transfer)

        await self.db.commit()

        if has_discrepancy:
            logger.warning(
                f"Transfer {transfer.id} for exam session {transfer.exam_session_id} confirmed with discrepancy: "
                f"expected {transfer.scripts_expected}, received {received_count}"
            )
        else:
            logger.info(f"Transfer {transfer.id} confirmed by user {actor_id}")

        changes: Dict[str, Any] = {
            "status": {"from": previous_status.value, "to": new_status.value},
            "scripts_received": {"from": None, "to": received_count},
            "scripts": {
                "expected": transfer.scripts_expected,
                "received": received_count,
                "delta": received_count - transfer.scripts_expected,
            },
        }
        if batch_change:
            changes["batch_status"] = batch_change
        await self.audit.record(
            user_id=actor_id,
            action=AuditAction.CONFIRM_TRANSFER.value,
            exam_session_id=transfer.exam_session_id,
            resource_id=transfer.id,
            changes=changes,
            details={"discrepancy": has_discrepancy, "discrepancy_note": note, "confirmed_at": transfer.confirmed_at},
        )
        return transfer

    async def reject_transfer(self, transfer_id: int, actor_id: int, reason: str) -> BatchTransfer:
        """Receiver declines the handover; custody stays with the sender"""
        transfer = await self.ledger.get(transfer_id)
        assert_transition(transfer.status, TransferStatus.REJECTED)
        self._require_receiver(transfer, actor_id)

        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a transfer")

        previous_status = transfer.status
        transfer = await self.ledger.finalize(
            transfer_id,
            TransferStatus.REJECTED,
            {
                "rejection_reason": reason.strip(),
                "rejected_at": _now(),
                "updated_by": actor_id,
            },
        )
        await self.db.commit()

        logger.info(f"Transfer {transfer.id} rejected by user {actor_id}; custody stays with user {transfer.from_handler_id}")

        await self.audit.record(
            user_id=actor_id,
            action=AuditAction.REJECT_TRANSFER.value,
            exam_session_id=transfer.exam_session_id,
            resource_id=transfer.id,
            changes={"status": {"from": previous_status.value, "to": TransferStatus.REJECTED.value}},
            details={
                "reason": transfer.rejection_reason,
                "scripts_expected": transfer.scripts_expected,
                "current_holder_id": transfer.from_handler_id,
            },
        )
        return transfer

    async def resolve_discrepancy(
        self,
        transfer_id: int,
        actor_id: int,
        actor_role: HandlerRole,
        resolution_note: str,
    ) -> BatchTransfer:
        """Administrator accepts a reported discrepancy; custody passes to the receiver.

        The received count is left as recorded: resolving accepts the
        mismatch, it does not correct it.
        """
        transfer = await self.ledger.get(transfer_id)
        assert_transition(transfer.status, TransferStatus.RESOLVED)

        if actor_role != HandlerRole.ADMIN:
            raise PermissionDeniedError(
                "Only an administrator can resolve a transfer discrepancy",
                context={"transfer_id": transfer_id, "current_status": transfer.status.value},
            )
        if not resolution_note or not resolution_note.strip():
            raise ValidationError("A resolution note is required to resolve a discrepancy")

        previous_status = transfer.status
        transfer = await self.ledger.finalize(
            transfer_id,
            TransferStatus.RESOLVED,
            {
                "resolution_note": resolution_note.strip(),
                "resolved_by": actor_id,
                "resolved_at": _now(),
                "updated_by": actor_id,
            },
        )
        batch_change = await self._advance_batch_status(transfer)
        await self.db.commit()

        logger.info(
            f"Discrepancy on transfer {transfer.id} resolved by user {actor_id}; "
            f"custody passes to user {transfer.to_handler_id}"
        )

        changes: Dict[str, Any] = {"status": {"from": previous_status.value, "to": TransferStatus.RESOLVED.value}}
        if batch_change:
            changes["batch_status"] = batch_change
        await self.audit.record(
            user_id=actor_id,
            action=AuditAction.RESOLVE_TRANSFER.value,
            exam_session_id=transfer.exam_session_id,
            resource_id=transfer.id,
            changes=changes,
            details={
                "resolution_note": transfer.resolution_note,
                "scripts_expected": transfer.scripts_expected,
                "scripts_received": transfer.scripts_received,
            },
        )
        return transfer

    async def get_transfer(self, transfer_id: int, viewer_id: int, viewer_role: HandlerRole) -> BatchTransfer:
        transfer = await self.ledger.get(transfer_id)
        is_party = viewer_id in (transfer.from_handler_id, transfer.to_handler_id)
        if viewer_role != HandlerRole.ADMIN and not is_party:
            raise PermissionDeniedError("Access denied", context={"transfer_id": transfer_id})
        return transfer

    async def get_transfers(
        self,
        viewer_id: int,
        viewer_role: HandlerRole,
        skip: int = 0,
        limit: int = 100,
        exam_session_id: Optional[int] = None,
        status: Optional[TransferStatus] = None,
        from_handler_id: Optional[int] = None,
        to_handler_id: Optional[int] = None,
        handler_id: Optional[int] = None,
    ) -> List[BatchTransfer]:
        # Non-admin handlers only see transfers they are party to
        if viewer_role != HandlerRole.ADMIN:
            handler_id = viewer_id
        return await self.ledger.list_transfers(
            skip=skip,
            limit=limit,
            exam_session_id=exam_session_id,
            status=status,
            from_handler_id=from_handler_id,
            to_handler_id=to_handler_id,
            handler_id=handler_id,
        )

    async def get_custody_chain(self, exam_session_id: int) -> Dict[str, Any]:
        return await self.resolver.custody_chain(exam_session_id)

    async def _get_active_handler(self, user_id: int, message: str) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id, User.is_active == True))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError(message, context={"handler_id": user_id})
        return user

    @staticmethod
    def _require_receiver(transfer: BatchTransfer, actor_id: int) -> None:
        if transfer.to_handler_id != actor_id:
            raise NotCurrentReceiverError(
                context={
                    "transfer_id": transfer.id,
                    "to_handler_id": transfer.to_handler_id,
                    "current_status": transfer.status.value,
                }
            )

    async def _advance_batch_status(self, transfer: BatchTransfer) -> Optional[Dict[str, str]]:
        receiver = await self.db.get(User, transfer.to_handler_id)
        target = RECEIVER_ROLE_BATCH_STATUS.get(receiver.role) if receiver else None
        if not target:
            return None
        exam_session = await self.exam_sessions.get_exam_session(transfer.exam_session_id, for_update=True)
        return self.exam_sessions.apply_custody_status(exam_session, target)
