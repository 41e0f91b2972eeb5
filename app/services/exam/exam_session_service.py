# app/services/exam/exam_session_service.py
import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional
from sqlalchemy import and_, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.config import settings
from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models.exam.exam_attendance import ExamAttendance
from app.models.exam.exam_session import ExamSession
from app.models.shared.enums import AttendanceStatus, AuditAction, BatchStatus
from app.services.audit.audit_service import AuditService
from app.services.custody.custody_seeding import CustodySeeder

logger = logging.getLogger(__name__)

BATCH_STATUS_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.NOT_STARTED: frozenset({BatchStatus.IN_PROGRESS}),
    BatchStatus.IN_PROGRESS: frozenset({BatchStatus.SUBMITTED}),
    BatchStatus.SUBMITTED: frozenset({BatchStatus.IN_TRANSIT}),
    BatchStatus.IN_TRANSIT: frozenset({BatchStatus.WITH_LECTURER, BatchStatus.SUBMITTED}),
    BatchStatus.WITH_LECTURER: frozenset({BatchStatus.IN_TRANSIT, BatchStatus.UNDER_GRADING}),
    BatchStatus.UNDER_GRADING: frozenset({BatchStatus.GRADED}),
    BatchStatus.GRADED: frozenset({BatchStatus.RETURNED}),
    BatchStatus.RETURNED: frozenset({BatchStatus.COMPLETED}),
    BatchStatus.COMPLETED: frozenset(),
}


def can_transition(current: BatchStatus, new_status: BatchStatus) -> bool:
    return new_status in BATCH_STATUS_TRANSITIONS.get(current, frozenset())


def validate_status_transition(current: BatchStatus, new_status: BatchStatus) -> None:
    if not can_transition(current, new_status):
        allowed = ", ".join(s.value for s in sorted(BATCH_STATUS_TRANSITIONS[current], key=lambda s: s.value)) or "none"
        raise InvalidTransitionError(
            f"Cannot transition from {current.value} to {new_status.value}. Allowed transitions: {allowed}",
            context={"current_status": current.value, "requested_status": new_status.value},
        )


class ExamSessionService:
    """Batch registry: the exam session status and expected script count custody relies on."""

    def __init__(self, db: AsyncSession, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService()
        self.seeder = CustodySeeder(db)

    async def get_exam_session(self, exam_session_id: int, for_update: bool = False) -> ExamSession:
        query = select(ExamSession).where(ExamSession.id == exam_session_id)
        if for_update:
            # Serializes custody writes per batch; SQLite ignores it and serializes writers anyway
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        exam_session = result.scalar_one_or_none()
        if not exam_session:
            raise NotFoundError("Exam session not found", context={"exam_session_id": exam_session_id})
        return exam_session

    async def count_attendances(self, exam_session_id: int, status: Optional[AttendanceStatus] = None) -> int:
        query = select(func.count(ExamAttendance.id)).where(ExamAttendance.exam_session_id == exam_session_id)
        if status:
            query = query.where(ExamAttendance.status == status)
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def expected_script_count(self, exam_session_id: int) -> int:
        exam_session = await self.get_exam_session(exam_session_id)
        return exam_session.expected_script_count

    async def update_status(self, exam_session_id: int, new_status: BatchStatus, current_user_id: int) -> ExamSession:
        exam_session = await self.get_exam_session(exam_session_id, for_update=True)
        previous_status = exam_session.status
        validate_status_transition(previous_status, new_status)

        exam_session.status = new_status
        exam_session.updated_by = current_user_id
        changes = {"status": {"from": previous_status.value, "to": new_status.value}}

        if new_status == BatchStatus.SUBMITTED:
            script_count = await self.count_attendances(exam_session.id)
            changes.update(await self._on_submitted(exam_session, current_user_id, script_count))

        await self.db.commit()
        await self.db.refresh(exam_session)

        await self.audit.record(
            user_id=current_user_id,
            action=AuditAction.UPDATE_EXAM_SESSION_STATUS.value,
            exam_session_id=exam_session.id,
            resource="ExamSession",
            resource_id=exam_session.id,
            changes=changes,
        )
        return exam_session

    async def end_session(self, exam_session_id: int, current_user_id: int) -> ExamSession:
        """Close an IN_PROGRESS session: mark finished attendances submitted and submit the batch"""
        exam_session = await self.get_exam_session(exam_session_id, for_update=True)
        if exam_session.status != BatchStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Cannot end session. Current status is {exam_session.status.value}. "
                f"Only IN_PROGRESS sessions can be ended.",
                context={"current_status": exam_session.status.value},
            )

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(ExamAttendance)
            .where(and_(
                ExamAttendance.exam_session_id == exam_session_id,
                ExamAttendance.entry_time.is_not(None),
                ExamAttendance.exit_time.is_not(None),
                ExamAttendance.status != AttendanceStatus.SUBMITTED,
            ))
            .values(status=AttendanceStatus.SUBMITTED, submission_time=now)
            .execution_options(synchronize_session=False)
        )
        marked = result.rowcount

        exam_session.status = BatchStatus.SUBMITTED
        exam_session.updated_by = current_user_id
        changes = {"status": {"from": BatchStatus.IN_PROGRESS.value, "to": BatchStatus.SUBMITTED.value}}
        # Only students who handed in a script count towards the batch
        script_count = await self.count_attendances(exam_session.id, AttendanceStatus.SUBMITTED)
        changes.update(await self._on_submitted(
            exam_session, current_user_id, script_count, note=settings.SESSION_END_CUSTODY_NOTE
        ))

        await self.db.commit()
        await self.db.refresh(exam_session)

        await self.audit.record(
            user_id=current_user_id,
            action=AuditAction.END_EXAM_SESSION.value,
            exam_session_id=exam_session.id,
            resource="ExamSession",
            resource_id=exam_session.id,
            changes=changes,
            details={"attendances_marked_submitted": marked},
        )
        return exam_session

    def apply_custody_status(self, exam_session: ExamSession, new_status: BatchStatus) -> Optional[Dict[str, str]]:
        """Move the batch along its lifecycle as a side effect of custody, if the lifecycle allows it.

        Returns the status diff, or None when nothing changed. Does not commit.
        """
        if exam_session.status == new_status or not can_transition(exam_session.status, new_status):
            return None
        change = {"from": exam_session.status.value, "to": new_status.value}
        exam_session.status = new_status
        logger.info(f"Exam session {exam_session.id} status {change['from']} -> {change['to']} from custody change")
        return change

    async def _on_submitted(
        self,
        exam_session: ExamSession,
        current_user_id: int,
        script_count: int,
        note: Optional[str] = None,
    ) -> Dict:
        previous_count = exam_session.expected_script_count
        exam_session.expected_script_count = script_count

        changes = {}
        if previous_count != exam_session.expected_script_count:
            changes["expected_script_count"] = {"from": previous_count, "to": exam_session.expected_script_count}

        seed = await self.seeder.seed_initial_custody(
            exam_session.id, current_user_id, exam_session.expected_script_count, note=note
        )
        if seed:
            changes["seeded_transfer_id"] = seed.id
        return changes
