import pytest
from sqlalchemy.future import select
from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models import ExamAttendance
from app.models.shared.enums import AttendanceStatus, AuditAction, BatchStatus, TransferStatus
from app.services.custody.chain_resolver import ChainResolver
from app.services.custody.custody_seeding import CustodySeeder
from app.services.exam.exam_session_service import ExamSessionService
from tests.factories import SCRIPT_COUNT, audit_logs_for, make_exam_session, transfers_for

class TestSeeding:

    async def test_seeding_is_idempotent(self, db, handlers, exam_session):
        seeder = CustodySeeder(db)
        first = await seeder.seed_initial_custody(exam_session.id, handlers["u1"].id, SCRIPT_COUNT)
        await db.commit()
        second = await seeder.seed_initial_custody(exam_session.id, handlers["u2"].id, SCRIPT_COUNT)
        await db.commit()

        assert first is not None
        assert second is None
        transfers = await transfers_for(db, exam_session.id)
        assert [t.id for t in transfers] == [first.id]
        assert await ChainResolver(db).current_holder(exam_session.id) == handlers["u1"].id

    async def test_custom_note(self, db, handlers, exam_session):
        seed = await CustodySeeder(db).seed_initial_custody(
            exam_session.id, handlers["u1"].id, 3, note="Handed in at the annex"
        )
        assert seed.discrepancy_note == "Handed in at the annex"
        assert seed.scripts_expected == seed.scripts_received == 3

    async def test_empty_session_still_gets_a_holder(self, db, handlers):
        empty = await make_exam_session(db, attendances=0)
        await ExamSessionService(db).end_session(empty.id, handlers["u1"].id)

        transfers = await transfers_for(db, empty.id)
        assert len(transfers) == 1
        assert transfers[0].scripts_expected == 0

class TestExamSessionLifecycle:

    async def test_end_session_submits_and_seeds(self, db, handlers):
        # Two students are still marked as seated when the invigilator ends the session
        exam_session = await make_exam_session(db, attendances=40, still_seated=2)
        ended = await ExamSessionService(db).end_session(exam_session.id, handlers["u1"].id)

        assert ended.status == BatchStatus.SUBMITTED
        assert ended.expected_script_count == 40

        result = await db.execute(
            select(ExamAttendance.status).where(ExamAttendance.exam_session_id == exam_session.id)
        )
        statuses = list(result.scalars().all())
        assert statuses.count(AttendanceStatus.SUBMITTED) == 40
        assert statuses.count(AttendanceStatus.ENTERED) == 2

        [seed] = await transfers_for(db, exam_session.id)
        assert seed.scripts_expected == seed.scripts_received == 40
        assert seed.discrepancy_note == "Initial custody established upon session end"

        [log] = await audit_logs_for(db, exam_session.id)
        assert log.action == AuditAction.END_EXAM_SESSION.value
        assert log.user_id == handlers["u1"].id
        assert log.changes["status"] == {"from": "IN_PROGRESS", "to": "SUBMITTED"}
        assert log.changes["expected_script_count"] == {"from": 0, "to": 40}
        assert log.changes["seeded_transfer_id"] == seed.id
        assert log.details == {"attendances_marked_submitted": 40}

    async def test_status_update_counts_every_attendance(self, db, handlers):
        exam_session = await make_exam_session(db, attendances=40, still_seated=2)
        updated = await ExamSessionService(db).update_status(
            exam_session.id, BatchStatus.SUBMITTED, handlers["u1"].id
        )
        assert updated.expected_script_count == 42

        [seed] = await transfers_for(db, exam_session.id)
        assert seed.scripts_expected == 42
        assert seed.discrepancy_note == "Initial custody established upon submission"

    async def test_only_in_progress_sessions_can_end(self, db, handlers):
        not_started = await make_exam_session(db, attendances=2, status=BatchStatus.NOT_STARTED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await ExamSessionService(db).end_session(not_started.id, handlers["u1"].id)
        assert exc_info.value.context == {"current_status": "NOT_STARTED"}

    async def test_status_update_to_submitted_seeds_once(self, db, handlers, exam_session):
        service = ExamSessionService(db)
        updated = await service.update_status(exam_session.id, BatchStatus.SUBMITTED, handlers["u1"].id)
        assert updated.status == BatchStatus.SUBMITTED
        assert await service.expected_script_count(exam_session.id) == SCRIPT_COUNT

        # Returned to SUBMITTED after an aborted transit: the chain already has a start
        await service.update_status(exam_session.id, BatchStatus.IN_TRANSIT, handlers["u1"].id)
        await service.update_status(exam_session.id, BatchStatus.SUBMITTED, handlers["u1"].id)

        transfers = await transfers_for(db, exam_session.id)
        assert len(transfers) == 1
        assert transfers[0].status == TransferStatus.CONFIRMED

        logs = await audit_logs_for(db, exam_session.id)
        assert [log.action for log in logs] == [AuditAction.UPDATE_EXAM_SESSION_STATUS.value] * 3
        assert "seeded_transfer_id" in logs[0].changes
        assert "seeded_transfer_id" not in logs[2].changes

    async def test_invalid_status_update(self, db, handlers, exam_session):
        with pytest.raises(InvalidTransitionError):
            await ExamSessionService(db).update_status(exam_session.id, BatchStatus.GRADED, handlers["u1"].id)
        assert await transfers_for(db, exam_session.id) == []

    async def test_unknown_session(self, db, handlers):
        with pytest.raises(NotFoundError):
            await ExamSessionService(db).update_status(9999, BatchStatus.IN_PROGRESS, handlers["u1"].id)

    async def test_custody_status_follows_lifecycle_only(self, db, handlers, exam_session):
        service = ExamSessionService(db)
        # IN_PROGRESS cannot jump to WITH_LECTURER
        assert service.apply_custody_status(exam_session, BatchStatus.WITH_LECTURER) is None
        assert exam_session.status == BatchStatus.IN_PROGRESS
        assert service.apply_custody_status(exam_session, BatchStatus.SUBMITTED) == {
            "from": "IN_PROGRESS", "to": "SUBMITTED"
        }
