import asyncio
import pytest
from sqlalchemy.exc import IntegrityError
from app.core.exceptions import (
    ConflictError, InvalidTransitionError, NotCurrentHolderError, NotCurrentReceiverError,
    NotFoundError, PermissionDeniedError, SameHandlerError, ValidationError
)
from app.models import BatchTransfer
from app.models.shared.enums import HandlerRole, TransferStatus
from app.services.custody.custody_ledger import CustodyLedger
from app.services.custody.transfer_service import TransferService
from tests.factories import SCRIPT_COUNT, audit_logs_for, make_exam_session, transfers_for

@pytest.fixture
def service(db):
    return TransferService(db)

@pytest.fixture
async def pending(service, handlers, submitted_session):
    """U1 -> U2 transfer awaiting the lecturer"""
    return await service.request_transfer(submitted_session.id, handlers["u1"].id, handlers["u2"].id, SCRIPT_COUNT)

@pytest.fixture
async def discrepancy(service, handlers, pending):
    return await service.confirm_transfer(pending.id, SCRIPT_COUNT - 2, handlers["u2"].id, "Two short")

class TestRequestTransfer:

    async def test_negative_count_rejected(self, service, handlers, submitted_session):
        with pytest.raises(ValidationError):
            await service.request_transfer(submitted_session.id, handlers["u1"].id, handlers["u2"].id, -1)

    async def test_same_handler_rejected(self, service, handlers, submitted_session):
        with pytest.raises(SameHandlerError) as exc_info:
            await service.request_transfer(submitted_session.id, handlers["u1"].id, handlers["u1"].id, SCRIPT_COUNT)
        assert exc_info.value.status_code == 422

    async def test_unknown_receiver(self, service, handlers, submitted_session):
        with pytest.raises(NotFoundError):
            await service.request_transfer(submitted_session.id, handlers["u1"].id, 9999, SCRIPT_COUNT)

    async def test_inactive_receiver(self, service, handlers, submitted_session):
        with pytest.raises(NotFoundError):
            await service.request_transfer(
                submitted_session.id, handlers["u1"].id, handlers["inactive"].id, SCRIPT_COUNT
            )

    async def test_unknown_batch(self, service, handlers):
        with pytest.raises(NotFoundError) as exc_info:
            await service.request_transfer(9999, handlers["u1"].id, handlers["u2"].id, SCRIPT_COUNT)
        assert exc_info.value.context == {"exam_session_id": 9999}

    async def test_only_current_holder_may_hand_over(self, service, handlers, submitted_session):
        with pytest.raises(NotCurrentHolderError) as exc_info:
            await service.request_transfer(submitted_session.id, handlers["u2"].id, handlers["u3"].id, SCRIPT_COUNT)
        assert exc_info.value.context["current_holder_id"] == handlers["u1"].id

    async def test_no_holder_before_submission(self, service, handlers, exam_session):
        with pytest.raises(NotCurrentHolderError) as exc_info:
            await service.request_transfer(exam_session.id, handlers["u1"].id, handlers["u2"].id, SCRIPT_COUNT)
        assert exc_info.value.context["current_holder_id"] is None

    async def test_pending_receiver_is_not_yet_holder(self, service, handlers, pending, submitted_session):
        with pytest.raises(NotCurrentHolderError):
            await service.request_transfer(submitted_session.id, handlers["u2"].id, handlers["u3"].id, SCRIPT_COUNT)

    async def test_conflict_while_discrepancy_open(self, service, handlers, discrepancy, submitted_session):
        with pytest.raises(ConflictError) as exc_info:
            await service.request_transfer(submitted_session.id, handlers["u1"].id, handlers["u3"].id, SCRIPT_COUNT)
        assert exc_info.value.context["open_transfer_status"] == TransferStatus.DISCREPANCY_REPORTED.value

    async def test_rejected_receiver_may_be_asked_again(self, service, handlers, pending, submitted_session):
        await service.reject_transfer(pending.id, handlers["u2"].id, "Not ready to receive")
        retry = await service.request_transfer(
            submitted_session.id, handlers["u1"].id, handlers["u2"].id, SCRIPT_COUNT
        )
        assert retry.status == TransferStatus.PENDING
        assert retry.id != pending.id

    async def test_batches_are_independent(self, db, service, handlers, pending):
        other = await make_exam_session(db, attendances=10)
        from app.services.exam.exam_session_service import ExamSessionService
        await ExamSessionService(db).end_session(other.id, handlers["u3"].id)

        transfer = await service.request_transfer(other.id, handlers["u3"].id, handlers["u4"].id, 10)
        assert transfer.status == TransferStatus.PENDING

class TestConfirmTransfer:

    async def test_only_receiver_may_confirm(self, service, handlers, pending):
        with pytest.raises(NotCurrentReceiverError) as exc_info:
            await service.confirm_transfer(pending.id, SCRIPT_COUNT, handlers["u3"].id)
        assert exc_info.value.context["to_handler_id"] == handlers["u2"].id

    async def test_sender_cannot_confirm_own_transfer(self, service, handlers, pending):
        with pytest.raises(NotCurrentReceiverError):
            await service.confirm_transfer(pending.id, SCRIPT_COUNT, handlers["u1"].id)

    @pytest.mark.parametrize("received", [0, SCRIPT_COUNT - 1, SCRIPT_COUNT + 3])
    async def test_mismatch_is_never_silently_confirmed(self, service, handlers, pending, received):
        transfer = await service.confirm_transfer(pending.id, received, handlers["u2"].id, "Count differs")
        assert transfer.status == TransferStatus.DISCREPANCY_REPORTED
        assert transfer.scripts_received == received
        assert transfer.confirmed_at is not None
        assert transfer.discrepancy_note == "Count differs"

    @pytest.mark.parametrize("note", [None, "", "   "])
    async def test_mismatch_requires_note(self, db, service, handlers, pending, note):
        with pytest.raises(ValidationError) as exc_info:
            await service.confirm_transfer(pending.id, SCRIPT_COUNT - 1, handlers["u2"].id, note)
        assert exc_info.value.context == {"scripts_expected": SCRIPT_COUNT, "scripts_received": SCRIPT_COUNT - 1}

        row = await CustodyLedger(db).get(pending.id)
        assert row.status == TransferStatus.PENDING
        assert row.scripts_received is None

    async def test_negative_received_count(self, service, handlers, pending):
        with pytest.raises(ValidationError):
            await service.confirm_transfer(pending.id, -5, handlers["u2"].id, "Negative")

    async def test_unknown_transfer(self, service, handlers, submitted_session):
        with pytest.raises(NotFoundError):
            await service.confirm_transfer(9999, SCRIPT_COUNT, handlers["u2"].id)

    async def test_second_confirmation_fails(self, service, handlers, pending):
        await service.confirm_transfer(pending.id, SCRIPT_COUNT, handlers["u2"].id)
        with pytest.raises(InvalidTransitionError):
            await service.confirm_transfer(pending.id, SCRIPT_COUNT, handlers["u2"].id)

class TestRejectTransfer:

    async def test_only_receiver_may_reject(self, service, handlers, pending):
        with pytest.raises(NotCurrentReceiverError):
            await service.reject_transfer(pending.id, handlers["u1"].id, "Changed my mind")

    async def test_reason_required(self, service, handlers, pending):
        with pytest.raises(ValidationError):
            await service.reject_transfer(pending.id, handlers["u2"].id, "  ")

    async def test_discrepancy_cannot_be_rejected(self, service, handlers, discrepancy):
        with pytest.raises(InvalidTransitionError):
            await service.reject_transfer(discrepancy.id, handlers["u2"].id, "Too late")

class TestResolveDiscrepancy:

    @pytest.mark.parametrize("role", [HandlerRole.LECTURER, HandlerRole.DEPARTMENT_HEAD, HandlerRole.INVIGILATOR])
    async def test_requires_admin(self, service, handlers, discrepancy, role):
        with pytest.raises(PermissionDeniedError):
            await service.resolve_discrepancy(discrepancy.id, handlers["u2"].id, role, "Accepted")

    async def test_pending_cannot_be_resolved(self, service, handlers, pending):
        admin = handlers["admin"]
        with pytest.raises(InvalidTransitionError):
            await service.resolve_discrepancy(pending.id, admin.id, admin.role, "Nothing to resolve")

    async def test_note_required(self, service, handlers, discrepancy):
        admin = handlers["admin"]
        with pytest.raises(ValidationError):
            await service.resolve_discrepancy(discrepancy.id, admin.id, admin.role, "")

    async def test_resolution_keeps_received_count(self, service, handlers, discrepancy):
        admin = handlers["admin"]
        transfer = await service.resolve_discrepancy(discrepancy.id, admin.id, admin.role, "Accepted as counted")
        assert transfer.scripts_received == SCRIPT_COUNT - 2
        assert transfer.resolution_note == "Accepted as counted"
        assert transfer.resolved_at is not None

class TestTerminalImmutability:

    @pytest.fixture(params=["confirmed", "rejected", "resolved"])
    async def terminal(self, request, service, handlers, pending):
        u2, admin = handlers["u2"], handlers["admin"]
        if request.param == "confirmed":
            return await service.confirm_transfer(pending.id, SCRIPT_COUNT, u2.id)
        if request.param == "rejected":
            return await service.reject_transfer(pending.id, u2.id, "Wrong batch")
        transfer = await service.confirm_transfer(pending.id, 1, u2.id, "Mostly missing")
        return await service.resolve_discrepancy(transfer.id, admin.id, admin.role, "Accepted")

    async def test_every_operation_fails(self, db, service, handlers, terminal):
        u2, u3, admin = handlers["u2"], handlers["u3"], handlers["admin"]
        before = {
            c.name: getattr(terminal, c.name) for c in BatchTransfer.__table__.columns
        }
        audits_before = len(await audit_logs_for(db, terminal.exam_session_id))

        attempts = [
            lambda: service.confirm_transfer(terminal.id, SCRIPT_COUNT, u2.id),
            lambda: service.confirm_transfer(terminal.id, SCRIPT_COUNT, u3.id),
            lambda: service.reject_transfer(terminal.id, u2.id, "Again"),
            lambda: service.resolve_discrepancy(terminal.id, admin.id, admin.role, "Again"),
            lambda: service.resolve_discrepancy(terminal.id, u3.id, u3.role, "Again"),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidTransitionError):
                await attempt()

        row = await CustodyLedger(db).get(terminal.id)
        assert {c.name: getattr(row, c.name) for c in BatchTransfer.__table__.columns} == before
        assert len(await audit_logs_for(db, terminal.exam_session_id)) == audits_before

class TestLedger:

    async def test_finalize_is_conditional(self, db, service, handlers, pending):
        """A stale writer that already passed its status check still cannot finalize twice"""
        transfer_id = pending.id
        await service.confirm_transfer(transfer_id, SCRIPT_COUNT, handlers["u2"].id)
        ledger = CustodyLedger(db)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await ledger.finalize(transfer_id, TransferStatus.CONFIRMED, {"scripts_received": 1})
        assert exc_info.value.context["current_status"] == TransferStatus.CONFIRMED.value
        await db.rollback()
        assert (await ledger.get(transfer_id)).scripts_received == SCRIPT_COUNT

    async def test_append_refuses_second_open_transfer(self, db, handlers, pending, submitted_session):
        ledger = CustodyLedger(db)
        with pytest.raises(ConflictError) as exc_info:
            await ledger.append(BatchTransfer(
                exam_session_id=submitted_session.id,
                from_handler_id=handlers["u1"].id,
                to_handler_id=handlers["u3"].id,
                status=TransferStatus.PENDING,
                scripts_expected=SCRIPT_COUNT,
                requested_at=pending.requested_at,
            ))
        assert exc_info.value.context["open_transfer_id"] == pending.id

    async def test_open_transfer_index_backs_the_check(self, db, handlers, pending, submitted_session):
        # Rollback expires loaded rows
        transfer_id, exam_session_id = pending.id, submitted_session.id
        db.add(BatchTransfer(
            exam_session_id=exam_session_id,
            from_handler_id=handlers["u1"].id,
            to_handler_id=handlers["u3"].id,
            status=TransferStatus.PENDING,
            scripts_expected=SCRIPT_COUNT,
            requested_at=pending.requested_at,
        ))
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

        open_rows = await CustodyLedger(db).list_open_by_batch(exam_session_id)
        assert [t.id for t in open_rows] == [transfer_id]

    async def test_index_rejection_reports_the_open_transfer(self, db, handlers, pending, submitted_session, monkeypatch):
        """The pre-check saw nothing, so the insert reaches the unique index"""
        transfer_id, exam_session_id = pending.id, submitted_session.id
        requested_at = pending.requested_at
        ledger = CustodyLedger(db)
        list_open = ledger.list_open_by_batch
        calls = []

        async def list_open_after_first_call(batch_id):
            calls.append(batch_id)
            return [] if len(calls) == 1 else await list_open(batch_id)

        monkeypatch.setattr(ledger, "list_open_by_batch", list_open_after_first_call)
        with pytest.raises(ConflictError) as exc_info:
            await ledger.append(BatchTransfer(
                exam_session_id=exam_session_id,
                from_handler_id=handlers["u1"].id,
                to_handler_id=handlers["u3"].id,
                status=TransferStatus.PENDING,
                scripts_expected=SCRIPT_COUNT,
                requested_at=requested_at,
            ))
        assert exc_info.value.context == {
            "exam_session_id": exam_session_id,
            "open_transfer_id": transfer_id,
            "open_transfer_status": TransferStatus.PENDING.value,
        }
        assert len(calls) == 2

    async def test_concurrent_requests_open_one_transfer(self, session_maker, handlers, submitted_session):
        exam_session_id = submitted_session.id
        u1, u2, u3 = (handlers[k].id for k in ("u1", "u2", "u3"))

        async with session_maker() as first, session_maker() as second:
            results = await asyncio.gather(
                TransferService(first).request_transfer(exam_session_id, u1, u2, SCRIPT_COUNT),
                TransferService(second).request_transfer(exam_session_id, u1, u3, SCRIPT_COUNT),
                return_exceptions=True,
            )

        assert sorted(type(r).__name__ for r in results) == ["BatchTransfer", "ConflictError"]
        [created] = [r for r in results if isinstance(r, BatchTransfer)]
        [conflict] = [r for r in results if isinstance(r, ConflictError)]
        assert conflict.context["exam_session_id"] == exam_session_id

        async with session_maker() as check:
            open_rows = await CustodyLedger(check).list_open_by_batch(exam_session_id)
        assert [t.id for t in open_rows] == [created.id]

    async def test_count_and_list_by_batch(self, db, handlers, pending, submitted_session):
        ledger = CustodyLedger(db)
        assert await ledger.count_by_batch(submitted_session.id) == 2
        chain = await ledger.list_by_batch(submitted_session.id)
        assert chain[0].is_seed
        assert chain[-1].id == pending.id

class TestVisibility:

    async def test_parties_and_admin_can_view(self, service, handlers, pending):
        for key in ("u1", "u2", "admin"):
            user = handlers[key]
            assert (await service.get_transfer(pending.id, user.id, user.role)).id == pending.id

    async def test_outsider_cannot_view(self, service, handlers, pending):
        u3 = handlers["u3"]
        with pytest.raises(PermissionDeniedError):
            await service.get_transfer(pending.id, u3.id, u3.role)

    async def test_listing_is_scoped_for_handlers(self, service, handlers, pending):
        u2, u3, admin = handlers["u2"], handlers["u3"], handlers["admin"]

        mine = await service.get_transfers(u2.id, u2.role)
        assert [t.id for t in mine] == [pending.id]
        assert await service.get_transfers(u3.id, u3.role, handler_id=u2.id) == []

        everything = await service.get_transfers(admin.id, admin.role)
        assert len(everything) == 2
        open_only = await service.get_transfers(admin.id, admin.role, status=TransferStatus.PENDING)
        assert [t.id for t in open_only] == [pending.id]

    async def test_custody_chain(self, service, handlers, pending, submitted_session):
        chain = await service.get_custody_chain(submitted_session.id)
        assert chain["exam_session"].id == submitted_session.id
        assert chain["current_holder_id"] == handlers["u1"].id
        assert chain["has_open_transfer"] is True
        assert chain["count"] == 2
        assert [t.id for t in chain["transfers"]][-1] == pending.id

    async def test_custody_chain_unknown_session(self, service, handlers):
        with pytest.raises(NotFoundError):
            await service.get_custody_chain(9999)
