from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from app.api.dependencies import get_current_user, require_roles
from app.core.database import get_async_session
from app.core.request_context import get_request_context
from app.services.audit.audit_service import AuditService
from app.services.custody.transfer_service import TransferService
from app.schemas.custody.batch_transfer import (
    BatchTransferResponse, CustodyChainResponse, TransferConfirm,
    TransferCreate, TransferReject, TransferResolve
)
from app.models.shared.enums import HandlerRole, TransferStatus
from app.models.auth.user import User

router = APIRouter()

def _service(session: AsyncSession, request: Request) -> TransferService:
    return TransferService(session, audit=AuditService(request_context=get_request_context(request)))

@router.post("/", response_model=BatchTransferResponse, status_code=status.HTTP_201_CREATED)
async def request_transfer(
    transfer_data: TransferCreate,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Hand the batch over to another handler; the caller must be its current holder"""
    service = _service(session, request)
    return await service.request_transfer(
        exam_session_id=transfer_data.exam_session_id,
        from_handler_id=current_user.id,
        to_handler_id=transfer_data.to_handler_id,
        expected_count=transfer_data.expected_count,
        location=transfer_data.location,
    )

@router.get("/", response_model=List[BatchTransferResponse])
async def get_transfers(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    exam_session_id: Optional[int] = Query(None),
    status: Optional[TransferStatus] = Query(None),
    from_handler_id: Optional[int] = Query(None),
    to_handler_id: Optional[int] = Query(None),
    handler_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Get transfers with optional filters"""
    service = TransferService(session)
    return await service.get_transfers(
        viewer_id=current_user.id,
        viewer_role=current_user.role,
        skip=skip,
        limit=limit,
        exam_session_id=exam_session_id,
        status=status,
        from_handler_id=from_handler_id,
        to_handler_id=to_handler_id,
        handler_id=handler_id,
    )

@router.get("/history/{exam_session_id}", response_model=CustodyChainResponse)
async def get_custody_chain(
    exam_session_id: int,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Full chain of custody of a batch with its current holder"""
    service = TransferService(session)
    return await service.get_custody_chain(exam_session_id)

@router.get("/{transfer_id}", response_model=BatchTransferResponse)
async def get_transfer(
    transfer_id: int,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Get transfer by ID"""
    service = TransferService(session)
    return await service.get_transfer(transfer_id, current_user.id, current_user.role)

@router.patch("/{transfer_id}/confirm", response_model=BatchTransferResponse)
async def confirm_transfer(
    transfer_id: int,
    confirm_data: TransferConfirm,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Receiver confirms the scripts counted on arrival"""
    service = _service(session, request)
    return await service.confirm_transfer(
        transfer_id,
        received_count=confirm_data.received_count,
        actor_id=current_user.id,
        discrepancy_note=confirm_data.discrepancy_note,
    )

@router.patch("/{transfer_id}/reject", response_model=BatchTransferResponse)
async def reject_transfer(
    transfer_id: int,
    reject_data: TransferReject,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Receiver declines the handover"""
    service = _service(session, request)
    return await service.reject_transfer(transfer_id, current_user.id, reject_data.reason)

@router.patch("/{transfer_id}/resolve", response_model=BatchTransferResponse)
async def resolve_discrepancy(
    transfer_id: int,
    resolve_data: TransferResolve,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(require_roles(HandlerRole.ADMIN))
):
    """Administrator resolves a reported count discrepancy"""
    service = _service(session, request)
    return await service.resolve_discrepancy(
        transfer_id,
        actor_id=current_user.id,
        actor_role=current_user.role,
        resolution_note=resolve_data.resolution_note,
    )
