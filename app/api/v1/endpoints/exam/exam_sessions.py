from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.dependencies import get_current_user
from app.core.database import get_async_session
from app.core.request_context import get_request_context
from app.services.audit.audit_service import AuditService
from app.services.exam.exam_session_service import ExamSessionService
from app.schemas.exam.exam_session import ExamSessionResponse, ExamSessionStatusUpdate
from app.models.auth.user import User

router = APIRouter()

@router.get("/{exam_session_id}", response_model=ExamSessionResponse)
async def get_exam_session(
    exam_session_id: int,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Get exam session by ID"""
    service = ExamSessionService(session)
    return await service.get_exam_session(exam_session_id)

@router.patch("/{exam_session_id}/status", response_model=ExamSessionResponse)
async def update_exam_session_status(
    exam_session_id: int,
    status_data: ExamSessionStatusUpdate,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """Move the session along its lifecycle; submitting it establishes initial custody"""
    service = ExamSessionService(session, audit=AuditService(request_context=get_request_context(request)))
    return await service.update_status(exam_session_id, status_data.status, current_user.id)

@router.post("/{exam_session_id}/end", response_model=ExamSessionResponse)
async def end_exam_session(
    exam_session_id: int,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    current_user: User = Depends(get_current_user)
):
    """End an in-progress session and submit its scripts"""
    service = ExamSessionService(session, audit=AuditService(request_context=get_request_context(request)))
    return await service.end_session(exam_session_id, current_user.id)
