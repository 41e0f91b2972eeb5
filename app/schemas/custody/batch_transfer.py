from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime
from app.models.shared.enums import TransferStatus
from app.schemas.exam.exam_session import ExamSessionSummary

class TransferCreate(BaseModel):
    exam_session_id: int
    to_handler_id: int
    expected_count: int = Field(..., ge=0)
    location: Optional[str] = Field(None, max_length=255)

class TransferConfirm(BaseModel):
    received_count: int = Field(..., ge=0)
    discrepancy_note: Optional[str] = None

class TransferReject(BaseModel):
    reason: str

    @validator('reason')
    def validate_reason(cls, v):
        if not v or not v.strip():
            raise ValueError('A rejection reason is required')
        return v.strip()

class TransferResolve(BaseModel):
    resolution_note: str

    @validator('resolution_note')
    def validate_resolution_note(cls, v):
        if not v or not v.strip():
            raise ValueError('A resolution note is required')
        return v.strip()

class BatchTransferResponse(BaseModel):
    id: int
    exam_session_id: int
    from_handler_id: int
    to_handler_id: int
    status: TransferStatus
    scripts_expected: int
    scripts_received: Optional[int] = None
    requested_at: datetime
    confirmed_at: Optional[datetime] = None
    location: Optional[str] = None
    discrepancy_note: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    is_seed: bool = False

    class Config:
        from_attributes = True

class CustodyChainResponse(BaseModel):
    exam_session: ExamSessionSummary
    transfers: List[BatchTransferResponse]
    current_holder_id: Optional[int] = None
    has_open_transfer: bool
    count: int

    class Config:
        from_attributes = True
