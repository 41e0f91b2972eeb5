from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from app.models.shared.enums import BatchStatus

class ExamSessionSummary(BaseModel):
    id: int
    course_code: str
    course_name: str
    venue: Optional[str] = None
    status: BatchStatus
    expected_script_count: int

    class Config:
        from_attributes = True

class ExamSessionResponse(ExamSessionSummary):
    department: Optional[str] = None
    faculty: Optional[str] = None
    exam_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ExamSessionStatusUpdate(BaseModel):
    status: BatchStatus
