from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.shared.enums import AttendanceStatus

class ExamAttendance(BaseModel):
    __tablename__ = 'exam_attendances'

    exam_session_id = Column(Integer, ForeignKey('exam_sessions.id'), nullable=False, index=True)
    student_index = Column(String(50), nullable=False)
    entry_time = Column(DateTime(timezone=True))
    exit_time = Column(DateTime(timezone=True))
    submission_time = Column(DateTime(timezone=True))
    status = Column(SQLEnum(AttendanceStatus), nullable=False, default=AttendanceStatus.ENTERED)

    # Relationships
    exam_session = relationship("ExamSession", back_populates="attendances")
