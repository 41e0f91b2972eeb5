from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.shared.enums import BatchStatus

class ExamSession(BaseModel):
    """An exam session; its scripts travel as one custody batch."""
    __tablename__ = 'exam_sessions'

    course_code = Column(String(20), nullable=False, index=True)
    course_name = Column(String(255), nullable=False)
    venue = Column(String(150))
    department = Column(String(150))
    faculty = Column(String(150))
    exam_date = Column(DateTime(timezone=True))
    status = Column(SQLEnum(BatchStatus), nullable=False, default=BatchStatus.NOT_STARTED)
    expected_script_count = Column(Integer, nullable=False, default=0)

    # Relationships
    attendances = relationship("ExamAttendance", back_populates="exam_session")

    def __repr__(self):
        return f"<ExamSession {self.course_code} ({self.status})>"
