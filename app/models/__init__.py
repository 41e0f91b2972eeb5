from app.models.auth.user import User
from app.models.auth.audit_log import AuditLog
from app.models.exam.exam_session import ExamSession
from app.models.exam.exam_attendance import ExamAttendance
from app.models.custody.batch_transfer import BatchTransfer


__all__ = [
    "User",
    "AuditLog",
    "ExamSession",
    "ExamAttendance",
    "BatchTransfer",
]
