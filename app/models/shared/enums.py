from enum import Enum

# Enums
class HandlerRole(str, Enum):
    ADMIN = "ADMIN"
    INVIGILATOR = "INVIGILATOR"
    LECTURER = "LECTURER"
    DEPARTMENT_HEAD = "DEPARTMENT_HEAD"
    FACULTY_OFFICER = "FACULTY_OFFICER"

class BatchStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    IN_TRANSIT = "IN_TRANSIT"
    WITH_LECTURER = "WITH_LECTURER"
    UNDER_GRADING = "UNDER_GRADING"
    GRADED = "GRADED"
    RETURNED = "RETURNED"
    COMPLETED = "COMPLETED"

class AttendanceStatus(str, Enum):
    ENTERED = "ENTERED"
    SUBMITTED = "SUBMITTED"

class TransferStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DISCREPANCY_REPORTED = "DISCREPANCY_REPORTED"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"

class AuditAction(str, Enum):
    CREATE_TRANSFER = "CREATE_TRANSFER"
    CONFIRM_TRANSFER = "CONFIRM_TRANSFER"
    REJECT_TRANSFER = "REJECT_TRANSFER"
    RESOLVE_TRANSFER = "RESOLVE_TRANSFER"
    UPDATE_EXAM_SESSION_STATUS = "UPDATE_EXAM_SESSION_STATUS"
    END_EXAM_SESSION = "END_EXAM_SESSION"
