from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index, CheckConstraint, Enum as SQLEnum, text
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.shared.enums import TransferStatus

# A batch may have at most one handover in flight
OPEN_TRANSFER_CLAUSE = text("status IN ('PENDING', 'DISCREPANCY_REPORTED')")

class BatchTransfer(BaseModel):
    """One handover of a script batch between two handlers.

    Rows are never deleted. A row is created PENDING, finalized once
    (CONFIRMED, DISCREPANCY_REPORTED or REJECTED) and, from
    DISCREPANCY_REPORTED only, resolved once more to RESOLVED.
    """
    __tablename__ = 'batch_transfers'
    __table_args__ = (
        Index(
            "uq_batch_transfers_open_per_session",
            "exam_session_id",
            unique=True,
            postgresql_where=OPEN_TRANSFER_CLAUSE,
            sqlite_where=OPEN_TRANSFER_CLAUSE,
        ),
        CheckConstraint("scripts_expected >= 0", name="ck_batch_transfers_expected_non_negative"),
        CheckConstraint(
            "scripts_received IS NULL OR scripts_received >= 0",
            name="ck_batch_transfers_received_non_negative",
        ),
    )

    exam_session_id = Column(Integer, ForeignKey('exam_sessions.id'), nullable=False, index=True)
    from_handler_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    to_handler_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    status = Column(SQLEnum(TransferStatus), nullable=False, default=TransferStatus.PENDING)
    scripts_expected = Column(Integer, nullable=False)
    scripts_received = Column(Integer)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True))
    location = Column(String(255))
    discrepancy_note = Column(Text)
    rejection_reason = Column(Text)
    rejected_at = Column(DateTime(timezone=True))
    resolution_note = Column(Text)
    resolved_by = Column(Integer, ForeignKey('users.id'))
    resolved_at = Column(DateTime(timezone=True))

    # Relationships
    exam_session = relationship("ExamSession")
    from_handler = relationship("User", foreign_keys=[from_handler_id])
    to_handler = relationship("User", foreign_keys=[to_handler_id])

    @property
    def is_seed(self) -> bool:
        return self.from_handler_id == self.to_handler_id

    def __repr__(self):
        return f"<BatchTransfer {self.id} {self.from_handler_id}->{self.to_handler_id} {self.status}>"
