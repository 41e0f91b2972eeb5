from sqlalchemy import Column, String, Boolean, Enum as SQLEnum
from app.db.base import BaseModel
from app.models.shared.enums import HandlerRole

class User(BaseModel):
    """A handler account: anyone who can hold or hand over a script batch."""
    __tablename__ = "users"

    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(SQLEnum(HandlerRole), nullable=False, default=HandlerRole.INVIGILATOR)
    phone = Column(String(20), nullable=True)
    department = Column(String(150), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
