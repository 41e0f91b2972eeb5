from typing import Any, Dict, Optional
from fastapi import HTTPException, status

class BaseAppException(HTTPException):
    def __init__(self, status_code: int, detail: str, context: Optional[Dict[str, Any]] = None):
        self.message = detail
        self.context = context or {}
        body = {"message": detail, **self.context} if self.context else detail
        super().__init__(status_code=status_code, detail=body)

    def __str__(self) -> str:
        return self.message

class ValidationError(BaseAppException):
    def __init__(self, detail: str = "Validation error", context: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, detail, context)

class SameHandlerError(ValidationError):
    def __init__(self, detail: str = "Cannot transfer a batch to yourself", context: Optional[Dict[str, Any]] = None):
        super().__init__(detail, context)

class NotFoundError(BaseAppException):
    def __init__(self, detail: str = "Resource not found", context: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_404_NOT_FOUND, detail, context)

class ConflictError(BaseAppException):
    """An open transfer already exists for the batch."""
    def __init__(self, detail: str = "An open transfer already exists for this batch", context: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_409_CONFLICT, detail, context)

class InvalidTransitionError(BaseAppException):
    def __init__(self, detail: str = "Transition not allowed from the current status", context: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_409_CONFLICT, detail, context)

class PermissionDeniedError(BaseAppException):
    def __init__(self, detail: str = "Not enough permissions", context: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_403_FORBIDDEN, detail, context)

class NotCurrentHolderError(PermissionDeniedError):
    def __init__(self, detail: str = "Only the current holder can hand over this batch", context: Optional[Dict[str, Any]] = None):
        super().__init__(detail, context)

class NotCurrentReceiverError(PermissionDeniedError):
    def __init__(self, detail: str = "Only the designated receiver can act on this transfer", context: Optional[Dict[str, Any]] = None):
        super().__init__(detail, context)
