from fastapi import APIRouter
from app.api.v1.endpoints.custody import transfers
from app.api.v1.endpoints.exam import exam_sessions

api_router = APIRouter()

# Exam routes
api_router.include_router(exam_sessions.router, prefix="/exam/session", tags=["Exam"])

# Custody routes
api_router.include_router(transfers.router, prefix="/custody/transfer", tags=["Custody"])
