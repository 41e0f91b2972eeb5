import os

# Must be set before the application modules build their engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from typing import AsyncGenerator, Dict
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from main import app as fastapi_app
from app.core import database
from app.core.database import get_async_session
from app.db.base import Base
from app.models import ExamSession, User
from app.models.shared.enums import HandlerRole
from app.services.exam.exam_session_service import ExamSessionService
from tests.factories import make_exam_session

@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite file database per test"""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'custody_test.db'}",
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()

@pytest.fixture
def session_maker(engine, monkeypatch):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    # The audit sink opens its own sessions from here
    monkeypatch.setattr(database, "async_session_maker", maker)
    return maker

@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session

@pytest.fixture
async def handlers(db: AsyncSession) -> Dict[str, User]:
    """U1 invigilator, U2 and U3 lecturers, U4 department head, U5 faculty officer"""
    users = {
        "admin": User(email="admin@exams.test", full_name="Exams Admin", role=HandlerRole.ADMIN),
        "u1": User(email="u1@exams.test", full_name="Ama Invigilator", role=HandlerRole.INVIGILATOR),
        "u2": User(email="u2@exams.test", full_name="Kofi Lecturer", role=HandlerRole.LECTURER),
        "u3": User(email="u3@exams.test", full_name="Esi Lecturer", role=HandlerRole.LECTURER),
        "u4": User(email="u4@exams.test", full_name="Yaw Head", role=HandlerRole.DEPARTMENT_HEAD),
        "u5": User(email="u5@exams.test", full_name="Akua Officer", role=HandlerRole.FACULTY_OFFICER),
        "inactive": User(email="gone@exams.test", full_name="Former Staff", role=HandlerRole.LECTURER, is_active=False),
    }
    db.add_all(list(users.values()))
    await db.commit()
    return users

@pytest.fixture
async def exam_session(db: AsyncSession, handlers) -> ExamSession:
    return await make_exam_session(db)

@pytest.fixture
async def submitted_session(db: AsyncSession, handlers, exam_session) -> ExamSession:
    """Session ended by U1, who now holds the initial custody"""
    return await ExamSessionService(db).end_session(exam_session.id, handlers["u1"].id)

@pytest.fixture
async def client(session_maker) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    fastapi_app.dependency_overrides[get_async_session] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as ac:
        yield ac
    fastapi_app.dependency_overrides.clear()
