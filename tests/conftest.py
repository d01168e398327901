import pytest_asyncio
from sqlalchemy.pool import StaticPool

import db


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory SQLite behind the real db helpers."""
    db.configure(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.create_all()
    yield db
    await db.dispose_engine()
