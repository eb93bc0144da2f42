import os
import tempfile

# Must be set before any scribeline imports that use settings.data_dir
os.environ["DATA_DIR"] = tempfile.mkdtemp()

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import scribeline.models  # noqa: F401
from scribeline.config import Settings
from scribeline.database import Base


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest.fixture
def data_dir():
    """Return a temporary data directory."""
    return os.environ["DATA_DIR"]


@pytest.fixture
def config(tmp_path):
    return Settings(
        _env_file=None,
        gemini_api_key="system-gemini-key",
        groq_api_key=None,
        openai_api_key=None,
        xai_api_key=None,
        encryption_key=Fernet.generate_key().decode(),
        data_dir=str(tmp_path),
        gemini_poll_interval_seconds=0,
        gemini_poll_max_attempts=3,
    )
