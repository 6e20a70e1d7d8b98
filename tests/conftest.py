import os
import random

import pytest

# tests never touch a real Postgres; set before database.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENAI_API_KEYS", "test-key")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.database import Base
from database import models  # noqa: F401
from generation.completion_client import CompletionClient, CredentialPool
from generation.config import PipelineConfig
from tests.fixtures.mock_openai import FakeOpenAI, ScriptedResponder


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def config():
    return PipelineConfig(
        api_keys=["test-key"],
        completion_timeout=5,
        credential_backoff=0,
        batch_size=3,
        batch_pause=0,
    )


@pytest.fixture
def sleeps():
    """Records every pause the code under test asks for."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def responder():
    return ScriptedResponder()


@pytest.fixture
def fake_openai(responder):
    return FakeOpenAI(responder)


@pytest.fixture
def client(config, fake_openai, fake_sleep):
    """Real CompletionClient over a one-key pool, backed by the fake SDK."""
    return CompletionClient(
        CredentialPool(config.api_keys),
        config,
        client_factory=lambda key: fake_openai,
        sleep=fake_sleep,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def rng():
    return random.Random(1234)
