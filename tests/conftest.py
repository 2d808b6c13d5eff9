import os
import tempfile

import pytest

os.environ.setdefault("TILEFETCH_DATA_DIR", tempfile.mkdtemp(prefix="tilefetch-tests-"))

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from tilefetch import models  # noqa: E402,F401


@pytest.fixture
def memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session(memory_engine):
    with Session(memory_engine) as session:
        yield session
