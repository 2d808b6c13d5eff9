from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlmodel import Session, SQLModel, create_engine

DATA_DIR_ENV = "TILEFETCH_DATA_DIR"
DB_FILENAME = "tilefetch.db"

BASE_DIR = Path(__file__).resolve().parent.parent


def _data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV, "").strip()
    data_dir = Path(override).expanduser() if override else BASE_DIR / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def database_url() -> str:
    return f"sqlite:///{_data_dir() / DB_FILENAME}"


engine = create_engine(
    database_url(),
    echo=False,
    connect_args={"check_same_thread": False},
)


def init_db() -> None:
    """Create the request accounting tables if they do not exist."""

    from . import models  # noqa: F401 ensures models are registered

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that is rolled back when the block raises."""

    with Session(engine) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
