from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session

from app_models import Base, extension_calls
from backgrounder.config import settings
from backgrounder.dispatch import JobDispatcher, use_dispatcher


class RecordingDispatcher(JobDispatcher):
    def __init__(self) -> None:
        self.jobs = []

    def dispatch(self, job) -> None:
        self.jobs.append(job)


@pytest.fixture(autouse=True)
def upload_root(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "public"
    monkeypatch.setattr(settings, "upload_root", str(root))
    return root


@pytest.fixture(autouse=True)
def dispatcher() -> RecordingDispatcher:
    recording = RecordingDispatcher()
    use_dispatcher(recording)
    extension_calls.clear()
    yield recording
    use_dispatcher(None)


@pytest.fixture()
def engine(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'backgrounder.db'}")

    # pysqlite does not emit BEGIN before SAVEPOINT; use SQLAlchemy's
    # documented recipe so nested transactions behave like real savepoints.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def upload(tmp_path: Path) -> Path:
    path = tmp_path / "incoming" / "photo.png"
    path.parent.mkdir()
    path.write_bytes(b"\x89PNG not really")
    return path
