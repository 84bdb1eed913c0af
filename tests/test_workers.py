import pytest
from sqlalchemy.orm import Session, sessionmaker

from app_models import Document, Photo
from backgrounder.dispatch import ImmediateDispatcher
from backgrounder.errors import BackgrounderError
from backgrounder.jobs import JobDescriptor
from backgrounder.workers import process_asset, run_job, store_asset


def _deferred_photo(session, upload) -> tuple[Photo, str]:
    photo = Photo(id=42)
    photo.avatar = upload
    cache_name = photo.avatar.cache_name
    session.add(photo)
    session.commit()
    return photo, cache_name


def test_store_asset_stores_file_and_writes_identifier(engine, session, dispatcher, upload, upload_root):
    _, cache_name = _deferred_photo(session, upload)
    job = dispatcher.jobs[0]

    with Session(engine) as worker_session:
        store_asset(worker_session, job)

    photo = session.get(Photo, 42, populate_existing=True)
    assert photo.avatar_identifier == "photo.png"
    assert photo.avatar_tmp is None
    assert photo.avatar_processing is False
    assert (upload_root / "uploads/photos/avatar/42/photo.png").is_file()
    assert (upload_root / "uploads/photos/avatar/42/thumb_photo.png").is_file()
    assert not (upload_root / "uploads/tmp" / cache_name).parent.exists()

    # The worker's own save must not enqueue another job.
    assert len(dispatcher.jobs) == 1


def test_store_asset_twice_is_harmless(engine, session, dispatcher, upload):
    _deferred_photo(session, upload)
    job = dispatcher.jobs[0]

    with Session(engine) as worker_session:
        store_asset(worker_session, job)
    with Session(engine) as worker_session:
        store_asset(worker_session, job)

    photo = session.get(Photo, 42, populate_existing=True)
    assert photo.avatar_identifier == "photo.png"
    assert len(dispatcher.jobs) == 1


def test_process_asset_recreates_versions(engine, session, dispatcher, upload, upload_root):
    document = Document(id=3)
    document.attachment = upload
    session.add(document)
    session.commit()
    thumb = upload_root / "uploads/documents/attachment/3/thumb_photo.png"
    assert not thumb.exists()

    with Session(engine) as worker_session:
        process_asset(worker_session, dispatcher.jobs[0])

    assert thumb.is_file()
    assert len(dispatcher.jobs) == 1


def test_missing_entity_is_skipped(engine, caplog):
    job = JobDescriptor(worker_kind="store", entity_type="Photo", entity_id="999", column="avatar")

    with Session(engine) as worker_session:
        run_job(worker_session, job)

    assert "no longer exists" in caplog.text


def test_unknown_worker_kind_raises(engine):
    job = JobDescriptor(worker_kind="nope", entity_type="Photo", entity_id="1", column="avatar")

    with Session(engine) as worker_session, pytest.raises(BackgrounderError):
        run_job(worker_session, job)


def test_unknown_entity_type_raises(engine):
    job = JobDescriptor(worker_kind="store", entity_type="Ghost", entity_id="1", column="avatar")

    with Session(engine) as worker_session, pytest.raises(BackgrounderError):
        run_job(worker_session, job)


def test_immediate_dispatcher_runs_worker_inline(engine, session, dispatcher, upload, upload_root):
    _deferred_photo(session, upload)

    ImmediateDispatcher(sessionmaker(engine)).dispatch(dispatcher.jobs[0])

    photo = session.get(Photo, 42, populate_existing=True)
    assert photo.avatar_identifier == "photo.png"
    assert (upload_root / "uploads/photos/avatar/42/photo.png").is_file()


def test_celery_task_runs_store_worker(engine, session, dispatcher, upload, monkeypatch):
    from backgrounder.worker import tasks

    _deferred_photo(session, upload)
    monkeypatch.setattr(tasks, "get_sessionmaker", lambda: sessionmaker(engine))

    tasks.store_asset(**dispatcher.jobs[0].model_dump())

    photo = session.get(Photo, 42, populate_existing=True)
    assert photo.avatar_identifier == "photo.png"


def test_store_job_after_removal_stores_nothing(engine, session, dispatcher, upload, upload_root):
    photo, _ = _deferred_photo(session, upload)
    job = dispatcher.jobs[0]
    assert photo.avatar_tmp is not None

    photo.remove_avatar = True
    session.commit()

    with Session(engine) as worker_session:
        store_asset(worker_session, job)

    photo = session.get(Photo, 42, populate_existing=True)
    assert photo.avatar_identifier is None
    assert photo.avatar_tmp is None
    assert not (upload_root / "uploads/photos/avatar/42/photo.png").exists()


def test_make_celery_takes_queue_and_serializer_from_settings(monkeypatch):
    from backgrounder.config import settings
    from backgrounder.worker.celery_app import make_celery

    monkeypatch.setattr(settings, "celery_queue", "attachments")

    app = make_celery()

    assert app.conf.task_default_queue == "attachments"
    assert app.conf.task_serializer == "json"
    assert app.conf.accept_content == ["json"]
