from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from backgrounder.errors import BackgrounderError
from backgrounder.jobs import PROCESS, STORE, JobDescriptor
from backgrounder.orm import EnqueuePolicy, get_policy, resolve_model, supports_processing_flag

logger = logging.getLogger(__name__)

Worker = Callable[[Session, JobDescriptor], None]

_workers: dict[str, Worker] = {}


def register_worker(kind: str, fn: Worker) -> Worker:
    _workers[kind] = fn
    return fn


def worker(kind: str) -> Callable[[Worker], Worker]:
    def decorator(fn: Worker) -> Worker:
        return register_worker(kind, fn)

    return decorator


def run_job(session: Session, job: JobDescriptor) -> None:
    try:
        fn = _workers[job.worker_kind]
    except KeyError:
        raise BackgrounderError(f"no worker registered for {job.worker_kind!r}") from None
    fn(session, job)


def _load(session: Session, job: JobDescriptor) -> tuple[Any, EnqueuePolicy] | None:
    model = resolve_model(job.entity_type)
    policy = get_policy(model, job.column)
    if policy is None:
        raise BackgrounderError(f"{job.entity_type}.{job.column} does not process in background")

    pk = model.__mapper__.primary_key[0]
    entity_id = pk.type.python_type(job.entity_id)
    record = session.get(model, entity_id)
    if record is None:
        # Deleted between the save and the job; nothing left to do.
        logger.warning("%s#%s no longer exists; skipping %s job", job.entity_type, job.entity_id, job.worker_kind)
        return None
    return record, policy


def _clear_processing(record: Any, policy: EnqueuePolicy) -> None:
    if supports_processing_flag(record, policy.column):
        setattr(record, policy.processing_attribute, False)


@worker(PROCESS)
def process_asset(session: Session, job: JobDescriptor) -> None:
    """Recreate versions from the stored file and clear the processing flag."""

    loaded = _load(session, job)
    if loaded is None:
        return
    record, policy = loaded

    setattr(record, policy.bypass_attribute, True)
    policy.mount.mounter(record).recreate_versions()
    _clear_processing(record, policy)
    session.commit()

    logger.info("processed %s#%s %s", job.entity_type, job.entity_id, job.column)


@worker(STORE)
def store_asset(session: Session, job: JobDescriptor) -> None:
    """Move the cached file into the store, then write the final identifier."""

    loaded = _load(session, job)
    if loaded is None:
        return
    record, policy = loaded

    cache_name = getattr(record, policy.tmp_attribute)
    if not cache_name:
        logger.info("%s#%s %s has nothing cached; skipping", job.entity_type, job.entity_id, job.column)
        return

    mounter = policy.mount.mounter(record)
    setattr(record, policy.bypass_attribute, True)
    mounter.retrieve_from_cache(cache_name)
    setattr(record, policy.tmp_attribute, None)
    _clear_processing(record, policy)
    session.commit()

    mounter.uploader.clear_cache_dir(cache_name)
    logger.info("stored %s#%s %s as %s", job.entity_type, job.entity_id, job.column, mounter.identifier)
