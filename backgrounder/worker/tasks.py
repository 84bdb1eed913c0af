from __future__ import annotations

import logging

from backgrounder.database import get_sessionmaker
from backgrounder.jobs import PROCESS, STORE, JobDescriptor
from backgrounder.worker.celery_app import celery_app
from backgrounder.workers import run_job

logger = logging.getLogger(__name__)


def _run(worker_kind: str, entity_type: str, entity_id: str, column: str) -> None:
    job = JobDescriptor(worker_kind=worker_kind, entity_type=entity_type, entity_id=entity_id, column=column)
    logger.info("%s job received for %s#%s (%s)", worker_kind, entity_type, entity_id, column)
    with get_sessionmaker()() as session:
        run_job(session, job)


@celery_app.task(name="backgrounder.process_asset")
def process_asset(worker_kind: str, entity_type: str, entity_id: str, column: str) -> None:
    _run(worker_kind or PROCESS, entity_type, entity_id, column)


@celery_app.task(name="backgrounder.store_asset")
def store_asset(worker_kind: str, entity_type: str, entity_id: str, column: str) -> None:
    _run(worker_kind or STORE, entity_type, entity_id, column)
