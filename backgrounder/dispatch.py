from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from backgrounder.config import settings
from backgrounder.errors import ConfigurationError, DispatchError
from backgrounder.jobs import JobDescriptor

logger = logging.getLogger(__name__)


def task_name_for(worker_kind: str) -> str:
    """Celery task name for a worker kind; custom kinds are used as task names."""

    return settings.task_names.get(worker_kind, worker_kind)


class JobDispatcher:
    """Submits job descriptors to a worker backend.

    Fire-and-forget: nothing is returned to the entity. A backend that cannot
    accept the job must raise ``DispatchError``.
    """

    def dispatch(self, job: JobDescriptor) -> None:
        raise NotImplementedError


class CeleryDispatcher(JobDispatcher):
    def __init__(self, celery_app: Any | None = None, *, queue: str | None = None) -> None:
        self._celery_app = celery_app
        self.queue = queue or settings.celery_queue

    @property
    def celery_app(self) -> Any:
        if self._celery_app is None:
            # Imported lazily so models can be defined without a broker configured.
            from backgrounder.worker.celery_app import celery_app

            self._celery_app = celery_app
        return self._celery_app

    def dispatch(self, job: JobDescriptor) -> None:
        task_name = task_name_for(job.worker_kind)
        try:
            self.celery_app.send_task(task_name, kwargs=job.model_dump(), queue=self.queue)
        except Exception as exc:
            logger.exception(
                "Failed to emit Celery task %s for %s#%s (%s)",
                task_name,
                job.entity_type,
                job.entity_id,
                job.column,
            )
            raise DispatchError(f"could not enqueue {task_name} for {job.entity_type}#{job.entity_id}") from exc

        logger.info("enqueued %s for %s#%s (%s)", task_name, job.entity_type, job.entity_id, job.column)


class ImmediateDispatcher(JobDispatcher):
    """Runs the worker in-process, in a session of its own."""

    def __init__(self, session_factory: Callable[[], Any] | None = None) -> None:
        self._session_factory = session_factory

    def dispatch(self, job: JobDescriptor) -> None:
        from backgrounder.database import get_sessionmaker
        from backgrounder.workers import run_job

        session_factory = self._session_factory or get_sessionmaker()
        with session_factory() as session:
            run_job(session, job)


_dispatcher: JobDispatcher | None = None


def make_dispatcher(backend: str | None = None) -> JobDispatcher:
    backend = backend or settings.backend
    if backend == "celery":
        return CeleryDispatcher()
    if backend == "immediate":
        return ImmediateDispatcher()
    raise ConfigurationError(f"unknown worker backend {backend!r}")


def get_dispatcher() -> JobDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = make_dispatcher()
    return _dispatcher


def use_dispatcher(dispatcher: JobDispatcher | None) -> None:
    """Install the process-wide dispatcher (``None`` rebuilds it from settings)."""

    global _dispatcher
    _dispatcher = dispatcher
