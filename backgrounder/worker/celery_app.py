from __future__ import annotations

from celery import Celery

from backgrounder.config import settings


def make_celery() -> Celery:
    """Build the Celery app that runs the attachment workers.

    Broker, result backend and default queue come from ``settings``; the
    descriptor fields travel as JSON kwargs.
    """

    celery = Celery(
        "backgrounder",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["backgrounder.worker.tasks"],
    )

    celery.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue=settings.celery_queue,
        # Jobs are idempotent; a redelivered job just finds nothing left to store.
        task_acks_late=True,
    )

    return celery


celery_app = make_celery()
