"""Celery entrypoint.

Importable both by the application (for task emission) and by worker
containers (``celery -A backgrounder.worker worker``). Models must be imported
by the worker process so their background policies are registered.
"""

from backgrounder.worker.celery_app import celery_app  # noqa: F401
