"""Background processing and storage for mounted attachments.

    class Photo(Base):
        ...
        avatar_identifier: Mapped[str | None] = mapped_column(String(255))
        avatar_tmp: Mapped[str | None] = mapped_column(String(255))
        avatar_processing: Mapped[bool] = mapped_column(Boolean, default=False)

    mount_uploader(Photo, "avatar", AvatarUploader)
    store_in_background(Photo, "avatar")

Saving a photo with a new avatar then records the cache name in ``avatar_tmp``
and enqueues a "store" job once the transaction commits. Set
``photo.process_avatar_upload = True`` before saving to do the work inline.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, SessionTransaction, object_session

from backgrounder.dispatch import JobDispatcher, get_dispatcher
from backgrounder.errors import BackgrounderError, ConfigurationError
from backgrounder.jobs import PROCESS, STORE, JobDescriptor
from backgrounder.mount import SAVE_HOOKS, Mount, get_mount, mapped_columns

logger = logging.getLogger(__name__)

POLICY_HOOKS = ("updated", "removed", "should_enqueue", "mark_processing", "descriptor", "dispatch_job")

_DECISIONS_KEY = "backgrounder.decisions"
_PENDING_KEY = "backgrounder.pending_jobs"
_COMMITTED_KEY = "backgrounder.committed_transactions"

Extension = Callable[..., Any]
Extensions = Mapping[str, Extension] | Iterable[tuple[str, Extension]]


def supports_processing_flag(entity_or_model: Any, column: str) -> bool:
    """Whether the model persists ``<column>_processing``."""

    model = entity_or_model if isinstance(entity_or_model, type) else type(entity_or_model)
    return f"{column}_processing" in mapped_columns(model)


class EnqueuePolicy:
    """Decides, once per save, whether a column's work goes to a background job.

    Hooks listed in ``POLICY_HOOKS`` can be replaced with :meth:`extend`; the
    mount's save hooks (``write_identifier``, ``store``) are extended the same way.
    """

    def __init__(
        self,
        mount: Mount,
        worker: str = PROCESS,
        *,
        dispatcher: JobDispatcher | None = None,
    ) -> None:
        self.mount = mount
        self.column = mount.column
        self.worker = worker
        self._dispatcher = dispatcher

    def __repr__(self) -> str:
        return f"<EnqueuePolicy {self.mount.model.__name__}.{self.column} worker={self.worker!r}>"

    @property
    def bypass_attribute(self) -> str:
        return f"process_{self.column}_upload"

    @property
    def processing_attribute(self) -> str:
        return f"{self.column}_processing"

    @property
    def tmp_attribute(self) -> str:
        return f"{self.column}_tmp"

    @property
    def dispatcher(self) -> JobDispatcher:
        return self._dispatcher or get_dispatcher()

    def bypassed(self, entity: Any) -> bool:
        return bool(getattr(entity, self.bypass_attribute, False))

    def removed(self, entity: Any) -> bool:
        return self.mount.removed(entity)

    def updated(self, entity: Any) -> bool:
        return self.mount.updated(entity)

    def should_enqueue(self, entity: Any) -> bool:
        return not self.removed(entity) and not self.bypassed(entity) and self.updated(entity)

    def mark_processing(self, entity: Any) -> None:
        if supports_processing_flag(entity, self.column):
            setattr(entity, self.processing_attribute, True)

    def descriptor(self, entity: Any) -> JobDescriptor:
        return JobDescriptor(
            worker_kind=self.worker,
            entity_type=type(entity).__name__,
            entity_id=str(entity.id),
            column=self.mount.mounter(entity).mounted_as,
        )

    def enqueue(self, entity: Any) -> JobDescriptor | None:
        """Dispatch a job now if :meth:`should_enqueue` holds."""

        if not self.should_enqueue(entity):
            return None
        job = self.descriptor(entity)
        self.dispatch_job(job)
        return job

    def dispatch_job(self, job: JobDescriptor) -> None:
        self.dispatcher.dispatch(job)

    def extend(self, name: str, fn: Extension) -> None:
        """Replace hook ``name`` with ``fn(policy, original, arg)``.

        ``arg`` is the entity, or the JobDescriptor for ``dispatch_job``.
        """

        if name in POLICY_HOOKS:
            original = getattr(self, name)
            setattr(self, name, functools.partial(fn, self, original))
        elif name in SAVE_HOOKS:
            self.mount.override(name, functools.partial(fn, self))
        else:
            raise ConfigurationError(f"unknown hook {name!r} for {self!r}")

    # -- save cycle --------------------------------------------------------

    def before_save(self, mapper, connection, target) -> None:
        if self.removed(target) and self.tmp_attribute in mapped_columns(type(target)):
            # A store job still in flight must find nothing left to store.
            setattr(target, self.tmp_attribute, None)
        decision = self.should_enqueue(target)
        inspect(target).info.setdefault(_DECISIONS_KEY, {})[self.column] = decision
        if decision:
            self.mark_processing(target)

    def after_save(self, mapper, connection, target) -> None:
        decisions = inspect(target).info.get(_DECISIONS_KEY, {})
        if decisions.pop(self.column, False):
            session = object_session(target)
            job = self.descriptor(target)
            _pending_jobs(session, _current_transaction(session)).append((self, job))
            logger.debug("%s#%s %s: job queued until commit", job.entity_type, job.entity_id, self.column)
        setattr(target, self.bypass_attribute, False)


_policies: dict[tuple[type, str], EnqueuePolicy] = {}
_models: dict[str, type] = {}


def get_policy(model: type, column: str) -> EnqueuePolicy | None:
    for klass in model.__mro__:
        policy = _policies.get((klass, column))
        if policy is not None:
            return policy
    return None


def resolve_model(entity_type: str) -> type:
    try:
        return _models[entity_type]
    except KeyError:
        raise BackgrounderError(f"no model named {entity_type!r} processes attachments in background") from None


def _iter_extensions(extensions: Extensions | None) -> Iterable[tuple[str, Extension]]:
    if not extensions:
        return ()
    if isinstance(extensions, Mapping):
        return extensions.items()
    return extensions


def process_in_background(
    model: type,
    column: str,
    worker: str = PROCESS,
    *,
    extensions: Extensions | None = None,
    dispatcher: JobDispatcher | None = None,
) -> EnqueuePolicy:
    """Generate versions for ``model.<column>`` in a background job.

    Adds ``process_<column>_upload`` (default ``False``); set it to ``True`` to
    process inline on the next save. If the model maps ``<column>_processing``,
    it is set to ``True`` whenever a job is enqueued.

    ``extensions`` are ``(hook_name, fn)`` pairs applied in order; each
    ``fn(policy, original, arg)`` replaces the hook and may call ``original``
    (see :meth:`EnqueuePolicy.extend`).
    """

    mount = get_mount(model, column)
    if mount is None:
        raise ConfigurationError(f"{model.__name__}.{column} has no mounted uploader")
    if get_policy(model, column) is not None:
        raise ConfigurationError(f"{model.__name__}.{column} already processes in background")

    policy = EnqueuePolicy(mount, worker, dispatcher=dispatcher)
    for name, fn in _iter_extensions(extensions):
        policy.extend(name, fn)

    # Versions are made by the worker unless this save bypasses it.
    mount.version_filters.append(policy.bypassed)

    setattr(model, policy.bypass_attribute, False)
    _policies[(model, column)] = policy
    _models[model.__name__] = model

    # Registered after the mount's listeners so the mount's hooks have run.
    for name in ("before_insert", "before_update"):
        event.listen(model, name, policy.before_save, propagate=True)
    for name in ("after_insert", "after_update"):
        event.listen(model, name, policy.after_save, propagate=True)

    logger.debug("%s.%s will %s in background", model.__name__, column, worker)
    return policy


def _write_tmp_identifier(policy: EnqueuePolicy, original: Callable[[Any], None], entity: Any) -> None:
    if policy.bypassed(entity):
        original(entity)
        return
    cache_name = policy.mount.mounter(entity).cache_name
    if cache_name:
        setattr(entity, policy.tmp_attribute, cache_name)


def _store_if_bypassed(policy: EnqueuePolicy, original: Callable[[Any], None], entity: Any) -> None:
    if policy.bypassed(entity):
        original(entity)


STORE_OVERRIDES = (
    ("write_identifier", _write_tmp_identifier),
    ("store", _store_if_bypassed),
)


def store_in_background(
    model: type,
    column: str,
    worker: str = STORE,
    *,
    dispatcher: JobDispatcher | None = None,
) -> EnqueuePolicy:
    """Process, version and store ``model.<column>`` in a background job.

    Until the job runs, the cache name is kept in ``<column>_tmp`` and the
    identifier column is left alone. ``process_<column>_upload = True`` stores
    inline instead.
    """

    if f"{column}_tmp" not in mapped_columns(model):
        raise ConfigurationError(f"{model.__name__} needs a mapped {column}_tmp column to store in background")
    return process_in_background(model, column, worker, extensions=STORE_OVERRIDES, dispatcher=dispatcher)


# Jobs are queued on the innermost transaction (a savepoint or the root) that
# was open when the row was flushed. A released savepoint hands its jobs to its
# parent, a savepoint or root that ends without committing drops them, and only
# the end of a committed root transaction dispatches. By then Session.commit()
# has closed the transaction, so the session stays usable when dispatching fails.


def _current_transaction(session: Session) -> SessionTransaction:
    return session.get_nested_transaction() or session.get_transaction()


def _pending_jobs(session: Session, transaction: SessionTransaction) -> list[tuple[EnqueuePolicy, JobDescriptor]]:
    return session.info.setdefault(_PENDING_KEY, {}).setdefault(transaction, [])


@event.listens_for(Session, "after_commit")
def _mark_committed(session: Session) -> None:
    session.info.setdefault(_COMMITTED_KEY, set()).add(_current_transaction(session))


@event.listens_for(Session, "after_transaction_end")
def _settle_pending_jobs(session: Session, transaction: SessionTransaction) -> None:
    committed = transaction in session.info.get(_COMMITTED_KEY, set())
    session.info.get(_COMMITTED_KEY, set()).discard(transaction)

    jobs = session.info.get(_PENDING_KEY, {}).pop(transaction, [])
    if not jobs:
        return

    if not committed:
        logger.info("rollback discarded %d background job(s)", len(jobs))
        return
    if transaction.parent is not None:
        _pending_jobs(session, transaction.parent).extend(jobs)
        return

    errors: list[Exception] = []
    for policy, job in jobs:
        try:
            policy.dispatch_job(job)
        except Exception as exc:
            errors.append(exc)
    if errors:
        if len(errors) > 1:
            logger.error("%d of %d background job(s) failed to dispatch", len(errors), len(jobs))
        raise errors[0]
