from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import flag_dirty

from backgrounder.errors import ConfigurationError
from backgrounder.uploader import Uploader

logger = logging.getLogger(__name__)

SAVE_HOOKS = ("write_identifier", "store")

_MOUNTERS_KEY = "backgrounder.mounters"


class SaveHooks:
    """The two save-path hooks fired for a mounted column.

    ``write_identifier`` runs before the row is written, ``store`` after it.
    """

    def write_identifier(self, entity: Any) -> None:
        raise NotImplementedError

    def store(self, entity: Any) -> None:
        raise NotImplementedError


class MountHooks(SaveHooks):
    """Default behavior: write the final identifier and store the file now."""

    def __init__(self, mount: Mount) -> None:
        self.mount = mount

    def write_identifier(self, entity: Any) -> None:
        self.mount.mounter(entity).write_identifier()

    def store(self, entity: Any) -> None:
        self.mount.mounter(entity).store(process_versions=self.mount.process_versions(entity))


class OverrideHooks(SaveHooks):
    """Replaces one hook of ``inner``; ``fn(original, entity)`` may call the original."""

    def __init__(self, inner: SaveHooks, name: str, fn: Callable[[Callable[[Any], None], Any], None]) -> None:
        self.inner = inner
        self.name = name
        self.fn = fn

    def write_identifier(self, entity: Any) -> None:
        if self.name == "write_identifier":
            return self.fn(self.inner.write_identifier, entity)
        return self.inner.write_identifier(entity)

    def store(self, entity: Any) -> None:
        if self.name == "store":
            return self.fn(self.inner.store, entity)
        return self.inner.store(entity)


class Mounter:
    """Attachment handle for one column of one entity instance."""

    def __init__(self, mount: Mount, entity: Any) -> None:
        self.mount = mount
        self.entity = entity
        self.uploader: Uploader = mount.uploader_cls(entity, mount.column)
        self.remove_requested = False

    def __repr__(self) -> str:
        return f"<Mounter {self.mounted_as} cache={self.cache_name!r} identifier={self.identifier!r}>"

    @property
    def mounted_as(self) -> str:
        return self.mount.column

    @property
    def cache_name(self) -> str | None:
        return self.uploader.cache_name

    @property
    def identifier(self) -> str | None:
        return getattr(self.entity, self.mount.mount_on)

    @property
    def path(self):
        self._sync()
        return self.uploader.path

    def _sync(self) -> None:
        if self.uploader.cache_name is None:
            self.uploader.retrieve_from_store(self.identifier)

    def cache(self, source: Any) -> str:
        cache_name = self.uploader.cache(source)
        flag_dirty(self.entity)
        return cache_name

    def retrieve_from_cache(self, cache_name: str) -> None:
        self.uploader.retrieve_from_cache(cache_name)
        flag_dirty(self.entity)

    def updated(self) -> bool:
        """True when a file was cached for this save or the identifier column changed."""

        if self.uploader.cache_name is not None:
            return True
        state = inspect(self.entity)
        return state.attrs[self.mount.mount_on].history.has_changes()

    def write_identifier(self) -> None:
        filename = self.uploader.filename
        if self.uploader.cache_name is not None and filename:
            setattr(self.entity, self.mount.mount_on, filename)

    def clear_identifier(self) -> None:
        self.uploader.retrieve_from_store(self.identifier)
        setattr(self.entity, self.mount.mount_on, None)

    def store(self, *, process_versions: bool = True) -> None:
        self.uploader.store(process_versions=process_versions)

    def remove(self) -> None:
        self.uploader.remove()

    def recreate_versions(self) -> None:
        self._sync()
        self.uploader.recreate_versions()

    def finish_save(self) -> None:
        # A deferred file stays on disk for the worker; only this save's reference is dropped.
        self.uploader.cache_name = None
        self.remove_requested = False


class MountedAttachment:
    """Class attribute for ``entity.<column>``: reads give the Mounter, writes cache a file."""

    def __init__(self, mount: Mount) -> None:
        self.mount = mount

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        if instance is None:
            return self
        return self.mount.mounter(instance)

    def __set__(self, instance: Any, value: Any) -> None:
        if value is None:
            return
        self.mount.mounter(instance).cache(value)


class RemoveFlag:
    def __init__(self, mount: Mount) -> None:
        self.mount = mount

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        if instance is None:
            return self
        return self.mount.mounter(instance).remove_requested

    def __set__(self, instance: Any, value: Any) -> None:
        self.mount.mounter(instance).remove_requested = bool(value)
        if value:
            flag_dirty(instance)


class Mount:
    """Class-level configuration of one mounted column."""

    def __init__(self, model: type, column: str, uploader_cls: type[Uploader], mount_on: str) -> None:
        self.model = model
        self.column = column
        self.uploader_cls = uploader_cls
        self.mount_on = mount_on
        self.hooks: SaveHooks = MountHooks(self)
        self.version_filters: list[Callable[[Any], bool]] = []

    def __repr__(self) -> str:
        return f"<Mount {self.model.__name__}.{self.column} on {self.mount_on}>"

    def mounter(self, entity: Any) -> Mounter:
        mounters = inspect(entity).info.setdefault(_MOUNTERS_KEY, {})
        mounter = mounters.get(self.column)
        if mounter is None:
            mounter = mounters[self.column] = Mounter(self, entity)
        return mounter

    def override(self, name: str, fn: Callable[[Callable[[Any], None], Any], None]) -> None:
        if name not in SAVE_HOOKS:
            raise ConfigurationError(f"unknown save hook {name!r} for {self!r}")
        self.hooks = OverrideHooks(self.hooks, name, fn)

    def process_versions(self, entity: Any) -> bool:
        return all(allow(entity) for allow in self.version_filters)

    def removed(self, entity: Any) -> bool:
        return self.mounter(entity).remove_requested

    def updated(self, entity: Any) -> bool:
        return self.mounter(entity).updated()

    # -- mapper events -----------------------------------------------------

    def before_save(self, mapper, connection, target) -> None:
        mounter = self.mounter(target)
        if mounter.remove_requested:
            mounter.clear_identifier()
        else:
            self.hooks.write_identifier(target)

    def after_save(self, mapper, connection, target) -> None:
        mounter = self.mounter(target)
        if mounter.remove_requested:
            mounter.remove()
        else:
            self.hooks.store(target)
        mounter.finish_save()


_mounts: dict[tuple[type, str], Mount] = {}


def get_mount(model: type, column: str) -> Mount | None:
    for klass in model.__mro__:
        mount = _mounts.get((klass, column))
        if mount is not None:
            return mount
    return None


def mapped_columns(model: type) -> set[str]:
    return set(inspect(model).columns.keys())


def mount_uploader(
    model: type,
    column: str,
    uploader_cls: type[Uploader] = Uploader,
    *,
    mount_on: str | None = None,
) -> Mount:
    """Mount ``uploader_cls`` on ``model.<column>``.

    The identifier is persisted in ``mount_on`` (default ``<column>_identifier``),
    which must be a mapped column. Adds the ``remove_<column>`` flag.
    """

    mount_on = mount_on or f"{column}_identifier"
    if mount_on not in mapped_columns(model):
        raise ConfigurationError(f"{model.__name__} has no mapped column {mount_on!r} to mount {column!r} on")
    if get_mount(model, column) is not None:
        raise ConfigurationError(f"{model.__name__}.{column} is already mounted")
    if column in mapped_columns(model):
        raise ConfigurationError(f"{model.__name__}.{column} is a mapped column; mount on another name")

    mount = Mount(model, column, uploader_cls, mount_on)
    _mounts[(model, column)] = mount

    setattr(model, column, MountedAttachment(mount))
    setattr(model, f"remove_{column}", RemoveFlag(mount))

    for name in ("before_insert", "before_update"):
        event.listen(model, name, mount.before_save, propagate=True)
    for name in ("after_insert", "after_update"):
        event.listen(model, name, mount.after_save, propagate=True)

    logger.debug("mounted %s on %s.%s", uploader_cls.__name__, model.__name__, column)
    return mount
