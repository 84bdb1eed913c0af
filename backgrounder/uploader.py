from __future__ import annotations

import itertools
import logging
import os
import random
import re
import shutil
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from backgrounder.config import settings
from backgrounder.errors import InvalidCacheName

logger = logging.getLogger(__name__)

CACHE_NAME_RE = re.compile(r"\A\d+-\d+-\d{4}-\d{4}/[^/]+\Z")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9._-]")

_counter = itertools.count(1)

VersionProcessor = Callable[[Path, Path], None]


def generate_cache_id() -> str:
    return "%d-%d-%04d-%04d" % (
        int(time.time()),
        os.getpid(),
        next(_counter) % 10_000,
        random.randint(0, 9_999),
    )


def sanitize_filename(name: str) -> str:
    name = Path(name.replace("\\", "/")).name
    name = _SANITIZE_RE.sub("_", name)
    if not name.strip("._"):
        return "file"
    return name


def _source_name(source: Any) -> str:
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    for attr in ("filename", "name"):
        value = getattr(source, attr, None)
        if isinstance(value, str) and value:
            return value
    raise TypeError(f"cannot determine a filename for {source!r}")


class Uploader:
    """Caches, stores and versions the file for one mounted column of one entity.

    Files go through two places on disk:
    - the cache (``<upload_root>/<cache_dir>/<cache id>/<filename>``), written as
      soon as a file is assigned;
    - the store (``store_dir()``), written at save time (or by a worker).

    Subclasses assign ``versions``, a mapping of names to processors
    ``fn(source, destination)``; the base class shares a read-only empty one.
    """

    versions: Mapping[str, VersionProcessor] = MappingProxyType({})

    def __init__(self, model: Any, mounted_as: str, *, root: str | os.PathLike | None = None) -> None:
        self.model = model
        self.mounted_as = mounted_as
        self.root = Path(root if root is not None else settings.upload_root)
        self.cache_name: str | None = None
        self.identifier: str | None = None

    # -- locations ---------------------------------------------------------

    def cache_root(self) -> Path:
        return self.root / settings.cache_dir

    def store_dir(self) -> str:
        table = getattr(self.model, "__tablename__", type(self.model).__name__.lower())
        return f"uploads/{table}/{self.mounted_as}/{self.model.id}"

    def cache_path(self, cache_name: str | None = None) -> Path:
        cache_name = cache_name or self.cache_name
        if cache_name is None:
            raise InvalidCacheName("no file is cached")
        return self.cache_root() / cache_name

    def store_path(self, filename: str | None = None, version: str | None = None) -> Path:
        filename = filename or self.identifier
        if filename is None:
            raise FileNotFoundError(f"nothing stored for {self.mounted_as}")
        if version:
            filename = f"{version}_{filename}"
        return self.root / self.store_dir() / filename

    @property
    def path(self) -> Path | None:
        if self.cache_name:
            return self.cache_path()
        if self.identifier:
            return self.store_path()
        return None

    @property
    def filename(self) -> str | None:
        if self.cache_name:
            return self.cache_name.split("/", 1)[1]
        return self.identifier

    def version_path(self, version: str) -> Path:
        return self.store_path(version=version)

    # -- cache -------------------------------------------------------------

    def cache(self, source: Any) -> str:
        """Copy ``source`` (a path or a file-like object) into the cache."""

        filename = sanitize_filename(_source_name(source))
        cache_name = f"{generate_cache_id()}/{filename}"
        destination = self.cache_path(cache_name)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(source, (str, os.PathLike)):
            shutil.copyfile(source, destination)
        else:
            stream = getattr(source, "file", source)
            if hasattr(stream, "seek"):
                stream.seek(0)
            with open(destination, "wb") as out:
                shutil.copyfileobj(stream, out)

        self.cache_name = cache_name
        logger.debug("cached %s for %s as %s", filename, self.mounted_as, cache_name)
        return cache_name

    def retrieve_from_cache(self, cache_name: str) -> None:
        if not CACHE_NAME_RE.match(cache_name or ""):
            raise InvalidCacheName(f"invalid cache name: {cache_name!r}")
        if not self.cache_path(cache_name).is_file():
            raise FileNotFoundError(f"cached file is gone: {cache_name}")
        self.cache_name = cache_name

    def clear_cache_dir(self, cache_name: str) -> None:
        if not CACHE_NAME_RE.match(cache_name or ""):
            raise InvalidCacheName(f"invalid cache name: {cache_name!r}")
        shutil.rmtree(self.cache_path(cache_name).parent, ignore_errors=True)

    # -- store -------------------------------------------------------------

    def retrieve_from_store(self, identifier: str | None) -> None:
        self.identifier = identifier

    def store(self, *, process_versions: bool = True) -> None:
        """Move the cached file into the store directory."""

        if self.cache_name is None:
            return

        cache_name = self.cache_name
        filename = cache_name.split("/", 1)[1]
        destination = self.store_path(filename)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(os.fspath(self.cache_path(cache_name)), os.fspath(destination))
        self.clear_cache_dir(cache_name)

        self.identifier = filename
        self.cache_name = None
        logger.info("stored %s for %s at %s", filename, self.mounted_as, destination)

        if process_versions:
            self.create_versions()

    def create_versions(self) -> None:
        source = self.store_path()
        for name, processor in self.versions.items():
            processor(source, self.version_path(name))

    def recreate_versions(self) -> None:
        if self.identifier is None:
            return
        if not self.store_path().is_file():
            raise FileNotFoundError(f"stored file is gone: {self.store_path()}")
        self.create_versions()

    def remove(self) -> None:
        if self.identifier is None:
            return
        for version in self.versions:
            self.version_path(version).unlink(missing_ok=True)
        self.store_path().unlink(missing_ok=True)
        logger.info("removed %s for %s", self.identifier, self.mounted_as)
        self.identifier = None
