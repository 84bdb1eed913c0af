from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from backgrounder.config import settings


@lru_cache(maxsize=None)
def get_engine(database_url: str | None = None) -> Engine:
    return create_engine(database_url or settings.database_url, pool_pre_ping=True)


def get_sessionmaker(database_url: str | None = None) -> sessionmaker[Session]:
    """Session factory used by workers.

    Built lazily so importing models never requires the database driver.
    """

    return sessionmaker(get_engine(database_url), class_=Session)
