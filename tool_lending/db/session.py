from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tool_lending.db.base import Base


LOGGER = logging.getLogger("tool_lending.storage")


def _is_sqlite_memory(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite:"))


class Storage:
    """Owns the engine and session factory for one process.

    Nothing connects until ``init()``; ``dispose()`` drains the pool.
    """

    def __init__(self, url: str, create_schema: bool = False):
        self.url = url
        self.create_schema = create_schema
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Storage has not been initialised.")
        return self._engine

    def init(self) -> "Storage":
        if self._engine is not None:
            return self
        kwargs: dict = {"future": True}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_sqlite_memory(self.url):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self._engine = create_engine(self.url, **kwargs)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
        if self.create_schema:
            import tool_lending.models.lending_models  # noqa: F401

            Base.metadata.create_all(bind=self._engine)
            LOGGER.info("Schema ensured for tables: %s", ", ".join(sorted(Base.metadata.tables)))
        return self

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Storage has not been initialised.")
        return self._session_factory()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
