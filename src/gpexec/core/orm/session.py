"""SQLAlchemy engine factory and session factory.

* ``create_gpexec_engine``  -- Create a SA engine from a URL.
* ``GpExecSession``         -- Session with ``expire_on_commit=False``.
* ``gpexec_session_factory``-- ``sessionmaker`` producing ``GpExecSession``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gpexec.core.orm.base import GpExecBase


def create_gpexec_engine(
    url: str = "sqlite:///gpexec.db",
    *,
    echo: bool = False,
    create_tables: bool = True,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``, etc.)
    echo:
        If ``True``, log all SQL to stdout.
    create_tables:
        Create the job and DRM lookup tables when missing.
    """
    if url.startswith("sqlite"):
        # The DRM poll worker and submitters share connections across threads.
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        in_memory = ":memory:" in url or url == "sqlite://"
        if in_memory:
            # One shared connection, otherwise every thread sees an empty database.
            kwargs.setdefault("poolclass", StaticPool)
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = _sa_create_engine(url, echo=echo, **kwargs)

    if create_tables:
        from gpexec.core.orm import tables  # noqa: F401  (registers mappers)

        GpExecBase.metadata.create_all(engine)
    return engine


class GpExecSession(Session):
    """Pre-configured session with ``expire_on_commit=False``."""

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def gpexec_session_factory(engine: Engine) -> sessionmaker[GpExecSession]:
    """Return a ``sessionmaker`` bound to *engine*."""
    return sessionmaker(bind=engine, class_=GpExecSession)
