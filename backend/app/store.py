"""Persistent store: SQLAlchemy engine, sessions and the transaction boundary used by every service."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from models import Base
from services.errors import ConflictError, TransientError

logger = logging.getLogger(__name__)


class Store:
    def __init__(self, settings: Settings) -> None:
        self.url = settings.database_url
        self.is_sqlite = self.url.startswith("sqlite")
        timeout = settings.db_timeout_seconds

        engine_kwargs: dict = {"pool_pre_ping": True, "pool_recycle": settings.db_pool_recycle}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout}
        else:
            engine_kwargs.update(
                {
                    "pool_size": settings.db_pool_size,
                    "max_overflow": settings.db_max_overflow,
                    "pool_timeout": timeout,
                }
            )
            if self.url.startswith("postgresql"):
                ms = int(timeout * 1000)
                engine_kwargs["connect_args"] = {
                    "options": f"-c statement_timeout={ms} -c lock_timeout={ms}"
                }

        self.engine = create_engine(self.url, **engine_kwargs)
        if self.is_sqlite:
            _install_sqlite_locking(self.engine)

        # Writers take the database write lock up front on SQLite; on server databases
        # they rely on SELECT ... FOR UPDATE of the rows they mutate.
        self._writer = sessionmaker(
            bind=self.engine.execution_options(immediate=True),
            autoflush=False,
            expire_on_commit=False,
        )
        self._reader = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def init_schema(self) -> None:
        """Create tables and verify connectivity. Failure here is fatal at startup."""
        Base.metadata.create_all(bind=self.engine)
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[store] Schema ready url=%s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Atomic unit of work: commit on success, roll back on any exception."""
        db = self._writer()
        try:
            yield db
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("Conflicting write rejected by the store") from exc
        except (OperationalError, PoolTimeoutError) as exc:
            db.rollback()
            logger.warning("[store] Transaction failed transiently: %s", exc)
            raise TransientError("Store unavailable or timed out") from exc
        except DBAPIError as exc:
            db.rollback()
            if exc.connection_invalidated:
                raise TransientError("Store connection lost") from exc
            raise
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        db = self._reader()
        try:
            yield db
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("[store] Read failed transiently: %s", exc)
            raise TransientError("Store unavailable or timed out") from exc
        finally:
            db.close()


def _install_sqlite_locking(engine) -> None:
    # pysqlite's implicit BEGIN is deferred; take control so writers can BEGIN IMMEDIATE.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        if conn.get_execution_options().get("immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")
