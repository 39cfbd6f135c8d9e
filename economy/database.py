import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StoreUnavailableError
from .tables import Base

logger = logging.getLogger(__name__)


class Database:
    """One engine and session factory per process.

    Call `create_all()` once at startup and `dispose()` at shutdown; every
    operation then runs inside `transaction()`.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url.endswith(":memory:") or url.endswith("://"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, echo=echo, **kwargs)
        if self.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self.engine)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Schema ready on %s", self.engine.url.render_as_string(hide_password=True))

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Yield a session inside a transaction, or join the caller's session."""
        if session is not None:
            yield session
            return

        session = self._sessions()
        try:
            with session.begin():
                yield session
        except (OperationalError, InterfaceError) as e:
            logger.error("Store unavailable: %s", e)
            raise StoreUnavailableError(str(e)) from e
        finally:
            session.close()


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite emits its own BEGIN lazily, which breaks SAVEPOINT; take it over.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
