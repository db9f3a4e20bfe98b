"""
Database Connection Manager

Handles database connections, sessions, and transaction boundaries.
"""

import os
import logging
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

from vnquant_dataset.storage.exceptions import StoreError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = 'sqlite:///data/vnquant.db'


def _on_connect(dbapi_connection, connection_record):
    # Transactions are opened by _on_begin, which keeps DDL transactional
    dbapi_connection.isolation_level = None

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.close()


def _on_begin(conn):
    conn.exec_driver_sql(conn.get_execution_options().get('sqlite_begin', 'BEGIN'))


class DatabaseManager:
    """
    Manages the SQLite engine and hands out transactional sessions.

    Write sessions open with BEGIN IMMEDIATE and are serialized inside the
    process by a lock, so there is a single writer at any time. Read sessions
    open a deferred transaction and see only committed state.
    """

    def __init__(self, database_url: str = None):
        self._database_url = database_url
        self._engine = None
        self._session_factory = None
        self._read_session_factory = None
        self._in_memory = False
        self._write_lock = threading.RLock()
        self._flush_hooks = {}

    def initialize(self, database_url: str = None):
        """
        Initialize database connection.

        Args:
            database_url: Database URL. If None, read from env
        """
        if self._engine is not None:
            self.close()

        if database_url is None:
            database_url = self._database_url or os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL)

        url = make_url(database_url)
        if url.get_backend_name() != 'sqlite':
            raise ValueError(f"Unsupported database backend: {url.get_backend_name()}")

        busy_timeout = float(os.getenv('DATABASE_BUSY_TIMEOUT', '30'))
        engine_kwargs = {}

        self._in_memory = url.database in (None, '', ':memory:')
        if self._in_memory:
            # One shared connection, otherwise every pooled connection is a new empty database
            engine_kwargs['poolclass'] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initializing database connection to {url.render_as_string(hide_password=True)}...")

        self._engine = create_engine(
            url,
            echo=False,
            connect_args={'check_same_thread': False, 'timeout': busy_timeout},
            **engine_kwargs
        )
        event.listen(self._engine, 'connect', _on_connect)
        event.listen(self._engine, 'begin', _on_begin)

        self._session_factory = sessionmaker(
            bind=self._engine.execution_options(sqlite_begin='BEGIN IMMEDIATE'),
            autoflush=False,
            expire_on_commit=False
        )
        self._read_session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        event.listen(self._session_factory, 'after_flush', self._run_flush_hooks)

        self._database_url = database_url
        logger.info("Database connection initialized")

    @property
    def database_url(self):
        return self._database_url

    @property
    def engine(self):
        """Get database engine"""
        if self._engine is None:
            self.initialize()
        return self._engine

    @property
    def session_factory(self):
        """Get write session factory"""
        if self._session_factory is None:
            self.initialize()
        return self._session_factory

    @property
    def read_session_factory(self):
        """Get read-only session factory"""
        if self._read_session_factory is None:
            self.initialize()
        return self._read_session_factory

    def add_flush_hook(self, name: str, hook):
        """
        Register a callable run after every flush of a write session.

        Hooks are keyed by name; registering a name again replaces the
        earlier hook, so each concern runs once per flush.

        The hook receives the session while its new/dirty/deleted collections
        still describe the flushed changes, and runs inside the same
        transaction as the flush.
        """
        self._flush_hooks[name] = hook

    def _run_flush_hooks(self, session, flush_context):
        for hook in list(self._flush_hooks.values()):
            hook(session)

    @contextmanager
    def get_session(self, write: bool = True):
        """
        Get a database session (context manager).

        The session commits when the block exits normally and rolls back on
        any exception, which is then re-raised.

        Usage:
            with db_manager.get_session() as session:
                session.add(obj)
        """
        factory = self.session_factory if write else self.read_session_factory
        lock = self._write_lock if write or self._in_memory else nullcontext()

        with lock:
            session: Session = factory()
            try:
                yield session
                session.commit()
            except StoreError as e:
                session.rollback()
                logger.warning(f"Transaction rolled back: {e}")
                raise
            except Exception as e:
                session.rollback()
                logger.error(f"Database error: {e}")
                raise
            finally:
                session.close()

    @contextmanager
    def connect(self):
        """
        Get a raw engine connection for schema work.

        Holds the writer lock for the lifetime of the connection. Callers
        open their own transactions with connection.begin().
        """
        with self._write_lock:
            with self.engine.connect() as connection:
                connection.execution_options(sqlite_begin='BEGIN IMMEDIATE')
                yield connection

    def close(self):
        """Close database connections"""
        if self._engine:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._read_session_factory = None
        logger.info("Database connections closed")


# Global database manager instance, initialized on first use
db_manager = DatabaseManager()


# Convenience functions
def get_session(write: bool = True):
    """Get a database session (context manager)"""
    return db_manager.get_session(write=write)


def init_database(database_url: str = None):
    """
    Initialize the database and migrate it to the latest schema.

    Args:
        database_url: Database URL. If None, read from env

    Returns:
        List of migration versions applied by this call
    """
    from vnquant_dataset.storage.migrations import MigrationManager

    db_manager.initialize(database_url)
    return MigrationManager(db_manager).apply_pending()
