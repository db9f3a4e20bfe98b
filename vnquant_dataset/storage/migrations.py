"""
Schema Migrations

Versioned schema revisions applied in ascending order, each in its own
transaction together with its ledger row. SQLite cannot add constraints to an
existing table, so constraint changes go through rebuild_table(), which swaps
in a shadow table after verifying that every row was copied.
"""

import time
import logging
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import (
    Table, Column, Integer, String, DateTime, MetaData, select
)

from vnquant_dataset.storage.exceptions import MigrationFailure
from vnquant_dataset.storage.models import utcnow
from vnquant_dataset.storage.search_index import index_fields

logger = logging.getLogger(__name__)

ledger_metadata = MetaData()

schema_migrations = Table(
    '_schema_migrations', ledger_metadata,
    Column('version', Integer, primary_key=True, autoincrement=False),
    Column('description', String(200), nullable=False),
    Column('applied_at', DateTime, nullable=False),
    Column('execution_time_ms', Integer, nullable=False),
)


class Migration:
    """
    One schema revision.

    Args:
        version: Monotonically increasing identifier
        description: Human readable summary, stored in the ledger
        upgrade: Callable receiving the connection inside the transaction
        disable_foreign_keys: Run with foreign key enforcement off, as
            SQLite requires when dropping and renaming referenced tables.
            Referential integrity is re-checked before commit.
    """

    def __init__(self, version: int, description: str, upgrade: Callable,
                 disable_foreign_keys: bool = False):
        self.version = version
        self.description = description
        self.upgrade = upgrade
        self.disable_foreign_keys = disable_foreign_keys

    def __repr__(self):
        return f"<Migration(version={self.version}, description={self.description})>"


def execute_statements(connection, statements: Iterable[str]):
    for statement in statements:
        connection.exec_driver_sql(statement)


def count_rows(connection, table: str) -> int:
    return connection.exec_driver_sql(f'SELECT COUNT(*) FROM "{table}"').scalar()


def rebuild_table(connection, table: str, create_sql: str, columns: Sequence[str],
                  indexes: Sequence[str] = (), drop_views: Sequence[str] = (),
                  create_views: Sequence[str] = ()):
    """
    Replace a table with a new definition via a shadow table.

    Args:
        table: Name of the table to rebuild
        create_sql: CREATE TABLE statement with a {table} placeholder for the
            shadow table name
        columns: Columns copied from the old table
        indexes: CREATE INDEX statements run after the swap
        drop_views: Views depending on the table, dropped first
        create_views: CREATE VIEW statements run last

    Raises:
        RuntimeError: the shadow table did not receive every row. Raised
            before the old table is dropped.
    """
    shadow = f"{table}_new"
    column_list = ', '.join(columns)

    for view in drop_views:
        connection.exec_driver_sql(f'DROP VIEW IF EXISTS "{view}"')

    connection.exec_driver_sql(create_sql.format(table=shadow))
    # Rows refused by the new constraints are caught by the count check below
    connection.exec_driver_sql(
        f'INSERT OR IGNORE INTO "{shadow}" ({column_list}) SELECT {column_list} FROM "{table}"'
    )

    old_count = count_rows(connection, table)
    new_count = count_rows(connection, shadow)
    if old_count != new_count:
        raise RuntimeError(
            f"row count mismatch rebuilding {table}: {old_count} rows in {table}, "
            f"{new_count} copied to {shadow}"
        )

    connection.exec_driver_sql(f'DROP TABLE "{table}"')
    connection.exec_driver_sql(f'ALTER TABLE "{shadow}" RENAME TO "{table}"')
    execute_statements(connection, indexes)
    execute_statements(connection, create_views)
    logger.info(f"Rebuilt table {table} ({new_count} rows)")


class MigrationManager:
    """Applies pending migrations and records them in the ledger"""

    def __init__(self, db_manager, migrations: Optional[Sequence[Migration]] = None):
        self.db_manager = db_manager
        self.migrations = sorted(MIGRATIONS if migrations is None else migrations,
                                 key=lambda m: m.version)

        versions = [m.version for m in self.migrations]
        if len(set(versions)) != len(versions):
            raise ValueError(f"Duplicate migration versions: {versions}")

    def applied_versions(self) -> List[int]:
        """Versions recorded in the ledger, ascending"""
        with self.db_manager.connect() as connection:
            self._ensure_ledger(connection)
            with connection.begin():
                rows = connection.execute(
                    select(schema_migrations.c.version).order_by(schema_migrations.c.version)
                )
                return [row.version for row in rows]

    def pending(self) -> List[Migration]:
        applied = set(self.applied_versions())
        return [m for m in self.migrations if m.version not in applied]

    def apply_pending(self) -> List[int]:
        """
        Apply every migration not yet in the ledger, oldest first.

        Returns:
            Versions applied by this call; empty when already up to date

        Raises:
            MigrationFailure: a migration failed. It was rolled back entirely,
                earlier migrations stay applied and later ones are not run.
        """
        applied_now = []

        with self.db_manager.connect() as connection:
            self._ensure_ledger(connection)
            with connection.begin():
                applied = {row.version for row in connection.execute(select(schema_migrations.c.version))}

            for migration in self.migrations:
                if migration.version in applied:
                    continue
                self._apply(connection, migration)
                applied_now.append(migration.version)

        if applied_now:
            logger.info(f"Applied {len(applied_now)} migration(s): {applied_now}")
        else:
            logger.info("Database schema is up to date")
        return applied_now

    def _ensure_ledger(self, connection):
        with connection.begin():
            schema_migrations.create(connection, checkfirst=True)

    def _apply(self, connection, migration: Migration):
        logger.info(f"Applying migration {migration.version}: {migration.description}")
        started = time.monotonic()

        if migration.disable_foreign_keys:
            _set_foreign_keys(connection, False)
        try:
            with connection.begin():
                migration.upgrade(connection)

                if migration.disable_foreign_keys:
                    violations = connection.exec_driver_sql("PRAGMA foreign_key_check").all()
                    if violations:
                        tables = sorted({row[0] for row in violations})
                        raise RuntimeError(
                            f"{len(violations)} foreign key violation(s) in {', '.join(tables)}"
                        )

                connection.execute(schema_migrations.insert().values(
                    version=migration.version,
                    description=migration.description,
                    applied_at=utcnow(),
                    execution_time_ms=int((time.monotonic() - started) * 1000),
                ))
        except Exception as e:
            logger.error(f"Migration {migration.version} rolled back: {e}")
            raise MigrationFailure(migration.version, str(e)) from e
        finally:
            if migration.disable_foreign_keys:
                _set_foreign_keys(connection, True)


def _set_foreign_keys(connection, enabled: bool):
    # The pragma is a no-op inside a transaction, so bypass SQLAlchemy's autobegin
    connection.connection.driver_connection.execute(
        f"PRAGMA foreign_keys = {'ON' if enabled else 'OFF'}"
    )


# ============================================================================
# MIGRATIONS
# ============================================================================

TECHNICAL_INDICATOR_INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_tech_symbol_type_timestamp ON technical_indicators(symbol, indicator_type, timestamp DESC)',
    'CREATE INDEX IF NOT EXISTS idx_tech_type_timestamp ON technical_indicators(indicator_type, timestamp DESC)',
    'CREATE INDEX IF NOT EXISTS idx_tech_symbol_interval_timestamp ON technical_indicators(symbol, interval, timestamp DESC)',
    'CREATE INDEX IF NOT EXISTS idx_tech_timestamp_desc ON technical_indicators(timestamp DESC)',
]

LATEST_INDICATORS_VIEW = """
CREATE VIEW IF NOT EXISTS latest_indicators AS
SELECT symbol, exchange, interval,
       MAX(timestamp) AS latest_timestamp,
       indicator_type, value, metadata
FROM technical_indicators
GROUP BY symbol, exchange, interval, indicator_type
"""


def _init_schema(connection):
    execute_statements(connection, [
        """
        CREATE TABLE IF NOT EXISTS tickers (
            symbol VARCHAR(10) NOT NULL,
            exchange VARCHAR(10) NOT NULL,
            description TEXT,
            currency VARCHAR(3),
            country VARCHAR(50),
            market_type VARCHAR(20),
            industry VARCHAR(50),
            sector VARCHAR(50),
            founded INTEGER,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (symbol, exchange)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS ohlcv (
            symbol VARCHAR(10) NOT NULL,
            exchange VARCHAR(10) NOT NULL,
            interval VARCHAR(10) NOT NULL,
            timestamp DATETIME NOT NULL,
            open REAL NOT NULL,
            high REAL NOT NULL,
            low REAL NOT NULL,
            close REAL NOT NULL,
            volume REAL NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (symbol, exchange, interval, timestamp),
            FOREIGN KEY (symbol, exchange) REFERENCES tickers(symbol, exchange) ON DELETE CASCADE
        ) WITHOUT ROWID
        """,
        'CREATE INDEX IF NOT EXISTS idx_ohlcv_symbol_interval_timestamp ON ohlcv(symbol, interval, timestamp DESC)',
        'CREATE INDEX IF NOT EXISTS idx_ohlcv_exchange_timestamp ON ohlcv(exchange, timestamp DESC)',
        'CREATE INDEX IF NOT EXISTS idx_ohlcv_timestamp_desc ON ohlcv(timestamp DESC)',
        'CREATE INDEX IF NOT EXISTS idx_ohlcv_symbol_exchange_interval ON ohlcv(symbol, exchange, interval)',
        """
        CREATE TABLE IF NOT EXISTS technical_indicators (
            symbol VARCHAR(10) NOT NULL,
            exchange VARCHAR(10) NOT NULL,
            interval VARCHAR(10) NOT NULL,
            timestamp DATETIME NOT NULL,
            indicator_type VARCHAR(20) NOT NULL,
            value REAL,
            metadata TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (symbol, exchange, interval, timestamp, indicator_type),
            FOREIGN KEY (symbol, exchange) REFERENCES tickers(symbol, exchange) ON DELETE CASCADE
        ) WITHOUT ROWID
        """,
        *TECHNICAL_INDICATOR_INDEXES,
        """
        CREATE VIEW IF NOT EXISTS latest_ohlcv AS
        SELECT symbol, exchange, interval,
               MAX(timestamp) AS latest_timestamp,
               open, high, low, close, volume
        FROM ohlcv
        GROUP BY symbol, exchange, interval
        """,
        LATEST_INDICATORS_VIEW,
    ])


def _create_search_index(connection):
    execute_statements(connection, [
        """
        CREATE TABLE ticker_search_documents (
            ticker_symbol VARCHAR(10) NOT NULL,
            ticker_exchange VARCHAR(10) NOT NULL,
            symbol TEXT,
            description TEXT,
            industry TEXT,
            sector TEXT,
            PRIMARY KEY (ticker_symbol, ticker_exchange)
        )
        """,
        """
        CREATE TABLE ticker_search_postings (
            token TEXT NOT NULL,
            field VARCHAR(20) NOT NULL,
            ticker_symbol VARCHAR(10) NOT NULL,
            ticker_exchange VARCHAR(10) NOT NULL,
            frequency INTEGER NOT NULL,
            PRIMARY KEY (token, field, ticker_symbol, ticker_exchange),
            FOREIGN KEY (ticker_symbol, ticker_exchange)
                REFERENCES ticker_search_documents(ticker_symbol, ticker_exchange) ON DELETE CASCADE
        ) WITHOUT ROWID
        """,
        'CREATE INDEX idx_search_postings_ticker ON ticker_search_postings(ticker_symbol, ticker_exchange)',
    ])
    index_fields(connection, ('symbol', 'description', 'industry', 'sector'))


def _add_indicator_price_bar_fk(connection):
    rebuild_table(
        connection,
        'technical_indicators',
        """
        CREATE TABLE "{table}" (
            symbol VARCHAR(10) NOT NULL,
            exchange VARCHAR(10) NOT NULL,
            interval VARCHAR(10) NOT NULL,
            timestamp DATETIME NOT NULL,
            indicator_type VARCHAR(20) NOT NULL,
            value REAL,
            metadata TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (symbol, exchange, interval, timestamp, indicator_type),
            FOREIGN KEY (symbol, exchange) REFERENCES tickers(symbol, exchange) ON DELETE CASCADE,
            FOREIGN KEY (symbol, exchange, interval, timestamp)
                REFERENCES ohlcv(symbol, exchange, interval, timestamp) ON DELETE CASCADE
        ) WITHOUT ROWID
        """,
        columns=['symbol', 'exchange', 'interval', 'timestamp', 'indicator_type',
                 'value', 'metadata', 'created_at'],
        indexes=TECHNICAL_INDICATOR_INDEXES,
        drop_views=['latest_indicators'],
        create_views=[LATEST_INDICATORS_VIEW],
    )


def _index_all_ticker_fields(connection):
    execute_statements(connection, [
        'DROP TABLE IF EXISTS ticker_search_postings',
        'DROP TABLE IF EXISTS ticker_search_documents',
        """
        CREATE TABLE ticker_search_documents (
            ticker_symbol VARCHAR(10) NOT NULL,
            ticker_exchange VARCHAR(10) NOT NULL,
            symbol TEXT,
            exchange TEXT,
            description TEXT,
            currency TEXT,
            country TEXT,
            market_type TEXT,
            industry TEXT,
            sector TEXT,
            PRIMARY KEY (ticker_symbol, ticker_exchange)
        )
        """,
        """
        CREATE TABLE ticker_search_postings (
            token TEXT NOT NULL,
            field VARCHAR(20) NOT NULL,
            ticker_symbol VARCHAR(10) NOT NULL,
            ticker_exchange VARCHAR(10) NOT NULL,
            frequency INTEGER NOT NULL,
            PRIMARY KEY (token, field, ticker_symbol, ticker_exchange),
            FOREIGN KEY (ticker_symbol, ticker_exchange)
                REFERENCES ticker_search_documents(ticker_symbol, ticker_exchange) ON DELETE CASCADE
        ) WITHOUT ROWID
        """,
        'CREATE INDEX idx_search_postings_ticker ON ticker_search_postings(ticker_symbol, ticker_exchange)',
    ])
    index_fields(connection, (
        'symbol', 'exchange', 'description', 'currency',
        'country', 'market_type', 'industry', 'sector',
    ))


MIGRATIONS = [
    Migration(20250626051700, 'init', _init_schema),
    Migration(20250626103436, 'ticker search index', _create_search_index),
    Migration(20250626175705, 'technical indicators reference ohlcv',
              _add_indicator_price_bar_fk, disable_foreign_keys=True),
    Migration(20250626180853, 'search index covers all ticker fields', _index_all_ticker_fields),
]
