"""Storage package: SQLite schema, migrations, search index and the store facade"""

from .database import DatabaseManager, db_manager, get_session, init_database
from .frames import bars_from_frame, bars_to_frame
from .exceptions import (
    StoreError,
    ConstraintViolation,
    MigrationFailure,
    SyncDivergence,
    NotFound,
)
from .migrations import Migration, MigrationManager, MIGRATIONS, rebuild_table
from .models import Base, Ticker, PriceBar, Indicator, Interval, TickerKey
from .repository import MarketDataStore
from .search_index import TickerSearchIndex, tokenize

__all__ = [
    'DatabaseManager',
    'db_manager',
    'get_session',
    'init_database',
    'StoreError',
    'ConstraintViolation',
    'MigrationFailure',
    'SyncDivergence',
    'NotFound',
    'Migration',
    'MigrationManager',
    'MIGRATIONS',
    'rebuild_table',
    'Base',
    'Ticker',
    'PriceBar',
    'Indicator',
    'Interval',
    'TickerKey',
    'MarketDataStore',
    'TickerSearchIndex',
    'tokenize',
    'bars_from_frame',
    'bars_to_frame',
]
