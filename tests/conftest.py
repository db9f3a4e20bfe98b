import pytest

from vnquant_dataset.storage.database import DatabaseManager
from vnquant_dataset.storage.models import Ticker, PriceBar, Indicator
from vnquant_dataset.storage.repository import MarketDataStore


@pytest.fixture
def db(tmp_path):
    """Fresh, unmigrated database file per test"""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'vnquant.db'}")
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def store(db):
    """Store over a database migrated to the latest schema"""
    store = MarketDataStore(db)
    store.migrate()
    return store


@pytest.fixture
def make_ticker():
    def _make(symbol='FPT', exchange='HOSE', **fields):
        return Ticker(symbol=symbol, exchange=exchange, **fields)
    return _make


@pytest.fixture
def make_bar():
    def _make(timestamp, symbol='FPT', exchange='HOSE', interval='one-day', close=100.0, volume=1000.0):
        return PriceBar(
            symbol=symbol,
            exchange=exchange,
            interval=interval,
            timestamp=timestamp,
            open=close - 1,
            high=close + 2,
            low=close - 2,
            close=close,
            volume=volume,
        )
    return _make


@pytest.fixture
def make_indicator():
    def _make(timestamp, indicator_type='SMA20', value=1.0, symbol='FPT', exchange='HOSE',
              interval='one-day', metadata=None):
        return Indicator(
            symbol=symbol,
            exchange=exchange,
            interval=interval,
            timestamp=timestamp,
            indicator_type=indicator_type,
            value=value,
            extra_metadata=metadata,
        )
    return _make
