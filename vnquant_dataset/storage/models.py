"""
SQLAlchemy Database Models

ORM models for the ticker, OHLCV and technical indicator tables. The tables
themselves are created by the migrations in migrations.py; these mappings
must stay column-for-column identical to the latest migrated schema.
"""

import enum
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, JSON,
    ForeignKeyConstraint, text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DATETIME column is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_timestamp(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC already"""
    if not isinstance(value, datetime):
        raise ValueError(f"Timestamp must be a datetime, got {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Interval(str, enum.Enum):
    """Bar intervals"""
    ONE_MINUTE = 'one-minute'
    FIVE_MINUTES = 'five-minutes'
    FIFTEEN_MINUTES = 'fifteen-minutes'
    THIRTY_MINUTES = 'thirty-minutes'
    ONE_HOUR = 'one-hour'
    TWO_HOURS = 'two-hours'
    FOUR_HOURS = 'four-hours'
    ONE_DAY = 'one-day'
    ONE_WEEK = 'one-week'
    ONE_MONTH = 'one-month'

    @classmethod
    def parse(cls, value) -> str:
        """Validate an interval and return its stored string form"""
        try:
            return cls(value).value
        except ValueError:
            raise ValueError(f"Invalid interval: {value!r}") from None


class TickerKey(NamedTuple):
    symbol: str
    exchange: str


# ============================================================================
# REFERENCE DATA
# ============================================================================

class Ticker(Base):
    """Security metadata, the root of every series"""
    __tablename__ = 'tickers'

    symbol = Column(String(10), primary_key=True)
    exchange = Column(String(10), primary_key=True)

    description = Column(Text)
    currency = Column(String(3))
    country = Column(String(50))
    market_type = Column(String(20))
    industry = Column(String(50))
    sector = Column(String(50))
    founded = Column(Integer)

    created_at = Column(DateTime, default=utcnow, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=text('CURRENT_TIMESTAMP'))

    # Fields replaced by an upsert; the key and timestamps are not
    MUTABLE_FIELDS = (
        'description', 'currency', 'country', 'market_type',
        'industry', 'sector', 'founded',
    )

    @property
    def key(self) -> TickerKey:
        return TickerKey(self.symbol, self.exchange)

    def __repr__(self):
        return f"<Ticker(symbol={self.symbol}, exchange={self.exchange}, description={self.description})>"


# ============================================================================
# MARKET DATA
# ============================================================================

class PriceBar(Base):
    """OHLCV bar, one per (symbol, exchange, interval, timestamp)"""
    __tablename__ = 'ohlcv'

    symbol = Column(String(10), primary_key=True)
    exchange = Column(String(10), primary_key=True)
    interval = Column(String(20), primary_key=True)
    timestamp = Column(DateTime, primary_key=True)

    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False)

    created_at = Column(DateTime, default=utcnow, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        ForeignKeyConstraint(
            ['symbol', 'exchange'], ['tickers.symbol', 'tickers.exchange'],
            ondelete='CASCADE'
        ),
        {'sqlite_with_rowid': False},
    )

    def __repr__(self):
        return f"<PriceBar(symbol={self.symbol}, interval={self.interval}, timestamp={self.timestamp}, close={self.close})>"


# ============================================================================
# TECHNICAL INDICATORS
# ============================================================================

class Indicator(Base):
    """Technical indicator value owned by both its ticker and its price bar"""
    __tablename__ = 'technical_indicators'

    symbol = Column(String(10), primary_key=True)
    exchange = Column(String(10), primary_key=True)
    interval = Column(String(20), primary_key=True)
    timestamp = Column(DateTime, primary_key=True)
    indicator_type = Column(String(20), primary_key=True)

    value = Column(Float)
    # "metadata" is reserved on declarative classes
    extra_metadata = Column('metadata', JSON(none_as_null=True))

    created_at = Column(DateTime, default=utcnow, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        ForeignKeyConstraint(
            ['symbol', 'exchange'], ['tickers.symbol', 'tickers.exchange'],
            ondelete='CASCADE'
        ),
        ForeignKeyConstraint(
            ['symbol', 'exchange', 'interval', 'timestamp'],
            ['ohlcv.symbol', 'ohlcv.exchange', 'ohlcv.interval', 'ohlcv.timestamp'],
            ondelete='CASCADE'
        ),
        {'sqlite_with_rowid': False},
    )

    def __repr__(self):
        return f"<Indicator(type={self.indicator_type}, timestamp={self.timestamp}, value={self.value})>"
