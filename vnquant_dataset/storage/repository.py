"""
Market Data Store

Transactional write and query API over tickers, OHLCV bars and technical
indicators. Every public method runs in a single session: it either commits
all of its effects (base rows, cascades, search index entries) or none.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import DateTime, delete, func, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from vnquant_dataset.storage.database import db_manager as default_db_manager
from vnquant_dataset.storage.exceptions import ConstraintViolation, NotFound
from vnquant_dataset.storage.migrations import MigrationManager
from vnquant_dataset.storage.models import (
    Ticker, PriceBar, Indicator, TickerKey, Interval, normalize_timestamp
)
from vnquant_dataset.storage.search_index import TickerSearchIndex

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000

BAR_VALUE_COLUMNS = ('open', 'high', 'low', 'close', 'volume')
INDICATOR_VALUE_COLUMNS = ('value', 'metadata')


def _require_key(symbol, exchange):
    if not symbol or not exchange:
        raise ValueError(f"Ticker symbol and exchange are required, got {symbol!r}:{exchange!r}")
    return TickerKey(symbol, exchange)


def _check_range(start, end):
    start = normalize_timestamp(start) if start is not None else None
    end = normalize_timestamp(end) if end is not None else None
    if start is not None and end is not None and start > end:
        raise ValueError(f"Range start {start} is after end {end}")
    return start, end


def _chunks(rows, size=BATCH_SIZE):
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


@contextmanager
def _constraint_errors(entity, key):
    """Translate integrity errors raised by the database into ConstraintViolation"""
    try:
        yield
    except IntegrityError as e:
        raise ConstraintViolation(entity, key, str(e.orig)) from e


class MarketDataStore:
    """
    Write/query facade for the market data tables.

    Args:
        db_manager: DatabaseManager to use. Defaults to the global instance
        search_index: Search index kept in sync with the tickers table
    """

    def __init__(self, db_manager=None, search_index: TickerSearchIndex = None):
        self.db = db_manager or default_db_manager
        self.search_index = search_index or TickerSearchIndex()
        self.search_index.attach(self.db)

    def migrate(self) -> List[int]:
        """Bring the schema up to date; returns the versions applied"""
        return MigrationManager(self.db).apply_pending()

    # ========================================================================
    # TICKERS
    # ========================================================================

    def upsert_ticker(self, ticker: Ticker) -> Ticker:
        """
        Insert a ticker, or replace the mutable fields of an existing one.

        updated_at is bumped whenever a field actually changes. The search
        index entry is written in the same transaction.
        """
        key = _require_key(ticker.symbol, ticker.exchange)
        with self.db.get_session() as session:
            stored = self._merge_ticker(session, ticker)
            session.flush()
        logger.debug(f"Upserted ticker {key.symbol}:{key.exchange}")
        return stored

    def upsert_tickers(self, tickers: Iterable[Ticker]) -> int:
        """
        Upsert many tickers in one transaction.

        When a key appears more than once the last occurrence wins.

        Returns:
            Number of distinct tickers written
        """
        by_key = {}
        for ticker in tickers:
            by_key[_require_key(ticker.symbol, ticker.exchange)] = ticker
        if not by_key:
            return 0
        tickers = list(by_key.values())

        with self.db.get_session() as session:
            for i, ticker in enumerate(tickers, 1):
                self._merge_ticker(session, ticker)
                if i % BATCH_SIZE == 0:
                    session.flush()
            session.flush()

        logger.info(f"Upserted {len(tickers)} tickers")
        return len(tickers)

    def update_ticker_info(self, ticker: Ticker) -> Ticker:
        """
        Replace the mutable fields of an existing ticker.

        Raises:
            NotFound: the ticker does not exist
        """
        key = _require_key(ticker.symbol, ticker.exchange)
        with self.db.get_session() as session:
            stored = session.get(Ticker, key)
            if stored is None:
                raise NotFound('Ticker', key)
            for field in Ticker.MUTABLE_FIELDS:
                setattr(stored, field, getattr(ticker, field))
            session.flush()
        return stored

    def _merge_ticker(self, session, ticker: Ticker) -> Ticker:
        stored = session.get(Ticker, (ticker.symbol, ticker.exchange))
        if stored is None:
            stored = Ticker(
                symbol=ticker.symbol,
                exchange=ticker.exchange,
                **{field: getattr(ticker, field) for field in Ticker.MUTABLE_FIELDS}
            )
            session.add(stored)
        else:
            for field in Ticker.MUTABLE_FIELDS:
                setattr(stored, field, getattr(ticker, field))
        return stored

    def delete_ticker(self, symbol: str, exchange: str) -> bool:
        """
        Delete a ticker with all of its bars, indicators and its search entry.

        Returns:
            False if the ticker did not exist
        """
        key = _require_key(symbol, exchange)
        with self.db.get_session() as session:
            ticker = session.get(Ticker, key)
            if ticker is None:
                return False

            bar_count = session.query(func.count()).select_from(PriceBar).filter(
                PriceBar.symbol == symbol, PriceBar.exchange == exchange
            ).scalar()
            indicator_count = session.query(func.count()).select_from(Indicator).filter(
                Indicator.symbol == symbol, Indicator.exchange == exchange
            ).scalar()

            session.delete(ticker)
            session.flush()

        logger.info(
            f"Deleted ticker {symbol}:{exchange} with {bar_count} bars "
            f"and {indicator_count} indicators"
        )
        return True

    def delete_tickers_by_exchange(self, exchange: str) -> int:
        """Delete every ticker listed on exchange, with cascades; returns the count"""
        if not exchange:
            raise ValueError("Exchange is required")

        with self.db.get_session() as session:
            tickers = session.query(Ticker).filter(Ticker.exchange == exchange).all()
            for ticker in tickers:
                session.delete(ticker)
            session.flush()

        logger.info(f"Deleted {len(tickers)} tickers from {exchange}")
        return len(tickers)

    def get_ticker(self, symbol: str, exchange: str) -> Optional[Ticker]:
        with self.db.get_session(write=False) as session:
            return session.get(Ticker, (symbol, exchange))

    def get_ticker_by_symbol(self, symbol: str) -> Optional[Ticker]:
        """First ticker with this symbol, by exchange name"""
        with self.db.get_session(write=False) as session:
            return session.query(Ticker).filter(
                Ticker.symbol == symbol
            ).order_by(Ticker.exchange).first()

    def get_all_tickers(self) -> List[Ticker]:
        with self.db.get_session(write=False) as session:
            return session.query(Ticker).order_by(Ticker.symbol, Ticker.exchange).all()

    def get_tickers_by_exchange(self, exchange: str) -> List[Ticker]:
        with self.db.get_session(write=False) as session:
            return session.query(Ticker).filter(
                Ticker.exchange == exchange
            ).order_by(Ticker.symbol).all()

    def ticker_exists(self, symbol: str, exchange: str) -> bool:
        with self.db.get_session(write=False) as session:
            return self._ticker_exists(session, symbol, exchange)

    def ticker_count(self) -> int:
        with self.db.get_session(write=False) as session:
            return session.query(func.count()).select_from(Ticker).scalar()

    @staticmethod
    def _ticker_exists(session, symbol, exchange) -> bool:
        return session.query(
            session.query(Ticker).filter(
                Ticker.symbol == symbol, Ticker.exchange == exchange
            ).exists()
        ).scalar()

    # ========================================================================
    # PRICE BARS
    # ========================================================================

    def upsert_price_bar(self, bar: PriceBar) -> None:
        """
        Insert a bar, or overwrite the OHLCV values of the bar at the same key.

        Raises:
            ConstraintViolation: no ticker exists for (symbol, exchange)
        """
        row = self._bar_row(bar)
        key = (row['symbol'], row['exchange'], row['interval'], row['timestamp'])

        with _constraint_errors('PriceBar', key), self.db.get_session() as session:
            if not self._ticker_exists(session, row['symbol'], row['exchange']):
                raise ConstraintViolation('PriceBar', key, 'ticker does not exist')
            self._upsert_rows(session, PriceBar, [row], BAR_VALUE_COLUMNS)

        logger.debug(f"Upserted bar {key}")

    def upsert_price_bars(self, symbol: str, exchange: str, interval: str,
                          bars: Iterable[PriceBar]) -> int:
        """
        Upsert a batch of bars for one series in one transaction.

        The symbol, exchange and interval arguments override those of the
        individual bars. When a timestamp appears more than once the last
        bar wins.

        Returns:
            Number of distinct bars written

        Raises:
            ConstraintViolation: no ticker exists for (symbol, exchange);
                nothing is written
        """
        key = _require_key(symbol, exchange)
        interval = Interval.parse(interval)

        by_timestamp = {}
        for bar in bars:
            row = self._bar_row(bar, symbol=symbol, exchange=exchange, interval=interval)
            by_timestamp[row['timestamp']] = row
        if not by_timestamp:
            return 0
        rows = list(by_timestamp.values())

        with _constraint_errors('PriceBar', key), self.db.get_session() as session:
            if not self._ticker_exists(session, symbol, exchange):
                raise ConstraintViolation('PriceBar', key, 'ticker does not exist')
            self._upsert_rows(session, PriceBar, rows, BAR_VALUE_COLUMNS)

        logger.info(f"Upserted {len(rows)} {interval} bars for {symbol}:{exchange}")
        return len(rows)

    def delete_price_bar(self, symbol: str, exchange: str, interval: str,
                         timestamp: datetime) -> bool:
        """
        Delete one bar (data correction). Its indicators go with it.

        Returns:
            False if no bar existed at that key
        """
        interval = Interval.parse(interval)
        timestamp = normalize_timestamp(timestamp)

        with self.db.get_session() as session:
            result = session.execute(
                delete(PriceBar.__table__).where(
                    PriceBar.symbol == symbol,
                    PriceBar.exchange == exchange,
                    PriceBar.interval == interval,
                    PriceBar.timestamp == timestamp,
                )
            )
        return result.rowcount > 0

    def latest_bar(self, symbol: str, exchange: str, interval: str) -> Optional[PriceBar]:
        """Most recent bar of a series, or None"""
        interval = Interval.parse(interval)
        with self.db.get_session(write=False) as session:
            return session.query(PriceBar).filter(
                PriceBar.symbol == symbol,
                PriceBar.exchange == exchange,
                PriceBar.interval == interval,
            ).order_by(PriceBar.timestamp.desc()).first()

    def series_range(self, symbol: str, exchange: str, interval: str,
                     start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> List[PriceBar]:
        """
        Bars of a series with start <= timestamp <= end, oldest first.

        Args:
            start: Inclusive lower bound, or None for no bound
            end: Inclusive upper bound, or None for no bound
        """
        interval = Interval.parse(interval)
        start, end = _check_range(start, end)

        with self.db.get_session(write=False) as session:
            query = session.query(PriceBar).filter(
                PriceBar.symbol == symbol,
                PriceBar.exchange == exchange,
                PriceBar.interval == interval,
            )
            if start is not None:
                query = query.filter(PriceBar.timestamp >= start)
            if end is not None:
                query = query.filter(PriceBar.timestamp <= end)
            return query.order_by(PriceBar.timestamp.asc()).all()

    def latest_bars(self, exchange: Optional[str] = None) -> List[dict]:
        """Latest bar of every series, read from the latest_ohlcv view"""
        sql = "SELECT * FROM latest_ohlcv"
        params = {}
        if exchange:
            sql += " WHERE exchange = :exchange"
            params['exchange'] = exchange
        sql += " ORDER BY symbol, exchange, interval"

        with self.db.get_session(write=False) as session:
            rows = session.execute(
                text(sql).columns(latest_timestamp=DateTime), params
            ).mappings().all()
            return [dict(row) for row in rows]

    def _bar_row(self, bar: PriceBar, **overrides) -> dict:
        row = {
            'symbol': bar.symbol,
            'exchange': bar.exchange,
            'interval': bar.interval,
            'timestamp': bar.timestamp,
        }
        row.update(overrides)
        _require_key(row['symbol'], row['exchange'])
        row['interval'] = Interval.parse(row['interval'])
        row['timestamp'] = normalize_timestamp(row['timestamp'])

        for column in BAR_VALUE_COLUMNS:
            value = getattr(bar, column)
            if value is None:
                raise ValueError(f"Bar {row['symbol']}:{row['exchange']} {row['timestamp']} is missing {column}")
            row[column] = float(value)
        return row

    # ========================================================================
    # TECHNICAL INDICATORS
    # ========================================================================

    def upsert_indicator(self, indicator: Indicator) -> None:
        """
        Insert an indicator value, or overwrite the one at the same key.

        Raises:
            ConstraintViolation: no ticker exists for (symbol, exchange), or no
                price bar exists at (symbol, exchange, interval, timestamp)
        """
        self.upsert_indicators([indicator])

    def upsert_indicators(self, indicators: Iterable[Indicator]) -> int:
        """
        Upsert a batch of indicator values in one transaction.

        Either every value is written or, if any of them references a missing
        ticker or price bar, none is. When a key appears more than once the
        last value wins.

        Returns:
            Number of distinct indicator values written
        """
        by_key = {}
        for indicator in indicators:
            row = self._indicator_row(indicator)
            by_key[_indicator_key(row)] = row
        if not by_key:
            return 0
        rows = list(by_key.values())
        first_key = _indicator_key(rows[0])

        with _constraint_errors('Indicator', first_key), self.db.get_session() as session:
            checked_tickers = set()
            for row in rows:
                key = _indicator_key(row)
                ticker_key = (row['symbol'], row['exchange'])
                if ticker_key not in checked_tickers:
                    if not self._ticker_exists(session, *ticker_key):
                        raise ConstraintViolation('Indicator', key, 'ticker does not exist')
                    checked_tickers.add(ticker_key)

                bar_key = (row['symbol'], row['exchange'], row['interval'], row['timestamp'])
                if session.get(PriceBar, bar_key) is None:
                    raise ConstraintViolation('Indicator', key, 'price bar does not exist')

            self._upsert_rows(session, Indicator, rows, INDICATOR_VALUE_COLUMNS)

        logger.debug(f"Upserted {len(rows)} indicator values")
        return len(rows)

    def latest_indicator(self, symbol: str, exchange: str, interval: str,
                         indicator_type: str) -> Optional[Indicator]:
        """Most recent value of one indicator type, or None"""
        interval = Interval.parse(interval)
        with self.db.get_session(write=False) as session:
            return session.query(Indicator).filter(
                Indicator.symbol == symbol,
                Indicator.exchange == exchange,
                Indicator.interval == interval,
                Indicator.indicator_type == indicator_type,
            ).order_by(Indicator.timestamp.desc()).first()

    def indicator_series(self, symbol: str, exchange: str, interval: str,
                         indicator_type: str, start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> List[Indicator]:
        """Values of one indicator type with start <= timestamp <= end, oldest first"""
        interval = Interval.parse(interval)
        start, end = _check_range(start, end)

        with self.db.get_session(write=False) as session:
            query = session.query(Indicator).filter(
                Indicator.symbol == symbol,
                Indicator.exchange == exchange,
                Indicator.interval == interval,
                Indicator.indicator_type == indicator_type,
            )
            if start is not None:
                query = query.filter(Indicator.timestamp >= start)
            if end is not None:
                query = query.filter(Indicator.timestamp <= end)
            return query.order_by(Indicator.timestamp.asc()).all()

    def _indicator_row(self, indicator: Indicator) -> dict:
        _require_key(indicator.symbol, indicator.exchange)
        if not indicator.indicator_type:
            raise ValueError("Indicator type is required")
        return {
            'symbol': indicator.symbol,
            'exchange': indicator.exchange,
            'interval': Interval.parse(indicator.interval),
            'timestamp': normalize_timestamp(indicator.timestamp),
            'indicator_type': indicator.indicator_type,
            'value': None if indicator.value is None else float(indicator.value),
            'metadata': indicator.extra_metadata,
        }

    # ========================================================================
    # SEARCH
    # ========================================================================

    def search(self, query: str, limit: Optional[int] = None) -> List[TickerKey]:
        """Ranked ticker keys matching every term of query"""
        with self.db.get_session(write=False) as session:
            return self.search_index.search(session, query, limit=limit)

    def verify_search_index(self) -> None:
        """
        Check that the search index matches the tickers table.

        Raises:
            SyncDivergence: the index is out of sync
        """
        with self.db.get_session(write=False) as session:
            self.search_index.verify(session)

    def rebuild_search_index(self) -> int:
        """Rebuild the search index from scratch; returns the number of entries"""
        with self.db.get_session() as session:
            return self.search_index.rebuild(session.connection())

    # ========================================================================
    # HELPERS
    # ========================================================================

    @staticmethod
    def _upsert_rows(session, model, rows: List[dict], update_columns):
        table = model.__table__
        stmt = sqlite_insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[column.name for column in table.primary_key.columns],
            set_={column: stmt.excluded[column] for column in update_columns},
        )
        for chunk in _chunks(rows):
            session.execute(stmt, chunk)


def _indicator_key(row):
    return (row['symbol'], row['exchange'], row['interval'], row['timestamp'], row['indicator_type'])
