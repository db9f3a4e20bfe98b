"""Tests for the MarketDataStore write and query paths"""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from vnquant_dataset.storage.exceptions import ConstraintViolation, NotFound
from vnquant_dataset.storage.frames import bars_from_frame, bars_to_frame
from vnquant_dataset.storage.models import Ticker, PriceBar, Indicator, Interval

T1 = datetime(2024, 1, 2)
T2 = datetime(2024, 1, 3)
T3 = datetime(2024, 1, 4)


# ============================================================================
# TICKERS
# ============================================================================

def test_upsert_ticker_inserts_then_replaces_fields(store, make_ticker):
    store.upsert_ticker(make_ticker(description='FPT Corp', currency='VND', founded=1988))
    store.upsert_ticker(make_ticker(description='FPT Software', currency='VND'))

    ticker = store.get_ticker('FPT', 'HOSE')
    assert ticker.description == 'FPT Software'
    assert ticker.currency == 'VND'
    # Mutable fields are replaced, not merged
    assert ticker.founded is None
    assert store.ticker_count() == 1


def test_upsert_ticker_bumps_updated_at_only_on_change(store, make_ticker):
    first = store.upsert_ticker(make_ticker(description='FPT Corp'))
    created = store.get_ticker('FPT', 'HOSE')

    store.upsert_ticker(make_ticker(description='FPT Corp'))
    unchanged = store.get_ticker('FPT', 'HOSE')
    assert unchanged.updated_at == created.updated_at

    time.sleep(0.02)
    store.upsert_ticker(make_ticker(description='FPT Software'))
    changed = store.get_ticker('FPT', 'HOSE')

    assert changed.created_at == first.created_at
    assert changed.updated_at > created.updated_at


def test_upsert_ticker_requires_key(store):
    with pytest.raises(ValueError):
        store.upsert_ticker(Ticker(symbol='', exchange='HOSE'))


def test_upsert_tickers_batch_last_duplicate_wins(store, make_ticker):
    written = store.upsert_tickers([
        make_ticker('FPT', 'HOSE', description='first'),
        make_ticker('VNM', 'HOSE', description='Vinamilk'),
        make_ticker('FPT', 'HOSE', description='second'),
    ])

    assert written == 2
    assert store.get_ticker('FPT', 'HOSE').description == 'second'
    assert store.upsert_tickers([]) == 0


def test_ticker_queries(store, make_ticker):
    store.upsert_tickers([
        make_ticker('VNM', 'HOSE'),
        make_ticker('FPT', 'HOSE'),
        make_ticker('FPT', 'HNX'),
        make_ticker('SHS', 'HNX'),
    ])

    assert [t.key for t in store.get_all_tickers()] == [
        ('FPT', 'HNX'), ('FPT', 'HOSE'), ('SHS', 'HNX'), ('VNM', 'HOSE'),
    ]
    assert [t.symbol for t in store.get_tickers_by_exchange('HOSE')] == ['FPT', 'VNM']
    assert store.get_ticker_by_symbol('FPT').exchange == 'HNX'
    assert store.get_ticker_by_symbol('XXX') is None
    assert store.ticker_exists('SHS', 'HNX')
    assert not store.ticker_exists('SHS', 'HOSE')
    assert store.get_ticker('SHS', 'HOSE') is None
    assert store.ticker_count() == 4


def test_update_ticker_info_requires_existing_ticker(store, make_ticker):
    with pytest.raises(NotFound) as exc_info:
        store.update_ticker_info(make_ticker(description='FPT Corp'))
    assert exc_info.value.key == ('FPT', 'HOSE')
    assert store.ticker_count() == 0

    store.upsert_ticker(make_ticker(description='FPT Corp'))
    updated = store.update_ticker_info(make_ticker(description='FPT Software', sector='Technology'))
    assert updated.sector == 'Technology'
    assert store.get_ticker('FPT', 'HOSE').description == 'FPT Software'


# ============================================================================
# PRICE BARS
# ============================================================================

def test_delete_ticker_removes_its_bars(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker(description='FPT Corp'))
    store.upsert_price_bar(make_bar(T1))
    assert store.latest_bar('FPT', 'HOSE', 'one-day').timestamp == T1

    assert store.delete_ticker('FPT', 'HOSE') is True

    assert store.latest_bar('FPT', 'HOSE', 'one-day') is None
    assert store.series_range('FPT', 'HOSE', 'one-day') == []
    assert store.delete_ticker('FPT', 'HOSE') is False


def test_price_bar_requires_ticker(store, make_bar):
    with pytest.raises(ConstraintViolation) as exc_info:
        store.upsert_price_bar(make_bar(T1))

    assert exc_info.value.entity == 'PriceBar'
    assert exc_info.value.key[:3] == ('FPT', 'HOSE', 'one-day')
    assert store.latest_bar('FPT', 'HOSE', 'one-day') is None


def test_price_bar_overwrite_on_reingest(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bar(make_bar(T1, close=100.0))
    store.upsert_price_bar(make_bar(T1, close=105.5))

    bars = store.series_range('FPT', 'HOSE', 'one-day')
    assert len(bars) == 1
    assert bars[0].close == 105.5


def test_series_range_is_ascending_and_inclusive(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())
    days = [T1 + timedelta(days=i) for i in range(10)]
    shuffled = [days[i] for i in (4, 0, 9, 2, 7, 1, 8, 3, 6, 5)]
    # A repeated timestamp in one batch collapses to a single bar
    written = store.upsert_price_bars('FPT', 'HOSE', 'one-day',
                                      [make_bar(ts, close=100 + i) for i, ts in enumerate(shuffled + [days[0]])])
    assert written == 10

    bars = store.series_range('FPT', 'HOSE', 'one-day')
    timestamps = [bar.timestamp for bar in bars]
    assert timestamps == days

    window = store.series_range('FPT', 'HOSE', 'one-day', days[2], days[5])
    assert [bar.timestamp for bar in window] == days[2:6]

    assert [b.timestamp for b in store.series_range('FPT', 'HOSE', 'one-day', start=days[8])] == days[8:]
    assert [b.timestamp for b in store.series_range('FPT', 'HOSE', 'one-day', end=days[1])] == days[:2]


def test_upsert_price_bars_counts_distinct_timestamps(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())

    written = store.upsert_price_bars('FPT', 'HOSE', 'one-day', [
        make_bar(T1, close=100.0),
        make_bar(T1, close=101.0),
        make_bar(T2, close=102.0),
    ])

    assert written == 2
    assert [(b.timestamp, b.close) for b in store.series_range('FPT', 'HOSE', 'one-day')] == [
        (T1, 101.0), (T2, 102.0),
    ]


def test_upsert_indicators_counts_distinct_keys(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bar(make_bar(T1))

    written = store.upsert_indicators([make_indicator(T1, value=1.0), make_indicator(T1, value=2.0)])

    assert written == 1
    assert store.latest_indicator('FPT', 'HOSE', 'one-day', 'SMA20').value == 2.0


def test_series_are_separated_by_interval(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bar(make_bar(T1, interval='one-day'))
    store.upsert_price_bar(make_bar(T1, interval='one-hour'))
    store.upsert_price_bar(make_bar(T2, interval='one-hour'))

    assert len(store.series_range('FPT', 'HOSE', 'one-day')) == 1
    assert store.latest_bar('FPT', 'HOSE', 'one-hour').timestamp == T2


def test_interval_columns_fit_every_interval():
    longest = max(len(interval.value) for interval in Interval)

    assert PriceBar.__table__.c.interval.type.length >= longest
    assert Indicator.__table__.c.interval.type.length >= longest


def test_series_range_rejects_bad_arguments(store):
    with pytest.raises(ValueError):
        store.series_range('FPT', 'HOSE', 'one-day', T2, T1)
    with pytest.raises(ValueError):
        store.series_range('FPT', 'HOSE', '1d')


def test_aware_timestamps_are_stored_as_utc(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())
    ict = timezone(timedelta(hours=7))
    store.upsert_price_bar(make_bar(datetime(2024, 1, 2, 9, 0, tzinfo=ict), interval='one-hour'))

    bar = store.latest_bar('FPT', 'HOSE', 'one-hour')
    assert bar.timestamp == datetime(2024, 1, 2, 2, 0)

    found = store.series_range('FPT', 'HOSE', 'one-hour',
                               datetime(2024, 1, 2, 9, 0, tzinfo=ict),
                               datetime(2024, 1, 2, 9, 0, tzinfo=ict))
    assert len(found) == 1


def test_upsert_price_bars_rejects_batch_without_ticker(store, make_bar):
    with pytest.raises(ConstraintViolation):
        store.upsert_price_bars('FPT', 'HOSE', 'one-day', [make_bar(T1), make_bar(T2)])
    assert store.series_range('FPT', 'HOSE', 'one-day') == []


def test_upsert_price_bar_rejects_missing_values(store, make_ticker, make_bar):
    store.upsert_ticker(make_ticker())
    bar = make_bar(T1)
    bar.volume = None
    with pytest.raises(ValueError):
        store.upsert_price_bar(bar)


def test_latest_bars_view(store, make_ticker, make_bar):
    store.upsert_tickers([make_ticker('FPT', 'HOSE'), make_ticker('SHS', 'HNX')])
    store.upsert_price_bars('FPT', 'HOSE', 'one-day', [make_bar(T1, close=10), make_bar(T3, close=30), make_bar(T2, close=20)])
    store.upsert_price_bars('SHS', 'HNX', 'one-day', [make_bar(T1, close=5)])

    rows = store.latest_bars()
    assert [(r['symbol'], r['latest_timestamp'], r['close']) for r in rows] == [
        ('FPT', T3, 30.0),
        ('SHS', T1, 5.0),
    ]
    assert [r['symbol'] for r in store.latest_bars(exchange='HNX')] == ['SHS']


# ============================================================================
# INDICATORS
# ============================================================================

def test_indicator_requires_price_bar(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker(description='FPT Corp'))
    store.upsert_price_bar(make_bar(T1))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.upsert_indicator(make_indicator(T2))

    assert exc_info.value.entity == 'Indicator'
    assert exc_info.value.constraint == 'price bar does not exist'
    assert store.latest_indicator('FPT', 'HOSE', 'one-day', 'SMA20') is None
    assert store.indicator_series('FPT', 'HOSE', 'one-day', 'SMA20') == []


def test_indicator_requires_ticker(store, make_indicator):
    with pytest.raises(ConstraintViolation) as exc_info:
        store.upsert_indicator(make_indicator(T1))
    assert exc_info.value.constraint == 'ticker does not exist'


def test_indicator_batch_is_all_or_nothing(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bar(make_bar(T1))

    with pytest.raises(ConstraintViolation):
        store.upsert_indicators([make_indicator(T1), make_indicator(T2)])

    assert store.latest_indicator('FPT', 'HOSE', 'one-day', 'SMA20') is None


def test_indicator_overwrite_and_metadata(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bars('FPT', 'HOSE', 'one-day', [make_bar(T1), make_bar(T2)])

    store.upsert_indicator(make_indicator(T1, value=1.0))
    store.upsert_indicator(make_indicator(T2, value=2.0))
    store.upsert_indicator(make_indicator(T2, value=2.5, metadata={'period': 20, 'source': 'close'}))
    store.upsert_indicator(make_indicator(T2, indicator_type='RSI14', value=None))

    latest = store.latest_indicator('FPT', 'HOSE', 'one-day', 'SMA20')
    assert latest.timestamp == T2
    assert latest.value == 2.5
    assert latest.extra_metadata == {'period': 20, 'source': 'close'}

    rsi = store.latest_indicator('FPT', 'HOSE', 'one-day', 'RSI14')
    assert rsi.value is None
    assert rsi.extra_metadata is None

    series = store.indicator_series('FPT', 'HOSE', 'one-day', 'SMA20')
    assert [(i.timestamp, i.value) for i in series] == [(T1, 1.0), (T2, 2.5)]
    assert len(store.indicator_series('FPT', 'HOSE', 'one-day', 'SMA20', start=T2)) == 1


def test_price_bar_overwrite_keeps_indicators(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bar(make_bar(T1, close=100.0))
    store.upsert_indicator(make_indicator(T1))

    store.upsert_price_bar(make_bar(T1, close=101.0))

    assert store.latest_indicator('FPT', 'HOSE', 'one-day', 'SMA20') is not None


def test_delete_price_bar_removes_its_indicators(store, make_ticker, make_bar, make_indicator):
    store.upsert_ticker(make_ticker())
    store.upsert_price_bars('FPT', 'HOSE', 'one-day', [make_bar(T1), make_bar(T2)])
    store.upsert_indicators([
        make_indicator(T1), make_indicator(T2),
        make_indicator(T1, indicator_type='RSI14'),
    ])

    assert store.delete_price_bar('FPT', 'HOSE', 'one-day', T1) is True
    assert store.delete_price_bar('FPT', 'HOSE', 'one-day', T1) is False

    assert [i.timestamp for i in store.indicator_series('FPT', 'HOSE', 'one-day', 'SMA20')] == [T2]
    assert store.latest_indicator('FPT', 'HOSE', 'one-day', 'RSI14') is None
    assert store.ticker_exists('FPT', 'HOSE')


# ============================================================================
# CASCADES
# ============================================================================

def test_delete_ticker_cascade_is_complete_and_contained(store, make_ticker, make_bar, make_indicator):
    for symbol in ('FPT', 'VNM'):
        store.upsert_ticker(make_ticker(symbol, description=f'{symbol} company'))
        store.upsert_price_bars(symbol, 'HOSE', 'one-day', [make_bar(T1), make_bar(T2), make_bar(T3)])
        store.upsert_indicators([make_indicator(ts, symbol=symbol) for ts in (T1, T2, T3)])
    # Same symbol on another exchange is a different ticker
    store.upsert_ticker(make_ticker('FPT', 'HNX'))
    store.upsert_price_bar(make_bar(T1, exchange='HNX'))

    assert store.delete_ticker('FPT', 'HOSE')

    assert store.series_range('FPT', 'HOSE', 'one-day') == []
    assert store.indicator_series('FPT', 'HOSE', 'one-day', 'SMA20') == []
    assert store.search('FPT') == [('FPT', 'HNX')]

    assert len(store.series_range('VNM', 'HOSE', 'one-day')) == 3
    assert len(store.indicator_series('VNM', 'HOSE', 'one-day', 'SMA20')) == 3
    assert len(store.series_range('FPT', 'HNX', 'one-day')) == 1
    store.verify_search_index()


def test_delete_tickers_by_exchange(store, make_ticker, make_bar):
    store.upsert_tickers([make_ticker('FPT', 'HOSE'), make_ticker('VNM', 'HOSE'), make_ticker('SHS', 'HNX')])
    store.upsert_price_bar(make_bar(T1, symbol='VNM'))

    assert store.delete_tickers_by_exchange('HOSE') == 2

    assert [t.key for t in store.get_all_tickers()] == [('SHS', 'HNX')]
    assert store.series_range('VNM', 'HOSE', 'one-day') == []
    assert store.search('VNM') == []
    store.verify_search_index()


# ============================================================================
# CONCURRENCY
# ============================================================================

def test_concurrent_upserts_of_different_tickers(store, make_ticker, make_bar):
    symbols = [f'S{i:02d}' for i in range(24)]

    def ingest(symbol):
        store.upsert_ticker(make_ticker(symbol, description=f'Company {symbol}'))
        store.upsert_price_bars(symbol, 'HOSE', 'one-day', [make_bar(T1, symbol=symbol), make_bar(T2, symbol=symbol)])
        return symbol

    with ThreadPoolExecutor(max_workers=8) as executor:
        done = list(executor.map(ingest, symbols))

    assert done == symbols
    assert store.ticker_count() == len(symbols)
    for symbol in symbols:
        assert store.get_ticker(symbol, 'HOSE').description == f'Company {symbol}'
        assert store.latest_bar(symbol, 'HOSE', 'one-day').timestamp == T2
    store.verify_search_index()


# ============================================================================
# DATAFRAMES
# ============================================================================

def test_frame_round_trip_through_store(store, make_ticker):
    store.upsert_ticker(make_ticker())
    df = pd.DataFrame({
        'timestamp': pd.to_datetime(['2024-01-03', '2024-01-02', '2024-01-04']),
        'open': [10.0, 9.0, 11.0],
        'high': [11.0, 10.0, 12.0],
        'low': [9.5, 8.5, 10.5],
        'close': [10.5, 9.5, 11.5],
        'volume': [300.0, 200.0, 400.0],
    })

    bars = bars_from_frame(df, 'FPT', 'HOSE', 'one-day')
    assert store.upsert_price_bars('FPT', 'HOSE', 'one-day', bars) == 3

    result = bars_to_frame(store.series_range('FPT', 'HOSE', 'one-day'))
    assert list(result.index) == list(pd.to_datetime(['2024-01-02', '2024-01-03', '2024-01-04']))
    assert list(result['close']) == [9.5, 10.5, 11.5]


def test_bars_from_frame_validates_columns():
    df = pd.DataFrame({'timestamp': [T1], 'open': [1.0], 'close': [1.0]})
    with pytest.raises(ValueError, match='Missing required columns'):
        bars_from_frame(df, 'FPT', 'HOSE', 'one-day')
