"""
DataFrame conversion for price bars.

Ingestion jobs usually hold bars as a pandas DataFrame; these helpers turn a
frame into PriceBar records for MarketDataStore.upsert_price_bars() and turn
query results back into a frame indexed by timestamp.
"""

from typing import List

import pandas as pd

from vnquant_dataset.storage.models import PriceBar

OHLCV_COLUMNS = ['open', 'high', 'low', 'close', 'volume']


def bars_from_frame(df: pd.DataFrame, symbol: str, exchange: str, interval: str) -> List[PriceBar]:
    """
    Build PriceBar records from a frame with a timestamp column or index.

    Rows are sorted by timestamp; duplicate timestamps keep the last row.

    Raises:
        ValueError: required columns are missing or contain nulls
    """
    if 'timestamp' not in df.columns:
        df = df.reset_index()
        if 'timestamp' not in df.columns:
            df = df.rename(columns={df.columns[0]: 'timestamp'})

    missing = [col for col in ['timestamp'] + OHLCV_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    df = df[['timestamp'] + OHLCV_COLUMNS].copy()
    if df.isnull().any().any():
        raise ValueError("Bars contain null values")

    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
    df = df.sort_values('timestamp').drop_duplicates('timestamp', keep='last')

    return [
        PriceBar(
            symbol=symbol,
            exchange=exchange,
            interval=interval,
            timestamp=row.timestamp.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def bars_to_frame(bars: List[PriceBar]) -> pd.DataFrame:
    """OHLCV frame indexed by (naive UTC) timestamp"""
    df = pd.DataFrame(
        [{'timestamp': bar.timestamp, **{col: getattr(bar, col) for col in OHLCV_COLUMNS}} for bar in bars],
        columns=['timestamp'] + OHLCV_COLUMNS,
    )
    df['timestamp'] = pd.to_datetime(df['timestamp'])
    return df.set_index('timestamp')
