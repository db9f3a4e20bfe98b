"""Local persistent store for tickers, OHLCV bars and technical indicators"""

__version__ = '0.1.0'
