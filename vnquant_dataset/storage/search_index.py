"""
Ticker Search Index

An inverted index over the text fields of the tickers table, kept in two
tables:

    ticker_search_documents  one row per ticker holding the tokenized fields
    ticker_search_postings   token -> (field, ticker, frequency)

The index is maintained synchronously from a flush hook on write sessions, so
every ticker insert, update or delete changes the index inside the same
transaction as the base row.
"""

import re
import logging
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Table, Column, Integer, String, Text,
    ForeignKeyConstraint, Index, select, delete
)

from vnquant_dataset.storage.exceptions import SyncDivergence
from vnquant_dataset.storage.models import Base, Ticker, TickerKey

logger = logging.getLogger(__name__)

SEARCH_FIELDS = (
    'symbol', 'exchange', 'description', 'currency',
    'country', 'market_type', 'industry', 'sector',
)

# Integer weights keep scores exact regardless of row order
FIELD_WEIGHTS = {
    'symbol': 10,
    'exchange': 2,
    'description': 5,
    'currency': 1,
    'country': 1,
    'market_type': 1,
    'industry': 2,
    'sector': 2,
}

_TOKEN_RE = re.compile(r'\w+')

SEARCH_INDEX_HOOK = 'ticker_search_index'


search_documents = Table(
    'ticker_search_documents', Base.metadata,
    Column('ticker_symbol', String(10), primary_key=True),
    Column('ticker_exchange', String(10), primary_key=True),
    *(Column(field, Text) for field in SEARCH_FIELDS),
)

search_postings = Table(
    'ticker_search_postings', Base.metadata,
    Column('token', Text, primary_key=True),
    Column('field', String(20), primary_key=True),
    Column('ticker_symbol', String(10), primary_key=True),
    Column('ticker_exchange', String(10), primary_key=True),
    Column('frequency', Integer, nullable=False),
    ForeignKeyConstraint(
        ['ticker_symbol', 'ticker_exchange'],
        ['ticker_search_documents.ticker_symbol', 'ticker_search_documents.ticker_exchange'],
        ondelete='CASCADE'
    ),
    Index('idx_search_postings_ticker', 'ticker_symbol', 'ticker_exchange'),
)


def tokenize(text: Optional[str]) -> List[str]:
    """Split text into case-folded word tokens"""
    if not text:
        return []
    return _TOKEN_RE.findall(str(text).casefold())


def parse_query(query: str) -> List[Tuple[str, bool]]:
    """
    Parse a search query into (token, is_prefix) terms.

    Terms are whitespace separated and all of them must match. A trailing
    '*' turns the last token of a term into a prefix match.
    """
    terms = []
    for raw in query.split():
        prefix = raw.endswith('*')
        tokens = tokenize(raw)
        for i, token in enumerate(tokens):
            terms.append((token, prefix and i == len(tokens) - 1))
    return terms


def document_row(key: TickerKey, values: Dict[str, Optional[str]], fields=SEARCH_FIELDS) -> dict:
    row = {'ticker_symbol': key.symbol, 'ticker_exchange': key.exchange}
    for field in fields:
        row[field] = ' '.join(tokenize(values.get(field)))
    return row


def posting_rows(key: TickerKey, values: Dict[str, Optional[str]], fields=SEARCH_FIELDS) -> List[dict]:
    rows = []
    for field in fields:
        for token, count in sorted(Counter(tokenize(values.get(field))).items()):
            rows.append({
                'token': token,
                'field': field,
                'ticker_symbol': key.symbol,
                'ticker_exchange': key.exchange,
                'frequency': count,
            })
    return rows


def ticker_values(ticker) -> Dict[str, Optional[str]]:
    return {field: getattr(ticker, field) for field in SEARCH_FIELDS}


class TickerSearchIndex:
    """Keeps the search tables a pure function of the tickers table"""

    def attach(self, db_manager):
        """
        Hook index maintenance into every write session of db_manager.

        A manager runs a single index hook; attaching another index replaces
        the previous one.
        """
        db_manager.add_flush_hook(SEARCH_INDEX_HOOK, self.sync_session)

    # ------------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------------

    def sync_session(self, session):
        """Apply the ticker changes of a just-flushed session to the index"""
        deleted = [obj for obj in session.deleted if isinstance(obj, Ticker)]
        new = [obj for obj in session.new if isinstance(obj, Ticker)]
        dirty = [obj for obj in session.dirty if isinstance(obj, Ticker)]
        if not (deleted or new or dirty):
            return

        connection = session.connection()
        for ticker in deleted:
            self.remove(connection, ticker.key)
        for ticker in new:
            self.add(connection, ticker)
        for ticker in dirty:
            self.replace(connection, ticker)

    def add(self, connection, ticker):
        """Insert the entry for a new ticker"""
        _insert_entry(connection, ticker.key, ticker_values(ticker), SEARCH_FIELDS)
        logger.debug(f"Indexed ticker {ticker.symbol}:{ticker.exchange}")

    def remove(self, connection, key: TickerKey):
        """Delete the entry for a ticker"""
        connection.execute(
            delete(search_postings).where(
                search_postings.c.ticker_symbol == key.symbol,
                search_postings.c.ticker_exchange == key.exchange,
            )
        )
        connection.execute(
            delete(search_documents).where(
                search_documents.c.ticker_symbol == key.symbol,
                search_documents.c.ticker_exchange == key.exchange,
            )
        )
        logger.debug(f"Unindexed ticker {key.symbol}:{key.exchange}")

    def replace(self, connection, ticker):
        """Drop the old entry, then index the ticker's current values"""
        self.remove(connection, ticker.key)
        self.add(connection, ticker)

    def rebuild(self, connection) -> int:
        """Rebuild the whole index from the tickers table"""
        connection.execute(delete(search_postings))
        connection.execute(delete(search_documents))
        count = index_fields(connection, SEARCH_FIELDS)
        logger.info(f"Search index rebuilt with {count} entries")
        return count

    # ------------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------------

    def search(self, session, query: str, limit: Optional[int] = None) -> List[TickerKey]:
        """
        Find tickers matching every term of query.

        Results are ranked by weighted term frequency, highest first, with
        ties broken by (symbol, exchange).
        """
        terms = parse_query(query)
        if not terms:
            return []

        scores = defaultdict(int)
        matched = defaultdict(set)

        for position, (token, prefix) in enumerate(terms):
            if prefix:
                condition = search_postings.c.token.startswith(token, autoescape=True)
            else:
                condition = search_postings.c.token == token

            rows = session.execute(
                select(
                    search_postings.c.ticker_symbol,
                    search_postings.c.ticker_exchange,
                    search_postings.c.field,
                    search_postings.c.frequency,
                ).where(condition)
            )
            for symbol, exchange, field, frequency in rows:
                key = TickerKey(symbol, exchange)
                scores[key] += FIELD_WEIGHTS[field] * frequency
                matched[key].add(position)

        hits = [key for key in scores if len(matched[key]) == len(terms)]
        hits.sort(key=lambda key: (-scores[key], key.symbol, key.exchange))
        if limit is not None:
            hits = hits[:limit]
        return hits

    def verify(self, session):
        """
        Compare the index with the tickers table.

        Raises:
            SyncDivergence: the index does not equal the projection of the
                current tickers. Nothing is repaired.
        """
        expected_docs = {}
        expected_postings = defaultdict(set)
        for ticker in session.query(Ticker):
            values = ticker_values(ticker)
            expected_docs[ticker.key] = document_row(ticker.key, values)
            for posting in posting_rows(ticker.key, values):
                expected_postings[ticker.key].add(_posting_tuple(posting))

        actual_docs = {}
        for row in session.execute(select(search_documents)).mappings():
            key = TickerKey(row['ticker_symbol'], row['ticker_exchange'])
            actual_docs[key] = {name: row[name] or '' for name in row.keys()}
            actual_docs[key]['ticker_symbol'] = key.symbol
            actual_docs[key]['ticker_exchange'] = key.exchange

        actual_postings = defaultdict(set)
        for row in session.execute(select(search_postings)).mappings():
            key = TickerKey(row['ticker_symbol'], row['ticker_exchange'])
            actual_postings[key].add(_posting_tuple(row))

        missing = set(expected_docs) - set(actual_docs)
        orphaned = (set(actual_docs) | set(actual_postings)) - set(expected_docs)
        stale = {
            key for key in set(expected_docs) & set(actual_docs)
            if expected_docs[key] != actual_docs[key]
            or expected_postings[key] != actual_postings[key]
        }

        if missing or stale or orphaned:
            error = SyncDivergence(missing, stale, orphaned)
            logger.error(f"{error}: missing={error.missing} stale={error.stale} orphaned={error.orphaned}")
            raise error

        logger.info(f"Search index consistent with {len(expected_docs)} tickers")


def _posting_tuple(posting) -> Tuple[str, str, int]:
    return posting['token'], posting['field'], posting['frequency']


def _insert_entry(connection, key: TickerKey, values, fields):
    connection.execute(search_documents.insert().values(document_row(key, values, fields)))
    postings = posting_rows(key, values, fields)
    if postings:
        connection.execute(search_postings.insert(), postings)


def index_fields(connection, fields: Iterable[str]) -> int:
    """
    Populate the search tables from the tickers table for the given fields.

    Migrations pass their own field list, since an older index layout can
    hold fewer columns than SEARCH_FIELDS.
    """
    fields = tuple(fields)
    rows = connection.execute(select(Ticker.__table__)).mappings().all()
    for row in rows:
        _insert_entry(connection, TickerKey(row['symbol'], row['exchange']), row, fields)
    return len(rows)
