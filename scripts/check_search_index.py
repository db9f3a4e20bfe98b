#!/usr/bin/env python3
"""
Search Index Check

Compares the ticker search index with the tickers table and reports any
divergence. Pass --rebuild to rebuild the index after a failed check.
"""

import sys
import os
import logging

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from vnquant_dataset.storage.database import db_manager
from vnquant_dataset.storage.exceptions import SyncDivergence
from vnquant_dataset.storage.repository import MarketDataStore

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    rebuild = '--rebuild' in sys.argv[1:]

    store = MarketDataStore(db_manager)
    store.migrate()

    print("="*80)
    print(f"Checking search index for {store.ticker_count():,} tickers")
    print("="*80)

    try:
        store.verify_search_index()
        print("\n✅ Search index is in sync")
        return 0
    except SyncDivergence as e:
        print(f"\n❌ {e}")
        for label, keys in (('Missing', e.missing), ('Stale', e.stale), ('Orphaned', e.orphaned)):
            for key in keys[:20]:
                print(f"  {label}: {key.symbol}:{key.exchange}")

        if not rebuild:
            print("\nRun with --rebuild to rebuild the index.")
            return 1

    count = store.rebuild_search_index()
    store.verify_search_index()
    print(f"\n✅ Search index rebuilt with {count:,} entries")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    finally:
        db_manager.close()
