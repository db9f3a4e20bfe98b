#!/usr/bin/env python3
"""
Database Initialization Script

Migrates the configured database to the latest schema and prints the
migration ledger.
"""

import sys
import os
import logging

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from vnquant_dataset.storage.database import db_manager, DEFAULT_DATABASE_URL
from vnquant_dataset.storage.exceptions import MigrationFailure
from vnquant_dataset.storage.migrations import MigrationManager

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """Initialize database"""
    print("="*80)
    print("VNQuant Dataset - Database Initialization")
    print("="*80)

    # Get database URL from env or use default
    database_url = os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL)

    print(f"\nDatabase URL: {database_url}")

    db_manager.initialize(database_url)
    manager = MigrationManager(db_manager)

    pending = manager.pending()
    if not pending:
        print("\nSchema is up to date. Nothing to do.")
        return

    print("\nPending migrations:")
    for migration in pending:
        print(f"  - {migration.version}  {migration.description}")

    response = input("\nContinue? (yes/no): ")

    if response.lower() not in ['yes', 'y']:
        print("Aborted.")
        return

    try:
        applied = manager.apply_pending()
    except MigrationFailure as e:
        logger.error(f"Failed to migrate database: {e}")
        sys.exit(1)

    print(f"\n✅ Applied {len(applied)} migration(s)")
    print("\nLedger:")
    for version in manager.applied_versions():
        print(f"  - {version}")

    print("\nDatabase is ready to use!")


if __name__ == "__main__":
    try:
        main()
    finally:
        db_manager.close()
