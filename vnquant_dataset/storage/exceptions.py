"""
Storage Errors

Every error raised by the storage layer derives from StoreError and carries
the key of the entity involved so callers can retry or report.
"""


class StoreError(Exception):
    """Base class for storage errors"""


class ConstraintViolation(StoreError):
    """A write referenced a parent row (ticker or price bar) that does not exist"""

    def __init__(self, entity, key, constraint):
        self.entity = entity
        self.key = tuple(key)
        self.constraint = constraint
        super().__init__(f"{entity} {self.key} rejected: {constraint}")


class MigrationFailure(StoreError):
    """A migration step or its post-condition failed and was rolled back"""

    def __init__(self, version, reason):
        self.version = version
        self.reason = reason
        super().__init__(f"Migration {version} failed: {reason}")


class SyncDivergence(StoreError):
    """
    The search index no longer matches the tickers table.

    Attributes:
        missing: ticker keys with no index entry
        stale: ticker keys whose index entry differs from the current row
        orphaned: index keys with no ticker
    """

    def __init__(self, missing=(), stale=(), orphaned=()):
        self.missing = sorted(missing)
        self.stale = sorted(stale)
        self.orphaned = sorted(orphaned)
        super().__init__(
            f"Search index out of sync: {len(self.missing)} missing, "
            f"{len(self.stale)} stale, {len(self.orphaned)} orphaned"
        )


class NotFound(StoreError, LookupError):
    """The requested key does not exist"""

    def __init__(self, entity, key):
        self.entity = entity
        self.key = tuple(key)
        super().__init__(f"{entity} {self.key} not found")
