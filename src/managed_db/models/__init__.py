"""Option and metadata models."""

from managed_db.models.options import DEFAULT_TRANSACTION_TIMEOUT, PoolOptions, TransactionOptions
from managed_db.models.session import SessionMetadata

__all__ = ["DEFAULT_TRANSACTION_TIMEOUT", "PoolOptions", "SessionMetadata", "TransactionOptions"]
