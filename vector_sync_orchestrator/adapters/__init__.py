"""
Adapters for the external systems a sync job touches.
"""

from .base import (
    SourceAdapter,
    Vectorizer,
    VectorStoreAdapter,
    CollectionStats,
    Record,
    key_expr,
    keys_expr
)
from .sql import SqlBuilder
from .postgres import PostgresSourceAdapter

__all__ = [
    "SourceAdapter",
    "Vectorizer",
    "VectorStoreAdapter",
    "CollectionStats",
    "Record",
    "key_expr",
    "keys_expr",
    "SqlBuilder",
    "PostgresSourceAdapter"
]
