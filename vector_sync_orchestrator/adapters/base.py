"""
Adapter interfaces for external systems.

The sync engine and the consistency service depend only on these contracts.
Concrete source, vectorizer and vector store clients implement them.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Sequence

from ..models.source import SourceDescriptor

Record = Dict[str, Any]


@dataclass
class CollectionStats:
    """Size of a vector collection."""
    row_count: int
    size_bytes: int = 0


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(str(value))


def key_expr(field: str, value: Any) -> str:
    """Filter expression matching one primary key value, e.g. ``id == 17``."""
    return f"{field} == {_literal(value)}"


def keys_expr(field: str, values: Sequence[Any]) -> str:
    """Filter expression matching any of ``values``, e.g. ``id in [1, 2]``."""
    return f"{field} in [{', '.join(_literal(v) for v in values)}]"


class SourceAdapter(ABC):
    """
    Read access to a relational source.

    Implementations raise ``AdapterConnectionError`` when the source cannot be
    reached; other exceptions are treated as unknown failures.
    """

    @abstractmethod
    async def test_connection(self, source: SourceDescriptor) -> bool:
        """
        Check that the source accepts connections.

        Args:
            source: Source descriptor

        Returns:
            True if a trivial query succeeded
        """
        pass

    @abstractmethod
    async def query(
        self,
        source: SourceDescriptor,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> List[Record]:
        """
        Run a query and return rows as dictionaries keyed by column name.

        Args:
            source: Source descriptor
            sql: Statement built by ``SqlBuilder``
            params: Positional parameters

        Returns:
            Rows in result order
        """
        pass

    @abstractmethod
    async def count(self, source: SourceDescriptor, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        """Run a ``COUNT(*)`` statement and return its single value."""
        pass

    async def close(self):
        """Release connections held by the adapter."""


class Vectorizer(ABC):
    """Turns record text into a fixed-length embedding."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        pass

    @abstractmethod
    async def vectorize(self, text: str) -> List[float]:
        pass


class VectorStoreAdapter(ABC):
    """
    CRUD and query access to a vector-similarity index.

    Filter expressions use the ``field == value`` and ``field in [...]`` forms
    produced by :func:`key_expr` and :func:`keys_expr`; an empty expression
    matches every row.
    """

    @abstractmethod
    async def check_connection(self) -> bool:
        pass

    @abstractmethod
    async def has_collection(self, name: str) -> bool:
        pass

    @abstractmethod
    async def create_collection(self, name: str, dimension: int, config: Optional[Dict[str, Any]] = None) -> bool:
        """
        Create a collection holding vectors of ``dimension`` floats.

        Args:
            name: Collection name
            dimension: Vector length
            config: Store-specific options such as primary key and vector field

        Returns:
            True if the collection was created
        """
        pass

    @abstractmethod
    async def insert(self, name: str, record: Record) -> bool:
        pass

    @abstractmethod
    async def batch_insert(self, name: str, records: List[Record]) -> bool:
        pass

    @abstractmethod
    async def query(
        self,
        name: str,
        expr: str,
        fields: Optional[List[str]] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Record]:
        """
        Return rows matching ``expr``.

        Args:
            name: Collection name
            expr: Filter expression, empty for all rows
            fields: Fields to return, None for all
            limit: Maximum rows
            offset: Rows to skip

        Returns:
            Matching rows
        """
        pass

    @abstractmethod
    async def update(self, name: str, expr: str, record: Record) -> bool:
        pass

    @abstractmethod
    async def delete(self, name: str, expr: str) -> bool:
        pass

    @abstractmethod
    async def get_stats(self, name: str) -> CollectionStats:
        pass

    async def close(self):
        """Release connections held by the adapter."""
