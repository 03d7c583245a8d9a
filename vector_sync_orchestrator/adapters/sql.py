"""
SQL statements issued against relational sources.

Identifiers come from a validated ``SourceDescriptor``; values are always
passed as parameters in the dialect's placeholder style.
"""

from typing import Any, List, Sequence, Tuple

from ..models.source import SourceDescriptor, SourceType

Statement = Tuple[str, List[Any]]


class SqlBuilder:
    """Builds the statements the sync engine and consistency service need."""

    def __init__(self, source: SourceDescriptor):
        self.source = source
        self._mysql = source.source_type is SourceType.MYSQL

    def quote(self, identifier: str) -> str:
        if self._mysql:
            return f"`{identifier}`"
        return f'"{identifier}"'

    def placeholder(self, index: int) -> str:
        """Placeholder for the 1-based parameter ``index``."""
        return "%s" if self._mysql else f"${index}"

    @property
    def table(self) -> str:
        if self.source.db_schema:
            return f"{self.quote(self.source.db_schema)}.{self.quote(self.source.table)}"
        return self.quote(self.source.table)

    @property
    def pk(self) -> str:
        return self.quote(self.source.primary_key)

    def select_all(self) -> Statement:
        return f"SELECT * FROM {self.table} ORDER BY {self.pk}", []

    def select_since(self, watermark: Any) -> Statement:
        """Rows whose increment column is past ``watermark`` (all rows when None)."""
        column = self.quote(self.source.increment_column)
        if watermark is None:
            return f"SELECT * FROM {self.table} ORDER BY {column}, {self.pk}", []
        return (
            f"SELECT * FROM {self.table} WHERE {column} > {self.placeholder(1)} ORDER BY {column}, {self.pk}",
            [watermark]
        )

    def count(self) -> Statement:
        return f"SELECT COUNT(*) FROM {self.table}", []

    def sample(self, limit: int, offset: int = 0) -> Statement:
        """Window of ``limit`` rows in key order starting at ``offset``."""
        sql = f"SELECT * FROM {self.table} ORDER BY {self.pk} LIMIT {int(limit)}"
        if offset > 0:
            sql += f" OFFSET {int(offset)}"
        return sql, []

    def select_by_keys(self, keys: Sequence[Any]) -> Statement:
        if not keys:
            raise ValueError("select_by_keys needs at least one key")
        marks = ", ".join(self.placeholder(i) for i in range(1, len(keys) + 1))
        return f"SELECT * FROM {self.table} WHERE {self.pk} IN ({marks})", list(keys)

    def key_page(self, limit: int, offset: int) -> Statement:
        return (
            f"SELECT {self.pk} FROM {self.table} ORDER BY {self.pk} LIMIT {int(limit)} OFFSET {int(offset)}",
            []
        )
