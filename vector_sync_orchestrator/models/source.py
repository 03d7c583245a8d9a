"""
Source descriptor model for Vector Sync Orchestrator

Typed connection and table description handed to source adapters.
"""

import re
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SourceType(Enum):
    """Relational engines with a known SQL dialect."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class SourceDescriptor(BaseModel):
    """Connection settings plus the table a job reads from."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    source_type: SourceType = SourceType.POSTGRESQL
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    db_schema: Optional[str] = None
    table: str
    primary_key: str = "id"
    increment_column: Optional[str] = None
    text_fields: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("table", "primary_key", "increment_column", "db_schema")
    @classmethod
    def _check_identifier(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _IDENTIFIER.match(value):
            raise ValueError(f"invalid SQL identifier: {value!r}")
        return value

    @field_validator("text_fields")
    @classmethod
    def _check_text_fields(cls, value: List[str]) -> List[str]:
        for name in value:
            if not _IDENTIFIER.match(name):
                raise ValueError(f"invalid SQL identifier: {name!r}")
        return value

    @model_validator(mode="after")
    def _default_mysql_port(self) -> "SourceDescriptor":
        if self.source_type is SourceType.MYSQL and self.port == 5432:
            object.__setattr__(self, "port", 3306)
        return self

    @property
    def qualified_table(self) -> str:
        if self.db_schema:
            return f"{self.db_schema}.{self.table}"
        return self.table

    def dsn(self) -> str:
        """Connection URL without the password, suitable for logs."""
        user = f"{self.username}@" if self.username else ""
        return f"{self.source_type.value}://{user}{self.host}:{self.port}/{self.database}"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"password"})
