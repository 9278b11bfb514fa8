"""Persistence layer - row fetchers and database configuration."""

from laneguard.persistence.config import DatabaseConfig, EngineConfig, create_row_fetcher
from laneguard.persistence.fetcher import MappingRowFetcher, RowFetcher, SQLiteRowFetcher, load_role_rows

__all__ = [
    "DatabaseConfig",
    "EngineConfig",
    "create_row_fetcher",
    "MappingRowFetcher",
    "RowFetcher",
    "SQLiteRowFetcher",
    "load_role_rows",
]
