"""Engine configuration and row fetcher factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from laneguard.persistence.fetcher import SQLiteRowFetcher

ROLE_SOURCES = ("metadata", "database")


def default_base_path() -> Path:
    """Project root: the parent of ``backend/`` when run from there."""
    cwd = Path.cwd()
    return cwd.parent if cwd.name == "backend" else cwd


@dataclass
class DatabaseConfig:
    """Database connection configuration.

    Only sqlite:/// URLs are supported for row fetching.
    """

    url: str

    @classmethod
    def from_env(cls) -> DatabaseConfig | None:
        """Create config from environment variables.

        Resolution order:
        1. DATABASE_URL env var (standard)
        2. LANEGUARD_DB_PATH env var (converted to sqlite:/// URL)
        3. None: no database, parents must come from an injected fetcher
        """
        url = os.environ.get("DATABASE_URL")
        if url:
            return cls(url=url)

        db_path = os.environ.get("LANEGUARD_DB_PATH")
        if db_path:
            return cls(url=f"sqlite:///{db_path}")

        return None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def sqlite_path(self) -> str:
        """Extract path from sqlite:///path (":memory:" when empty)."""
        return self.url.replace("sqlite:///", "", 1) or ":memory:"


@dataclass
class EngineConfig:
    """Process-level configuration for the access engine."""

    metadata_path: Path
    database: DatabaseConfig | None = None
    roles_source: str = "metadata"

    @classmethod
    def from_env(cls, base_path: Path | None = None) -> EngineConfig:
        """Create config from environment variables.

        LANEGUARD_METADATA_PATH: metadata directory (default ``<base>/metadata``)
        LANEGUARD_ROLES_SOURCE: ``metadata`` (roles.yaml) or ``database`` (roles table)
        DATABASE_URL / LANEGUARD_DB_PATH: see DatabaseConfig.from_env
        """
        base_path = base_path or default_base_path()
        metadata_path = Path(os.environ.get("LANEGUARD_METADATA_PATH") or base_path / "metadata")

        roles_source = os.environ.get("LANEGUARD_ROLES_SOURCE", "metadata").lower()
        if roles_source not in ROLE_SOURCES:
            raise ValueError(
                f"Unsupported LANEGUARD_ROLES_SOURCE {roles_source!r}; expected one of {', '.join(ROLE_SOURCES)}"
            )

        database = DatabaseConfig.from_env()
        if roles_source == "database" and database is None:
            raise ValueError("LANEGUARD_ROLES_SOURCE=database requires DATABASE_URL or LANEGUARD_DB_PATH")

        return cls(metadata_path=metadata_path, database=database, roles_source=roles_source)


def create_row_fetcher(config: DatabaseConfig) -> SQLiteRowFetcher:
    """Create a row fetcher based on the database URL scheme.

    Args:
        config: Database configuration with URL.

    Returns:
        A SQLiteRowFetcher instance (not yet connected).

    Raises:
        ValueError: For unsupported URL schemes.
    """
    if config.is_sqlite:
        return SQLiteRowFetcher(config.sqlite_path)

    raise ValueError(f"Unsupported database URL scheme: {config.url}")
