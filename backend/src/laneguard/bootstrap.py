"""Initialize the access engine for a host process.

Loading and validating metadata is the startup barrier: any ConfigurationError
propagates and should abort the process before it serves a request.
"""

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from laneguard.auth.engine import AccessEngine
from laneguard.auth.roles import RoleHierarchy
from laneguard.metadata.loader import MetadataLoader
from laneguard.metadata.registry import EntityRegistry
from laneguard.persistence import (
    EngineConfig,
    RowFetcher,
    SQLiteRowFetcher,
    create_row_fetcher,
    load_role_rows,
)

logger = logging.getLogger(__name__)


@dataclass
class LaneguardServices:
    """Container for the initialized engine and what it was built from."""

    config: EngineConfig
    hierarchy: RoleHierarchy
    registry: EntityRegistry
    engine: AccessEngine
    fetcher: RowFetcher | None = None

    def close(self) -> None:
        if isinstance(self.fetcher, SQLiteRowFetcher):
            self.fetcher.close()


def load_hierarchy(config: EngineConfig) -> RoleHierarchy:
    """Resolve the role hierarchy from the configured source."""
    if config.roles_source == "database":
        with closing(sqlite3.connect(config.database.sqlite_path)) as conn:
            return RoleHierarchy.from_rows(load_role_rows(conn))

    return MetadataLoader(config.metadata_path).load_roles()


def initialize_engine(
    base_path: Path | None = None,
    *,
    config: EngineConfig | None = None,
    fetch_row: RowFetcher | None = None,
) -> LaneguardServices:
    """Load roles and metadata, validate everything, and build the engine.

    Args:
        base_path: Project root used for default paths
        config: Explicit configuration (read from the environment if omitted)
        fetch_row: Parent row fetcher; a SQLite fetcher is created from the
            configured database when omitted

    Raises:
        ConfigurationError: If roles or entity metadata are invalid
    """
    if config is None:
        config = EngineConfig.from_env(base_path)

    hierarchy = load_hierarchy(config)
    registry = EntityRegistry.from_directory(config.metadata_path, hierarchy)

    if fetch_row is None and config.database is not None:
        fetcher = create_row_fetcher(config.database)
        fetcher.connect()
        fetch_row = fetcher

    if fetch_row is None:
        logger.warning("No row fetcher configured; parent_entity_access rows will be denied")

    engine = AccessEngine(registry, fetch_row=fetch_row)
    logger.info("Access engine ready (%d entities)", len(registry))
    return LaneguardServices(
        config=config,
        hierarchy=hierarchy,
        registry=registry,
        engine=engine,
        fetcher=fetch_row,
    )
