"""Immutable registry of resolved entity descriptors.

The registry is built once at startup and is read-only afterwards, so it can
be shared across concurrent decisions without locking.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from laneguard.auth.roles import RoleHierarchy
from laneguard.errors import ConfigIssue, ConfigurationError
from laneguard.metadata.loader import DescriptorResolver, EntityDescriptor, MetadataLoader

logger = logging.getLogger(__name__)

# Name under which systemProtected.valuesFrom finds the system role names
SYSTEM_ROLES_SOURCE = "system_roles"


class EntityRegistry:
    """Lookup of EntityDescriptor by entity key.

    Example:
        registry = EntityRegistry.build(raw_entities, RoleHierarchy.default())
        work_order = registry["work_order"]
    """

    def __init__(self, entities: Mapping[str, EntityDescriptor], hierarchy: RoleHierarchy):
        self._entities: Mapping[str, EntityDescriptor] = MappingProxyType(dict(entities))
        self._by_table: Mapping[str, EntityDescriptor] = MappingProxyType(
            {e.table_name: e for e in entities.values()}
        )
        self.hierarchy = hierarchy

    @classmethod
    def build(
        cls,
        raw_entities: Mapping[str, Mapping[str, Any]],
        hierarchy: RoleHierarchy,
        protected_values: Mapping[str, Iterable[str]] | None = None,
        *,
        sources: Mapping[str, Path] | None = None,
        issues: Iterable[ConfigIssue] = (),
    ) -> EntityRegistry:
        """Resolve raw descriptors and validate them as a whole.

        Args:
            raw_entities: Entity key -> raw descriptor dict
            hierarchy: Role hierarchy names are resolved against
            protected_values: Named value sets for ``systemProtected.valuesFrom``;
                ``system_roles`` defaults to the hierarchy's system roles
            sources: Entity key -> file the descriptor came from
            issues: Issues already found while loading (e.g. duplicates)

        Raises:
            ConfigurationError: With every issue found, if any
        """
        value_sources: dict[str, Iterable[str]] = {
            SYSTEM_ROLES_SOURCE: hierarchy.system_role_names()
        }
        value_sources.update(protected_values or {})
        resolver = DescriptorResolver(hierarchy, value_sources)

        all_issues = list(issues)
        entities: dict[str, EntityDescriptor] = {}
        for key, data in raw_entities.items():
            source = str(sources[key]) if sources and key in sources else None
            descriptor, found = resolver.resolve(key, data, source)
            all_issues.extend(found)
            if descriptor is not None:
                entities[key] = descriptor

        all_issues.extend(_cross_entity_issues(entities))
        if all_issues:
            for issue in all_issues:
                logger.error("Metadata issue: %s", issue)
            raise ConfigurationError(all_issues)

        registry = cls(entities, hierarchy)
        logger.info(
            "Entity registry built: %d entities, roles %s",
            len(registry),
            " -> ".join(hierarchy.names),
        )
        return registry

    @classmethod
    def from_directory(
        cls,
        metadata_path: Path,
        hierarchy: RoleHierarchy | None = None,
        protected_values: Mapping[str, Iterable[str]] | None = None,
    ) -> EntityRegistry:
        """Load ``entities/*.yaml`` (and ``roles.yaml`` unless a hierarchy is given)."""
        loader = MetadataLoader(metadata_path)
        loader.load_all()
        if hierarchy is None:
            hierarchy = loader.load_roles()
        return cls.build(
            loader.raw_entities,
            hierarchy,
            protected_values,
            sources=loader.sources,
            issues=loader.issues,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, key: str) -> EntityDescriptor | None:
        return self._entities.get(key)

    def __getitem__(self, key: str) -> EntityDescriptor:
        return self._entities[key]

    def __contains__(self, key: object) -> bool:
        return key in self._entities

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    def keys(self) -> list[str]:
        return sorted(self._entities)

    def by_table(self, table_name: str) -> EntityDescriptor | None:
        return self._by_table.get(table_name)


def _cross_entity_issues(entities: Mapping[str, EntityDescriptor]) -> list[ConfigIssue]:
    """Checks that need every descriptor: table names and references."""
    issues: list[ConfigIssue] = []
    tables: dict[str, str] = {}
    for key, entity in entities.items():
        if entity.table_name in tables:
            issues.append(
                ConfigIssue(
                    key,
                    "tableName",
                    f"Table '{entity.table_name}' already used by entity '{tables[entity.table_name]}'",
                )
            )
        else:
            tables[entity.table_name] = key

    for key, entity in entities.items():
        for rel in entity.relationships.values():
            if rel.type == "polymorphic":
                for parent in rel.parents:
                    if parent not in entities:
                        issues.append(
                            ConfigIssue(key, f"relationships.{rel.name}.parents", f"Unknown entity '{parent}'")
                        )
            elif rel.type == "belongsTo" and rel.table not in tables:
                issues.append(
                    ConfigIssue(key, f"relationships.{rel.name}.table", f"Unknown table '{rel.table}'")
                )

        for i, dep in enumerate(entity.dependents):
            if dep.table not in tables:
                issues.append(ConfigIssue(key, f"dependents[{i}].table", f"Unknown table '{dep.table}'"))

        for name, field_def in entity.fields.items():
            if field_def.related_entity and field_def.related_entity not in entities:
                issues.append(
                    ConfigIssue(
                        key,
                        f"fields.{name}.relatedEntity",
                        f"Unknown entity '{field_def.related_entity}'",
                    )
                )
    return issues
