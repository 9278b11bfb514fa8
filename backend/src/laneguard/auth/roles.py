"""Role hierarchy with accumulate-upward semantics.

Roles are totally ordered by priority; a higher role automatically holds
every permission granted to the roles below it. Metadata refers to roles by
name, but names are resolved to Role objects when the registry is built so
decisions never compare raw strings.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union

import yaml

from laneguard.errors import ConfigIssue, ConfigurationError

logger = logging.getLogger(__name__)


class Sentinel(Enum):
    """Requirement values that are not roles.

    NONE: nobody may perform the operation through the normal path
    SYSTEM: only internal processes may perform it
    """

    NONE = "none"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class Role:
    """A named role. Ordering and equality use the priority only."""

    name: str = field(compare=False)
    priority: int
    description: str = field(default="", compare=False)
    is_system_role: bool = field(default=False, compare=False)

    def __str__(self) -> str:
        return self.name


# A field/entity requirement: a minimum role or one of the sentinels
Requirement = Union[Role, Sentinel]

# Bootstrap hierarchy, matching the seeded roles table
DEFAULT_ROLES: tuple[Role, ...] = (
    Role("customer", 1, "Customer portal access to own records", True),
    Role("technician", 2, "Field technician: assigned work and inventory", True),
    Role("dispatcher", 3, "Schedules and assigns work orders", True),
    Role("manager", 4, "Manages staff, billing and contracts", True),
    Role("admin", 5, "Full system access", True),
)


class RoleHierarchy:
    """Immutable, ordered set of roles.

    Example:
        hierarchy = RoleHierarchy.default()
        hierarchy.satisfies("dispatcher", "technician")  # True
        hierarchy.satisfies("bogus", "customer")          # False
    """

    def __init__(self, roles: Iterable[Role]):
        ordered = sorted(roles, key=lambda r: r.priority)
        issues: list[ConfigIssue] = []

        if not ordered:
            issues.append(ConfigIssue("roles", "", "At least one role must be defined"))

        by_name: dict[str, Role] = {}
        seen_priorities: dict[int, str] = {}
        for role in ordered:
            name = role.name.lower()
            if not name or name in {s.value for s in Sentinel}:
                issues.append(ConfigIssue("roles", name or "?", "Reserved or empty role name"))
                continue
            if role.priority < 1:
                issues.append(ConfigIssue("roles", name, f"Invalid priority {role.priority}; must be >= 1"))
            if name in by_name:
                issues.append(ConfigIssue("roles", name, "Duplicate role name"))
            if role.priority in seen_priorities:
                issues.append(
                    ConfigIssue(
                        "roles",
                        name,
                        f"Duplicate priority {role.priority} (also used by "
                        f"'{seen_priorities[role.priority]}'); each role must have a unique priority",
                    )
                )
            seen_priorities[role.priority] = name
            by_name[name] = role if role.name == name else Role(
                name, role.priority, role.description, role.is_system_role
            )

        if issues:
            raise ConfigurationError(issues)

        self._roles: tuple[Role, ...] = tuple(by_name[r.name.lower()] for r in ordered)
        self._by_name: Mapping[str, Role] = by_name

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def default(cls) -> RoleHierarchy:
        return cls(DEFAULT_ROLES)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> RoleHierarchy:
        """Build from database rows (name, priority, description, is_system_role)."""
        roles = []
        for row in rows:
            try:
                priority = int(row["priority"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigurationError(
                    ConfigIssue("roles", str(row.get("name", "?")), f"Invalid priority: {exc}")
                ) from exc
            roles.append(
                Role(
                    name=str(row["name"]).lower(),
                    priority=priority,
                    description=row.get("description") or f"{row['name']} role",
                    is_system_role=bool(row.get("is_system_role", False)),
                )
            )
        hierarchy = cls(roles)
        logger.info("Role hierarchy loaded from rows: %s", " -> ".join(hierarchy.names))
        return hierarchy

    @classmethod
    def from_yaml(cls, path: Path) -> RoleHierarchy:
        """Load the ``roles:`` list from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        rows = [
            {
                "name": r.get("name", ""),
                "priority": r.get("priority"),
                "description": r.get("description", ""),
                "is_system_role": r.get("systemRole", False),
            }
            for r in data.get("roles", [])
        ]
        return cls.from_rows(rows)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._by_name

    @property
    def names(self) -> list[str]:
        """Role names, lowest priority first."""
        return [r.name for r in self._roles]

    @property
    def lowest(self) -> Role:
        return self._roles[0]

    @property
    def highest(self) -> Role:
        return self._roles[-1]

    def get(self, name: str | Role | None) -> Role | None:
        """Return the Role for a name (case-insensitive), or None if unknown."""
        if isinstance(name, Role):
            return self._by_name.get(name.name)
        if not name or not isinstance(name, str):
            return None
        return self._by_name.get(name.lower())

    def priority(self, name: str | None) -> int | None:
        role = self.get(name)
        return role.priority if role else None

    def system_role_names(self) -> frozenset[str]:
        """Names of roles flagged as system roles (seeded, protected)."""
        return frozenset(r.name for r in self._roles if r.is_system_role)

    def parse_requirement(self, value: Any) -> Requirement | None:
        """Resolve a metadata value to a Requirement, or None if invalid."""
        if isinstance(value, (Role, Sentinel)):
            return value
        if not isinstance(value, str):
            return None
        lowered = value.lower()
        for sentinel in Sentinel:
            if lowered == sentinel.value:
                return sentinel
        return self.get(lowered)

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def satisfies(
        self,
        subject_role: str | Role | None,
        required: Requirement | str | None,
        *,
        internal: bool = False,
    ) -> bool:
        """Check whether a subject's role meets a requirement.

        ``none`` is never satisfied. ``system`` is satisfied only by the
        internal pseudo-subject, which also satisfies every role requirement.
        Unknown role names on either side fail closed.
        """
        requirement = self.parse_requirement(required)
        if requirement is None or requirement is Sentinel.NONE:
            return False
        if internal:
            return True
        if requirement is Sentinel.SYSTEM:
            return False

        role = self.get(subject_role)
        if role is None:
            return False
        return role.priority >= requirement.priority
