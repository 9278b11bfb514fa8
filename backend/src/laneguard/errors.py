"""Error taxonomy for the access control engine.

- ConfigurationError: malformed metadata, raised at load time only
- AuthorizationDenied: a denied decision, for callers that prefer exceptions
- IntegrityError: orphaned polymorphic data found during RLS evaluation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from laneguard.auth.engine import AccessDecision


class LaneguardError(Exception):
    """Base class for all engine errors."""


@dataclass(frozen=True)
class ConfigIssue:
    """A single invariant violation found while building the registry.

    Attributes:
        entity: Entity key the issue belongs to ("" for global issues)
        path: Dotted location inside the descriptor, e.g. "fieldAccess.name.read"
        message: Human-readable description
    """

    entity: str
    path: str
    message: str

    def __str__(self) -> str:
        where = ".".join(p for p in (self.entity, self.path) if p)
        return f"{where}: {self.message}" if where else self.message


class ConfigurationError(LaneguardError):
    """Raised when metadata violates one or more load-time invariants.

    All issues found in a load pass are collected and reported together so
    an operator can fix every descriptor in one go.
    """

    def __init__(self, issues: list[ConfigIssue] | ConfigIssue | str):
        if isinstance(issues, str):
            issues = [ConfigIssue(entity="", path="", message=issues)]
        elif isinstance(issues, ConfigIssue):
            issues = [issues]
        self.issues: list[ConfigIssue] = list(issues)
        lines = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"Entity metadata validation failed ({len(self.issues)} issue(s)):\n{lines}")


class AuthorizationDenied(LaneguardError):
    """A request was denied by one of the decision gates."""

    def __init__(self, decision: "AccessDecision"):
        self.decision = decision
        detail = f" ({decision.denied_field})" if decision.denied_field else ""
        super().__init__(f"{decision.reason}{detail}")


class IntegrityError(LaneguardError):
    """A polymorphic child references a parent that cannot be resolved."""

    def __init__(self, entity: str, message: str):
        self.entity = entity
        super().__init__(f"{entity}: {message}")
