"""Immutability and system-protection rules for writes.

These checks are role-independent: an admin cannot change an immutable field
or delete a protected system row any more than a customer can. Only updates
and deletes are subject to them; a create has no existing row to protect.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from laneguard.auth.types import Operation

if TYPE_CHECKING:
    from laneguard.metadata.loader import EntityDescriptor


class MutationViolation(str, Enum):
    IMMUTABLE_FIELD = "IMMUTABLE_FIELD"
    SYSTEM_PROTECTED = "SYSTEM_PROTECTED"


@dataclass(frozen=True)
class MutationCheck:
    """Result of validate_mutation.

    Attributes:
        ok: True when the mutation may proceed
        violation: Which rule rejected it, if any
        field: The offending field (immutable or protected), if any
    """

    ok: bool
    violation: MutationViolation | None = None
    field: str | None = None

    @classmethod
    def passed(cls) -> MutationCheck:
        return cls(ok=True)


def is_system_protected(entity: "EntityDescriptor", row: dict[str, Any] | None) -> bool:
    """Check whether a row carries one of the entity's protected values."""
    protection = entity.system_protected
    if protection is None or not row:
        return False
    value = row.get(protection.protected_by_field)
    return value is not None and str(value).lower() in protection.values


def validate_mutation(
    entity: "EntityDescriptor",
    operation: Operation | str,
    existing_row: dict[str, Any] | None = None,
    proposed_changes: dict[str, Any] | None = None,
) -> MutationCheck:
    """Reject writes that touch immutable fields or protected system rows.

    Args:
        entity: The entity descriptor
        operation: The write operation being attempted
        existing_row: The stored row (update/delete)
        proposed_changes: The update payload

    Returns:
        MutationCheck describing the first violation found, or a passing check
    """
    operation = Operation.parse(operation)
    if not operation.is_write:
        return MutationCheck.passed()
    changes = proposed_changes or {}

    if operation is Operation.UPDATE:
        for name in changes:
            if name in entity.immutable_fields:
                return MutationCheck(False, MutationViolation.IMMUTABLE_FIELD, name)

    if operation in (Operation.UPDATE, Operation.DELETE) and is_system_protected(entity, existing_row):
        protection = entity.system_protected
        if operation is Operation.DELETE and protection.prevent_delete:
            return MutationCheck(
                False, MutationViolation.SYSTEM_PROTECTED, protection.protected_by_field
            )
        if operation is Operation.UPDATE:
            for name in changes:
                if name in protection.immutable_fields:
                    return MutationCheck(False, MutationViolation.SYSTEM_PROTECTED, name)

    return MutationCheck.passed()
