"""Response and payload field filtering."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from laneguard.auth.permissions import can_access_field
from laneguard.auth.roles import RoleHierarchy
from laneguard.auth.types import Operation, Subject

if TYPE_CHECKING:
    from laneguard.metadata.loader import EntityDescriptor


def filter_for_read(
    entity: "EntityDescriptor",
    subject: Subject,
    row: dict[str, Any],
    hierarchy: RoleHierarchy,
) -> dict[str, Any]:
    """Project a row down to the fields the subject may read.

    Sensitive fields are removed for every subject, including the internal
    one, and keys with no access entry are dropped. The input is not modified.

    Args:
        entity: The entity descriptor
        subject: The requesting principal
        row: The raw row
        hierarchy: Role hierarchy for the comparison

    Returns:
        A new dict containing only readable keys
    """
    return {
        name: value
        for name, value in row.items()
        if name not in entity.sensitive_fields
        and can_access_field(entity, subject, name, Operation.READ, hierarchy)
    }


def filter_writable_fields(
    entity: "EntityDescriptor",
    subject: Subject,
    data: dict[str, Any],
    operation: Operation | str,
    hierarchy: RoleHierarchy,
) -> dict[str, Any]:
    """Strip fields the subject cannot write from an incoming payload.

    For callers that prefer dropping disallowed keys over rejecting the whole
    request; the engine itself rejects.
    """
    operation = Operation.parse(operation)
    return {
        name: value
        for name, value in data.items()
        if can_access_field(entity, subject, name, operation, hierarchy)
    }
