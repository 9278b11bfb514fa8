"""Field and entity permission checks.

Every lookup here is against a descriptor whose field access matrix was fully
materialized at load time, so a missing entry always means "unknown field"
and is denied.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from laneguard.auth.rls import UNRESTRICTED_TAGS, RlsTag
from laneguard.auth.roles import Requirement, Role, RoleHierarchy, Sentinel
from laneguard.auth.types import OPERATIONS, Operation, Subject

if TYPE_CHECKING:
    from laneguard.metadata.loader import EntityDescriptor


def field_requirement(
    entity: "EntityDescriptor", field_name: str, operation: Operation | str
) -> Requirement | None:
    """Return the resolved requirement for a field, or None for unknown fields."""
    access = entity.field_access.get(field_name)
    if access is None:
        return None
    return access.requirement(Operation.parse(operation))


def can_access_field(
    entity: "EntityDescriptor",
    subject: Subject,
    field_name: str,
    operation: Operation | str,
    hierarchy: RoleHierarchy,
) -> bool:
    """Check if the subject may perform an operation on one field.

    Args:
        entity: The entity descriptor
        subject: The requesting principal
        field_name: Field to check
        operation: "create", "read", "update" or "delete"
        hierarchy: Role hierarchy for the comparison

    Returns:
        True if the subject's role meets the field's requirement
    """
    requirement = field_requirement(entity, field_name, operation)
    if requirement is None:
        return False
    return hierarchy.satisfies(subject.role, requirement, internal=subject.internal)


def fields_for_operation(
    entity: "EntityDescriptor",
    subject: Subject,
    operation: Operation | str,
    hierarchy: RoleHierarchy,
) -> list[str]:
    """List the fields a subject may touch for an operation, in declaration order."""
    operation = Operation.parse(operation)
    return [
        name
        for name in entity.field_access
        if can_access_field(entity, subject, name, operation, hierarchy)
    ]


def can_access_entity(
    entity: "EntityDescriptor",
    subject: Subject,
    operation: Operation | str,
    hierarchy: RoleHierarchy,
) -> tuple[bool, str | None]:
    """Check the entity-level gate for an operation.

    Returns:
        Tuple of (allowed, error_message). error_message is None if allowed.
    """
    operation = Operation.parse(operation)
    required = entity.entity_permissions.get(operation)
    if hierarchy.satisfies(subject.role, required, internal=subject.internal):
        return True, None
    return False, f"{required} required to {operation.value} {entity.key}"


def derive_capabilities(entity: "EntityDescriptor") -> dict[str, Any]:
    """Summarize what an entity exposes, independent of any subject.

    Returns:
        Dict with ``can_<op>`` flags (False when the operation is ``none`` or
        system-only), ``is_create_disabled`` (system-only creation),
        ``is_own_record_only``, ``has_rls`` and ``minimum_role`` per operation
        (None when no role can perform it).
    """
    capabilities: dict[str, Any] = {}
    minimum_role: dict[str, str | None] = {}
    for op in OPERATIONS:
        required = entity.entity_permissions[op]
        open_to_roles = isinstance(required, Role)
        capabilities[f"can_{op.value}"] = open_to_roles
        minimum_role[op.value] = required.name if open_to_roles else None

    capabilities["is_create_disabled"] = (
        entity.entity_permissions[Operation.CREATE] is Sentinel.SYSTEM
    )
    capabilities["is_own_record_only"] = RlsTag.OWN_RECORD_ONLY in entity.rls_policy.values()
    capabilities["has_rls"] = any(
        tag not in UNRESTRICTED_TAGS for tag in entity.rls_policy.values()
    )
    capabilities["minimum_role"] = minimum_role
    return capabilities


def field_access_matrix(
    entity: "EntityDescriptor", hierarchy: RoleHierarchy
) -> dict[str, dict[str, dict[str, bool]]]:
    """Expand the matrix per role: role -> field -> operation -> allowed."""
    matrix: dict[str, dict[str, dict[str, bool]]] = {}
    for role in hierarchy:
        subject = Subject(id=None, role=role.name)
        matrix[role.name] = {
            name: {
                op.value: can_access_field(entity, subject, name, op, hierarchy)
                for op in OPERATIONS
            }
            for name in entity.field_access
        }
    return matrix
