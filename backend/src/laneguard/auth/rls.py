"""Row-level security evaluation.

Each entity assigns exactly one policy tag to every role. Tags are resolved
against a concrete row here; there is no merging across roles, so a role that
should see everything must be given ``all_records`` explicitly.

Polymorphic children (``parent_entity_access``) are evaluated by loading the
parent row through an injected fetcher and applying the parent entity's own
policy for the same subject.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from laneguard.auth.types import Operation, Subject
from laneguard.errors import IntegrityError

if TYPE_CHECKING:
    from laneguard.metadata.loader import EntityDescriptor
    from laneguard.metadata.registry import EntityRegistry
    from laneguard.persistence.fetcher import RowFetcher

logger = logging.getLogger(__name__)


class RlsTag(str, Enum):
    """Symbolic row-level policies."""

    ALL_RECORDS = "all_records"
    PUBLIC_RESOURCE = "public_resource"
    DENY_ALL = "deny_all"
    OWN_RECORD_ONLY = "own_record_only"
    OWN_WORK_ORDERS_ONLY = "own_work_orders_only"
    ASSIGNED_WORK_ORDERS_ONLY = "assigned_work_orders_only"
    OWN_INVOICES_ONLY = "own_invoices_only"
    OWN_CONTRACTS_ONLY = "own_contracts_only"
    PARENT_ENTITY_ACCESS = "parent_entity_access"


# Legacy spellings accepted in metadata and normalized at load time
TAG_ALIASES: dict[str, RlsTag] = {
    "all": RlsTag.ALL_RECORDS,
    "none": RlsTag.DENY_ALL,
}

# rlsResource marker for polymorphic children
PARENT_DERIVED = "PARENT_DERIVED"

# Tags a PARENT_DERIVED entity may use without contradicting derivation
PARENT_COMPATIBLE_TAGS = frozenset(
    {RlsTag.PARENT_ENTITY_ACCESS, RlsTag.ALL_RECORDS, RlsTag.DENY_ALL}
)

UNRESTRICTED_TAGS = frozenset({RlsTag.ALL_RECORDS, RlsTag.PUBLIC_RESOURCE})

# Filter value no real row can match
DENY_FILTER_VALUE = "__rls_deny_all__"

MAX_PARENT_DEPTH = 4


def parse_tag(value: Any) -> RlsTag | None:
    """Resolve a metadata value to an RlsTag, or None if it is not a known tag."""
    if isinstance(value, RlsTag):
        return value
    if not isinstance(value, str):
        return None
    if value in TAG_ALIASES:
        return TAG_ALIASES[value]
    try:
        return RlsTag(value)
    except ValueError:
        return None


def ownership_column(entity: "EntityDescriptor", tag: RlsTag) -> str | None:
    """Return the row column compared with the subject ID for an ownership tag."""
    config = entity.rls_filter_config
    if tag is RlsTag.OWN_RECORD_ONLY:
        return config.own_record_field
    if tag in (
        RlsTag.OWN_WORK_ORDERS_ONLY,
        RlsTag.OWN_INVOICES_ONLY,
        RlsTag.OWN_CONTRACTS_ONLY,
    ):
        return config.customer_field
    if tag is RlsTag.ASSIGNED_WORK_ORDERS_ONLY:
        return config.assigned_field
    return None


def policy_for(entity: "EntityDescriptor", role: str | None) -> RlsTag | None:
    """Return the tag assigned to a role, or None when the role has none."""
    if not role:
        return None
    return entity.rls_policy.get(role.lower())


def _same_id(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return left == right or str(left) == str(right)


def is_row_visible(
    entity: "EntityDescriptor",
    subject_role: str | None,
    subject: Subject,
    row: dict[str, Any],
    operation: Operation | str = Operation.READ,
    *,
    registry: "EntityRegistry | None" = None,
    fetch_row: "RowFetcher | None" = None,
    _depth: int = 0,
) -> bool:
    """Decide whether a row is visible (or mutable) for a subject.

    Args:
        entity: Descriptor of the row's entity
        subject_role: Role to evaluate the policy for
        subject: The requesting principal (its ID drives ownership tags)
        row: The candidate row
        operation: The operation being authorized
        registry: Needed to resolve polymorphic parents
        fetch_row: Loads a parent row by (table, id)

    Returns:
        True if the row is visible under the role's policy

    Raises:
        IntegrityError: If a polymorphic parent cannot be resolved
    """
    operation = Operation.parse(operation)
    if subject.internal:
        return True

    tag = policy_for(entity, subject_role)
    if tag is None or tag is RlsTag.DENY_ALL:
        return False
    if tag in UNRESTRICTED_TAGS:
        return True
    if tag is RlsTag.PARENT_ENTITY_ACCESS:
        return _parent_visible(
            entity, subject_role, subject, row, operation, registry, fetch_row, _depth
        )

    column = ownership_column(entity, tag)
    if column is None:
        return False
    return _same_id(row.get(column), subject.id)


def _parent_visible(
    entity: "EntityDescriptor",
    subject_role: str | None,
    subject: Subject,
    row: dict[str, Any],
    operation: Operation,
    registry: "EntityRegistry | None",
    fetch_row: "RowFetcher | None",
    depth: int,
) -> bool:
    anchor = entity.polymorphic_anchor
    if anchor is None or registry is None:
        raise IntegrityError(entity.key, "parent_entity_access without a resolvable anchor")
    if depth >= MAX_PARENT_DEPTH:
        raise IntegrityError(entity.key, f"parent chain deeper than {MAX_PARENT_DEPTH} levels")

    parent_type = row.get(anchor.type_column)
    parent_id = row.get(anchor.foreign_key)
    if parent_type is None or parent_id is None:
        raise IntegrityError(
            entity.key,
            f"row {row.get(entity.primary_key)!r} has no parent reference "
            f"({anchor.type_column}={parent_type!r}, {anchor.foreign_key}={parent_id!r})",
        )
    if parent_type not in anchor.parents:
        raise IntegrityError(entity.key, f"unknown parent type {parent_type!r}")

    parent = registry.get(parent_type)
    if parent is None:
        raise IntegrityError(entity.key, f"parent entity {parent_type!r} is not registered")
    if fetch_row is None:
        raise IntegrityError(entity.key, "no row fetcher configured for parent lookup")

    parent_row = fetch_row(parent.table_name, parent_id)
    if parent_row is None:
        raise IntegrityError(
            entity.key, f"dangling reference to {parent.table_name} id={parent_id!r}"
        )

    return is_row_visible(
        parent,
        subject_role,
        subject,
        parent_row,
        operation,
        registry=registry,
        fetch_row=fetch_row,
        _depth=depth + 1,
    )


def rls_query_filter(
    entity: "EntityDescriptor",
    subject: Subject,
) -> dict[str, Any] | None:
    """Get the row filter a list query must apply for a subject.

    Returns:
        None when no restriction applies, a filter dict such as
        ``{"customer_id": {"eq": 7}}`` for ownership tags, an impossible
        filter for ``deny_all``, or a ``{"$parent": ...}`` marker for
        polymorphic children whose rows must be checked individually.
    """
    if subject.internal:
        return None

    tag = policy_for(entity, subject.role)
    if tag is None or tag is RlsTag.DENY_ALL:
        return {entity.primary_key: {"eq": DENY_FILTER_VALUE}}
    if tag in UNRESTRICTED_TAGS:
        return None
    if tag is RlsTag.PARENT_ENTITY_ACCESS:
        anchor = entity.polymorphic_anchor
        return {
            "$parent": {
                "typeColumn": anchor.type_column if anchor else None,
                "idColumn": anchor.foreign_key if anchor else None,
                "parents": list(anchor.parents) if anchor else [],
            }
        }

    column = ownership_column(entity, tag)
    if column is None or subject.id is None:
        return {entity.primary_key: {"eq": DENY_FILTER_VALUE}}
    return {column: {"eq": subject.id}}
