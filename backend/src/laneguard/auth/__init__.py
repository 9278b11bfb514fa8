"""Authorization primitives: roles, field matrix, RLS, protection, filtering."""

from laneguard.auth.types import AccessRequest, Operation, Subject, SYSTEM_SUBJECT
from laneguard.auth.roles import DEFAULT_ROLES, Requirement, Role, RoleHierarchy, Sentinel
from laneguard.auth.rls import RlsTag, is_row_visible, rls_query_filter
from laneguard.auth.permissions import (
    can_access_entity,
    can_access_field,
    derive_capabilities,
    field_access_matrix,
    fields_for_operation,
)
from laneguard.auth.protection import MutationCheck, validate_mutation
from laneguard.auth.filtering import filter_for_read, filter_writable_fields

__all__ = [
    "AccessRequest",
    "Operation",
    "Subject",
    "SYSTEM_SUBJECT",
    "DEFAULT_ROLES",
    "Requirement",
    "Role",
    "RoleHierarchy",
    "Sentinel",
    "RlsTag",
    "is_row_visible",
    "rls_query_filter",
    "can_access_entity",
    "can_access_field",
    "derive_capabilities",
    "field_access_matrix",
    "fields_for_operation",
    "MutationCheck",
    "validate_mutation",
    "filter_for_read",
    "filter_writable_fields",
]
