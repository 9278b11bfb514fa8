"""Access decision orchestration.

A decision passes through fixed gates, failing fast on the first denial:

    ENTITY_GATE -> RLS_GATE -> FIELD_GATE -> MUTATION_GATE -> DECISION

Reads never fail at the field gate; unreadable fields are removed from the
projected row instead. Row-level denial is reported exactly like a missing
row so callers cannot discover which records exist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from laneguard.auth.filtering import filter_for_read
from laneguard.auth.permissions import can_access_entity, can_access_field
from laneguard.auth.protection import validate_mutation
from laneguard.auth.rls import DENY_FILTER_VALUE, is_row_visible, rls_query_filter
from laneguard.auth.types import AccessRequest, Operation, Subject
from laneguard.errors import AuthorizationDenied, IntegrityError
from laneguard.metadata.loader import EntityDescriptor
from laneguard.metadata.registry import EntityRegistry
from laneguard.persistence.fetcher import RowFetcher

logger = logging.getLogger(__name__)


class Reason(str, Enum):
    """Why a request was denied."""

    ENTITY_PERMISSION_DENIED = "ENTITY_PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    FIELD_PERMISSION_DENIED = "FIELD_PERMISSION_DENIED"
    IMMUTABLE_FIELD = "IMMUTABLE_FIELD"
    SYSTEM_PROTECTED = "SYSTEM_PROTECTED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of one authorization request.

    Attributes:
        allowed: Whether the operation may proceed
        reason: Denial reason (None when allowed)
        denied_field: The field that caused a field or mutation denial
        projected_row: For allowed reads, the row reduced to readable fields
    """

    allowed: bool
    reason: Reason | None = None
    denied_field: str | None = None
    projected_row: dict[str, Any] | None = None

    @classmethod
    def allow(cls, projected_row: dict[str, Any] | None = None) -> AccessDecision:
        return cls(allowed=True, projected_row=projected_row)

    @classmethod
    def deny(cls, reason: Reason, denied_field: str | None = None) -> AccessDecision:
        return cls(allowed=False, reason=reason, denied_field=denied_field)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            result["reason"] = self.reason.value
        if self.denied_field is not None:
            result["deniedField"] = self.denied_field
        if self.projected_row is not None:
            result["projectedRow"] = self.projected_row
        return result

    def raise_for_denial(self) -> AccessDecision:
        """Raise AuthorizationDenied if denied, else return self."""
        if not self.allowed:
            raise AuthorizationDenied(self)
        return self


class AccessEngine:
    """Evaluates authorization requests against an EntityRegistry.

    The engine holds no per-request state and never writes to storage; the
    optional row fetcher is only used to load polymorphic parents.

    Example:
        engine = AccessEngine(registry, fetch_row=MappingRowFetcher(tables))
        decision = engine.authorize_read(Subject(7, "customer"), "customer", row)
        if decision.allowed:
            return decision.projected_row
    """

    def __init__(self, registry: EntityRegistry, fetch_row: RowFetcher | None = None):
        self.registry = registry
        self.hierarchy = registry.hierarchy
        self.fetch_row = fetch_row

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def authorize(self, request: AccessRequest) -> AccessDecision:
        operation = Operation.parse(request.operation)
        if operation is Operation.CREATE:
            return self.authorize_create(request.subject, request.entity_key, request.proposed_changes or {})
        if operation is Operation.READ:
            return self.authorize_read(request.subject, request.entity_key, request.row)
        if operation is Operation.UPDATE:
            return self.authorize_update(
                request.subject, request.entity_key, request.row, request.proposed_changes or {}
            )
        return self.authorize_delete(request.subject, request.entity_key, request.row)

    def authorize_create(
        self, subject: Subject, entity_key: str, payload: dict[str, Any]
    ) -> AccessDecision:
        entity, denial = self._entity_gate(subject, entity_key, Operation.CREATE)
        if denial:
            return denial
        denial = self._field_gate(entity, subject, Operation.CREATE, payload)
        if denial:
            return denial
        return self._mutation_gate(entity, subject, Operation.CREATE, None, payload)

    def authorize_read(
        self, subject: Subject, entity_key: str, row: dict[str, Any] | None
    ) -> AccessDecision:
        entity, denial = self._entity_gate(subject, entity_key, Operation.READ)
        if denial:
            return denial
        denial = self._rls_gate(entity, subject, Operation.READ, row)
        if denial:
            return denial
        return AccessDecision.allow(filter_for_read(entity, subject, row, self.hierarchy))

    def authorize_update(
        self,
        subject: Subject,
        entity_key: str,
        row: dict[str, Any] | None,
        changes: dict[str, Any],
    ) -> AccessDecision:
        entity, denial = self._entity_gate(subject, entity_key, Operation.UPDATE)
        if denial:
            return denial
        denial = self._rls_gate(entity, subject, Operation.UPDATE, row)
        if denial:
            return denial
        denial = self._field_gate(entity, subject, Operation.UPDATE, changes)
        if denial:
            return denial
        return self._mutation_gate(entity, subject, Operation.UPDATE, row, changes)

    def authorize_delete(
        self, subject: Subject, entity_key: str, row: dict[str, Any] | None
    ) -> AccessDecision:
        entity, denial = self._entity_gate(subject, entity_key, Operation.DELETE)
        if denial:
            return denial
        denial = self._rls_gate(entity, subject, Operation.DELETE, row)
        if denial:
            return denial
        return self._mutation_gate(entity, subject, Operation.DELETE, row, None)

    def query_filter(self, subject: Subject, entity_key: str) -> dict[str, Any] | None:
        """Row filter a list query must apply, or None when unrestricted.

        Callers should check the entity gate (authorize_read with the rows
        they return) before exposing results; this only narrows the query.
        """
        entity = self.registry.get(entity_key)
        if entity is None:
            logger.warning("Query filter requested for unknown entity %r", entity_key)
            return {"id": {"eq": DENY_FILTER_VALUE}}
        return rls_query_filter(entity, subject)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _entity_gate(
        self, subject: Subject, entity_key: str, operation: Operation
    ) -> tuple[EntityDescriptor | None, AccessDecision | None]:
        entity = self.registry.get(entity_key)
        if entity is None:
            logger.warning("Authorization requested for unknown entity %r", entity_key)
            return None, AccessDecision.deny(Reason.ENTITY_PERMISSION_DENIED)

        allowed, message = can_access_entity(entity, subject, operation, self.hierarchy)
        if not allowed:
            logger.debug("Entity gate denied %s: %s", _who(subject), message)
            return entity, AccessDecision.deny(Reason.ENTITY_PERMISSION_DENIED)
        return entity, None

    def _rls_gate(
        self,
        entity: EntityDescriptor,
        subject: Subject,
        operation: Operation,
        row: dict[str, Any] | None,
    ) -> AccessDecision | None:
        if row is None:
            logger.debug("%s %s: row not found", entity.key, operation.value)
            return AccessDecision.deny(Reason.NOT_FOUND)

        try:
            visible = is_row_visible(
                entity,
                subject.role,
                subject,
                row,
                operation,
                registry=self.registry,
                fetch_row=self.fetch_row,
            )
        except IntegrityError as exc:
            logger.warning("RLS integrity failure: %s", exc, extra={"integrity": True})
            visible = False

        if not visible:
            # RLS_DENIED is only ever visible in logs; callers see NOT_FOUND
            logger.debug(
                "RLS_DENIED %s %s id=%r for %s",
                entity.key,
                operation.value,
                row.get(entity.primary_key),
                _who(subject),
            )
            return AccessDecision.deny(Reason.NOT_FOUND)
        return None

    def _field_gate(
        self,
        entity: EntityDescriptor,
        subject: Subject,
        operation: Operation,
        payload: dict[str, Any],
    ) -> AccessDecision | None:
        for name in payload:
            if not can_access_field(entity, subject, name, operation, self.hierarchy):
                logger.debug(
                    "Field gate denied %s.%s %s for %s", entity.key, name, operation.value, _who(subject)
                )
                return AccessDecision.deny(Reason.FIELD_PERMISSION_DENIED, name)
        return None

    def _mutation_gate(
        self,
        entity: EntityDescriptor,
        subject: Subject,
        operation: Operation,
        row: dict[str, Any] | None,
        changes: dict[str, Any] | None,
    ) -> AccessDecision:
        check = validate_mutation(entity, operation, row, changes)
        if not check.ok:
            logger.debug(
                "Mutation gate denied %s %s (%s on %s) for %s",
                entity.key,
                operation.value,
                check.violation.value,
                check.field,
                _who(subject),
            )
            return AccessDecision.deny(Reason(check.violation.value), check.field)
        return AccessDecision.allow()


def _who(subject: Subject) -> str:
    if subject.internal:
        return "system"
    return f"{subject.role}:{subject.id}"
