"""Tests for the access decision orchestrator."""

import logging
from unittest.mock import MagicMock

import pytest

from laneguard.auth.engine import AccessDecision, AccessEngine, Reason
from laneguard.auth.rls import DENY_FILTER_VALUE
from laneguard.auth.types import AccessRequest, Operation, Subject
from laneguard.errors import AuthorizationDenied
from laneguard.metadata.registry import EntityRegistry
from laneguard.persistence.fetcher import MappingRowFetcher

from conftest import widget

WORK_ORDER = {
    "id": 42,
    "work_order_number": "WO-0042",
    "name": "Replace compressor",
    "summary": "Unit 3 rooftop",
    "status": "assigned",
    "customer_id": 7,
    "assigned_technician_id": 3,
}


@pytest.fixture
def fetcher():
    return MappingRowFetcher({"work_orders": {42: WORK_ORDER}})


@pytest.fixture
def engine(shipped_registry, fetcher):
    return AccessEngine(shipped_registry, fetch_row=fetcher)


# ── AccessDecision ───────────────────────────────────────────────────────────


class TestAccessDecision:
    def test_to_dict_allowed(self):
        assert AccessDecision.allow({"id": 1}).to_dict() == {"allowed": True, "projectedRow": {"id": 1}}

    def test_to_dict_denied(self):
        decision = AccessDecision.deny(Reason.FIELD_PERMISSION_DENIED, "name")
        assert decision.to_dict() == {
            "allowed": False,
            "reason": "FIELD_PERMISSION_DENIED",
            "deniedField": "name",
        }

    def test_raise_for_denial(self):
        with pytest.raises(AuthorizationDenied, match="IMMUTABLE_FIELD \\(code\\)") as exc_info:
            AccessDecision.deny(Reason.IMMUTABLE_FIELD, "code").raise_for_denial()
        assert exc_info.value.decision.reason is Reason.IMMUTABLE_FIELD

    def test_raise_for_denial_passes_allowed(self):
        decision = AccessDecision.allow()
        assert decision.raise_for_denial() is decision


# ── Entity gate ──────────────────────────────────────────────────────────────


class TestEntityGate:
    def test_customer_cannot_delete_work_order(self, engine):
        decision = engine.authorize_delete(Subject(7, "customer"), "work_order", WORK_ORDER)
        assert decision.reason is Reason.ENTITY_PERMISSION_DENIED

    def test_unknown_entity_denied(self, engine):
        decision = engine.authorize_read(Subject(1, "admin"), "spaceship", {"id": 1})
        assert not decision.allowed
        assert decision.reason is Reason.ENTITY_PERMISSION_DENIED

    def test_unknown_role_denied(self, engine):
        decision = engine.authorize_read(Subject(7, "bogus_role"), "work_order", WORK_ORDER)
        assert decision.reason is Reason.ENTITY_PERMISSION_DENIED

    def test_api_cannot_create_notifications(self, engine):
        decision = engine.authorize_create(Subject(1, "admin"), "notification", {"title": "Hi"})
        assert decision.reason is Reason.ENTITY_PERMISSION_DENIED

    def test_internal_subject_creates_notifications(self, engine):
        decision = engine.authorize_create(Subject.system(), "notification", {"user_id": 7, "title": "Hi"})
        assert decision.allowed


# ── RLS gate ─────────────────────────────────────────────────────────────────


class TestNoExistenceLeakage:
    def test_rls_denial_looks_like_not_found(self, engine):
        denied = engine.authorize_read(Subject(8, "customer"), "work_order", WORK_ORDER)
        missing = engine.authorize_read(Subject(8, "customer"), "work_order", None)
        assert denied == missing
        assert denied.to_dict() == missing.to_dict() == {"allowed": False, "reason": "NOT_FOUND"}

    def test_update_of_invisible_row_is_not_found(self, engine):
        decision = engine.authorize_update(Subject(4, "technician"), "work_order", WORK_ORDER, {"status": "completed"})
        assert decision.reason is Reason.NOT_FOUND

    def test_rls_checked_before_fields(self, engine):
        # the field would be denied too, but the caller must not learn the row exists
        decision = engine.authorize_update(
            Subject(8, "customer"), "work_order", WORK_ORDER, {"work_order_number": "X"}
        )
        assert decision.reason is Reason.NOT_FOUND
        assert decision.denied_field is None

    def test_integrity_error_becomes_not_found(self, shipped_registry, caplog):
        engine = AccessEngine(shipped_registry, fetch_row=MappingRowFetcher())
        orphan = {"id": 1, "entity_type": "work_order", "entity_id": 999, "original_filename": "a.pdf"}
        with caplog.at_level(logging.WARNING, logger="laneguard.auth.engine"):
            decision = engine.authorize_read(Subject(3, "technician"), "file_attachment", orphan)
        assert decision.reason is Reason.NOT_FOUND
        assert any(getattr(r, "integrity", False) for r in caplog.records)


# ── Field gate ───────────────────────────────────────────────────────────────


class TestFieldGate:
    def test_any_denied_field_fails_whole_write(self, engine):
        decision = engine.authorize_update(
            Subject(3, "technician"),
            "work_order",
            WORK_ORDER,
            {"status": "in_progress", "assigned_technician_id": 4},
        )
        assert not decision.allowed
        assert decision.reason is Reason.FIELD_PERMISSION_DENIED
        assert decision.denied_field == "assigned_technician_id"

    def test_dispatcher_can_reassign(self, engine):
        decision = engine.authorize_update(
            Subject(20, "dispatcher"), "work_order", WORK_ORDER, {"assigned_technician_id": 4}
        )
        assert decision.allowed

    def test_unknown_payload_field_denied(self, engine):
        decision = engine.authorize_create(Subject(7, "customer"), "work_order", {"name": "X", "hack": 1})
        assert decision.reason is Reason.FIELD_PERMISSION_DENIED
        assert decision.denied_field == "hack"

    def test_create_skips_rls(self, engine):
        decision = engine.authorize_create(
            Subject(7, "customer"), "work_order", {"name": "Leak", "customer_id": 7, "priority": "high"}
        )
        assert decision.allowed
        assert decision.projected_row is None

    def test_read_redacts_instead_of_failing(self, engine):
        decision = engine.authorize_read(Subject(7, "customer"), "work_order", WORK_ORDER)
        assert decision.allowed
        # customer_id is readable from technician upward
        assert "customer_id" not in decision.projected_row
        assert decision.projected_row["work_order_number"] == "WO-0042"


# ── Mutation gate ────────────────────────────────────────────────────────────


class TestMutationGate:
    def test_immutable_field_never_passes_update(self, shipped_registry):
        hierarchy = shipped_registry.hierarchy
        for entity in shipped_registry:
            engine = AccessEngine(shipped_registry)
            for name in entity.immutable_fields:
                for role in (*hierarchy.names, None):
                    subject = Subject.system() if role is None else Subject(1, role)
                    row = {"id": 1, "user_id": 1, "customer_id": 1, "assigned_technician_id": 1, "name": "x"}
                    decision = engine.authorize_update(subject, entity.key, row, {name: "changed"})
                    assert not decision.allowed, f"{entity.key}.{name} updatable by {role or 'system'}"

    def test_immutable_reason(self, hierarchy):
        data = widget()
        data["fieldAccess"]["code"]["update"] = "customer"
        engine = AccessEngine(EntityRegistry.build({"widget": data}, hierarchy))
        decision = engine.authorize_update(Subject(7, "customer"), "widget", {"id": 1, "owner_id": 7}, {"code": "W-2"})
        assert decision.reason is Reason.IMMUTABLE_FIELD
        assert decision.denied_field == "code"

    def test_admin_cannot_delete_system_role(self, engine):
        decision = engine.authorize_delete(Subject(1, "admin"), "role", {"id": 5, "name": "admin"})
        assert decision.reason is Reason.SYSTEM_PROTECTED

    def test_mixed_case_system_role_still_protected(self, engine):
        decision = engine.authorize_delete(Subject(1, "admin"), "role", {"id": 5, "name": "Admin"})
        assert decision.reason is Reason.SYSTEM_PROTECTED

    def test_admin_can_delete_custom_role(self, engine):
        decision = engine.authorize_delete(Subject(1, "admin"), "role", {"id": 9, "name": "auditor"})
        assert decision.allowed

    def test_admin_cannot_rename_system_role(self, engine):
        decision = engine.authorize_update(Subject(1, "admin"), "role", {"id": 1, "name": "customer"}, {"name": "client"})
        assert decision.reason is Reason.SYSTEM_PROTECTED
        assert decision.denied_field == "name"


# ── Parent-derived end to end ────────────────────────────────────────────────


class TestFileAttachments:
    ATTACHMENT = {
        "id": 500,
        "entity_type": "work_order",
        "entity_id": 42,
        "original_filename": "site.jpg",
        "storage_key": "s3://bucket/abc",
        "mime_type": "image/jpeg",
    }

    def test_assigned_technician_reads_without_storage_key(self, engine):
        decision = engine.authorize_read(Subject(3, "technician"), "file_attachment", self.ATTACHMENT)
        assert decision.allowed
        assert "storage_key" not in decision.projected_row
        assert decision.projected_row["original_filename"] == "site.jpg"

    def test_unassigned_technician_gets_not_found(self, engine):
        decision = engine.authorize_read(Subject(4, "technician"), "file_attachment", self.ATTACHMENT)
        assert decision.to_dict() == {"allowed": False, "reason": "NOT_FOUND"}


# ── authorize(AccessRequest) ─────────────────────────────────────────────────


class TestAuthorizeDispatch:
    @pytest.mark.parametrize(
        "operation,method",
        [
            (Operation.CREATE, "authorize_create"),
            (Operation.READ, "authorize_read"),
            (Operation.UPDATE, "authorize_update"),
            (Operation.DELETE, "authorize_delete"),
        ],
    )
    def test_dispatches_by_operation(self, engine, monkeypatch, operation, method):
        spy = MagicMock(return_value=AccessDecision.allow())
        monkeypatch.setattr(engine, method, spy)
        engine.authorize(AccessRequest(Subject(1, "admin"), "work_order", operation, row={"id": 1}))
        spy.assert_called_once()

    def test_same_answer_as_direct_call(self, engine):
        request = AccessRequest(Subject(7, "customer"), "work_order", Operation.READ, row=WORK_ORDER)
        assert engine.authorize(request) == engine.authorize_read(Subject(7, "customer"), "work_order", WORK_ORDER)

    def test_query_filter(self, engine):
        assert engine.query_filter(Subject(7, "customer"), "invoice") == {"customer_id": {"eq": 7}}

    def test_query_filter_unknown_entity_matches_nothing(self, engine):
        assert engine.query_filter(Subject(1, "admin"), "spaceship") == {"id": {"eq": DENY_FILTER_VALUE}}
