"""Tests for row-level security evaluation."""

from unittest.mock import MagicMock

import pytest

from laneguard.auth.rls import DENY_FILTER_VALUE, RlsTag, is_row_visible, parse_tag, rls_query_filter
from laneguard.auth.types import Operation, Subject
from laneguard.errors import ConfigurationError, IntegrityError
from laneguard.metadata.registry import EntityRegistry
from laneguard.persistence.fetcher import MappingRowFetcher


def visible(registry, entity_key, subject, row, fetch_row=None, operation=Operation.READ):
    return is_row_visible(
        registry[entity_key],
        subject.role,
        subject,
        row,
        operation,
        registry=registry,
        fetch_row=fetch_row,
    )


# ── Tag parsing ──────────────────────────────────────────────────────────────


def test_parse_tag_accepts_aliases():
    assert parse_tag("all") is RlsTag.ALL_RECORDS
    assert parse_tag("none") is RlsTag.DENY_ALL
    assert parse_tag("own_record_only") is RlsTag.OWN_RECORD_ONLY
    assert parse_tag("everything") is None
    assert parse_tag(None) is None


# ── Ownership tags ───────────────────────────────────────────────────────────


class TestCustomerOwnRecord:
    def test_customer_sees_own_record(self, shipped_registry):
        subject = Subject(id=7, role="customer")
        assert visible(shipped_registry, "customer", subject, {"id": 7, "email": "a@b.c"})

    def test_customer_cannot_see_other_record(self, shipped_registry):
        subject = Subject(id=7, role="customer")
        assert not visible(shipped_registry, "customer", subject, {"id": 8, "email": "x@y.z"})

    def test_ids_compare_across_str_and_int(self, shipped_registry):
        subject = Subject(id="7", role="customer")
        assert visible(shipped_registry, "customer", subject, {"id": 7})

    def test_missing_subject_id_never_matches(self, shipped_registry):
        subject = Subject(id=None, role="customer")
        assert not visible(shipped_registry, "customer", subject, {"id": None})

    def test_technician_sees_all_customers(self, shipped_registry):
        subject = Subject(id=3, role="technician")
        assert visible(shipped_registry, "customer", subject, {"id": 8})


class TestWorkOrderTags:
    ROW = {"id": 42, "customer_id": 7, "assigned_technician_id": 3}

    def test_customer_sees_own_work_order(self, shipped_registry):
        assert visible(shipped_registry, "work_order", Subject(7, "customer"), self.ROW)
        assert not visible(shipped_registry, "work_order", Subject(8, "customer"), self.ROW)

    def test_assigned_technician(self, shipped_registry):
        assert visible(shipped_registry, "work_order", Subject(3, "technician"), self.ROW)
        assert not visible(shipped_registry, "work_order", Subject(4, "technician"), self.ROW)

    def test_unassigned_row_hidden_from_technicians(self, shipped_registry):
        row = dict(self.ROW, assigned_technician_id=None)
        assert not visible(shipped_registry, "work_order", Subject(3, "technician"), row)

    def test_dispatcher_sees_all(self, shipped_registry):
        assert visible(shipped_registry, "work_order", Subject(99, "dispatcher"), self.ROW)


class TestDenyAndPublic:
    def test_deny_all(self, shipped_registry):
        assert not visible(shipped_registry, "invoice", Subject(3, "technician"), {"id": 1, "customer_id": 3})

    def test_public_resource(self, shipped_registry):
        assert visible(shipped_registry, "inventory", Subject(3, "technician"), {"id": 1})

    def test_unknown_role_denied(self, shipped_registry):
        assert not visible(shipped_registry, "inventory", Subject(3, "janitor"), {"id": 1})

    def test_internal_subject_bypasses(self, shipped_registry):
        assert visible(shipped_registry, "audit_log", Subject.system(), {"id": 1})


# ── Parent-derived visibility ────────────────────────────────────────────────


class TestParentEntityAccess:
    """Attachment on work order 42, which is assigned to technician 3."""

    ATTACHMENT = {"id": 500, "entity_type": "work_order", "entity_id": 42, "original_filename": "site.jpg"}

    @pytest.fixture
    def fetcher(self):
        return MappingRowFetcher(
            {"work_orders": {42: {"id": 42, "customer_id": 7, "assigned_technician_id": 3}}}
        )

    def test_assigned_technician_can_read_attachment(self, shipped_registry, fetcher):
        assert visible(shipped_registry, "file_attachment", Subject(3, "technician"), self.ATTACHMENT, fetcher)

    def test_unassigned_technician_denied(self, shipped_registry, fetcher):
        assert not visible(shipped_registry, "file_attachment", Subject(4, "technician"), self.ATTACHMENT, fetcher)

    def test_owning_customer_can_read_attachment(self, shipped_registry, fetcher):
        assert visible(shipped_registry, "file_attachment", Subject(7, "customer"), self.ATTACHMENT, fetcher)

    def test_parent_evaluated_with_same_operation(self, shipped_registry):
        fetch = MagicMock(return_value={"id": 42, "customer_id": 7, "assigned_technician_id": 3})
        assert visible(
            shipped_registry,
            "file_attachment",
            Subject(3, "technician"),
            self.ATTACHMENT,
            fetch,
            operation=Operation.UPDATE,
        )
        fetch.assert_called_once_with("work_orders", 42)

    def test_admin_does_not_need_parent(self, shipped_registry):
        fetch = MagicMock()
        assert visible(shipped_registry, "file_attachment", Subject(1, "admin"), self.ATTACHMENT, fetch)
        fetch.assert_not_called()

    def test_dangling_parent_raises_integrity_error(self, shipped_registry):
        with pytest.raises(IntegrityError, match="dangling reference"):
            visible(shipped_registry, "file_attachment", Subject(3, "technician"), self.ATTACHMENT, MappingRowFetcher())

    def test_unknown_parent_type(self, shipped_registry, fetcher):
        row = dict(self.ATTACHMENT, entity_type="spaceship")
        with pytest.raises(IntegrityError, match="unknown parent type"):
            visible(shipped_registry, "file_attachment", Subject(3, "technician"), row, fetcher)

    def test_missing_reference(self, shipped_registry, fetcher):
        row = dict(self.ATTACHMENT, entity_id=None)
        with pytest.raises(IntegrityError, match="no parent reference"):
            visible(shipped_registry, "file_attachment", Subject(3, "technician"), row, fetcher)

    def test_no_fetcher(self, shipped_registry):
        with pytest.raises(IntegrityError, match="no row fetcher"):
            visible(shipped_registry, "file_attachment", Subject(3, "technician"), self.ATTACHMENT, None)


class TestParentDerivedLoadRules:
    def _raw(self, **overrides):
        note = {
            "entity": "note",
            "tableName": "notes",
            "fields": {
                "id": {"type": "integer"},
                "entity_type": {"type": "string"},
                "entity_id": {"type": "integer"},
            },
            "fieldAccess": {
                "entity_type": "PUBLIC_READONLY",
                "entity_id": "PUBLIC_READONLY",
            },
            "rlsResource": "PARENT_DERIVED",
            "rlsPolicy": {"all_roles": "parent_entity_access"},
            "relationships": {
                "parent": {
                    "type": "polymorphic",
                    "typeColumn": "entity_type",
                    "foreignKey": "entity_id",
                    "parents": ["note"],
                }
            },
        }
        note.update(overrides)
        return {"note": note}

    def test_valid(self, hierarchy):
        registry = EntityRegistry.build(self._raw(), hierarchy)
        assert registry["note"].is_parent_derived
        assert registry["note"].polymorphic_anchor.parents == ("note",)

    def test_contradicting_tag(self, hierarchy):
        raw = self._raw(rlsPolicy={"customer": "own_record_only", "all_roles": "parent_entity_access"})
        with pytest.raises(ConfigurationError, match="declares independent policies: customer=own_record_only"):
            EntityRegistry.build(raw, hierarchy)

    def test_requires_anchor(self, hierarchy):
        with pytest.raises(ConfigurationError, match="exactly one polymorphic relationship, found 0"):
            EntityRegistry.build(self._raw(relationships={}), hierarchy)

    def test_unknown_parent_entity(self, hierarchy):
        raw = self._raw()
        raw["note"]["relationships"]["parent"]["parents"] = ["note", "ticket"]
        with pytest.raises(ConfigurationError, match="Unknown entity 'ticket'"):
            EntityRegistry.build(raw, hierarchy)

    def test_self_referencing_chain_depth_limited(self, hierarchy):
        registry = EntityRegistry.build(self._raw(), hierarchy)
        loop = {"id": 1, "entity_type": "note", "entity_id": 1}
        fetch = MappingRowFetcher({"notes": {1: loop}})
        with pytest.raises(IntegrityError, match="parent chain deeper"):
            is_row_visible(
                registry["note"], "customer", Subject(1, "customer"), loop,
                registry=registry, fetch_row=fetch,
            )


# ── Query filters ────────────────────────────────────────────────────────────


class TestQueryFilter:
    def test_ownership_filter(self, shipped_registry):
        assert rls_query_filter(shipped_registry["work_order"], Subject(7, "customer")) == {
            "customer_id": {"eq": 7}
        }
        assert rls_query_filter(shipped_registry["work_order"], Subject(3, "technician")) == {
            "assigned_technician_id": {"eq": 3}
        }

    def test_own_record_uses_configured_field(self, shipped_registry):
        assert rls_query_filter(shipped_registry["notification"], Subject(5, "manager")) == {
            "user_id": {"eq": 5}
        }

    def test_unrestricted(self, shipped_registry):
        assert rls_query_filter(shipped_registry["work_order"], Subject(1, "admin")) is None
        assert rls_query_filter(shipped_registry["work_order"], Subject.system()) is None

    def test_deny_all_is_impossible_filter(self, shipped_registry):
        assert rls_query_filter(shipped_registry["invoice"], Subject(3, "technician")) == {
            "id": {"eq": DENY_FILTER_VALUE}
        }

    def test_unknown_role_is_impossible_filter(self, shipped_registry):
        assert rls_query_filter(shipped_registry["invoice"], Subject(3, "intern")) == {
            "id": {"eq": DENY_FILTER_VALUE}
        }

    def test_parent_marker(self, shipped_registry):
        result = rls_query_filter(shipped_registry["file_attachment"], Subject(3, "technician"))
        assert result["$parent"]["typeColumn"] == "entity_type"
        assert result["$parent"]["idColumn"] == "entity_id"
        assert "work_order" in result["$parent"]["parents"]
