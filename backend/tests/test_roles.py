"""Tests for the role hierarchy."""

import pytest

from laneguard.auth.roles import DEFAULT_ROLES, Role, RoleHierarchy, Sentinel
from laneguard.errors import ConfigurationError


class TestSatisfies:
    @pytest.mark.parametrize(
        "subject,required,expected",
        [
            ("admin", "customer", True),
            ("dispatcher", "technician", True),
            ("technician", "technician", True),
            ("technician", "dispatcher", False),
            ("customer", "admin", False),
        ],
    )
    def test_priority_comparison(self, hierarchy, subject, required, expected):
        assert hierarchy.satisfies(subject, required) is expected

    def test_upward_accumulation(self, hierarchy):
        """If R satisfies M then every higher role does too."""
        for required in hierarchy:
            satisfied = False
            for role in hierarchy:
                if hierarchy.satisfies(role.name, required):
                    satisfied = True
                else:
                    assert not satisfied, f"{role.name} lost {required.name} after a lower role had it"

    def test_unknown_subject_role_fails_closed(self, hierarchy):
        assert hierarchy.satisfies("bogus_role", "customer") is False
        assert hierarchy.satisfies(None, "customer") is False

    def test_unknown_requirement_fails_closed(self, hierarchy):
        assert hierarchy.satisfies("admin", "superuser") is False

    def test_none_is_never_satisfied(self, hierarchy):
        assert hierarchy.satisfies("admin", "none") is False
        assert hierarchy.satisfies(None, Sentinel.NONE, internal=True) is False

    def test_system_only_for_internal_subject(self, hierarchy):
        assert hierarchy.satisfies("admin", "system") is False
        assert hierarchy.satisfies(None, Sentinel.SYSTEM, internal=True) is True

    def test_internal_subject_satisfies_roles(self, hierarchy):
        assert hierarchy.satisfies(None, "admin", internal=True) is True

    def test_case_insensitive_names(self, hierarchy):
        assert hierarchy.satisfies("Manager", "DISPATCHER") is True


class TestLookup:
    def test_default_order(self, hierarchy):
        assert hierarchy.names == ["customer", "technician", "dispatcher", "manager", "admin"]
        assert hierarchy.lowest.name == "customer"
        assert hierarchy.highest.name == "admin"

    def test_roles_compare_by_priority(self):
        assert Role("a", 1) < Role("b", 2)
        assert min(DEFAULT_ROLES).name == "customer"

    def test_parse_requirement(self, hierarchy):
        assert hierarchy.parse_requirement("none") is Sentinel.NONE
        assert hierarchy.parse_requirement("system") is Sentinel.SYSTEM
        assert hierarchy.parse_requirement("manager").priority == 4
        assert hierarchy.parse_requirement("bogus") is None
        assert hierarchy.parse_requirement(None) is None

    def test_system_role_names(self, hierarchy):
        assert hierarchy.system_role_names() == frozenset(hierarchy.names)

    def test_contains(self, hierarchy):
        assert "admin" in hierarchy
        assert "root" not in hierarchy


class TestConstruction:
    def test_from_rows(self):
        hierarchy = RoleHierarchy.from_rows(
            [
                {"name": "Viewer", "priority": 1},
                {"name": "editor", "priority": "2", "is_system_role": 1},
            ]
        )
        assert hierarchy.names == ["viewer", "editor"]
        assert hierarchy.system_role_names() == frozenset({"editor"})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "roles.yaml"
        path.write_text(
            "roles:\n"
            "  - {name: low, priority: 10}\n"
            "  - {name: high, priority: 20, systemRole: true}\n"
        )
        hierarchy = RoleHierarchy.from_yaml(path)
        assert hierarchy.satisfies("high", "low")
        assert hierarchy.get("high").is_system_role

    def test_duplicate_priority_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            RoleHierarchy([Role("a", 1), Role("b", 1)])
        assert "Duplicate priority" in str(exc_info.value)

    def test_duplicate_name_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate role name"):
            RoleHierarchy([Role("a", 1), Role("A", 2)])

    def test_reserved_names_rejected(self):
        with pytest.raises(ConfigurationError, match="Reserved"):
            RoleHierarchy([Role("system", 1)])

    def test_priority_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="must be >= 1"):
            RoleHierarchy([Role("a", 0)])

    def test_empty_rejected(self):
        with pytest.raises(ConfigurationError):
            RoleHierarchy([])

    def test_all_issues_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            RoleHierarchy([Role("a", 0), Role("b", 0), Role("none", 3)])
        assert len(exc_info.value.issues) == 4

    def test_non_numeric_priority_row(self):
        with pytest.raises(ConfigurationError, match="Invalid priority"):
            RoleHierarchy.from_rows([{"name": "a", "priority": "high"}])
