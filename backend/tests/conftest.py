"""Shared fixtures for laneguard tests."""

import copy
from pathlib import Path

import pytest

from laneguard.auth.roles import RoleHierarchy
from laneguard.metadata.registry import EntityRegistry

REPO_ROOT = Path(__file__).resolve().parents[2]
METADATA_DIR = REPO_ROOT / "metadata"


# A small, valid descriptor; tests copy and tweak it
WIDGET = {
    "entity": "widget",
    "tableName": "widgets",
    "identityField": "code",
    "fields": {
        "id": {"type": "integer"},
        "code": {"type": "string"},
        "title": {"type": "string"},
        "secret": {"type": "string"},
        "owner_id": {"type": "integer"},
        "status": {"type": "enum", "values": ["open", "closed"]},
        "created_at": {"type": "timestamp"},
    },
    "fieldAccess": {
        "code": {"create": "dispatcher", "read": "customer", "update": "dispatcher", "delete": "none"},
        "title": {"create": "customer", "read": "customer", "update": "technician", "delete": "none"},
        "secret": {"create": "manager", "read": "manager", "update": "manager", "delete": "none"},
        "owner_id": {"create": "customer", "read": "customer", "update": "none", "delete": "none"},
    },
    "entityPermissions": {"create": "customer", "read": "customer", "update": "customer", "delete": "manager"},
    "rlsPolicy": {
        "customer": "own_record_only",
        "technician": "all_records",
        "dispatcher": "all_records",
        "manager": "all_records",
        "admin": "all_records",
    },
    "rlsFilterConfig": {"ownRecordField": "owner_id"},
    "immutableFields": ["code"],
    "sensitiveFields": ["secret"],
}


def widget(**overrides) -> dict:
    """Return a deep copy of WIDGET with top-level keys replaced."""
    data = copy.deepcopy(WIDGET)
    data.update(overrides)
    return data


@pytest.fixture
def hierarchy():
    return RoleHierarchy.default()


@pytest.fixture
def widget_registry(hierarchy):
    return EntityRegistry.build({"widget": widget()}, hierarchy)


@pytest.fixture(scope="session")
def shipped_registry():
    """Registry built from the repository's metadata directory."""
    return EntityRegistry.from_directory(METADATA_DIR)
