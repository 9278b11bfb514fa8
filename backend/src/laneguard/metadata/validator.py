"""
metadata/validator.py: structural checks for laneguard YAML metadata files.

Entity descriptors and the role hierarchy file are checked against the JSON
Schemas shipped in ``schemas/``. Cross-entity and role-resolution invariants
(role names resolve, immutable fields exist, PARENT_DERIVED anchors) are the
registry's job; this pass only catches malformed documents early and with a
JSON pointer to the offending node.

Usage:
    from laneguard.metadata.validator import validate_metadata_dir

    for issue in validate_metadata_dir(Path("metadata"), strict=True):
        print(issue)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

logger = logging.getLogger(__name__)

_SCHEMAS_DIR = Path(__file__).parent / "schemas"

ENTITY_SCHEMA = "entity.schema.json"
ROLES_SCHEMA = "roles.schema.json"

# entities/<key>.yaml and the top-level roles file
_SUBDIR_SCHEMA: dict[str, str] = {"entities": ENTITY_SCHEMA}
_FILE_SCHEMA: dict[str, str] = {"roles.yaml": ROLES_SCHEMA}


@dataclass
class ValidationIssue:
    """A single validation finding for a metadata YAML file."""

    file: Path
    message: str
    path: str = ""           # e.g. "fieldAccess/name/read" or "roles[0]/priority"
    severity: str = "error"  # "error" | "warning"

    def __str__(self) -> str:
        where = f"{self.file} at {self.path}" if self.path else str(self.file)
        return f"[{self.severity.upper()}] {where}: {self.message}"


@lru_cache(maxsize=1)
def _schemas() -> tuple[Registry, dict[str, dict[str, Any]]]:
    """Load every schema file once and index them for $ref resolution."""
    documents = {
        path.name: json.loads(path.read_text())
        for path in sorted(_SCHEMAS_DIR.glob("*.schema.json"))
    }
    registry = Registry().with_resources(
        (doc["$id"], Resource(contents=doc, specification=DRAFT202012))
        for doc in documents.values()
    )
    return registry, documents


def _pointer(error: ValidationError) -> str:
    out = ""
    for part in error.absolute_path:
        out += f"[{part}]" if isinstance(part, int) else (f"/{part}" if out else str(part))
    return out


def _sensitive_field_warnings(yaml_path: Path, doc: dict[str, Any]) -> list[ValidationIssue]:
    """Sensitive fields should carry an explicit fieldAccess entry."""
    field_access = doc.get("fieldAccess") or {}
    return [
        ValidationIssue(
            file=yaml_path,
            message=f"Sensitive field '{name}' has no explicit fieldAccess entry",
            path=f"sensitiveFields/{name}",
            severity="warning",
        )
        for name in doc.get("sensitiveFields") or []
        if name not in field_access
    ]


def schema_for(yaml_path: Path) -> str | None:
    """Infer the schema filename for a metadata file from its location."""
    return _FILE_SCHEMA.get(yaml_path.name) or _SUBDIR_SCHEMA.get(yaml_path.parent.name)


def validate_yaml_file(yaml_path: Path, schema_name: str) -> list[ValidationIssue]:
    """
    Validate one YAML file against the named schema.

    Args:
        yaml_path:   File to check.
        schema_name: Schema filename, e.g. ``"entity.schema.json"``.

    Returns:
        Issues found, sorted by location (empty when the file is valid).
    """
    try:
        doc = yaml.safe_load(yaml_path.read_text())
    except yaml.YAMLError as exc:
        return [ValidationIssue(file=yaml_path, message=f"YAML parse error: {exc}")]
    if doc is None:
        return [ValidationIssue(file=yaml_path, message="File is empty or contains only whitespace")]

    registry, documents = _schemas()
    validator = Draft202012Validator(documents[schema_name], registry=registry)
    issues = [
        ValidationIssue(file=yaml_path, message=error.message, path=_pointer(error))
        for error in sorted(validator.iter_errors(doc), key=lambda e: list(map(str, e.absolute_path)))
    ]
    if schema_name == ENTITY_SCHEMA and isinstance(doc, dict):
        issues.extend(_sensitive_field_warnings(yaml_path, doc))
    return issues


def _metadata_files(metadata_dir: Path) -> list[tuple[Path, str]]:
    files = [
        (metadata_dir / name, schema)
        for name, schema in _FILE_SCHEMA.items()
        if (metadata_dir / name).is_file()
    ]
    for subdir, schema in _SUBDIR_SCHEMA.items():
        files.extend((path, schema) for path in sorted((metadata_dir / subdir).glob("*.yaml")))
    return files


def validate_metadata_dir(metadata_dir: Path, *, strict: bool = False) -> list[ValidationIssue]:
    """
    Validate ``roles.yaml`` and every ``entities/*.yaml`` under *metadata_dir*.

    With ``strict=True`` warnings are reported as errors, so a CI run fails on
    sensitive fields that rely on implicit access defaults.
    """
    if not metadata_dir.is_dir():
        return [
            ValidationIssue(file=metadata_dir, message=f"Metadata directory does not exist: {metadata_dir}")
        ]

    files = _metadata_files(metadata_dir)
    issues: list[ValidationIssue] = []
    for yaml_file, schema_name in files:
        for issue in validate_yaml_file(yaml_file, schema_name):
            if strict and issue.severity == "warning":
                issue.severity = "error"
            issues.append(issue)

    logger.debug("Validated %d metadata files under %s", len(files), metadata_dir)
    return issues
