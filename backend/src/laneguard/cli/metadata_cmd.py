"""Metadata CLI commands: validate and matrix."""

import os
from pathlib import Path

import click

from laneguard.auth.permissions import derive_capabilities, field_access_matrix
from laneguard.auth.types import OPERATIONS
from laneguard.errors import ConfigurationError
from laneguard.metadata.registry import EntityRegistry
from laneguard.metadata.validator import (
    ValidationIssue,
    schema_for,
    validate_metadata_dir,
    validate_yaml_file,
)
from laneguard.persistence.config import default_base_path


def _resolve_metadata_path() -> Path:
    """Resolve the metadata directory from the environment or cwd."""
    override = os.environ.get("LANEGUARD_METADATA_PATH")
    if override:
        return Path(override)
    return default_base_path() / "metadata"


def _load_registry(metadata_path: Path) -> EntityRegistry:
    try:
        return EntityRegistry.from_directory(metadata_path)
    except ConfigurationError as e:
        click.echo(click.style(f"\nSemantic validation failed: {e}", fg="red"), err=True)
        raise SystemExit(1)


def _report_schema_issues(issues: list[ValidationIssue], strict: bool) -> None:
    """Print issues; exit 1 on errors (or on warnings when strict)."""
    failing = [i for i in issues if strict or i.severity == "error"]
    for issue in issues:
        if strict:
            issue.severity = "error"
        click.echo(click.style(str(issue), fg="red" if issue.severity == "error" else "yellow"))

    if failing:
        click.echo(click.style(f"\n{len(failing)} schema error(s) found", fg="red", bold=True))
        raise SystemExit(1)
    if issues:
        click.echo(click.style(f"{len(issues)} warning(s) found.", fg="yellow"))


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Treat warnings as errors.",
)
@click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Validate a single YAML file instead of the whole metadata directory.",
)
def validate(strict: bool, target_path: Path | None):
    """Validate metadata YAML files against JSON Schemas and access invariants."""
    metadata_path = _resolve_metadata_path()

    # ── Structural pass ──────────────────────────────────────────────────────
    if target_path is not None:
        schema_name = schema_for(target_path)
        if schema_name is None:
            click.echo(
                f"Warning: no schema applies to '{target_path}' "
                "(expected roles.yaml or entities/<key>.yaml).",
                err=True,
            )
            schema_issues = []
        else:
            schema_issues = validate_yaml_file(target_path, schema_name)
    elif not metadata_path.exists():
        click.echo(f"Error: Metadata directory not found at {metadata_path}", err=True)
        raise SystemExit(1)
    else:
        schema_issues = validate_metadata_dir(metadata_path)

    _report_schema_issues(schema_issues, strict)

    # ── Registry pass (whole directory only) ─────────────────────────────────
    if target_path is None:
        registry = _load_registry(metadata_path)
        click.echo(f"\nLoaded {len(registry)} entities (roles: {' < '.join(registry.hierarchy.names)}):")
        for key in registry.keys():
            entity = registry[key]
            click.echo(f"  ✓ {key} ({len(entity.fields)} fields, rls: {entity.rls_resource})")

    click.echo(click.style("\nAll metadata is valid.", fg="green", bold=True))


@metadata.command("matrix")
@click.argument("entity_key")
@click.option("--role", "role_name", default=None, help="Only show one role.")
def matrix_cmd(entity_key: str, role_name: str | None):
    """Show the resolved per-role field access matrix for an entity."""
    metadata_path = _resolve_metadata_path()
    registry = _load_registry(metadata_path)

    entity = registry.get(entity_key)
    if entity is None:
        click.echo(f"Error: Unknown entity '{entity_key}'. Known: {', '.join(registry.keys())}", err=True)
        raise SystemExit(1)

    hierarchy = registry.hierarchy
    if role_name is not None and hierarchy.get(role_name) is None:
        click.echo(f"Error: Unknown role '{role_name}'. Known: {', '.join(hierarchy.names)}", err=True)
        raise SystemExit(1)

    caps = derive_capabilities(entity)
    minimum = ", ".join(
        f"{op}={role or '-'}" for op, role in caps["minimum_role"].items()
    )
    click.echo(f"{entity.key} (table {entity.table_name}, rls {entity.rls_resource})")
    click.echo(f"Entity permissions: {minimum}")

    width = max(len(name) for name in entity.field_access)
    letters = [op.value[0].upper() for op in OPERATIONS]
    for role, fields in field_access_matrix(entity, hierarchy).items():
        if role_name is not None and role != role_name.lower():
            continue
        tag = entity.rls_policy[role].value
        click.echo(f"\n{role} [{tag}]")
        click.echo(f"  {'field'.ljust(width)}  {' '.join(letters)}")
        for name, ops in fields.items():
            marks = " ".join(
                letter if ops[op.value] else "." for letter, op in zip(letters, OPERATIONS)
            )
            suffix = "  (sensitive)" if name in entity.sensitive_fields else ""
            click.echo(f"  {name.ljust(width)}  {marks}{suffix}")
