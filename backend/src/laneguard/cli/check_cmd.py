"""Decision CLI command: evaluate one request and print the decision."""

import json

import click

from laneguard.auth.engine import AccessEngine
from laneguard.auth.types import AccessRequest, Operation, Subject
from laneguard.cli.metadata_cmd import _load_registry, _resolve_metadata_path
from laneguard.persistence.fetcher import MappingRowFetcher

# Exit code for a denied decision (1 is reserved for usage/config errors)
DENIED_EXIT_CODE = 2


def _json_option(value: str | None, name: str) -> dict | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=name)
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint=name)
    return parsed


@click.command()
@click.option("--role", required=True, help="Subject role name.")
@click.option("--entity", "entity_key", required=True, help="Entity key, e.g. work_order.")
@click.option(
    "--op",
    "operation",
    required=True,
    type=click.Choice([op.value for op in Operation]),
    help="Operation to authorize.",
)
@click.option("--subject-id", default=None, help="Subject user ID (compared with ownership columns).")
@click.option("--row", default=None, help="Existing row as a JSON object.")
@click.option("--changes", default=None, help="Create/update payload as a JSON object.")
@click.option(
    "--parents",
    default=None,
    help='Parent rows for parent_entity_access as JSON: {"table": {"id": row}}.',
)
def check(role, entity_key, operation, subject_id, row, changes, parents):
    """Evaluate a single access decision and print it as JSON.

    Exits 0 when allowed and 2 when denied.
    """
    registry = _load_registry(_resolve_metadata_path())
    tables = _json_option(parents, "--parents") or {}
    engine = AccessEngine(registry, fetch_row=MappingRowFetcher(tables))

    if subject_id is not None and subject_id.isdigit():
        subject_id = int(subject_id)

    request = AccessRequest(
        subject=Subject(id=subject_id, role=role),
        entity_key=entity_key,
        operation=Operation.parse(operation),
        row=_json_option(row, "--row"),
        proposed_changes=_json_option(changes, "--changes"),
    )
    decision = engine.authorize(request)
    click.echo(json.dumps(decision.to_dict(), indent=2, sort_keys=True, default=str))
    if not decision.allowed:
        raise SystemExit(DENIED_EXIT_CODE)
