"""Load entity metadata from YAML and resolve it into descriptors.

Resolution is an explicit defaulting pass: universal field defaults, access
presets, derived entity permissions and injected protected values are all
materialized here, once, so decision-time code only performs lookups.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from laneguard.auth.rls import PARENT_COMPATIBLE_TAGS, PARENT_DERIVED, RlsTag, parse_tag
from laneguard.auth.roles import Requirement, Role, RoleHierarchy, Sentinel
from laneguard.auth.types import OPERATIONS, Operation
from laneguard.core.types import get_field_type, supported_type_names
from laneguard.errors import ConfigIssue

logger = logging.getLogger(__name__)


RELATIONSHIP_TYPES = ("belongsTo", "hasMany", "hasOne", "polymorphic")

# Key in rlsPolicy that assigns a tag to every role not listed explicitly
ALL_ROLES_KEY = "all_roles"

_SHAPE_NAMES = {dict: "mapping", list: "list"}


def _shaped(raw: Any, path: str, kind: type, issue) -> Any:
    """Return *raw* if it has the expected YAML shape, else an empty one.

    A missing (None) value is simply empty; anything else of the wrong type
    is recorded as an issue.
    """
    if raw is None:
        return kind()
    if not isinstance(raw, kind):
        issue(path, f"Must be a {_SHAPE_NAMES[kind]}, got {type(raw).__name__}")
        return kind()
    return raw


def _is_field(name: Any, fields: Mapping[str, Any]) -> bool:
    return isinstance(name, str) and name in fields


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str
    required: bool = False
    readonly: bool = False
    max_length: int | None = None
    values: tuple[str, ...] | None = None  # enum values
    default: Any = None
    related_entity: str | None = None


@dataclass(frozen=True)
class FieldAccess:
    """Minimum requirement per CRUD operation for one field."""

    create: Requirement
    read: Requirement
    update: Requirement
    delete: Requirement

    def requirement(self, operation: Operation) -> Requirement:
        return getattr(self, operation.value)


@dataclass(frozen=True)
class RlsFilterConfig:
    """Columns compared with the subject ID by ownership tags."""

    own_record_field: str = "id"
    customer_field: str = "customer_id"
    assigned_field: str = "assigned_technician_id"


@dataclass(frozen=True)
class Relationship:
    name: str
    type: str  # "belongsTo" | "hasMany" | "hasOne" | "polymorphic"
    table: str | None = None
    foreign_key: str | None = None
    type_column: str | None = None  # polymorphic only
    parents: tuple[str, ...] = ()  # polymorphic only: allowed type_column values (entity keys)


@dataclass(frozen=True)
class Dependent:
    """Rows outside DB-level cascade that must be removed with the parent."""

    table: str
    foreign_key: str
    polymorphic_column: str | None = None
    polymorphic_value: str | None = None


@dataclass(frozen=True)
class SystemProtection:
    """Protected identity values (lowercase, matched case-insensitively) and what they lock."""

    values: frozenset[str]
    protected_by_field: str
    immutable_fields: frozenset[str] = frozenset()
    prevent_delete: bool = False


@dataclass(frozen=True)
class EntityDescriptor:
    """Fully materialized, read-only configuration of one business entity."""

    key: str
    table_name: str
    primary_key: str
    identity_field: str
    fields: Mapping[str, FieldDefinition]
    field_access: Mapping[str, FieldAccess]
    rls_resource: str
    rls_policy: Mapping[str, RlsTag]
    entity_permissions: Mapping[Operation, Requirement]
    rls_filter_config: RlsFilterConfig = field(default_factory=RlsFilterConfig)
    immutable_fields: frozenset[str] = frozenset()
    sensitive_fields: frozenset[str] = frozenset()
    required_fields: tuple[str, ...] = ()
    system_protected: SystemProtection | None = None
    relationships: Mapping[str, Relationship] = field(default_factory=lambda: MappingProxyType({}))
    dependents: tuple[Dependent, ...] = ()
    source: str | None = None

    @property
    def is_parent_derived(self) -> bool:
        return self.rls_resource == PARENT_DERIVED

    @property
    def polymorphic_anchor(self) -> Relationship | None:
        """The single polymorphic relationship, or None if there is not exactly one."""
        anchors = [r for r in self.relationships.values() if r.type == "polymorphic"]
        return anchors[0] if len(anchors) == 1 else None

    def cascade_targets(self) -> list[Dependent]:
        return list(self.dependents)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def access_presets(hierarchy: RoleHierarchy) -> dict[str, dict[str, str]]:
    """Named fieldAccess shortcuts usable as a field's whole access entry."""
    public = hierarchy.lowest.name
    top = hierarchy.highest.name
    return {
        "SYSTEM_ONLY": {"create": "none", "read": "none", "update": "none", "delete": "none"},
        "PUBLIC_READONLY": {"create": "none", "read": public, "update": "none", "delete": "none"},
        "MANAGER_MANAGED": {"create": "manager", "read": public, "update": "manager", "delete": "none"},
        "SELF_EDITABLE": {"create": public, "read": public, "update": public, "delete": "none"},
        "ADMIN_ONLY": {"create": top, "read": top, "update": top, "delete": "none"},
    }


def universal_field_access(hierarchy: RoleHierarchy) -> dict[str, dict[str, str]]:
    """Defaults for the contract fields every entity may carry."""
    presets = access_presets(hierarchy)
    return {
        "id": presets["PUBLIC_READONLY"],
        "created_at": presets["PUBLIC_READONLY"],
        "updated_at": presets["PUBLIC_READONLY"],
        "is_active": presets["MANAGER_MANAGED"],
        "status": presets["MANAGER_MANAGED"],
    }


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class MetadataLoader:
    """Loads the role hierarchy and raw entity definitions from YAML files.

    Layout::

        metadata/
          roles.yaml          # optional; built-in defaults otherwise
          entities/*.yaml     # one file per entity, top-level key "entity"
    """

    def __init__(self, metadata_path: Path):
        self.metadata_path = metadata_path
        self.raw_entities: dict[str, dict[str, Any]] = {}
        self.sources: dict[str, Path] = {}
        self.issues: list[ConfigIssue] = []

    def load_all(self) -> None:
        """Load all entity files, recording duplicates as issues."""
        self._load_entities()

    def load_roles(self) -> RoleHierarchy:
        roles_file = self.metadata_path / "roles.yaml"
        if roles_file.exists():
            return RoleHierarchy.from_yaml(roles_file)
        logger.warning("No roles.yaml under %s; using built-in role hierarchy", self.metadata_path)
        return RoleHierarchy.default()

    def _load_entities(self) -> None:
        entities_path = self.metadata_path / "entities"
        if not entities_path.exists():
            return

        for yaml_file in sorted(entities_path.glob("*.yaml")):
            with open(yaml_file) as f:
                data = yaml.safe_load(f)
            if not isinstance(data, dict) or "entity" not in data:
                continue
            key = data["entity"]
            if not isinstance(key, str):
                self.issues.append(ConfigIssue(yaml_file.stem, "entity", "Entity key must be a string"))
                continue
            if key in self.raw_entities:
                # Two shapes for one entity: refuse to guess which is canonical
                self.issues.append(
                    ConfigIssue(
                        key,
                        "",
                        f"Defined twice ({self.sources[key].name} and {yaml_file.name}); "
                        "keep exactly one canonical metadata file per entity",
                    )
                )
                continue
            self.raw_entities[key] = data
            self.sources[key] = yaml_file

    def list_entities(self) -> list[str]:
        return list(self.raw_entities.keys())


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class DescriptorResolver:
    """Turns a raw descriptor dict into an EntityDescriptor.

    Issues are collected rather than raised so every violation in every
    entity can be reported in one ConfigurationError.

    Args:
        hierarchy: Role hierarchy used to resolve role names
        value_sources: Named protected-value sets that ``systemProtected.valuesFrom``
            may reference (e.g. ``{"system_roles": {...}}``)
    """

    def __init__(
        self,
        hierarchy: RoleHierarchy,
        value_sources: Mapping[str, Iterable[str]] | None = None,
    ):
        self.hierarchy = hierarchy
        self.value_sources = {
            k: frozenset(str(v).lower() for v in values) for k, values in (value_sources or {}).items()
        }
        self._presets = access_presets(hierarchy)
        self._universal = universal_field_access(hierarchy)

    def resolve(
        self, key: str, data: Mapping[str, Any], source: str | None = None
    ) -> tuple[EntityDescriptor | None, list[ConfigIssue]]:
        issues: list[ConfigIssue] = []

        def issue(path: str, message: str) -> None:
            issues.append(ConfigIssue(key, path, message))

        if not isinstance(data, Mapping):
            issue("", f"Descriptor must be a mapping, got {type(data).__name__}")
            return None, issues

        table_name = data.get("tableName")
        if not isinstance(table_name, str) or not table_name:
            issue("tableName", "Required property missing")
            table_name = key

        fields = self._resolve_fields(data, issue)
        primary_key = data.get("primaryKey", "id")
        if not _is_field(primary_key, fields):
            issue("primaryKey", f"Primary key '{primary_key}' not defined in fields")

        identity_field = data.get("identityField") or primary_key
        if not _is_field(identity_field, fields):
            issue("identityField", f"Identity field '{identity_field}' not defined in fields")

        field_access = self._resolve_field_access(
            _shaped(data.get("fieldAccess"), "fieldAccess", dict, issue), fields, issue
        )
        entity_permissions = self._resolve_entity_permissions(
            _shaped(data.get("entityPermissions"), "entityPermissions", dict, issue), field_access, issue
        )
        relationships = self._resolve_relationships(
            _shaped(data.get("relationships"), "relationships", dict, issue), fields, issue
        )
        rls_resource = data.get("rlsResource") or table_name
        rls_policy = self._resolve_rls_policy(data.get("rlsPolicy"), issue)
        rls_filter_config = self._resolve_rls_filter_config(
            _shaped(data.get("rlsFilterConfig"), "rlsFilterConfig", dict, issue), rls_policy, fields, issue
        )

        if rls_resource == PARENT_DERIVED:
            contradicting = sorted(
                f"{role}={tag.value}"
                for role, tag in rls_policy.items()
                if tag not in PARENT_COMPATIBLE_TAGS
            )
            if contradicting:
                issue(
                    "rlsPolicy",
                    "PARENT_DERIVED entity declares independent policies: " + ", ".join(contradicting),
                )
            anchors = [r for r in relationships.values() if r.type == "polymorphic"]
            if len(anchors) != 1:
                issue(
                    "relationships",
                    f"PARENT_DERIVED entity needs exactly one polymorphic relationship, found {len(anchors)}",
                )
        elif RlsTag.PARENT_ENTITY_ACCESS in rls_policy.values():
            issue("rlsResource", "parent_entity_access requires rlsResource: PARENT_DERIVED")

        immutable_fields = self._field_subset(data, "immutableFields", fields, issue)
        sensitive_fields = self._field_subset(data, "sensitiveFields", fields, issue)
        required_fields = tuple(self._field_subset(data, "requiredFields", fields, issue, ordered=True))
        system_protected = self._resolve_system_protected(
            data.get("systemProtected"), identity_field, fields, issue
        )
        dependents = self._resolve_dependents(_shaped(data.get("dependents"), "dependents", list, issue), issue)

        if issues:
            return None, issues

        descriptor = EntityDescriptor(
            key=key,
            table_name=table_name,
            primary_key=primary_key,
            identity_field=identity_field,
            fields=MappingProxyType(fields),
            field_access=MappingProxyType(field_access),
            rls_resource=rls_resource,
            rls_policy=MappingProxyType(rls_policy),
            entity_permissions=MappingProxyType(entity_permissions),
            rls_filter_config=rls_filter_config,
            immutable_fields=frozenset(immutable_fields),
            sensitive_fields=frozenset(sensitive_fields),
            required_fields=required_fields,
            system_protected=system_protected,
            relationships=MappingProxyType(relationships),
            dependents=dependents,
            source=source,
        )
        return descriptor, issues

    # -- fields ---------------------------------------------------------------

    def _resolve_fields(self, data: Mapping[str, Any], issue) -> dict[str, FieldDefinition]:
        raw_fields = _shaped(data.get("fields"), "fields", dict, issue)
        enums = _shaped(data.get("enums"), "enums", dict, issue)
        if not raw_fields:
            issue("fields", "Entity declares no fields")

        fields: dict[str, FieldDefinition] = {}
        for name, spec in raw_fields.items():
            spec = spec or {}
            if not isinstance(spec, dict):
                issue(f"fields.{name}", f"Field definition must be a mapping with a type, got {spec!r}")
                continue
            field_type = spec.get("type")
            if not field_type:
                issue(f"fields.{name}", "Missing type property")
                continue
            resolved_type = get_field_type(field_type) if isinstance(field_type, str) else None
            if resolved_type is None:
                issue(
                    f"fields.{name}",
                    f"Unsupported type '{field_type}'. Supported: {', '.join(supported_type_names())}",
                )
                continue
            if resolved_type.reference and not isinstance(spec.get("relatedEntity"), str):
                issue(f"fields.{name}", f"{field_type} field must name its relatedEntity")

            enum_spec = enums.get(name) if isinstance(enums.get(name), dict) else {}
            values = spec.get("values") or enum_spec.get("values")
            if values is not None and not isinstance(values, list):
                issue(f"fields.{name}.values", "Must be a list")
                values = None
            if field_type == "enum" and not values:
                issue(f"fields.{name}", "Enum field must have values defined in field.values or enums.<field>.values")

            fields[name] = FieldDefinition(
                name=name,
                type=field_type,
                required=bool(spec.get("required", False)),
                readonly=bool(spec.get("readonly", False)),
                max_length=spec.get("maxLength"),
                values=tuple(values) if values else None,
                default=spec.get("default", enum_spec.get("default")),
                related_entity=spec.get("relatedEntity") if isinstance(spec.get("relatedEntity"), str) else None,
            )
        return fields

    def _field_subset(
        self,
        data: Mapping[str, Any],
        prop: str,
        fields: Mapping[str, FieldDefinition],
        issue,
        ordered: bool = False,
    ) -> list[str]:
        names = []
        for name in _shaped(data.get(prop), prop, list, issue):
            if not _is_field(name, fields):
                issue(prop, f"'{name}' not defined in fields")
                continue
            names.append(name)
        return names if ordered else sorted(set(names))

    # -- access ---------------------------------------------------------------

    def _requirement(self, value: Any, path: str, issue) -> Requirement:
        requirement = self.hierarchy.parse_requirement(value)
        if requirement is None:
            valid = ", ".join(["none", "system", *self.hierarchy.names])
            issue(path, f"Invalid value '{value}'. Valid: {valid}")
            return Sentinel.NONE
        return requirement

    def _resolve_field_access(
        self,
        raw_access: Mapping[str, Any],
        fields: Mapping[str, FieldDefinition],
        issue,
    ) -> dict[str, FieldAccess]:
        for name in raw_access:
            if name not in fields:
                issue(f"fieldAccess.{name}", "Access entry for a field that is not defined in fields")

        matrix: dict[str, FieldAccess] = {}
        for name in fields:
            entry = raw_access.get(name)
            if isinstance(entry, str):
                preset = self._presets.get(entry)
                if preset is None:
                    issue(
                        f"fieldAccess.{name}",
                        f"Unknown access preset '{entry}'. Valid: {', '.join(self._presets)}",
                    )
                    continue
                entry = preset
            elif entry is not None and not isinstance(entry, Mapping):
                issue(f"fieldAccess.{name}", "Must be a mapping with create/read/update/delete keys or a preset name")
                continue

            entry = entry or {}
            fallback = self._universal.get(name, {})
            resolved: dict[str, Requirement] = {}
            for op in OPERATIONS:
                value = entry.get(op.value, fallback.get(op.value))
                if value is None:
                    issue(
                        f"fieldAccess.{name}.{op.value}",
                        "No access entry and no universal default for this field",
                    )
                    resolved[op.value] = Sentinel.NONE
                    continue
                resolved[op.value] = self._requirement(value, f"fieldAccess.{name}.{op.value}", issue)

            if name == "id" and resolved["read"] is Sentinel.NONE:
                issue(
                    "fieldAccess.id",
                    "id must stay readable; remove the entry to inherit PUBLIC_READONLY",
                )
            matrix[name] = FieldAccess(**resolved)
        return matrix

    def _resolve_entity_permissions(
        self,
        raw: Mapping[str, Any],
        field_access: Mapping[str, FieldAccess],
        issue,
    ) -> dict[Operation, Requirement]:
        permissions: dict[Operation, Requirement] = {}
        for op in OPERATIONS:
            if op.value in raw:
                value = raw[op.value]
                if value is None:
                    # Disabled for the API; internal processes only
                    permissions[op] = Sentinel.SYSTEM
                else:
                    permissions[op] = self._requirement(value, f"entityPermissions.{op.value}", issue)
                continue
            permissions[op] = self._derive_minimum_role(field_access, op)
        return permissions

    def _derive_minimum_role(
        self, field_access: Mapping[str, FieldAccess], op: Operation
    ) -> Requirement:
        """Lowest role granted the operation on any field; highest role if none."""
        granted = [
            access.requirement(op)
            for access in field_access.values()
            if isinstance(access.requirement(op), Role)
        ]
        return min(granted) if granted else self.hierarchy.highest

    # -- row-level security ---------------------------------------------------

    def _resolve_rls_policy(self, raw: Mapping[str, Any] | None, issue) -> dict[str, RlsTag]:
        if not raw:
            issue("rlsPolicy", "Required property missing; every role needs a policy tag")
            return {}
        if not isinstance(raw, dict):
            issue("rlsPolicy", f"Must be a mapping of role name to policy tag, got {type(raw).__name__}")
            return {}

        policy: dict[str, RlsTag] = {}
        default_tag: RlsTag | None = None
        for role_name, value in raw.items():
            tag = parse_tag(value)
            if tag is None:
                valid = ", ".join(t.value for t in RlsTag)
                issue(f"rlsPolicy.{role_name}", f"Invalid policy '{value}'. Valid: {valid}")
                continue
            if role_name == ALL_ROLES_KEY:
                default_tag = tag
                continue
            role = self.hierarchy.get(role_name)
            if role is None:
                issue(f"rlsPolicy.{role_name}", f"Unknown role '{role_name}'")
                continue
            policy[role.name] = tag

        for role in self.hierarchy:
            if role.name in policy:
                continue
            if default_tag is not None:
                policy[role.name] = default_tag
            else:
                issue("rlsPolicy", f"No policy tag for role '{role.name}'")
        return policy

    def _resolve_rls_filter_config(
        self,
        raw: Mapping[str, Any],
        rls_policy: Mapping[str, RlsTag],
        fields: Mapping[str, FieldDefinition],
        issue,
    ) -> RlsFilterConfig:
        config = RlsFilterConfig(
            own_record_field=raw.get("ownRecordField", "id"),
            customer_field=raw.get("customerField", "customer_id"),
            assigned_field=raw.get("assignedField", "assigned_technician_id"),
        )
        used = set(rls_policy.values())
        checks = (
            ({RlsTag.OWN_RECORD_ONLY}, "ownRecordField", config.own_record_field),
            (
                {RlsTag.OWN_WORK_ORDERS_ONLY, RlsTag.OWN_INVOICES_ONLY, RlsTag.OWN_CONTRACTS_ONLY},
                "customerField",
                config.customer_field,
            ),
            ({RlsTag.ASSIGNED_WORK_ORDERS_ONLY}, "assignedField", config.assigned_field),
        )
        for tags, prop, column in checks:
            if used & tags and not _is_field(column, fields):
                issue(f"rlsFilterConfig.{prop}", f"Ownership column '{column}' not defined in fields")
        return config

    # -- relationships & protection --------------------------------------------

    def _resolve_relationships(
        self,
        raw: Mapping[str, Any],
        fields: Mapping[str, FieldDefinition],
        issue,
    ) -> dict[str, Relationship]:
        relationships: dict[str, Relationship] = {}
        for name, spec in raw.items():
            spec = spec or {}
            if not isinstance(spec, dict):
                issue(f"relationships.{name}", "Relationship must be a mapping")
                continue
            rel_type = spec.get("type")
            if rel_type not in RELATIONSHIP_TYPES:
                issue(
                    f"relationships.{name}",
                    f"Invalid type '{rel_type}'. Valid: {', '.join(RELATIONSHIP_TYPES)}",
                )
                continue

            if rel_type == "polymorphic":
                type_column = spec.get("typeColumn")
                foreign_key = spec.get("foreignKey")
                parents = tuple(_shaped(spec.get("parents"), f"relationships.{name}.parents", list, issue))
                if not all(isinstance(p, str) for p in parents):
                    issue(f"relationships.{name}.parents", "Parent entries must be entity keys")
                    parents = tuple(p for p in parents if isinstance(p, str))
                for prop, column in (("typeColumn", type_column), ("foreignKey", foreign_key)):
                    if not _is_field(column, fields):
                        issue(f"relationships.{name}.{prop}", f"Column '{column}' not defined in fields")
                if not parents:
                    issue(f"relationships.{name}.parents", "Polymorphic relationship lists no parent entities")
                relationships[name] = Relationship(
                    name=name,
                    type=rel_type,
                    foreign_key=foreign_key,
                    type_column=type_column,
                    parents=parents,
                )
                continue

            table = spec.get("table")
            if not isinstance(table, str) or not table:
                issue(f"relationships.{name}.table", "Missing table property")
                continue
            if rel_type == "belongsTo" and not _is_field(spec.get("foreignKey"), fields):
                issue(
                    f"relationships.{name}.foreignKey",
                    f"Column '{spec.get('foreignKey')}' not defined in fields",
                )
            relationships[name] = Relationship(
                name=name,
                type=rel_type,
                table=table,
                foreign_key=spec.get("foreignKey"),
            )
        return relationships

    def _resolve_system_protected(
        self,
        raw: Mapping[str, Any] | None,
        identity_field: str,
        fields: Mapping[str, FieldDefinition],
        issue,
    ) -> SystemProtection | None:
        if not raw:
            return None
        if not isinstance(raw, dict):
            issue("systemProtected", f"Must be a mapping, got {type(raw).__name__}")
            return None

        if "valuesFrom" in raw:
            source = raw["valuesFrom"]
            if not isinstance(source, str) or source not in self.value_sources:
                issue("systemProtected.valuesFrom", f"Unknown protected value source '{source}'")
                values: frozenset[str] = frozenset()
            else:
                values = self.value_sources[source]
        else:
            values = frozenset(
                str(v).lower() for v in _shaped(raw.get("values"), "systemProtected.values", list, issue)
            )

        protected_by = raw.get("protectedByField") or identity_field
        if not _is_field(protected_by, fields):
            issue("systemProtected.protectedByField", f"Field '{protected_by}' not defined in fields")

        immutable = frozenset(
            name
            for name in _shaped(raw.get("immutableFields"), "systemProtected.immutableFields", list, issue)
            if isinstance(name, str)
        )
        for name in sorted(immutable - set(fields)):
            issue("systemProtected.immutableFields", f"'{name}' not defined in fields")

        return SystemProtection(
            values=values,
            protected_by_field=protected_by,
            immutable_fields=immutable,
            prevent_delete=bool(raw.get("preventDelete", False)),
        )

    def _resolve_dependents(self, raw: list[Mapping[str, Any]], issue) -> tuple[Dependent, ...]:
        dependents = []
        for i, spec in enumerate(raw):
            if not isinstance(spec, dict) or not all(
                isinstance(spec.get(prop), str) and spec.get(prop) for prop in ("table", "foreignKey")
            ):
                issue(f"dependents[{i}]", "Dependent needs table and foreignKey")
                continue
            poly = _shaped(spec.get("polymorphicType"), f"dependents[{i}].polymorphicType", dict, issue)
            dependents.append(
                Dependent(
                    table=spec["table"],
                    foreign_key=spec["foreignKey"],
                    polymorphic_column=poly.get("column"),
                    polymorphic_value=poly.get("value"),
                )
            )
        return tuple(dependents)
