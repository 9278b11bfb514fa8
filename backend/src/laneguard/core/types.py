"""Field type registry for entity metadata."""

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldType:
    name: str
    reference: bool = False  # Value is a key into another table


# Types the metadata may declare. Anything else is rejected at load time.
FIELD_TYPES: dict[str, FieldType] = {
    name: FieldType(name=name)
    for name in (
        "string",
        "text",
        "integer",
        "number",
        "decimal",
        "currency",
        "boolean",
        "date",
        "timestamp",
        "uuid",
        "email",
        "enum",
        "json",
        "jsonb",
        "array",
        "phone",
    )
}
FIELD_TYPES["foreignKey"] = FieldType(name="foreignKey", reference=True)


def get_field_type(type_name: str) -> FieldType | None:
    """Get a field type definition, or None if the type is unsupported."""
    return FIELD_TYPES.get(type_name)


def supported_type_names() -> list[str]:
    return sorted(FIELD_TYPES)
