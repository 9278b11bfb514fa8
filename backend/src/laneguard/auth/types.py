"""Type definitions for access decisions."""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Operation(Enum):
    """The CRUD operation being authorized."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: "Operation | str") -> "Operation":
        """Accept either an Operation or its lowercase string value."""
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())

    @property
    def is_write(self) -> bool:
        return self is not Operation.READ


OPERATIONS: tuple[Operation, ...] = (
    Operation.CREATE,
    Operation.READ,
    Operation.UPDATE,
    Operation.DELETE,
)


@dataclass(frozen=True)
class Subject:
    """The authenticated principal a decision is made for.

    Identity verification happens upstream; the engine trusts these values.

    Attributes:
        id: The principal's user ID (compared against ownership columns)
        role: The principal's role name
        internal: True only for the internal-process pseudo-subject, the
            single subject that satisfies ``system`` requirements
    """

    id: Any
    role: str | None
    internal: bool = False

    @classmethod
    def system(cls) -> "Subject":
        """The pseudo-subject used by background jobs and seed scripts."""
        return cls(id=None, role=None, internal=True)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "internal": self.internal}


SYSTEM_SUBJECT = Subject.system()


@dataclass(frozen=True)
class AccessRequest:
    """Input context for a single authorization decision.

    Attributes:
        subject: Who is asking
        entity_key: Registry key of the entity ("work_order", "customer", ...)
        operation: create, read, update or delete
        row: The existing row (read/update/delete); None when it was not found
        proposed_changes: Payload for create/update
    """

    subject: Subject
    entity_key: str
    operation: Operation
    row: dict[str, Any] | None = None
    proposed_changes: dict[str, Any] | None = None
