"""
Identifier namespace: deterministic name -> UUID derivation.

Group and message-type identifiers are UUIDv5 values derived from a human
readable name under a namespace UUID (the agent's app id by default). Two
agents that share a namespace derive the same identifier for the same name
without talking to each other.

Callers may pass `Name("room")`, `Id("6f1c...")` or a plain string. A plain
string is classified exactly once, here: if it has the shape of a UUID it is
treated as an `Id`, otherwise as a `Name`.
"""

import re
import uuid
from typing import Optional, Union

NULL_ID = "00000000-0000-0000-0000-000000000000"

_UUID_SHAPE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class Name:
    """A human readable name, always derived under a namespace."""

    __slots__ = ("value",)

    def __init__(self, value: str):
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Name must be a non-empty string")
        self.value = value.strip()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Name) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("name", self.value))

    def __repr__(self) -> str:
        return f"Name({self.value!r})"


class Id:
    """A pre-minted identifier, passed through exactly as given."""

    __slots__ = ("value",)

    def __init__(self, value: Union[str, uuid.UUID]):
        if isinstance(value, uuid.UUID):
            value = str(value)
        if not isinstance(value, str) or not _UUID_SHAPE.match(value):
            raise ValueError(f"Not a well-formed identifier: {value!r}")
        self.value = value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Id) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("id", self.value))

    def __repr__(self) -> str:
        return f"Id({self.value!r})"


Ref = Union[Name, Id, uuid.UUID, str]


def is_identifier(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID_SHAPE.match(value))


def as_ref(value: Ref) -> Union[Name, Id]:
    """Classify a caller-supplied reference into a Name or an Id."""
    if isinstance(value, (Name, Id)):
        return value
    if isinstance(value, uuid.UUID) or is_identifier(value):
        return Id(value)
    return Name(value)  # type: ignore[arg-type]


def _namespace_uuid(namespace: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(namespace, uuid.UUID):
        return namespace
    if not is_identifier(namespace):
        raise ValueError(f"Namespace must be a UUID, got {namespace!r}")
    return uuid.UUID(namespace)


def derive(ref: Ref, namespace: Union[str, uuid.UUID], scope: Optional[str] = None) -> str:
    """Resolve `ref` to an identifier under `namespace`.

    Ids pass through unchanged. Names become uuid5(namespace, name), or
    uuid5(namespace, "scope:name") when a scope is given.
    """
    resolved = as_ref(ref)
    if isinstance(resolved, Id):
        return resolved.value
    name = resolved.value
    if scope is not None and scope.strip():
        name = f"{scope.strip()}:{name}"
    return str(uuid.uuid5(_namespace_uuid(namespace), name))
