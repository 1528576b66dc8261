"""Content type descriptors and pull strategy variants.

A content type is one kind of remote object (dashboards, scripts, ...). Its
descriptor is static data; the pull strategy variant attached to it selects
how objects are retrieved. Adding a content type means adding a descriptor,
adding a retrieval shape means adding a variant here and its fetch function
in core.strategies.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class JsonCollection:
    """Single request returning an array of objects."""


@dataclass(frozen=True)
class Paginated:
    """Cursor pagination: each response names the cursor for the next page."""

    cursor_param: str = "cursor"
    next_cursor_path: str = "next_cursor"
    page_size_param: str | None = None
    page_size: int | None = None


@dataclass(frozen=True)
class OffsetPaginated:
    """Offset/limit pagination.

    With page_numbers set, the offset parameter carries a page number that
    starts at `start` and grows by one per request instead of by page_size.
    """

    offset_param: str = "offset"
    limit_param: str = "limit"
    page_size: int = 100
    page_numbers: bool = False
    start: int = 0


@dataclass(frozen=True)
class ScriptCode:
    """Two-step retrieval: list metadata, then fetch each object's body."""

    list_endpoint: str
    code_endpoint: str
    list_response_path: str
    uid_field: str
    code_field: str = "code"
    code_response_path: str = "reply"
    max_workers: int = 4


@dataclass(frozen=True)
class ZipArtifact:
    """Single binary archive download; each member becomes one object."""

    member_suffixes: tuple[str, ...] = (".yaml", ".yml", ".json")
    manifest_member: str | None = None
    max_members: int = 1000


def extract_identifier(
    obj: dict[str, Any], id_field: str, fallback_id_fields: tuple[str, ...] = ()
) -> str | None:
    """Return the first non-empty identifier field of an object, as a string."""
    for key in (id_field, *fallback_id_fields):
        value = obj.get(key)
        if value is not None and value != "":
            return str(value)
    return None


PullStrategy = JsonCollection | Paginated | OffsetPaginated | ScriptCode | ZipArtifact


@dataclass(frozen=True)
class ContentTypeDescriptor:
    """Static metadata describing one kind of remote object."""

    name: str  # Directory name and CLI name, e.g. "dashboards"
    endpoint: str  # Relative to the module's base API path
    id_field: str  # Remote field holding the unique identifier
    pull_strategy: PullStrategy = field(default_factory=JsonCollection)
    method: str = "GET"
    request_body: dict[str, Any] | None = field(default=None, hash=False, compare=False)
    # Dotted path to the item array, e.g. "objects[0].dashboards_data"
    response_path: str | None = None
    # Tried in order when id_field is absent from an object
    fallback_id_fields: tuple[str, ...] = ()

    @property
    def strategy_name(self) -> str:
        """Name of the pull strategy variant."""
        return type(self.pull_strategy).__name__

    @property
    def singular(self) -> str:
        """Singular form accepted as an alias on the command line."""
        if self.name.endswith("ies"):
            return self.name[:-3] + "y"
        if self.name.endswith("ches"):
            return self.name[:-2]
        return self.name[:-1] if self.name.endswith("s") else self.name

    def identifier_of(self, obj: dict[str, Any]) -> str | None:
        """Extract the identifier of a remote object as a string."""
        return extract_identifier(obj, self.id_field, self.fallback_id_fields)
