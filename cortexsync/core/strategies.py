"""Pull strategies: retrieval algorithms for each remote API shape.

Every strategy has the same contract, `fetch(client, descriptor, params)`,
and returns a FetchResult. Strategies only read from the platform, so a fetch
can be repeated safely. A transport failure on the first request raises
ContentTypeFetchFailed; a failure after data has been received keeps what was
fetched and records a warning instead.
"""

import copy
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Protocol

import yaml

from ..models.content_types import (
    ContentTypeDescriptor,
    JsonCollection,
    OffsetPaginated,
    Paginated,
    ScriptCode,
    ZipArtifact,
)
from .archive import extract_members
from .codec import decode, fingerprint
from .errors import ContentTypeFetchFailed, TransportError, UnsafeArchive

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"([^\[\]]*)((?:\[\d+\])*)")
_INDEX = re.compile(r"\[(\d+)\]")


class RequestClient(Protocol):
    """The part of ApiClient the strategies depend on."""

    def request(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        body: Any = None,
        raw: bool = False,
    ) -> Any: ...


@dataclass
class FetchResult:
    """Objects returned by one strategy invocation."""

    objects: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Ids whose object is known to exist but could not be fully retrieved
    incomplete_ids: set[str] = field(default_factory=set)
    partial: bool = False

    def add_items(self, items: list[Any], content_type: str) -> int:
        """Append mapping items, warning about anything else. Returns count added."""
        added = 0
        for item in items:
            if isinstance(item, dict):
                self.objects.append(item)
                added += 1
            else:
                self.warnings.append(f"{content_type}: skipped non-object item {item!r:.60}")
        return added


def extract_by_path(data: Any, path: str) -> Any:
    """Extract a value using dot notation with list indexes.

    Examples: "reply.scripts", "objects[0].dashboards_data".

    Raises:
        LookupError: If a segment or index is missing
    """
    current = data
    for segment in path.split("."):
        match = _SEGMENT.fullmatch(segment)
        if match is None:
            raise KeyError(f"Invalid path segment '{segment}'")
        key, indexes = match.groups()
        if key:
            if not isinstance(current, dict) or key not in current:
                raise KeyError(f"Path segment '{key}' not found")
            current = current[key]
        for index in _INDEX.findall(indexes):
            position = int(index)
            if not isinstance(current, list) or position >= len(current):
                raise IndexError(f"Array index {position} not found")
            current = current[position]
    return current


def extract_items(data: Any, path: str | None, content_type: str) -> tuple[list[Any], str | None]:
    """Locate the item array in a response.

    A missing path or a non-array value yields no items and a warning, since
    it can mean either "no data" or "the API response structure changed".
    """
    if path:
        try:
            value = extract_by_path(data, path)
        except LookupError:
            return [], (
                f"{content_type}: response path '{path}' not found. The endpoint may "
                "have no data, or its response structure has changed."
            )
        if not isinstance(value, list):
            return [], (
                f"{content_type}: response path '{path}' exists but is not an array "
                f"(found {type(value).__name__})."
            )
        return value, None

    if not isinstance(data, list):
        return [], (
            f"{content_type}: expected an array at the response root but found "
            f"{type(data).__name__}."
        )
    return data, None


def _request(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    params: dict[str, Any],
    extra: dict[str, Any] | None = None,
    endpoint: str | None = None,
    raw: bool = False,
) -> Any:
    """Issue a descriptor's request with extra parameters merged in.

    GET requests carry parameters in the query string. POST requests carry
    them inside "request_data" when the body has that envelope, otherwise at
    the top level of the body.
    """
    merged = {**params, **(extra or {})}
    method = descriptor.method.upper()

    if method == "GET":
        return client.request(method, endpoint or descriptor.endpoint, query=merged or None, raw=raw)

    body = copy.deepcopy(descriptor.request_body) if descriptor.request_body is not None else {}
    target = body["request_data"] if isinstance(body.get("request_data"), dict) else body
    target.update(merged)
    return client.request(method, endpoint or descriptor.endpoint, body=body, raw=raw)


def _page_failed(
    result: FetchResult,
    descriptor: ContentTypeDescriptor,
    page: int,
    error: TransportError,
) -> None:
    if page == 0:
        raise ContentTypeFetchFailed(descriptor.name, error) from error
    result.partial = True
    result.warnings.append(
        f"{descriptor.name}: request for page {page + 1} failed; keeping "
        f"{len(result.objects)} object(s) from earlier pages: {error}"
    )


# =============================================================================
# Strategy implementations
# =============================================================================

def fetch_json_collection(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    strategy: JsonCollection,
    params: dict[str, Any],
) -> FetchResult:
    """Single request returning every object."""
    result = FetchResult()
    try:
        data = _request(client, descriptor, params)
    except TransportError as e:
        raise ContentTypeFetchFailed(descriptor.name, e) from e

    items, warning = extract_items(data, descriptor.response_path, descriptor.name)
    if warning:
        result.warnings.append(warning)
    result.add_items(items, descriptor.name)
    return result


def fetch_paginated(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    strategy: Paginated,
    params: dict[str, Any],
) -> FetchResult:
    """Follow next-page cursors until the server stops returning them."""
    result = FetchResult()
    cursor: Any = None
    seen: set[str] = set()
    page = 0

    while True:
        extra: dict[str, Any] = {}
        if strategy.page_size_param and strategy.page_size:
            extra[strategy.page_size_param] = strategy.page_size
        if cursor is not None:
            extra[strategy.cursor_param] = cursor

        try:
            data = _request(client, descriptor, params, extra)
        except TransportError as e:
            _page_failed(result, descriptor, page, e)
            break

        page += 1
        items, warning = extract_items(data, descriptor.response_path, descriptor.name)
        if warning:
            result.warnings.append(warning)
        if not items:
            break
        result.add_items(items, descriptor.name)

        try:
            cursor = extract_by_path(data, strategy.next_cursor_path)
        except LookupError:
            cursor = None
        if cursor is None or cursor == "":
            break
        if str(cursor) in seen:
            result.warnings.append(
                f"{descriptor.name}: server repeated cursor {cursor!r}; stopping pagination"
            )
            break
        seen.add(str(cursor))

    logger.debug("%s: fetched %d object(s) in %d page(s)", descriptor.name, len(result.objects), page)
    return result


def fetch_offset_paginated(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    strategy: OffsetPaginated,
    params: dict[str, Any],
) -> FetchResult:
    """Advance an offset (or page number) until a short page arrives."""
    result = FetchResult()
    offset = strategy.start
    page = 0
    previous_page: str | None = None

    while True:
        extra = {strategy.offset_param: offset, strategy.limit_param: strategy.page_size}
        try:
            data = _request(client, descriptor, params, extra)
        except TransportError as e:
            _page_failed(result, descriptor, page, e)
            break

        page += 1
        items, warning = extract_items(data, descriptor.response_path, descriptor.name)
        if warning:
            result.warnings.append(warning)

        # A server that ignores the offset would otherwise loop forever
        current_page = fingerprint(items) if items else None
        if current_page is not None and current_page == previous_page:
            result.warnings.append(
                f"{descriptor.name}: page {page} repeated the previous page; stopping pagination"
            )
            break
        previous_page = current_page

        result.add_items(items, descriptor.name)
        if len(items) < strategy.page_size:
            break
        offset += 1 if strategy.page_numbers else strategy.page_size

    logger.debug("%s: fetched %d object(s) in %d page(s)", descriptor.name, len(result.objects), page)
    return result


def fetch_script_code(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    strategy: ScriptCode,
    params: dict[str, Any],
) -> FetchResult:
    """List metadata, then fetch each object's body and merge it in.

    Bodies are fetched concurrently but joined back in metadata order, so
    completion order never changes the result. An object whose body cannot
    be fetched is kept with its metadata only and its id is flagged
    incomplete.
    """
    result = FetchResult()
    try:
        data = _request(client, descriptor, params, endpoint=strategy.list_endpoint)
    except TransportError as e:
        raise ContentTypeFetchFailed(descriptor.name, e) from e

    items, warning = extract_items(data, strategy.list_response_path, descriptor.name)
    if warning:
        result.warnings.append(warning)

    metadata: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, dict) and item.get(strategy.uid_field) not in (None, ""):
            metadata.append(item)
        else:
            result.warnings.append(
                f"{descriptor.name}: skipped entry without {strategy.uid_field}: {item!r:.60}"
            )

    def fetch_code(uid: Any) -> str:
        body = {"request_data": {strategy.uid_field: uid}}
        reply = client.request("POST", strategy.code_endpoint, body=body)
        code = extract_by_path(reply, strategy.code_response_path)
        if not isinstance(code, str):
            raise TypeError(f"expected a string at '{strategy.code_response_path}'")
        # The API returns escaped newlines
        return code.replace("\\n", "\n")

    if not metadata:
        return result

    workers = max(1, min(strategy.max_workers, len(metadata)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(fetch_code, meta[strategy.uid_field]) for meta in metadata]

        for meta, future in zip(metadata, futures):
            obj = dict(meta)
            object_id = descriptor.identifier_of(obj) or str(meta[strategy.uid_field])
            try:
                obj[strategy.code_field] = future.result()
            except (TransportError, LookupError, TypeError) as e:
                result.incomplete_ids.add(object_id)
                result.warnings.append(
                    f"{descriptor.name}: failed to get body for '{meta.get('name', object_id)}' "
                    f"({object_id}); kept metadata only: {e}"
                )
            result.objects.append(obj)

    return result


def fetch_zip_artifact(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    strategy: ZipArtifact,
    params: dict[str, Any],
) -> FetchResult:
    """Download one archive and map each data member to an object.

    The identifier comes from the member content, then from the manifest
    member (a mapping of member name to id), then from the member's file stem.
    """
    result = FetchResult()
    try:
        payload = _request(client, descriptor, params, raw=True)
        suffixes = strategy.member_suffixes
        if strategy.manifest_member:
            suffixes += (strategy.manifest_member.lower(),)
        members = extract_members(payload, suffixes=suffixes, max_members=strategy.max_members)
    except (TransportError, UnsafeArchive) as e:
        raise ContentTypeFetchFailed(descriptor.name, e) from e

    manifest: dict[str, Any] = {}
    if strategy.manifest_member:
        for member in members:
            if member.name == strategy.manifest_member:
                try:
                    loaded = decode(member.data)
                except yaml.YAMLError as e:
                    result.warnings.append(f"{descriptor.name}: unreadable manifest: {e}")
                    loaded = None
                if isinstance(loaded, dict):
                    manifest = loaded
                break

    for member in members:
        if member.name == strategy.manifest_member:
            continue
        try:
            obj = decode(member.data)
        except yaml.YAMLError as e:
            result.warnings.append(f"{descriptor.name}: skipped unreadable member {member.name}: {e}")
            continue
        if not isinstance(obj, dict):
            result.warnings.append(f"{descriptor.name}: skipped member {member.name}: not a mapping")
            continue

        if descriptor.identifier_of(obj) is None:
            obj[descriptor.id_field] = str(manifest.get(member.name) or PurePosixPath(member.name).stem)
        result.objects.append(obj)

    return result


_FETCHERS: dict[type, Callable[..., FetchResult]] = {
    JsonCollection: fetch_json_collection,
    Paginated: fetch_paginated,
    OffsetPaginated: fetch_offset_paginated,
    ScriptCode: fetch_script_code,
    ZipArtifact: fetch_zip_artifact,
}


def fetch(
    client: RequestClient,
    descriptor: ContentTypeDescriptor,
    params: dict[str, Any] | None = None,
) -> FetchResult:
    """Fetch all remote objects of one content type.

    Args:
        client: API client for the descriptor's module
        descriptor: Content type to fetch
        params: Extra request parameters merged into every request

    Returns:
        FetchResult with objects in API order

    Raises:
        ContentTypeFetchFailed: If the first request fails
    """
    strategy = descriptor.pull_strategy
    fetcher = _FETCHERS.get(type(strategy))
    if fetcher is None:
        raise TypeError(f"Unsupported pull strategy: {type(strategy).__name__}")
    return fetcher(client, descriptor, strategy, dict(params or {}))
