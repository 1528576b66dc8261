"""HTTP client wrapper for Cortex platform APIs."""

import logging
from typing import Any

import requests

from .auth import PlatformAuth
from .errors import TransportError
from .retry import retry

logger = logging.getLogger(__name__)

# Statuses worth retrying; everything else >= 400 fails immediately
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def _is_transient(error: Exception) -> bool:
    status = getattr(error, "status", None)
    return status is None or status in RETRYABLE_STATUSES


class ApiClient:
    """HTTP client for one module's REST API with key-header authentication."""

    def __init__(
        self,
        auth: PlatformAuth,
        session: requests.Session | None = None,
        timeout: float = 60,
        max_attempts: int = 3,
    ) -> None:
        """Initialize client with authentication.

        Args:
            auth: PlatformAuth for the module
            session: Optional requests session (created if not provided)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for transient failures
        """
        self.auth = auth
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts

    def request(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        body: Any = None,
        raw: bool = False,
    ) -> Any:
        """Make an authenticated request to the platform API.

        Args:
            method: HTTP method
            path: Endpoint relative to the module's base path
            query: Optional query parameters
            body: Optional JSON body
            raw: Return the response bytes instead of parsed JSON

        Returns:
            Parsed JSON response, or bytes when raw is set

        Raises:
            TransportError: On network errors and HTTP error statuses
        """
        return self._send(method.upper(), path, query, body, raw)

    @retry(
        max_attempts=lambda self: self.max_attempts,
        exceptions=(TransportError,),
        should_retry=_is_transient,
    )
    def _send(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None,
        body: Any,
        raw: bool,
    ) -> Any:
        query_params = {k: str(v) for k, v in query.items()} if query else None
        url = self.auth.get_full_url(path, query_params)
        headers = self.auth.get_headers(json_body=body is not None)
        logger.debug("%s %s", method, url)

        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=headers,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"API error {response.status_code} for {method} {path}: {response.text[:500]}",
                status=response.status_code,
                body=response.text,
            )

        if raw:
            return response.content

        # Handle empty responses
        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid JSON from {method} {path}: {e}",
                status=response.status_code,
                body=response.text[:500],
            ) from e

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    def verify_connection(self) -> bool:
        """Verify API connectivity and authentication.

        The module's base path is requested; any answer other than 401 or 403
        means the host is reachable with accepted credentials.

        Returns:
            True if connection successful

        Raises:
            TransportError: On connection or auth failure
        """
        try:
            self.request("POST", "/", body={})
        except TransportError as e:
            if e.status in (401, 403):
                raise TransportError(
                    "Authentication failed - check API keys", status=e.status, body=e.body
                ) from e
            if e.status is None:
                raise
        return True
