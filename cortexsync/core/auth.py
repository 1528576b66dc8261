"""API key authentication for Cortex platform APIs."""

import posixpath
from urllib.parse import urlencode


class PlatformAuth:
    """Builds request headers and URLs for one module's API surface."""

    def __init__(
        self,
        fqdn: str,
        api_key: str,
        api_key_id: str,
        base_api_path: str = "/public_api/v1",
    ) -> None:
        """Initialize authentication with credentials.

        Args:
            fqdn: Tenant host name, with or without scheme
            api_key: API key sent in the Authorization header
            api_key_id: Numeric key id sent in the x-xdr-auth-id header
            base_api_path: Path prefix shared by the module's endpoints
        """
        self.fqdn = normalize_fqdn(fqdn)
        self.api_key = api_key
        self.api_key_id = str(api_key_id)
        self.base_api_path = "/" + base_api_path.strip("/")

        if not self.fqdn or not self.api_key or not self.api_key_id:
            raise ValueError(
                "Missing API credentials. Set fqdn, api_key and api_key_id in "
                "config.toml or through environment variables."
            )

    def get_headers(self, json_body: bool = False) -> dict[str, str]:
        """Generate authentication headers for an API request.

        Args:
            json_body: Whether the request carries a JSON body

        Returns:
            Dictionary of headers including Authorization
        """
        headers = {
            "Authorization": self.api_key,
            "x-xdr-auth-id": self.api_key_id,
            "Accept": "application/json",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def get_path(self, endpoint: str) -> str:
        """Join an endpoint onto the base path, resolving '..' segments.

        Some endpoints live outside the versioned prefix, for example
        "../xql_library/get" below "/public_api/v1".
        """
        joined = posixpath.join(self.base_api_path, endpoint.lstrip("/"))
        path = posixpath.normpath(joined)
        if endpoint.endswith("/") and not path.endswith("/"):
            path += "/"
        return path

    def get_full_url(self, endpoint: str, query_params: dict[str, str] | None = None) -> str:
        """Build full URL from host, base path, endpoint, and query params."""
        url = f"https://{self.fqdn}{self.get_path(endpoint)}"
        if query_params:
            url += "?" + urlencode(sorted(query_params.items()))
        return url


def normalize_fqdn(value: str) -> str:
    """Strip scheme and trailing slashes from a host name."""
    value = value.strip()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.rstrip("/")
