"""
Authenticated HTTP client for the Gerrit REST API.

Gerrit prefixes JSON bodies with ``)]}'`` to defeat cross-site script
inclusion; every JSON response goes through strip_magic_prefix before parsing.
"""
import json
from typing import Any, Dict, Optional

import httpx

from .config import Credentials, logger

MAGIC_PREFIX = ")]}'"
REQUEST_TIMEOUT = 30.0
SESSION_COOKIE_NAME = "GerritAccount"


class GatewayError(Exception):
    """A failed REST call: HTTP error status, network failure or unparseable body."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


def strip_magic_prefix(body: str) -> str:
    """Remove the anti-XSSI prefix if present. Bodies without it pass through."""
    if body.startswith(MAGIC_PREFIX):
        body = body[len(MAGIC_PREFIX):]
    return body.strip()


def parse_json_body(body: str) -> Any:
    try:
        return json.loads(strip_magic_prefix(body))
    except json.JSONDecodeError as e:
        raise GatewayError(f"Invalid JSON in Gerrit response: {e}") from e


class RestGateway:
    """Thin async wrapper around one httpx.AsyncClient bound to a Gerrit server.

    Paths are relative to ``<base_url>/<auth_prefix>`` and must already be
    percent-encoded; nothing is re-encoded here.
    """

    def __init__(self, credentials: Credentials, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.credentials = credentials
        base = credentials.base_url
        self._root = (base if base.endswith("/") else base + "/") + credentials.auth_prefix

        if credentials.insecure_tls:
            logger.warning(f"⚠️ TLS certificate verification DISABLED for {credentials.base_url}")

        self._client = httpx.AsyncClient(
            headers=self._auth_headers(),
            auth=httpx.BasicAuth(credentials.username, credentials.password) if credentials.has_basic_auth else None,
            verify=not credentials.insecure_tls,
            timeout=REQUEST_TIMEOUT,
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.credentials.session_cookie:
            headers["Cookie"] = f"{SESSION_COOKIE_NAME}={self.credentials.session_cookie}"
        return headers

    def url_for(self, path: str) -> str:
        return self._root + path

    async def __aenter__(self) -> "RestGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, body: Any = None) -> str:
        url = self.url_for(path)
        logger.debug(f"🌐 {method} {url}")
        try:
            if body is None:
                response = await self._client.request(method, url)
            else:
                response = await self._client.request(method, url, json=body)
        except httpx.HTTPError as e:
            logger.error(f"❌ {method} {path} failed: {e}")
            raise GatewayError(f"Request to Gerrit failed: {method} {path}: {e}") from e

        if not response.is_success:
            snippet = response.text.strip()[:200]
            logger.error(f"❌ {method} {path} returned HTTP {response.status_code}")
            raise GatewayError(
                f"Gerrit returned HTTP {response.status_code} for {method} {path}"
                + (f": {snippet}" if snippet else ""),
                status=response.status_code,
            )
        return response.text

    async def get(self, path: str) -> Any:
        return parse_json_body(await self._request("GET", path))

    async def get_raw(self, path: str) -> str:
        """GET without JSON decoding, e.g. the base64 file content endpoint."""
        return await self._request("GET", path)

    async def put(self, path: str, body: Any) -> Any:
        return parse_json_body(await self._request("PUT", path, body))
