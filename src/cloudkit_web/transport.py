"""HTTP transport for the record service (httpx based).

Every call here is exactly one network round trip; nothing is retried.
Timeouts are whatever the underlying `httpx.AsyncClient` is configured with.
The transport holds only read-only configuration and may be shared by any
number of concurrent operations.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from .errors import SigningError, TransportError
from .responses import check_response
from .signing import RequestSigner

logger = logging.getLogger(__name__)

DEFAULT_HOST = "https://api.apple-cloudkit.com"
API_VERSION = "1"


def serialize_body(payload: BaseModel) -> bytes:
    """Compact JSON body; the exact bytes returned are the bytes that get signed."""
    data = payload.model_dump(mode="json", exclude_none=True)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def database_path(container: str, environment: str, scope: str, operation: str) -> str:
    """`/database/1/{container}/{environment}/{scope}/{operation}`."""
    return f"/database/{API_VERSION}/{container}/{environment}/{scope}/{operation.lstrip('/')}"


class CloudKitTransport:
    def __init__(
        self,
        signer: RequestSigner,
        *,
        host: str = DEFAULT_HOST,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        allow_unsigned_on_signing_error: bool = False,
        debug: bool = False,
    ) -> None:
        self.signer = signer
        self.host = host.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.allow_unsigned_on_signing_error = allow_unsigned_on_signing_error
        self.debug = debug

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CloudKitTransport":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    def _headers(self, path: str, body: bytes) -> Dict[str, str]:
        try:
            return self.signer.headers(path, body)
        except SigningError as e:
            if not self.allow_unsigned_on_signing_error:
                raise
            logger.warning("signing failed for %s, sending unsigned request: %s", path, e)
            return self.signer.base_headers()

    def _dump(self, label: str, url: str, status: Optional[int], body: bytes) -> None:
        if not self.debug:
            return
        logger.debug(
            "=== %s === url=%s status=%s body=%s",
            label,
            url,
            status,
            body.decode("utf-8", errors="replace"),
        )

    async def post_signed(self, path: str, payload: BaseModel) -> Dict[str, Any]:
        """POST a JSON body to a service path with authentication headers."""
        body = serialize_body(payload)
        headers = self._headers(path, body)
        url = f"{self.host}{path}"
        self._dump("request", url, None, body)
        try:
            resp = await self._client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"request to {path} failed: {e}") from e
        self._dump("response", url, resp.status_code, resp.content)
        return check_response(resp.status_code, resp.content)

    async def post_multipart(self, url: str, filename: str, data: bytes) -> Dict[str, Any]:
        """Unsigned multipart POST of one file to a single-use upload URL.

        The upload URL itself is the authorization, so no signature headers are
        sent. httpx generates a fresh boundary for every body.
        """
        self._dump("upload", url, None, f"<{len(data)} bytes {filename}>".encode("utf-8"))
        try:
            resp = await self._client.post(
                url,
                files={"files": (filename, data, "application/octet-stream")},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"asset upload to {url} failed: {e}") from e
        self._dump("upload response", url, resp.status_code, resp.content)
        return check_response(resp.status_code, resp.content)


__all__ = ["CloudKitTransport", "DEFAULT_HOST", "database_path", "serialize_body"]
