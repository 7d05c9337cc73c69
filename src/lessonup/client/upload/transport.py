"""Resumable transfer over the tus 1.0.0 protocol.

This module provides:
- TusTransport: httpx-based client for a tus server (create, offset query, chunk PATCH)
- encode_metadata: Upload-Metadata header encoding

Protocol summary:
    POST  endpoint    Upload-Length, Upload-Metadata  -> 201 + Location
    HEAD  upload_url                                  -> Upload-Offset
    PATCH upload_url  Upload-Offset + chunk bytes     -> 204 + Upload-Offset
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Mapping

import httpx

from lessonup.client.upload.types import AuthExpiredError, TransferError
from lessonup.core.config import ServerConfig

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"


def encode_metadata(metadata: Mapping[str, str]) -> str:
    """Encode metadata as "key base64(value)" pairs separated by commas."""
    pairs = []
    for key, value in metadata.items():
        encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
        pairs.append(f"{key} {encoded}")
    return ",".join(pairs)


class TusTransport:
    """tus client operations on top of an httpx.AsyncClient.

    Each request authenticates with the signed token of the current upload
    authorization, so a refreshed token takes effect on the next call.
    """

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Server configuration (timeout and TLS settings).
            transport: Optional httpx transport (for testing).
        """
        self._config = config
        self._client = httpx.AsyncClient(
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _headers(self, token: str, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Tus-Resumable": TUS_VERSION,
            "Authorization": f"Bearer {token}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        content: bytes | None = None,
    ) -> httpx.Response:
        """Send a request, mapping failures onto the upload error taxonomy."""
        try:
            response = await self._client.request(method, url, headers=headers, content=content)
        except httpx.TransportError as e:
            raise TransferError(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthExpiredError(
                f"{method} {url} rejected with {response.status_code}",
                response.status_code,
            )
        return response

    @staticmethod
    def _read_offset(response: httpx.Response) -> int:
        try:
            return int(response.headers["Upload-Offset"])
        except (KeyError, ValueError) as e:
            raise TransferError(
                f"Missing or invalid Upload-Offset in response ({response.status_code})",
                response.status_code,
            ) from e

    async def create(
        self,
        endpoint: str,
        size: int,
        metadata: Mapping[str, str],
        token: str,
    ) -> str:
        """Create a new upload on the server.

        Returns:
            Absolute URL of the created upload.
        """
        headers = self._headers(
            token,
            {"Upload-Length": str(size), "Upload-Metadata": encode_metadata(metadata)},
        )
        response = await self._request("POST", endpoint, headers)
        if response.status_code != 201:
            raise TransferError(
                f"Upload creation failed with {response.status_code}", response.status_code
            )
        location = response.headers.get("Location")
        if not location:
            raise TransferError("Upload creation response has no Location header", 201)
        upload_url = str(httpx.URL(endpoint).join(location))
        logger.debug(f"Created resumable upload {upload_url} ({size} bytes)")
        return upload_url

    async def get_offset(self, upload_url: str, token: str) -> int | None:
        """Query how many bytes the server holds.

        Returns:
            Acknowledged offset, or None if the upload no longer exists.
        """
        response = await self._request("HEAD", upload_url, self._headers(token))
        if response.status_code in (404, 410):
            logger.debug(f"Resumable upload {upload_url} is gone ({response.status_code})")
            return None
        if response.status_code >= 400:
            raise TransferError(
                f"Offset query failed with {response.status_code}", response.status_code
            )
        return self._read_offset(response)

    async def upload_chunk(
        self,
        upload_url: str,
        offset: int,
        data: bytes,
        token: str,
    ) -> int:
        """Append a chunk at offset.

        Returns:
            New acknowledged offset.
        """
        headers = self._headers(
            token,
            {"Upload-Offset": str(offset), "Content-Type": OFFSET_CONTENT_TYPE},
        )
        response = await self._request("PATCH", upload_url, headers, content=data)
        if response.status_code != 204:
            raise TransferError(
                f"Chunk upload at offset {offset} failed with {response.status_code}",
                response.status_code,
            )
        return self._read_offset(response)
