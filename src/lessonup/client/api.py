"""HTTP client for the lesson backend storage API.

This module provides:
- UploadAPIClient: Async HTTP client implementing SignedUrlProvider and IntegrityVerifier
- Upload authorization (signed URL) requests
- Integrity verification requests
- Health check used by the network monitor
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from lessonup.client.upload.types import (
    TransferError,
    UploadAuthorization,
    UploadUrlRequest,
    VerificationResult,
    VerifyRequest,
)
from lessonup.core.config import ServerConfig

logger = logging.getLogger(__name__)


class APIError(TransferError):
    """Base exception for backend API errors."""


class AuthenticationError(APIError):
    """Authentication failed."""


def _error_detail(response: httpx.Response, default: str) -> str:
    """Extract the error message from a JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or default
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or default)
    return default


class UploadAPIClient:
    """Async HTTP client for the backend storage functions."""

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the API client.

        Args:
            config: Server configuration with URL, token, and settings.
            transport: Optional httpx transport (for testing).
        """
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout,
            headers=config.auth_headers,
            verify=config.verify_ssl,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> UploadAPIClient:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token", response.status_code)
        if response.status_code >= 400:
            detail = _error_detail(response, response.reason_phrase or "Unknown error")
            raise APIError(detail, response.status_code)
        return response

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the decoded JSON body."""
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TransportError as e:
            raise TransferError(f"Request to {path} failed: {e}") from e
        self._handle_response(response)
        try:
            return dict(response.json())
        except ValueError as e:
            raise APIError(f"Invalid JSON from {path}", response.status_code) from e

    # === Health check ===

    async def health_check(self) -> bool:
        """Check if the backend is reachable.

        Returns:
            True if backend is healthy.
        """
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === SignedUrlProvider ===

    async def request_upload_url(self, request: UploadUrlRequest) -> UploadAuthorization:
        """Obtain a signed upload authorization for one file.

        Args:
            request: File and destination description.

        Returns:
            UploadAuthorization with endpoint, storage path and token.

        Raises:
            AuthenticationError: If the backend rejects our token.
            APIError: If the backend refuses the request.
            TransferError: If the backend is unreachable.
        """
        data = await self._post(
            "/storage/upload-url",
            {
                "fileName": request.file_name,
                "fileSize": request.file_size,
                "lessonId": request.lesson_id,
                "category": request.category,
                "contentHash": request.content_hash,
            },
        )
        if not data.get("storagePath") or not data.get("token"):
            raise APIError("Upload URL response is missing storagePath or token")
        logger.debug(f"Upload URL obtained for {request.file_name} -> {data['storagePath']}")
        return UploadAuthorization(
            upload_url=data.get("uploadUrl") or None,
            storage_path=data["storagePath"],
            token=data["token"],
        )

    # === IntegrityVerifier ===

    async def verify_upload(self, request: VerifyRequest) -> VerificationResult:
        """Ask the backend to verify size and hash of a stored file.

        Args:
            request: Storage path and expected size/hash.

        Returns:
            VerificationResult (verified False carries the mismatch detail).

        Raises:
            APIError: If the verification endpoint itself fails.
        """
        data = await self._post(
            "/storage/verify-upload",
            {
                "storagePath": request.storage_path,
                "expectedSize": request.expected_size,
                "expectedHash": request.expected_hash,
                "lessonId": request.lesson_id,
            },
        )
        return VerificationResult(
            verified=bool(data.get("verified")),
            error=data.get("error"),
        )
