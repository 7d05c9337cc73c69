"""Shared configuration classes for lessonup.

This module defines the backend connection settings and the tunables of the
upload queue.
"""

from __future__ import annotations

from dataclasses import dataclass

MIB = 1024 * 1024


@dataclass
class ServerConfig:
    """Configuration for connecting to the lesson backend.

    Used by both the API client (UploadAPIClient) and the resumable transport
    (TusTransport) to ensure consistent connection settings.

    Attributes:
        api_url: Base URL of the backend functions (e.g., "https://api.example.com").
        token: Bearer token sent with every request.
        timeout: Request timeout in seconds (applies to each chunk request).
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    api_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize API URL."""
        self.api_url = self.api_url.rstrip("/")

    @property
    def auth_headers(self) -> dict[str, str]:
        """Get the authorization headers for backend requests."""
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if the backend uses HTTPS.
        """
        return self.api_url.startswith("https://")


@dataclass
class UploadSettings:
    """Tunables of the upload queue and transfer engine.

    Attributes:
        chunk_size: Bytes sent per resumable PATCH request.
        max_concurrent: Maximum simultaneous uploads when no large file is active.
        large_file_threshold: Files above this size upload alone.
        signed_url_validity: Seconds a signed upload URL is assumed valid.
        url_refresh_margin: Refresh the signed URL when it expires within this many seconds.
        chunk_retry_delays: Delays (seconds) between retries of a single chunk.
        max_auth_refreshes: Consecutive re-authorizations before giving up on a request.
        default_resumable_endpoint: Endpoint used when the backend omits uploadUrl.
    """

    chunk_size: int = 5 * MIB
    max_concurrent: int = 2
    large_file_threshold: int = 25 * MIB
    signed_url_validity: float = 3600.0
    url_refresh_margin: float = 60.0
    chunk_retry_delays: tuple[float, ...] = (0.0, 1.0, 3.0, 5.0)
    max_auth_refreshes: int = 2
    default_resumable_endpoint: str | None = None

    def __post_init__(self) -> None:
        """Validate settings."""
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        if self.signed_url_validity <= self.url_refresh_margin:
            raise ValueError("signed_url_validity must exceed url_refresh_margin")
        if any(delay < 0 for delay in self.chunk_retry_delays):
            raise ValueError("chunk_retry_delays must not be negative")
        self.chunk_retry_delays = tuple(self.chunk_retry_delays)
