"""
Error taxonomy shared by the core components and the HTTP layer.

Every error carries a human-readable message and the HTTP status the API
reports it with. None of these are retried by the components that raise
them; the only retries in the service live inside the remote job poll loop.
"""

from __future__ import annotations

from typing import Optional


class ImageServiceError(Exception):
    """Base class for all service errors surfaced to callers."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(ImageServiceError):
    """Missing or unsupported request fields."""

    status_code = 400


class ConfigError(ImageServiceError):
    """Missing credential or misconfigured endpoint."""

    status_code = 500


class AuthError(ImageServiceError):
    """The provider rejected our credential."""

    status_code = 502


class UpstreamError(ImageServiceError):
    """The provider answered with an unexpected status or body."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


class ProtocolError(ImageServiceError):
    """The provider response has a shape we cannot interpret."""

    status_code = 502


class JobTimeoutError(ImageServiceError, TimeoutError):
    """The remote job did not finish before the polling deadline."""

    status_code = 504


class JobCancelledError(ImageServiceError):
    """The caller abandoned the remote job while it was being polled."""

    status_code = 499


class DecodeError(ImageServiceError):
    """Image bytes could not be decoded."""

    status_code = 422
