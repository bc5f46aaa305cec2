"""Shared plumbing for the HTTP service clients."""

from typing import Any, Optional

import httpx
import structlog

from wrasse.core.resilience import RetryConfig, with_retry
from wrasse.errors import (
    DirectoryDoesNotExistError,
    ResourceNotFoundError,
    ServiceError,
    VersionMismatchError,
)

logger = structlog.get_logger(__name__)

_DIRECTORY_MISSING_CODES = {"DirectoryDoesNotExist", "DirectoryDoesNotExistError"}
_NOT_FOUND_CODES = {"ResourceNotFound", "ResourceNotFoundError", "ObjectNotFound"}
_CONFLICT_CODES = {"PreconditionFailed", "EtagConflict", "EtagConflictError"}


def raise_for_service_error(response: httpx.Response) -> None:
    """Map a non-2xx response onto the daemon's exception hierarchy.

    Services answer errors with a JSON body ``{"code": ..., "message": ...}``;
    the code wins over the status when both are present.
    """
    if response.is_success:
        return

    status = response.status_code
    code: Optional[str] = None
    message = response.reason_phrase or f"HTTP {status}"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message

    if code in _DIRECTORY_MISSING_CODES:
        raise DirectoryDoesNotExistError(message, status, code)
    if status == 412 or code in _CONFLICT_CODES:
        raise VersionMismatchError(message, status, code)
    if status == 404 or code in _NOT_FOUND_CODES:
        raise ResourceNotFoundError(message, status, code)
    raise ServiceError(f"{status} {message}", status, code)


class HttpRepository:
    """Base class for a JSON-over-HTTP service client."""

    service = "service"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        retry: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Service base URL
            token: Optional token sent as ``authorization: Token <token>``
            timeout: Request timeout in seconds
            retry: Retry policy for transient failures
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        headers = {"accept": "application/json"}
        if token:
            headers["authorization"] = f"Token {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._retry = retry or RetryConfig()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, raising on error answers and retrying transient ones."""

        async def attempt() -> httpx.Response:
            response = await self._client.request(method, url, **kwargs)
            raise_for_service_error(response)
            return response

        if not retry:
            return await attempt()
        return await with_retry(
            attempt, self._retry, name=f"{self.service}.{method.lower()}"
        )
