"""Object store client for archived job files."""

from typing import AsyncIterable, Optional, Protocol, Union

import structlog

from wrasse.repositories.http import HttpRepository

logger = structlog.get_logger(__name__)

Body = Union[bytes, AsyncIterable[bytes]]

DIRECTORY_CONTENT_TYPE = "application/json; type=directory"


class ObjectStore(Protocol):
    """Durable storage for exported job files."""

    async def put(
        self,
        path: str,
        body: Body,
        *,
        content_type: str,
        size: Optional[int] = None,
        md5: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Write an object. Raises DirectoryDoesNotExistError if the parent is missing."""
        ...

    async def mkdir(self, path: str, headers: Optional[dict[str, str]] = None) -> None:
        """Create one directory (existing directories are fine)."""
        ...

    async def mkdirp(self, path: str, headers: Optional[dict[str, str]] = None) -> None:
        """Create a directory and any missing parents."""
        ...

    async def unlink(self, path: str) -> None:
        """Delete an object. Raises ResourceNotFoundError if it does not exist."""
        ...


class HttpObjectStore(HttpRepository):
    """Object store speaking plain HTTP: PUT writes, DELETE unlinks.

    Directories are created with a PUT of content type
    ``application/json; type=directory``.
    """

    service = "object_store"

    async def put(
        self,
        path: str,
        body: Body,
        *,
        content_type: str,
        size: Optional[int] = None,
        md5: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        request_headers = {"content-type": content_type}
        if size is not None:
            request_headers["content-length"] = str(size)
        if md5:
            request_headers["content-md5"] = md5
        request_headers.update(headers or {})

        # A streamed body can only be sent once
        await self._request(
            "PUT",
            path,
            content=body,
            headers=request_headers,
            retry=isinstance(body, bytes),
        )
        logger.debug("object_put", path=path, size=size)

    async def mkdir(self, path: str, headers: Optional[dict[str, str]] = None) -> None:
        request_headers = {"content-type": DIRECTORY_CONTENT_TYPE}
        request_headers.update(headers or {})
        await self._request("PUT", path, headers=request_headers)

    async def mkdirp(self, path: str, headers: Optional[dict[str, str]] = None) -> None:
        # The account root and its top-level directory (/login/stor) always exist
        parts = [p for p in path.split("/") if p]
        for depth in range(3, len(parts) + 1):
            await self.mkdir("/" + "/".join(parts[:depth]), headers=headers)

    async def unlink(self, path: str) -> None:
        await self._request("DELETE", path)
