"""Claim store client: job id -> {owner, lastUpdateTime} with compare-and-swap."""

from datetime import datetime
from typing import Optional, Protocol
from urllib.parse import quote

import structlog

from wrasse.errors import ResourceNotFoundError
from wrasse.jobs.models import Claim
from wrasse.repositories.http import HttpRepository
from wrasse.utils.time import format_timestamp, parse_timestamp

logger = structlog.get_logger(__name__)


class ClaimStore(Protocol):
    """Key-value store holding job claims, versioned for compare-and-swap."""

    async def get(self, job_id: str) -> Optional[Claim]:
        """Current claim for the job, or None if none was ever written."""
        ...

    async def put(
        self,
        job_id: str,
        owner: Optional[str],
        last_update: datetime,
        expected_version: Optional[str],
    ) -> Claim:
        """Write the claim if the stored version still equals expected_version.

        expected_version None means "create only": the write fails if any
        claim exists. Raises VersionMismatchError when the write loses.
        """
        ...

    async def delete(self, job_id: str) -> None:
        """Drop the claim entry. Deleting a missing entry is not an error."""
        ...


class HttpClaimStore(HttpRepository):
    """JSON-over-HTTP claim store using ETag preconditions.

    GET/PUT/DELETE /claims/{jobId}; PUT carries If-Match (update) or
    If-None-Match: * (create) and answers 412 when the precondition fails.
    """

    service = "claim_store"

    @staticmethod
    def _path(job_id: str) -> str:
        return f"/claims/{quote(job_id, safe='')}"

    async def get(self, job_id: str) -> Optional[Claim]:
        try:
            response = await self._request("GET", self._path(job_id))
        except ResourceNotFoundError:
            return None

        body = response.json()
        value = body.get("value") or {}
        return Claim(
            job_id=job_id,
            owner=value.get("owner") or None,
            last_update=parse_timestamp(value.get("lastUpdateTime")),
            version=body.get("etag") or response.headers.get("etag"),
        )

    async def put(
        self,
        job_id: str,
        owner: Optional[str],
        last_update: datetime,
        expected_version: Optional[str],
    ) -> Claim:
        if expected_version is None:
            headers = {"if-none-match": "*"}
        else:
            headers = {"if-match": expected_version}

        response = await self._request(
            "PUT",
            self._path(job_id),
            json={"owner": owner, "lastUpdateTime": format_timestamp(last_update)},
            headers=headers,
        )
        try:
            body = response.json()
        except ValueError:
            body = {}

        return Claim(
            job_id=job_id,
            owner=owner,
            last_update=last_update,
            version=body.get("etag") or response.headers.get("etag"),
        )

    async def delete(self, job_id: str) -> None:
        try:
            await self._request("DELETE", self._path(job_id))
        except ResourceNotFoundError:
            logger.debug("claim_delete: already gone", job_id=job_id)
