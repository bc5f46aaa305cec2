"""Identity lookup client: account uuid -> login."""

from typing import Protocol

import structlog

from wrasse.errors import AccountNotFoundError
from wrasse.jobs.models import Account
from wrasse.repositories.http import HttpRepository

logger = structlog.get_logger(__name__)


class IdentityService(Protocol):
    async def resolve_owner(self, owner_id: str) -> Account:
        """Resolve an account uuid. Raises AccountNotFoundError if unknown."""
        ...


class HttpIdentityClient(HttpRepository):
    """Resolves owners through ``GET /names?uuid=<uuid>`` -> ``{uuid: login}``."""

    service = "identity"

    async def resolve_owner(self, owner_id: str) -> Account:
        logger.debug("resolve_owner: entered", uuid=owner_id)
        response = await self._request("GET", "/names", params={"uuid": owner_id})
        login = response.json().get(owner_id)
        if not login:
            raise AccountNotFoundError(f"account {owner_id} not found")

        logger.debug("resolve_owner: done", uuid=owner_id, login=login)
        return Account(uuid=owner_id, login=login)
