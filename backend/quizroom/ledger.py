"""Clients for the ledger service that pays rewards and mints badges."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

import httpx

from .errors import CollaboratorFailure
from .models import BadgeRequest

logger = logging.getLogger(__name__)


class LedgerService(Protocol):
    """Interface for reward payout and badge issuance."""

    async def distribute_rewards(
        self, winners: Sequence[str], amounts: Sequence[int], context: Mapping[str, Any]
    ) -> str:
        ...

    async def mint_badge(self, request: BadgeRequest) -> str:
        ...


@dataclass
class HttpLedgerService(LedgerService):
    """Ledger client that talks JSON over httpx."""

    http: httpx.AsyncClient
    base_url: str
    api_key: Optional[str] = None

    async def distribute_rewards(
        self, winners: Sequence[str], amounts: Sequence[int], context: Mapping[str, Any]
    ) -> str:
        data = await self._post(
            "/rewards/distribute",
            {"winners": list(winners), "amounts": list(amounts), "context": dict(context)},
        )
        digest = data.get("digest") or data.get("transactionDigest")
        if not digest:
            raise CollaboratorFailure("Ledger did not return a transaction digest")
        return str(digest)

    async def mint_badge(self, request: BadgeRequest) -> str:
        data = await self._post("/badges/mint", request.model_dump(by_alias=True))
        badge_id = data.get("id") or data.get("badgeId")
        if not badge_id:
            raise CollaboratorFailure("Ledger did not return a badge id")
        return str(badge_id)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = f"{self.base_url.rstrip('/')}{path}"
        try:
            response = await self.http.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CollaboratorFailure(f"Ledger rejected {path}: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise CollaboratorFailure(f"Ledger unreachable: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise CollaboratorFailure(f"Ledger sent a malformed response for {path}") from exc


class OfflineLedgerService(LedgerService):
    """Used when no ledger endpoint is configured; hands out local references."""

    async def distribute_rewards(
        self, winners: Sequence[str], amounts: Sequence[int], context: Mapping[str, Any]
    ) -> str:
        digest = f"offline-{uuid.uuid4().hex}"
        logger.info("Ledger offline: recorded distribution %s for room %s", digest, context.get("roomCode"))
        return digest

    async def mint_badge(self, request: BadgeRequest) -> str:
        reference = f"offline-badge-{uuid.uuid4().hex}"
        logger.info("Ledger offline: recorded %s badge for %s", request.badge_type, request.winner)
        return reference
