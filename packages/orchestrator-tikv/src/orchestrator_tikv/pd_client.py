"""
PD API client implementing the ConsensusClient protocol.

This module provides the PDClient class for reading PD membership and TiKV
store state, and for issuing the consensus operations the orchestrator
needs around disruptive changes: leader transfer, leader eviction, member
removal and store offlining.

PDClient receives an injected httpx.AsyncClient with base_url set to the PD
server. Errors are mapped as follows:
- Transport errors and 5xx responses raise ConsensusUnavailableError, which
  the core retries with backoff
- 4xx responses raise httpx.HTTPStatusError (fail loudly)
- Removing something that is already gone (404) succeeds

PD API Documentation:
- https://docs.pingcap.com/tidb/stable/pd-control
- https://tikv.org/docs/6.5/deploy/monitor/api/
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from orchestrator_core.errors import ConsensusUnavailableError
from orchestrator_protocols import Member, MemberId
from orchestrator_tikv.types import (
    PDMemberHealth,
    PDMembersResponse,
    PDStoresResponse,
)

logger = logging.getLogger(__name__)

EVICT_LEADER_SCHEDULER = "evict-leader-scheduler"

# PD store state filter: Up, Offline, Tombstone
ALL_STORE_STATES = [("state", 0), ("state", 1), ("state", 2)]

# Store states in which the store is not serving
UNHEALTHY_STORE_STATES = {"Down", "Disconnected", "Tombstone"}


def _strip_scheme(url: str) -> str:
    return url.split("://", 1)[-1]


@dataclass
class PDClient:
    """
    PD API client with injected httpx client.

    Attributes:
        http: Pre-configured httpx.AsyncClient with base_url set to PD server.

    Example:
        async with httpx.AsyncClient(base_url="http://pd:2379") as http:
            client = PDClient(http=http)
            for member in await client.list_members():
                print(f"{member.name} leader={member.is_leader}")
    """

    http: httpx.AsyncClient

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        missing_ok: bool = False,
        tolerate: str = "",
        **kwargs: Any,
    ) -> httpx.Response | None:
        """
        Send a request and map failures.

        Args:
            method: HTTP method
            path: API path
            missing_ok: Treat 404 as success and return None
            tolerate: Treat an error response whose body contains this text
                as success and return None

        Raises:
            ConsensusUnavailableError: On transport errors or 5xx responses
            httpx.HTTPStatusError: On other 4xx responses
        """
        operation = f"{method} {path}"
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ConsensusUnavailableError(operation, str(e)) from e

        if missing_ok and response.status_code == 404:
            logger.debug("%s: already gone", operation)
            return None
        if response.is_error and tolerate and tolerate in response.text:
            logger.debug("%s: %s", operation, response.text.strip())
            return None
        if response.status_code >= 500:
            raise ConsensusUnavailableError(
                operation, f"HTTP {response.status_code}: {response.text}"
            )
        response.raise_for_status()
        return response

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_members(self) -> list[Member]:
        """
        Get PD members with health and leadership.

        Calls GET /pd/api/v1/members and GET /pd/api/v1/health and merges
        them by member ID.

        Returns:
            List of Member objects, one per PD member.

        Raises:
            ConsensusUnavailableError: If PD cannot be reached.
            pydantic.ValidationError: On malformed response data.
        """
        response = await self._request("GET", "/pd/api/v1/members")
        data = PDMembersResponse.model_validate(response.json())

        response = await self._request("GET", "/pd/api/v1/health")
        health = {
            h.member_id: h.health
            for h in (PDMemberHealth.model_validate(item) for item in response.json())
        }

        leader_id = data.leader.member_id if data.leader else None
        return [
            Member(
                id=str(m.member_id),
                name=m.name,
                address=_strip_scheme(m.client_urls[0]) if m.client_urls else "",
                healthy=health.get(m.member_id, False),
                is_leader=m.member_id == leader_id,
                state="Up" if health.get(m.member_id, False) else "Down",
            )
            for m in data.members
        ]

    async def list_stores(self) -> list[Member]:
        """
        Get TiKV stores, including offlining and tombstoned ones.

        Calls GET /pd/api/v1/stores with every state filter so a store
        that finished offlining is reported as "Tombstone" instead of
        disappearing.

        Returns:
            List of Member objects with leader counts.

        Raises:
            ConsensusUnavailableError: If PD cannot be reached.
            pydantic.ValidationError: On malformed response data.
        """
        response = await self._request(
            "GET", "/pd/api/v1/stores", params=ALL_STORE_STATES
        )
        data = PDStoresResponse.model_validate(response.json())

        return [
            Member(
                id=str(item.store.id),  # PD store IDs are ints
                address=item.store.address,
                healthy=item.store.state_name not in UNHEALTHY_STORE_STATES,
                leader_count=item.status.leader_count if item.status else 0,
                state=item.store.state_name,
            )
            for item in data.stores
        ]

    # -------------------------------------------------------------------------
    # Leadership
    # -------------------------------------------------------------------------

    async def transfer_leader(self, target_name: str) -> None:
        """
        Transfer PD leadership to ``target_name``.

        Calls POST /pd/api/v1/leader/transfer/{name}. Returns once PD
        accepted the request; the caller re-reads members to see it land.
        """
        await self._request("POST", f"/pd/api/v1/leader/transfer/{target_name}")

    async def begin_evict_leader(self, store_id: MemberId) -> None:
        """
        Add an evict-leader scheduler for ``store_id``.

        Calls POST /pd/api/v1/schedulers. A scheduler that already exists
        for the store counts as success.
        """
        await self._request(
            "POST",
            "/pd/api/v1/schedulers",
            tolerate="existed",
            json={"name": EVICT_LEADER_SCHEDULER, "store_id": int(store_id)},
        )

    async def end_evict_leader(self, store_id: MemberId) -> None:
        """
        Remove the evict-leader scheduler for ``store_id``.

        Calls DELETE /pd/api/v1/schedulers/evict-leader-scheduler-{id}. A
        scheduler that no longer exists counts as success.
        """
        path = f"/pd/api/v1/schedulers/{EVICT_LEADER_SCHEDULER}-{store_id}"
        await self._request("DELETE", path, missing_ok=True, tolerate="not found")

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def remove_member(self, name: str) -> None:
        """Remove a PD member. Calls DELETE /pd/api/v1/members/name/{name}."""
        await self._request(
            "DELETE", f"/pd/api/v1/members/name/{name}", missing_ok=True
        )

    async def remove_store(self, store_id: MemberId) -> None:
        """
        Start offlining a TiKV store. Calls DELETE /pd/api/v1/store/{id}.

        PD migrates the store's regions away and marks it Tombstone when
        done.
        """
        await self._request("DELETE", f"/pd/api/v1/store/{store_id}", missing_ok=True)

    async def cancel_remove_store(self, store_id: MemberId) -> None:
        """
        Cancel offlining. Calls POST /pd/api/v1/store/{id}/state?state=Up.
        """
        await self._request(
            "POST", f"/pd/api/v1/store/{store_id}/state", params={"state": "Up"}
        )
