"""
PD API response types.

Pydantic models for parsing responses from the PD (Placement Driver) HTTP
API. These are external response types; the core works with
orchestrator_protocols.Member.

Notes:
- PD wraps store info in {"store": {...}, "status": {...}}
- Member and store IDs are ints in PD and strings in the core
- Unknown fields are ignored; PD adds fields between releases
"""

from pydantic import BaseModel, Field


# =============================================================================
# Members
# =============================================================================
# GET /pd/api/v1/members
# {"members": [{"name": "basic-pd-0", "member_id": 123, ...}],
#  "leader": {"name": "basic-pd-0", "member_id": 123, ...}}


class PDMember(BaseModel):
    """One PD member."""

    name: str
    member_id: int
    peer_urls: list[str] = Field(default_factory=list)
    client_urls: list[str] = Field(default_factory=list)


class PDMembersResponse(BaseModel):
    """Response from GET /pd/api/v1/members."""

    members: list[PDMember] = Field(default_factory=list)
    leader: PDMember | None = None


class PDMemberHealth(BaseModel):
    """
    One entry from GET /pd/api/v1/health.

    Example response:
    [{"name": "basic-pd-0", "member_id": 123,
      "client_urls": ["http://basic-pd-0:2379"], "health": true}]
    """

    name: str
    member_id: int
    client_urls: list[str] = Field(default_factory=list)
    health: bool = False


# =============================================================================
# Stores
# =============================================================================
# GET /pd/api/v1/stores
# {"count": 3, "stores": [{"store": {...}, "status": {...}}]}


class PDStoreInfo(BaseModel):
    """
    Inner store info from PD API.

    This is the nested 'store' object within each store entry.
    """

    id: int
    address: str
    state_name: str  # "Up", "Offline", "Down", "Disconnected", "Tombstone"
    version: str = ""
    status_address: str = ""


class PDStoreStatus(BaseModel):
    """Store status counters from PD API."""

    leader_count: int = 0
    region_count: int = 0


class PDStoreItem(BaseModel):
    """Single store entry from PD /stores endpoint."""

    store: PDStoreInfo
    status: PDStoreStatus | None = None


class PDStoresResponse(BaseModel):
    """Response from GET /pd/api/v1/stores."""

    count: int = 0
    stores: list[PDStoreItem] = Field(default_factory=list)
