"""Domain models shared by the switchboard, booking engine and governor.

The store holds plain dicts; these pydantic models are the typed view the
services work with (``Model.model_validate(doc)`` on read,
``model.model_dump()`` on write).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ── Enums ────────────────────────────────────────────────────────────


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states.

    ``SCHEDULED`` is the status the tenant dashboard writes natively and is
    treated as equivalent to ``CONFIRMED`` everywhere in the engine.
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SCHEDULED = "scheduled"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


ACTIVE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.SCHEDULED,
)

# States the governor treats as "the conversation reached an outcome".
RESOLVED_STATUSES = (
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CANCELLED,
)


class AppointmentSource(str, Enum):
    MANUAL = "manual"
    AI_TOOL = "ai_enterprise"
    AI_AUTO = "ai_concierge_auto"


class ContactStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


# ── Tenant ───────────────────────────────────────────────────────────


class BusinessHours(BaseModel):
    """Opening policy; ``days`` are ISO weekdays (1 = Monday … 7 = Sunday)."""

    open: str = "09:00"
    close: str = "18:00"
    break_: str | None = Field(default=None, alias="break")
    days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    model_config = {"populate_by_name": True}


class ServiceItem(BaseModel):
    name: str
    price: float = 0.0
    duration: int = 30


class Tenant(BaseModel):
    id: str
    name: str = "Professional"
    slug: str | None = None
    country: str = "US"
    timezone: str = "UTC"
    plan: str = "free"
    active: bool = True
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    services: list[ServiceItem] = Field(default_factory=list)

    def find_service(self, name: str) -> ServiceItem | None:
        """Catalog lookup; names must match verbatim."""
        for item in self.services:
            if item.name == name:
                return item
        return None


# ── Contact mapping ──────────────────────────────────────────────────


class TenantLink(BaseModel):
    name: str = "Professional"
    last_interaction: str | None = None
    interaction_count: int = 0
    status: ContactStatus = ContactStatus.ACTIVE
    paused_reason: str | None = None

    @property
    def is_paused(self) -> bool:
        return self.status == ContactStatus.PAUSED


class ContactMapping(BaseModel):
    client_name: str | None = None
    tenants: dict[str, TenantLink] = Field(default_factory=dict)
    last_active_tenant_id: str | None = None

    def link_for(self, tenant_id: str) -> TenantLink:
        return self.tenants.get(tenant_id) or TenantLink()


# ── Appointment ──────────────────────────────────────────────────────


class Appointment(BaseModel):
    id: str | None = None
    client_name: str
    client_phone: str
    service_name: str
    start_time: str
    duration: int
    price: float = 0.0
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    source: str = AppointmentSource.AI_TOOL.value
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_document(self) -> dict:
        """Dict for the store (``id`` lives in the path, not the body)."""
        return self.model_dump(mode="json", exclude={"id"})


# ── Alerts ───────────────────────────────────────────────────────────


class Alert(BaseModel):
    """Tenant-facing alert consumed by the dashboard."""

    type: str
    reason: str
    tenant_id: str
    contact_identity: str
    description: str
    created_at: str = Field(default_factory=utc_now_iso)
    resolved: bool = False
