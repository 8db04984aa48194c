"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    """A customer message relayed by the channel gateway."""

    from_identity: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Channel address of the customer (e.g. a phone number)",
    )
    body_text: str = Field("", max_length=4000, description="Message text or voice transcript")
    is_voice_channel: bool = Field(False, description="True when body_text is a voice transcript")


class WebhookResponse(BaseModel):
    """What the gateway should send back to the customer."""

    reply: str | None = Field(None, description="Reply text; null means stay silent")
    tenant_id: str | None = Field(None, description="Tenant the message was routed to")
    paused: bool = Field(False, description="True when a human now owns the conversation")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-concierge"
