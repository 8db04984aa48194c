"""FastAPI route definitions for the booking concierge API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from src.api.schemas import HealthResponse, InboundMessage, WebhookResponse
from src.controller import FALLBACK_REPLY

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_controller(request: Request):
    """Retrieve the controller built during the FastAPI lifespan."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=503,
            detail="The concierge is still starting up. Please try again in a moment.",
        )
    return controller


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/webhook", response_model=WebhookResponse)
async def webhook(message: InboundMessage, http_request: Request):
    """Handle one inbound customer message and return the reply to send.

    ``controller.handle()`` blocks on the model and the store, so it runs
    in the default thread pool via ``asyncio.to_thread``.  The channel
    expects an answer within a few seconds: past
    ``REQUEST_TIMEOUT_SECONDS`` the customer gets the fallback reply while
    the turn finishes in the background.
    """
    controller = _get_controller(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    timeout = getattr(http_request.app.state, "request_timeout", None)

    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(controller.handle, message), timeout=timeout,
        )
    except TimeoutError:
        logger.warning(
            "[%s] Turn for %s exceeded %ss, sending fallback", request_id, message.from_identity, timeout,
        )
        return WebhookResponse(reply=FALLBACK_REPLY)
    except Exception as e:
        # The controller never raises; anything here is a wiring bug.
        logger.exception("[%s] Error processing webhook", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return WebhookResponse(reply=result.reply, tenant_id=result.tenant_id, paused=result.paused)
