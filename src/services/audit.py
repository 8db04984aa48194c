"""Alert, incident and AI-interaction records.

Alerts land under ``tenants/{id}/alerts`` where the tenant dashboard picks
them up; incidents are global audit trails (``notifications`` for governor
escalations, ``system_logs`` for circuit-breaker trips).

The writers accept either the store or an open transaction as *target*, so
callers that need several records to land atomically (the governor) can
pass their transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from src.models import Alert, utc_now_iso
from src.services.store import DocumentStore, Transaction

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"
SYSTEM_LOGS = "system_logs"
AI_LOGS = "ai_logs"
AGENT_VERSION = "v3_concierge"


def alerts_collection(tenant_id: str) -> str:
    return f"tenants/{tenant_id}/alerts"


def write_alert(target: DocumentStore | Transaction, alert: Alert) -> str:
    """Persist a tenant-facing alert and return its id."""
    return target.add(alerts_collection(alert.tenant_id), alert.model_dump(mode="json"))


def write_incident(
    target: DocumentStore | Transaction, collection: str, record: dict[str, Any],
) -> str:
    """Persist an audit incident (``notifications`` / ``system_logs``)."""
    body = {"created_at": utc_now_iso(), **record}
    return target.add(collection, body)


def log_ai_interaction(
    store: DocumentStore,
    *,
    tenant_id: str,
    contact_identity: str,
    input_message: str,
    ai_response: str,
    tools_used: list[str],
    latency_ms: float,
    status: str = "success",
    error: str | None = None,
) -> None:
    """Record one AI turn for prompt auditing.

    A failed log write must never break the reply, so errors are logged
    and dropped here.
    """
    try:
        store.add(
            AI_LOGS,
            {
                "tenant_id": tenant_id,
                "contact_identity": contact_identity,
                "input": input_message,
                "output": ai_response,
                "tools": tools_used,
                "latency_ms": round(latency_ms, 1),
                "status": status,
                "error": error,
                "timestamp": utc_now_iso(),
                "ver": AGENT_VERSION,
            },
        )
        logger.debug("AI interaction recorded for %s (%.0fms)", contact_identity, latency_ms)
    except Exception:
        logger.exception("Failed to save AI interaction log for %s", contact_identity)
