"""Last line of defence for the request pipeline.

When anything in the pipeline raises, :meth:`CircuitBreaker.trigger` leaves
a CRITICAL log record, a ``system_logs`` incident and a tenant alert, and
pauses the contact so the professional can take over.  It never raises:
the caller always gets to send its fallback reply.
"""

from __future__ import annotations

import logging
from typing import Any

from src.models import Alert, utc_now_iso
from src.services import audit
from src.services.contacts import ContactDirectory
from src.services.metrics import metrics
from src.services.store import DocumentStore

logger = logging.getLogger(__name__)

PAUSE_REASON = "system_failure"

FALLBACK_MESSAGE = (
    "Sorry, we're having a technical hiccup right now. "
    "The professional has been notified and will get back to you shortly."
)


class CircuitBreaker:
    def __init__(self, store: DocumentStore, contacts: ContactDirectory) -> None:
        self._store = store
        self._contacts = contacts

    def trigger(self, error: BaseException, context: dict[str, Any]) -> bool:
        """Record *error* and pause the contact.

        *context* carries ``tenant_id``, ``contact_identity`` and
        ``channel``; any of them may be missing.  Returns ``False`` when the
        incident itself could not be recorded.
        """
        tenant_id = context.get("tenant_id")
        contact_identity = context.get("contact_identity")
        channel = context.get("channel")
        error_code = getattr(error, "code", None) or type(error).__name__

        logger.critical(
            "Circuit breaker triggered for %s (tenant %s): %s",
            contact_identity, tenant_id, error,
            extra={
                "event": "CIRCUIT_BREAKER_TRIGGERED",
                "tenant_id": tenant_id,
                "contact_identity": contact_identity,
                "channel": channel,
                "error_code": error_code,
            },
        )
        metrics.record_escalation(PAUSE_REASON)

        try:
            audit.write_incident(
                self._store,
                audit.SYSTEM_LOGS,
                {
                    "type": "CIRCUIT_BREAKER",
                    "severity": "CRITICAL",
                    "tenant_id": tenant_id,
                    "contact_identity": contact_identity,
                    "channel": channel,
                    "error": {"code": error_code, "message": str(error)},
                    "created_at": utc_now_iso(),
                },
            )
            if tenant_id and contact_identity:
                audit.write_alert(
                    self._store,
                    Alert(
                        type="HUMAN_INTERVENTION_REQUIRED",
                        reason="CIRCUIT_BREAKER_FAILURE",
                        tenant_id=tenant_id,
                        contact_identity=contact_identity,
                        description=(
                            "A technical failure was detected and the assistant "
                            "was paused for this client."
                        ),
                    ),
                )
                self._contacts.pause(contact_identity, tenant_id, PAUSE_REASON)
            return True
        except Exception:
            # Double fault: the log record above is the only trace left.
            logger.exception("Circuit breaker could not record incident for %s", contact_identity)
            return False
