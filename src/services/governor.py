"""Conversation governor.

Stops a conversation that keeps going without reaching an outcome.  The
controller evaluates every turn with the contact's stored interaction
count; once it reaches :data:`MAX_INTERACTIONS` while the booking is still
unresolved, the contact is handed to a human.

Escalation writes three records in a single transaction: the
``notifications`` audit incident, the tenant-facing ``IA_STUCK`` alert and
the ``paused`` flag on the contact mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.models import RESOLVED_STATUSES, Alert, AppointmentStatus
from src.services import audit
from src.services.contacts import Clock, ContactDirectory, mapping_path, utc_clock
from src.services.metrics import metrics
from src.services.store import DocumentStore, Transaction

logger = logging.getLogger(__name__)

MAX_INTERACTIONS = 10
PAUSE_REASON = "governor_limit_exceeded"

FALLBACK_MESSAGE = (
    "I notice we haven't wrapped up your request yet. To make things easier, "
    "I'm passing the conversation to the professional, who will help you shortly."
)


@dataclass
class EscalationDecision:
    should_escalate: bool
    fallback_message: str | None = None


def _is_resolved(state: AppointmentStatus | str | None) -> bool:
    if state is None:
        return False
    try:
        return AppointmentStatus(state) in RESOLVED_STATUSES
    except ValueError:
        return False


class ConversationGovernor:
    """Interaction budget per (tenant, contact)."""

    def __init__(
        self,
        store: DocumentStore,
        contacts: ContactDirectory,
        *,
        max_interactions: int = MAX_INTERACTIONS,
        clock: Clock = utc_clock,
    ) -> None:
        self._store = store
        self._contacts = contacts
        self._max_interactions = max_interactions
        self._clock = clock

    @property
    def max_interactions(self) -> int:
        return self._max_interactions

    def evaluate_escalation(
        self,
        tenant_id: str,
        contact_identity: str,
        interaction_count: int,
        current_state: AppointmentStatus | str | None,
    ) -> EscalationDecision:
        """Escalate iff the budget is spent and the booking is unresolved."""
        if interaction_count < self._max_interactions or _is_resolved(current_state):
            return EscalationDecision(should_escalate=False)

        logger.warning(
            "Escalating %s for tenant %s after %d interactions",
            contact_identity, tenant_id, interaction_count,
        )
        state_label = getattr(current_state, "value", current_state) or "NONE"
        now = self._clock().isoformat()

        def _escalate(txn: Transaction) -> None:
            audit.write_incident(
                txn,
                audit.NOTIFICATIONS,
                {
                    "type": "human_intervention_required",
                    "reason": "MAX_INTERACTIONS_EXCEEDED",
                    "tenant_id": tenant_id,
                    "contact_identity": contact_identity,
                    "last_booking_state": state_label,
                    "interaction_count": interaction_count,
                    "limit": self._max_interactions,
                    "created_at": now,
                },
            )
            audit.write_alert(
                txn,
                Alert(
                    type="ATTENTION_REQUIRED",
                    reason="IA_STUCK",
                    tenant_id=tenant_id,
                    contact_identity=contact_identity,
                    description=(
                        f"The assistant reached {self._max_interactions} interactions without "
                        "completing the booking. Manual takeover enabled."
                    ),
                    created_at=now,
                ),
            )
            self._contacts.pause(contact_identity, tenant_id, PAUSE_REASON, target=txn)

        self._store.run_transaction(_escalate, scope=mapping_path(contact_identity))
        metrics.record_escalation(PAUSE_REASON)
        return EscalationDecision(should_escalate=True, fallback_message=FALLBACK_MESSAGE)

    def record_interaction(self, contact_identity: str, tenant_id: str) -> int:
        """Count one turn that did not change a booking."""
        return self._contacts.record_interaction(contact_identity, tenant_id)

    def reset_governor(self, contact_identity: str, tenant_id: str) -> None:
        """Zero the counter and restore ``active`` after a booking change."""
        self._contacts.reset_interactions(contact_identity, tenant_id)
        logger.debug("Governor reset for %s / %s", contact_identity, tenant_id)
