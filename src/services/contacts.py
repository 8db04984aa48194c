"""Persistence for :class:`~src.models.ContactMapping` documents.

One mapping per external contact identity at
``contact_mappings/{identity}``.  Every component that reads or flips a
contact's per-tenant state (switchboard, governor, circuit breaker, tool
orchestrator) goes through this directory so the document shape lives in
one place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from src.models import ContactMapping, ContactStatus
from src.services.store import DocumentStore, Transaction

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(UTC)


def mapping_path(identity: str) -> str:
    return f"contact_mappings/{identity}"


def chat_path(tenant_id: str, identity: str) -> str:
    return f"tenants/{tenant_id}/chats/{identity}"


class ContactDirectory:
    """Reads and merge-writes contact mappings."""

    def __init__(self, store: DocumentStore, *, clock: Clock = utc_clock) -> None:
        self._store = store
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat()

    def load(self, identity: str) -> ContactMapping:
        """Return the mapping for *identity*, or an empty one if unknown."""
        data = self._store.get(mapping_path(identity))
        if data is None:
            return ContactMapping()
        return ContactMapping.model_validate(data)

    def link_tenant(self, identity: str, tenant_id: str, tenant_name: str) -> None:
        """Attach *identity* to a tenant and make it the active one."""
        self._store.set(
            mapping_path(identity),
            {
                "tenants": {
                    tenant_id: {"name": tenant_name, "last_interaction": self._now()},
                },
                "last_active_tenant_id": tenant_id,
            },
            merge=True,
        )

    def set_active_tenant(self, identity: str, tenant_id: str) -> None:
        self._store.set(
            mapping_path(identity),
            {
                "tenants": {tenant_id: {"last_interaction": self._now()}},
                "last_active_tenant_id": tenant_id,
            },
            merge=True,
        )

    def save_client_name(self, identity: str, name: str) -> None:
        self._store.set(mapping_path(identity), {"client_name": name}, merge=True)

    def pause(
        self,
        identity: str,
        tenant_id: str,
        reason: str,
        *,
        target: DocumentStore | Transaction | None = None,
    ) -> None:
        """Silence the AI for (identity, tenant) until a human resumes it."""
        (target or self._store).set(
            mapping_path(identity),
            {
                "tenants": {
                    tenant_id: {
                        "status": ContactStatus.PAUSED.value,
                        "paused_reason": reason,
                        "last_interaction": self._now(),
                    }
                }
            },
            merge=True,
        )
        logger.info("Contact %s paused for tenant %s (%s)", identity, tenant_id, reason)

    def record_interaction(self, identity: str, tenant_id: str) -> int:
        """Increment the interaction counter and return the new value."""

        def _increment(txn: Transaction) -> int:
            data = txn.get(mapping_path(identity)) or {}
            link: dict[str, Any] = (data.get("tenants") or {}).get(tenant_id) or {}
            count = int(link.get("interaction_count", 0)) + 1
            txn.set(
                mapping_path(identity),
                {
                    "tenants": {
                        tenant_id: {
                            "interaction_count": count,
                            "last_interaction": self._now(),
                        }
                    },
                    "last_active_tenant_id": tenant_id,
                },
                merge=True,
            )
            return count

        return self._store.run_transaction(_increment, scope=mapping_path(identity))

    def reset_interactions(self, identity: str, tenant_id: str) -> None:
        """Zero the counter and restore ``active`` status."""
        self._store.set(
            mapping_path(identity),
            {
                "tenants": {
                    tenant_id: {
                        "interaction_count": 0,
                        "status": ContactStatus.ACTIVE.value,
                        "paused_reason": None,
                        "last_interaction": self._now(),
                    }
                }
            },
            merge=True,
        )

    def flag_chat(
        self,
        tenant_id: str,
        identity: str,
        *,
        target: DocumentStore | Transaction | None = None,
    ) -> None:
        """Mark the tenant's chat record as paused and needing attention."""
        (target or self._store).set(
            chat_path(tenant_id, identity),
            {"status": ContactStatus.PAUSED.value, "needs_attention": True, "updated_at": self._now()},
            merge=True,
        )
