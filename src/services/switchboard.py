"""Tenant resolution ("switchboard").

Decides which tenant an inbound contact is addressing:

  1. onboarding token in the text (``ID: <id>`` / ``Ref: <slug>``) →
     link the contact to that tenant (slug first, raw id second);
  2. no linked tenant → ask the contact to use a booking link;
  3. exactly one linked tenant → fast path;
  4. several linked tenants → stay with the last active one inside the
     stickiness window, else accept a bare menu number, else ask the contact
     to choose from a numbered list.

The only side effect is the contact-mapping upsert.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from src.models import ContactMapping, Tenant
from src.services.contacts import Clock, ContactDirectory, utc_clock
from src.services.store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_STICKINESS_MINUTES = 30

_TOKEN_RE = re.compile(r"(?:ID:|Ref:)\s*([a-zA-Z0-9_-]+)", re.IGNORECASE)
_MENU_CHOICE_RE = re.compile(r"^\s*(\d+)\s*$")


@dataclass
class TenantOption:
    id: str
    name: str


@dataclass
class Resolution:
    """Outcome of :meth:`Switchboard.resolve`.

    Exactly one of ``tenant``, ``needs_link``, ``needs_choice`` or ``error``
    is meaningful.
    """

    tenant: Tenant | None = None
    mapping: ContactMapping = field(default_factory=ContactMapping)
    is_initial_message: bool = False
    needs_link: bool = False
    needs_choice: bool = False
    tenant_list: list[TenantOption] = field(default_factory=list)
    error: str | None = None

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant else None

    @property
    def client_name(self) -> str | None:
        return self.mapping.client_name


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class Switchboard:
    """Maps a contact identity to exactly one active tenant."""

    def __init__(
        self,
        store: DocumentStore,
        contacts: ContactDirectory,
        *,
        stickiness_minutes: int = DEFAULT_STICKINESS_MINUTES,
        clock: Clock = utc_clock,
    ) -> None:
        self._store = store
        self._contacts = contacts
        self._stickiness = timedelta(minutes=stickiness_minutes)
        self._clock = clock

    # ── Tenant lookups ───────────────────────────────────────────────

    def _load_tenant(self, tenant_id: str) -> Tenant | None:
        data = self._store.get(f"tenants/{tenant_id}")
        if data is None:
            return None
        return Tenant.model_validate({**data, "id": tenant_id})

    def _tenant_for_token(self, token: str) -> Tenant | None:
        """Slug (friendly URL) first, then the raw tenant id."""
        hits = self._store.query("tenants", where=[("slug", "==", token)], limit=1)
        tenant_id = hits[0].id if hits else token
        return self._load_tenant(tenant_id)

    def _active_tenant(self, tenant_id: str, mapping: ContactMapping) -> Resolution:
        tenant = self._load_tenant(tenant_id)
        if tenant is None or not tenant.active:
            logger.warning("Linked tenant %s is missing or inactive", tenant_id)
            return Resolution(mapping=mapping, needs_link=True)
        return Resolution(tenant=tenant, mapping=mapping)

    # ── Public API ───────────────────────────────────────────────────

    def resolve(self, contact_identity: str, message_text: str | None) -> Resolution:
        mapping = self._contacts.load(contact_identity)
        text = message_text or ""

        token_match = _TOKEN_RE.search(text)
        if token_match:
            token = token_match.group(1)
            tenant = self._tenant_for_token(token)
            if tenant is None:
                logger.info("Onboarding token %r matched no tenant", token)
                return Resolution(mapping=mapping, error="Professional not found.")
            if not tenant.active:
                return Resolution(mapping=mapping, needs_link=True)
            self._contacts.link_tenant(contact_identity, tenant.id, tenant.name)
            logger.info("Contact %s linked to tenant %s", contact_identity, tenant.id)
            return Resolution(
                tenant=tenant, mapping=self._contacts.load(contact_identity), is_initial_message=True,
            )

        # Stable menu order regardless of backend map ordering.
        tenant_ids = sorted(mapping.tenants, key=lambda tid: (mapping.tenants[tid].name, tid))
        if not tenant_ids:
            return Resolution(mapping=mapping, needs_link=True)

        if len(tenant_ids) == 1:
            return self._active_tenant(tenant_ids[0], mapping)

        # Switchboard: several tenants share this contact.
        last_id = mapping.last_active_tenant_id
        if last_id in mapping.tenants:
            last_seen = _parse_time(mapping.tenants[last_id].last_interaction)
            if last_seen is not None and self._clock() - last_seen < self._stickiness:
                return self._active_tenant(last_id, mapping)

        choice = _MENU_CHOICE_RE.match(text)
        if choice:
            index = int(choice.group(1))
            if 1 <= index <= len(tenant_ids):
                selected = tenant_ids[index - 1]
                self._contacts.set_active_tenant(contact_identity, selected)
                logger.info("Contact %s selected tenant %s from menu", contact_identity, selected)
                return self._active_tenant(selected, self._contacts.load(contact_identity))

        return Resolution(
            mapping=mapping,
            needs_choice=True,
            tenant_list=[TenantOption(id=tid, name=mapping.tenants[tid].name) for tid in tenant_ids],
        )
