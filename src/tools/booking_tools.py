"""LangChain tools for one concierge conversation.

A :class:`ConciergeToolset` is built per request and bound to a single
``(tenant, contact)`` pair, so the model can never read or write another
contact's bookings.  Every tool is a thin adapter over the booking engine or
the contact directory and returns a machine-readable string:

* ``SUCCESS: ...`` with a short human-readable summary, or
* ``ERROR: <CODE>`` with one of the booking engine codes.

``SYNC_FAIL`` is a temporary store failure; the model may retry it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from langchain_core.tools import BaseTool, tool
from pydantic import ValidationError

from src.models import Tenant, utc_now_iso
from src.services.booking import (
    INVALID_DATE,
    SYNC_FAIL,
    BookingEngine,
    BookingError,
    BookingRequest,
    parse_start,
    zone_for,
)
from src.services.contacts import ContactDirectory
from src.services.store import DocumentStore, StoreUnavailableError

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "UNKNOWN_TOOL"
INVALID_ARGS = "INVALID_ARGS"


def _error(code: str) -> str:
    return f"ERROR: {code}"


class ConciergeToolset:
    """The six booking tools, bound to one tenant and one contact.

    Tracks what happened during the turn: ``tools_used`` lists every call
    in order and ``booking_changed`` flips once a create, update or cancel
    actually writes; replays and repeat cancels leave it alone.
    """

    def __init__(
        self,
        engine: BookingEngine,
        contacts: ContactDirectory,
        store: DocumentStore,
        tenant: Tenant,
        contact_identity: str,
        client_name: str | None = None,
    ) -> None:
        self._engine = engine
        self._contacts = contacts
        self._store = store
        self._tenant = tenant
        self._contact = contact_identity
        self.client_name = client_name
        self.tools_used: list[str] = []
        self.booking_changed = False
        self._tools = {t.name: t for t in self._build_tools()}

    @property
    def _customer_path(self) -> str:
        return f"tenants/{self._tenant.id}/customers/{self._contact}"

    # ── Tool definitions ─────────────────────────────────────────────

    def _build_tools(self) -> list[BaseTool]:
        toolset = self

        @tool
        def save_identity(name: str) -> str:
            """Save the client's name. Call this as soon as the client tells you their name.

            Args:
                name: The client's name exactly as they gave it.
            """
            return toolset._save_identity(name)

        @tool
        def update_crm(notes: str = "", preferred_service: str = "") -> str:
            """Store notes or a preferred service on the client's record.

            Args:
                notes: Free-text notes worth remembering (allergies, preferences).
                preferred_service: A service from the catalog the client usually books.
            """
            return toolset._update_crm(notes, preferred_service)

        @tool
        def read_agenda(date: str) -> str:
            """List the busy time ranges on one day. ALWAYS call this before proposing or confirming a time.

            Args:
                date: The day to check, in YYYY-MM-DD format.
            """
            return toolset._read_agenda(date)

        @tool
        def create_appointment(
            client_name: str,
            service_name: str,
            start_time: str,
            duration: int | None = None,
            price: float | None = None,
        ) -> str:
            """Book a NEW appointment once the client has agreed on service and time.

            Args:
                client_name: The client's name.
                service_name: A service name exactly as listed in the catalog.
                start_time: Local start time, ISO format YYYY-MM-DDTHH:MM:00.
                duration: Minutes; only used when the service is not in the catalog.
                price: Only used when the service is not in the catalog.
            """
            return toolset._create(client_name, service_name, start_time, duration, price)

        @tool
        def update_appointment(new_start_time: str) -> str:
            """Move the client's EXISTING upcoming appointment to a new time.

            Args:
                new_start_time: New local start time, ISO format YYYY-MM-DDTHH:MM:00.
            """
            return toolset._update(new_start_time)

        @tool
        def delete_appointment() -> str:
            """Cancel the client's upcoming appointments."""
            return toolset._cancel()

        return [
            save_identity,
            update_crm,
            read_agenda,
            create_appointment,
            update_appointment,
            delete_appointment,
        ]

    # ── Public API ───────────────────────────────────────────────────

    def as_tools(self) -> list[BaseTool]:
        """Tools for ``llm.bind_tools``."""
        return list(self._tools.values())

    def invoke(self, name: str, args: dict[str, Any] | None) -> str:
        """Run one tool call from the model and return its result string."""
        self.tools_used.append(name)
        selected = self._tools.get(name)
        if selected is None:
            logger.warning("Model called unknown tool %r", name)
            return _error(UNKNOWN_TOOL)
        try:
            result = selected.invoke(args or {})
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("Invalid arguments for %s: %s", name, exc)
            return _error(INVALID_ARGS)
        except StoreUnavailableError as exc:
            logger.warning("Store unavailable during %s: %s", name, exc)
            return _error(SYNC_FAIL)
        logger.debug("Tool %s -> %s", name, result)
        return result

    # ── Implementations ──────────────────────────────────────────────

    def _save_identity(self, name: str) -> str:
        name = name.strip()
        if not name:
            return _error(INVALID_ARGS)
        self._contacts.save_client_name(self._contact, name)
        self._store.set(
            self._customer_path,
            {"name": name, "phone": self._contact, "updated_at": utc_now_iso()},
            merge=True,
        )
        self.client_name = name
        return f"SUCCESS: Client name saved as {name}."

    def _update_crm(self, notes: str, preferred_service: str) -> str:
        fields: dict[str, Any] = {}
        if notes.strip():
            fields["notes"] = notes.strip()
        if preferred_service.strip():
            fields["preferred_service"] = preferred_service.strip()
        if not fields:
            return _error(INVALID_ARGS)
        self._store.set(
            self._customer_path,
            {**fields, "phone": self._contact, "updated_at": utc_now_iso()},
            merge=True,
        )
        return f"SUCCESS: Client record updated ({', '.join(sorted(fields))})."

    def _read_agenda(self, date: str) -> str:
        day = (date or "").split("T")[0]
        try:
            weekday = datetime.strptime(day, "%Y-%m-%d").isoweekday()
            appointments = self._engine.agenda(self._tenant.id, day)
        except ValueError:
            return _error(INVALID_DATE)
        except BookingError as exc:
            return _error(exc.code)

        if weekday not in self._tenant.business_hours.days:
            return f"SUCCESS: CLOSED on {day}. Do not book this day."
        if not appointments:
            return f"SUCCESS: ALL SLOTS FREE on {day}."

        zone = zone_for(self._tenant)
        busy = []
        for appointment in appointments:
            try:
                start = parse_start(appointment.start_time, zone)
            except BookingError:
                logger.warning("Skipping appointment %s with bad start %r", appointment.id, appointment.start_time)
                continue
            end = start + timedelta(minutes=appointment.duration)
            busy.append(f"{start:%H:%M}-{end:%H:%M}")
        return f"SUCCESS: Busy on {day}: {', '.join(busy)}. Every other time within business hours is free."

    def _create(
        self,
        client_name: str,
        service_name: str,
        start_time: str,
        duration: int | None,
        price: float | None,
    ) -> str:
        request = BookingRequest(
            contact_identity=self._contact,
            client_name=(client_name or "").strip() or self.client_name or "Client",
            service_name=service_name,
            start_time=start_time,
            duration=duration,
            price=price,
        )
        try:
            result = self._engine.create(self._tenant.id, request)
        except BookingError as exc:
            return _error(exc.code)
        appointment = result.appointment
        if not result.created:
            return f"SUCCESS: ALREADY_BOOKED. {appointment.service_name} at {appointment.start_time} is confirmed."
        self.booking_changed = True
        return (
            f"SUCCESS: APPOINTMENT_CREATED. {appointment.service_name} at {appointment.start_time} "
            f"({appointment.duration} min). Inform the client it is confirmed."
        )

    def _update(self, new_start_time: str) -> str:
        try:
            result = self._engine.update(self._tenant.id, self._contact, new_start_time)
        except BookingError as exc:
            return _error(exc.code)
        self.booking_changed = True
        return f"SUCCESS: APPOINTMENT_RESCHEDULED to {result.appointment.start_time}. Inform the client."

    def _cancel(self) -> str:
        try:
            result = self._engine.cancel(self._tenant.id, self._contact)
        except BookingError as exc:
            return _error(exc.code)
        if result.affected == 0:
            return "SUCCESS: ALREADY_CANCELLED. Nothing left to cancel."
        self.booking_changed = True
        return f"SUCCESS: APPOINTMENT_CANCELLED ({result.affected}). Inform the client."
