"""Deterministic booking engine.

Owns the appointment lifecycle for every tenant.  The language model never
writes to the calendar directly; it asks the toolset, which asks this engine.

Guarantees
----------
* **No double booking** - create and update re-read every non-cancelled
  appointment of the tenant inside one store transaction scoped to the
  tenant, and reject any overlap of ``[start, start + duration)``.
* **Idempotent create** - an exact ``(client_phone, start_time)`` replay of a
  non-cancelled appointment returns the stored record instead of inserting a
  second one.  Both the tool path and the auto-booking path end in the same
  transactional insert, so they share this guarantee.
* **Formal state machine** - see :data:`VALID_TRANSITIONS`.

Start times are tenant-local wall-clock values stored as
``YYYY-MM-DDTHH:MM:SS`` without an offset; "now" is always evaluated in the
tenant's timezone.

Failures are raised as :class:`BookingError` with a machine-readable
``code``; store outages become ``SYNC_FAIL``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentSource,
    AppointmentStatus,
    Tenant,
    utc_now_iso,
)
from src.services.contacts import Clock, utc_clock
from src.services.metrics import metrics
from src.services.store import DocumentStore, StoreUnavailableError, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Error codes ──────────────────────────────────────────────────────
PAST_DATE = "PAST_DATE"
SLOT_OCCUPIED = "SLOT_OCCUPIED"
UNKNOWN_SERVICE = "UNKNOWN_SERVICE"
INVALID_DATE = "INVALID_DATE"
INVALID_DURATION = "INVALID_DURATION"
NOT_FOUND = "NOT_FOUND"
FORBIDDEN_TRANSITION = "FORBIDDEN_TRANSITION"
SYNC_FAIL = "SYNC_FAIL"

START_FORMAT = "%Y-%m-%dT%H:%M:%S"

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]

VALID_TRANSITIONS: dict[AppointmentStatus, tuple[AppointmentStatus, ...]] = {
    AppointmentStatus.PENDING: (
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.CANCELLED,
    ),
    AppointmentStatus.CONFIRMED: (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED),
    AppointmentStatus.SCHEDULED: (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED),
    AppointmentStatus.CANCELLED: (),
    AppointmentStatus.COMPLETED: (),
}


class BookingError(Exception):
    """A booking request the engine refuses, with a machine-readable code."""

    def __init__(self, code: str, message: str = ""):
        self.code = code
        super().__init__(message or code)


@dataclass
class BookingRequest:
    contact_identity: str
    client_name: str
    service_name: str
    start_time: str
    duration: int | None = None
    price: float | None = None
    source: AppointmentSource = AppointmentSource.AI_TOOL


@dataclass
class BookingResult:
    """Outcome of a write.

    ``created`` is ``False`` when the call was a no-op: an idempotent create
    replay, an update to the same time, or a repeated cancel.
    """

    appointment: Appointment
    created: bool = True
    affected: int = 1


@dataclass
class BookingStatus:
    exists: bool
    state: AppointmentStatus | None = None
    booking_id: str | None = None
    summary: dict[str, Any] | None = None


# ── Pure helpers ─────────────────────────────────────────────────────


def validate_transition(current: AppointmentStatus | str, next_state: AppointmentStatus | str) -> bool:
    """Return ``True`` if ``current -> next_state`` is allowed."""
    try:
        current, next_state = AppointmentStatus(current), AppointmentStatus(next_state)
    except ValueError:
        return False
    if next_state not in VALID_TRANSITIONS.get(current, ()):
        logger.error("Transition %s -> %s is blocked by business rules", current.value, next_state.value)
        return False
    return True


def is_overlapping(start_a: datetime, duration_a: int, start_b: datetime, duration_b: int) -> bool:
    """Half-open interval overlap of ``[start, start + duration)``."""
    end_a = start_a + timedelta(minutes=duration_a)
    end_b = start_b + timedelta(minutes=duration_b)
    return start_a < end_b and end_a > start_b


def zone_for(tenant: Tenant) -> ZoneInfo:
    try:
        return ZoneInfo(tenant.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for tenant %s, using UTC", tenant.timezone, tenant.id)
        return ZoneInfo("UTC")


def parse_start(value: str, zone: ZoneInfo) -> datetime:
    """Parse an ISO start time into a naive tenant-local datetime.

    Values carrying an offset (``Z``, ``+01:00``) are converted into the
    tenant's zone first; naive values are taken as local wall-clock time.
    """
    if not value or not isinstance(value, str):
        raise BookingError(INVALID_DATE, f"Missing start time: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise BookingError(INVALID_DATE, f"Unparseable start time: {value!r}") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(zone).replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def format_start(value: datetime) -> str:
    return value.strftime(START_FORMAT)


def _to_appointment(doc_id: str, data: dict[str, Any]) -> Appointment:
    return Appointment.model_validate({**data, "id": doc_id})


# ── Engine ───────────────────────────────────────────────────────────


class BookingEngine:
    """Idempotent, transactional appointment operations for all tenants."""

    def __init__(self, store: DocumentStore, *, clock: Clock = utc_clock) -> None:
        self._store = store
        self._clock = clock

    # ── Internal helpers ─────────────────────────────────────────────

    @staticmethod
    def appointments_path(tenant_id: str) -> str:
        return f"tenants/{tenant_id}/appointments"

    def load_tenant(self, tenant_id: str) -> Tenant:
        data = self._sync(lambda: self._store.get(f"tenants/{tenant_id}"))
        if data is None:
            raise BookingError(NOT_FOUND, f"Tenant {tenant_id} not found")
        return Tenant.model_validate({**data, "id": tenant_id})

    def local_now(self, tenant: Tenant) -> datetime:
        return self._clock().astimezone(zone_for(tenant)).replace(tzinfo=None, microsecond=0)

    def _today(self, tenant: Tenant) -> str:
        return self.local_now(tenant).date().isoformat()

    def _sync(self, call: Callable[[], T]) -> T:
        """Run a plain store call, mapping outages to ``SYNC_FAIL``."""
        try:
            return call()
        except StoreUnavailableError as exc:
            raise BookingError(SYNC_FAIL, str(exc)) from exc

    def _run(self, tenant_id: str, operation: str, fn: Callable[[Transaction], T]) -> T:
        """Run *fn* in a tenant-scoped transaction and record the outcome."""
        try:
            result = self._store.run_transaction(fn, scope=tenant_id)
        except StoreUnavailableError as exc:
            logger.error("Booking %s for tenant %s failed to sync: %s", operation, tenant_id, exc)
            metrics.record_booking_outcome(operation, SYNC_FAIL)
            raise BookingError(SYNC_FAIL, str(exc)) from exc
        except BookingError as exc:
            metrics.record_booking_outcome(operation, exc.code)
            raise
        metrics.record_booking_outcome(operation, "SUCCESS")
        return result

    def _future_start(self, tenant: Tenant, start_time: str) -> datetime:
        start = parse_start(start_time, zone_for(tenant))
        if start < self.local_now(tenant):
            raise BookingError(PAST_DATE, f"{format_start(start)} is in the past")
        return start

    def _find_conflict(
        self,
        tenant: Tenant,
        txn: Transaction,
        tenant_id: str,
        start: datetime,
        duration: int,
        *,
        exclude_id: str | None = None,
    ) -> Appointment | None:
        zone = zone_for(tenant)
        docs = txn.query(
            self.appointments_path(tenant_id),
            where=[("status", "!=", AppointmentStatus.CANCELLED.value)],
        )
        for doc in docs:
            if doc.id == exclude_id:
                continue
            existing = _to_appointment(doc.id, doc.data)
            try:
                existing_start = parse_start(existing.start_time, zone)
            except BookingError:
                logger.warning("Skipping appointment %s with bad start %r", doc.id, existing.start_time)
                continue
            if is_overlapping(start, duration, existing_start, existing.duration):
                return existing
        return None

    # ── Reads ────────────────────────────────────────────────────────

    def check_status(
        self, tenant_id: str, contact_identity: str, known_name: str | None = None,
    ) -> BookingStatus:
        """Earliest future-or-today active appointment of the contact.

        Looks up by phone first and falls back to the known display name so
        manually entered bookings are still found.  Two contacts sharing a
        display name can be confused by the fallback.
        """
        if not tenant_id or not contact_identity:
            return BookingStatus(exists=False)

        tenant = self.load_tenant(tenant_id)
        today = self._today(tenant)
        collection = self.appointments_path(tenant_id)

        def _lookup(field: str, value: str):
            return self._sync(lambda: self._store.query(
                collection,
                where=[
                    (field, "==", value),
                    ("status", "in", _ACTIVE_VALUES),
                    ("start_time", ">=", today),
                ],
                order_by="start_time",
                limit=1,
            ))

        hits = _lookup("client_phone", contact_identity)
        if not hits and known_name and known_name.strip() and known_name != "UNKNOWN":
            logger.info("No booking by phone for %s, trying name %r", contact_identity, known_name)
            hits = _lookup("client_name", known_name)

        if not hits:
            return BookingStatus(exists=False)

        appointment = _to_appointment(hits[0].id, hits[0].data)
        return BookingStatus(
            exists=True,
            state=appointment.status,
            booking_id=appointment.id,
            summary={
                "service": appointment.service_name,
                "time": appointment.start_time,
                "price": appointment.price,
                "client_name": appointment.client_name,
            },
        )

    def agenda(self, tenant_id: str, day: str) -> list[Appointment]:
        """Active appointments on a local calendar day (``YYYY-MM-DD``)."""
        try:
            datetime.strptime(day, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise BookingError(INVALID_DATE, f"Invalid day: {day!r}") from None
        docs = self._sync(lambda: self._store.query(
            self.appointments_path(tenant_id),
            where=[
                ("status", "in", _ACTIVE_VALUES),
                ("start_time", ">=", f"{day}T00:00:00"),
                ("start_time", "<=", f"{day}T23:59:59"),
            ],
            order_by="start_time",
        ))
        return [_to_appointment(doc.id, doc.data) for doc in docs]

    # ── Writes ───────────────────────────────────────────────────────

    def create(self, tenant_id: str, request: BookingRequest) -> BookingResult:
        """Insert an appointment unless it overlaps or already exists."""
        tenant = self.load_tenant(tenant_id)

        service = tenant.find_service(request.service_name)
        if tenant.services and service is None:
            raise BookingError(UNKNOWN_SERVICE, f"Service {request.service_name!r} is not in the catalog")
        duration = service.duration if service else request.duration
        price = service.price if service else (request.price or 0.0)
        if not duration or duration <= 0:
            raise BookingError(INVALID_DURATION, f"Invalid duration: {duration!r}")

        start = self._future_start(tenant, request.start_time)
        start_iso = format_start(start)
        collection = self.appointments_path(tenant_id)

        def _create(txn: Transaction) -> BookingResult:
            duplicates = txn.query(
                collection,
                where=[
                    ("client_phone", "==", request.contact_identity),
                    ("start_time", "==", start_iso),
                    ("status", "!=", AppointmentStatus.CANCELLED.value),
                ],
                limit=1,
            )
            if duplicates:
                logger.info(
                    "Idempotent create for %s at %s (existing %s)",
                    request.contact_identity, start_iso, duplicates[0].id,
                )
                return BookingResult(_to_appointment(duplicates[0].id, duplicates[0].data), created=False)

            conflict = self._find_conflict(tenant, txn, tenant_id, start, duration)
            if conflict is not None:
                raise BookingError(
                    SLOT_OCCUPIED, f"{start_iso} overlaps appointment {conflict.id} at {conflict.start_time}",
                )

            appointment = Appointment(
                client_name=request.client_name,
                client_phone=request.contact_identity,
                service_name=request.service_name,
                start_time=start_iso,
                duration=duration,
                price=price,
                status=AppointmentStatus.SCHEDULED,
                source=request.source.value,
            )
            doc_id = txn.add(collection, appointment.to_document())
            txn.set(
                f"tenants/{tenant_id}/customers/{request.contact_identity}",
                {
                    "name": request.client_name,
                    "phone": request.contact_identity,
                    "last_service": request.service_name,
                    "last_appointment": start_iso,
                    "updated_at": utc_now_iso(),
                },
                merge=True,
            )
            return BookingResult(appointment.model_copy(update={"id": doc_id}))

        result = self._run(tenant_id, "create", _create)
        if result.created:
            logger.info(
                "Appointment %s created for %s at %s (%s)",
                result.appointment.id, request.contact_identity, start_iso, request.source.value,
            )
        return result

    def update(self, tenant_id: str, contact_identity: str, new_start_time: str) -> BookingResult:
        """Move the contact's most recently booked upcoming appointment."""
        tenant = self.load_tenant(tenant_id)
        start = self._future_start(tenant, new_start_time)
        start_iso = format_start(start)
        today = self._today(tenant)
        collection = self.appointments_path(tenant_id)

        def _update(txn: Transaction) -> BookingResult:
            hits = txn.query(
                collection,
                where=[
                    ("client_phone", "==", contact_identity),
                    ("status", "in", _ACTIVE_VALUES),
                    ("start_time", ">=", today),
                ],
                order_by="created_at",
                descending=True,
                limit=1,
            )
            if not hits:
                raise BookingError(NOT_FOUND, f"No active appointment for {contact_identity}")

            target = _to_appointment(hits[0].id, hits[0].data)
            if target.start_time == start_iso:
                return BookingResult(target, created=False)

            conflict = self._find_conflict(
                tenant, txn, tenant_id, start, target.duration, exclude_id=target.id,
            )
            if conflict is not None:
                raise BookingError(
                    SLOT_OCCUPIED, f"{start_iso} overlaps appointment {conflict.id} at {conflict.start_time}",
                )

            txn.update(f"{collection}/{target.id}", {"start_time": start_iso, "updated_at": utc_now_iso()})
            return BookingResult(target.model_copy(update={"start_time": start_iso}))

        result = self._run(tenant_id, "update", _update)
        logger.info("Appointment %s for %s moved to %s", result.appointment.id, contact_identity, start_iso)
        return result

    def cancel(self, tenant_id: str, contact_identity: str) -> BookingResult:
        """Cancel every upcoming active appointment of the contact."""
        tenant = self.load_tenant(tenant_id)
        today = self._today(tenant)
        collection = self.appointments_path(tenant_id)

        def _cancel(txn: Transaction) -> BookingResult:
            docs = txn.query(
                collection,
                where=[("client_phone", "==", contact_identity), ("start_time", ">=", today)],
                order_by="start_time",
            )
            appointments = [_to_appointment(doc.id, doc.data) for doc in docs]
            active = [a for a in appointments if a.is_active]

            if not active:
                cancelled = [a for a in appointments if a.status == AppointmentStatus.CANCELLED]
                if cancelled:
                    return BookingResult(cancelled[-1], created=False, affected=0)
                raise BookingError(NOT_FOUND, f"No appointment to cancel for {contact_identity}")

            now = utc_now_iso()
            for appointment in active:
                if not validate_transition(appointment.status, AppointmentStatus.CANCELLED):
                    raise BookingError(FORBIDDEN_TRANSITION)
                txn.update(
                    f"{collection}/{appointment.id}",
                    {"status": AppointmentStatus.CANCELLED.value, "updated_at": now},
                )
            first = active[0].model_copy(update={"status": AppointmentStatus.CANCELLED})
            return BookingResult(first, affected=len(active))

        result = self._run(tenant_id, "cancel", _cancel)
        logger.info("Cancelled %d appointment(s) for %s", result.affected, contact_identity)
        return result

    def transition(
        self, tenant_id: str, appointment_id: str, next_state: AppointmentStatus,
    ) -> BookingResult:
        """Move one appointment through the state machine."""
        path = f"{self.appointments_path(tenant_id)}/{appointment_id}"

        def _transition(txn: Transaction) -> BookingResult:
            data = txn.get(path)
            if data is None:
                raise BookingError(NOT_FOUND, f"Appointment {appointment_id} not found")
            appointment = _to_appointment(appointment_id, data)
            if not validate_transition(appointment.status, next_state):
                raise BookingError(
                    FORBIDDEN_TRANSITION, f"{appointment.status.value} -> {AppointmentStatus(next_state).value}",
                )
            txn.update(path, {"status": AppointmentStatus(next_state).value, "updated_at": utc_now_iso()})
            return BookingResult(appointment.model_copy(update={"status": AppointmentStatus(next_state)}))

        return self._run(tenant_id, "transition", _transition)

    def auto_book(
        self,
        tenant_id: str,
        contact_identity: str,
        *,
        service: str,
        date: str,
        time: str,
        client_name: str | None = None,
    ) -> BookingResult:
        """Commit a booking the model finalised through the control channel.

        Runs its own ``(contact, start)`` idempotency check before handing
        over to the transactional insert, which checks again.
        """
        tenant = self.load_tenant(tenant_id)
        start_iso = format_start(parse_start(f"{date}T{time}", zone_for(tenant)))

        existing = self._sync(lambda: self._store.query(
            self.appointments_path(tenant_id),
            where=[
                ("client_phone", "==", contact_identity),
                ("start_time", "==", start_iso),
                ("status", "!=", AppointmentStatus.CANCELLED.value),
            ],
            limit=1,
        ))
        if existing:
            logger.info("Auto-booking replay for %s at %s ignored", contact_identity, start_iso)
            return BookingResult(_to_appointment(existing[0].id, existing[0].data), created=False)

        return self.create(
            tenant_id,
            BookingRequest(
                contact_identity=contact_identity,
                client_name=client_name or "WhatsApp client",
                service_name=service,
                start_time=start_iso,
                source=AppointmentSource.AI_AUTO,
            ),
        )
