"""Webhook controller: the composition root of the concierge.

:meth:`ConciergeController.handle` runs the whole pipeline for one inbound
message:

  resolve tenant → plan gate → pause gate → hand-off keywords
  → booking status → governor → tool turn → control signal
  → governor bookkeeping → AI log → channel formatting

Any exception escaping the pipeline goes to the circuit breaker and the
customer gets a fixed fallback reply instead.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from src.agent import ConversationState, ToolOrchestrator, TurnInput, build_llm
from src.api.schemas import InboundMessage
from src.config import Settings
from src.services import audit
from src.services.booking import BookingEngine, BookingError
from src.services.circuit_breaker import CircuitBreaker
from src.services.contacts import Clock, ContactDirectory, utc_clock
from src.services.governor import ConversationGovernor
from src.services.metrics import metrics
from src.services.store import DocumentStore, InMemoryDocumentStore
from src.services.switchboard import Resolution, Switchboard

logger = logging.getLogger(__name__)

# ── Canned replies ───────────────────────────────────────────────────
FALLBACK_REPLY = "Sorry, I'm a bit busy right now. Please try again in a moment."
NEEDS_LINK_REPLY = "Welcome! Please use the booking link from your professional to start."
NOT_FOUND_REPLY = "We couldn't find that professional. Please check your booking link."
OFFLINE_REPLY = "This assistant is currently offline."
HANDOFF_REPLY = "Understood. I'm asking the professional to take over now. One moment!"
AUTO_BOOK_FAILED_REPLY = "I couldn't lock in that time. Could you pick another one?"

HANDOFF_REASON = "customer_request"
AI_PAUSE_REASON = "ai_request"

HUMAN_HANDOFF_KEYWORDS = (
    "human",
    "speak to a person",
    "speak to person",
    "real person",
    "agent",
    "operator",
    "stupid",
    "falar com humano",
    "falar com pessoa",
    "atendente",
    "humano",
)

_HANDOFF_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in HUMAN_HANDOFF_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
_PHONE_MARKER_RE = re.compile(r"\[PHONE CALL(?: CONTEXT)?\]:?", re.IGNORECASE)
_MARKDOWN_RE = re.compile(r"[*#]")


@dataclass
class ConciergeReply:
    reply: str | None
    tenant_id: str | None = None
    paused: bool = False


def wants_human(text: str) -> bool:
    return bool(_HANDOFF_RE.search(text or ""))


def format_for_channel(text: str, is_voice: bool) -> str:
    """Voice replies are read aloud, so markdown is stripped."""
    if not is_voice:
        return text
    return re.sub(r"[ \t]{2,}", " ", _MARKDOWN_RE.sub("", text)).strip()


def menu_reply(resolution: Resolution) -> str:
    lines = ["Hello! Who would you like to book with today?"]
    lines += [f"{i}) {option.name}" for i, option in enumerate(resolution.tenant_list, start=1)]
    return "\n".join(lines)


class ConciergeController:
    def __init__(
        self,
        *,
        store: DocumentStore,
        switchboard: Switchboard,
        engine: BookingEngine,
        contacts: ContactDirectory,
        governor: ConversationGovernor,
        breaker: CircuitBreaker,
        orchestrator: ToolOrchestrator,
    ) -> None:
        self._store = store
        self._switchboard = switchboard
        self._engine = engine
        self._contacts = contacts
        self._governor = governor
        self._breaker = breaker
        self._orchestrator = orchestrator

    def handle(self, message: InboundMessage) -> ConciergeReply:
        """Process one inbound message; never raises."""
        context: dict[str, Any] = {
            "tenant_id": None,
            "contact_identity": message.from_identity,
            "channel": "voice" if message.is_voice_channel else "text",
        }
        t0 = time.perf_counter()
        try:
            return self._process(message, context, t0)
        except Exception as exc:
            self._breaker.trigger(exc, context)
            if context["tenant_id"]:
                audit.log_ai_interaction(
                    self._store,
                    tenant_id=context["tenant_id"],
                    contact_identity=message.from_identity,
                    input_message=message.body_text,
                    ai_response=FALLBACK_REPLY,
                    tools_used=[],
                    latency_ms=(time.perf_counter() - t0) * 1000,
                    status="error",
                    error=str(exc),
                )
            return ConciergeReply(
                reply=FALLBACK_REPLY,
                tenant_id=context["tenant_id"],
                paused=context["tenant_id"] is not None,
            )

    # ── Pipeline ─────────────────────────────────────────────────────

    def _process(self, message: InboundMessage, context: dict[str, Any], t0: float) -> ConciergeReply:
        contact = message.from_identity
        raw_text = message.body_text or ""
        is_voice = message.is_voice_channel or bool(_PHONE_MARKER_RE.search(raw_text))
        text = _PHONE_MARKER_RE.sub("", raw_text).strip()
        if is_voice:
            context["channel"] = "voice"

        resolution = self._switchboard.resolve(contact, text)
        if resolution.error:
            return ConciergeReply(reply=NOT_FOUND_REPLY)
        if resolution.needs_link:
            return ConciergeReply(reply=NEEDS_LINK_REPLY)
        if resolution.needs_choice:
            return ConciergeReply(reply=menu_reply(resolution))

        tenant = resolution.tenant
        context["tenant_id"] = tenant.id

        if tenant.plan != "pro":
            logger.info("Tenant %s is on plan %r, assistant offline", tenant.id, tenant.plan)
            return ConciergeReply(reply=OFFLINE_REPLY, tenant_id=tenant.id)

        link = resolution.mapping.link_for(tenant.id)
        if link.is_paused:
            logger.info("Contact %s is paused for %s (%s), staying silent", contact, tenant.id, link.paused_reason)
            return ConciergeReply(reply=None, tenant_id=tenant.id, paused=True)

        if wants_human(text):
            self._contacts.pause(contact, tenant.id, HANDOFF_REASON)
            self._contacts.flag_chat(tenant.id, contact)
            metrics.record_escalation(HANDOFF_REASON)
            return ConciergeReply(reply=format_for_channel(HANDOFF_REPLY, is_voice), tenant_id=tenant.id, paused=True)

        status = self._engine.check_status(tenant.id, contact, resolution.client_name)
        decision = self._governor.evaluate_escalation(
            tenant.id, contact, link.interaction_count, status.state if status.exists else None,
        )
        if decision.should_escalate:
            self._contacts.flag_chat(tenant.id, contact)
            return ConciergeReply(
                reply=format_for_channel(decision.fallback_message, is_voice), tenant_id=tenant.id, paused=True,
            )

        conversation: ConversationState = self._orchestrator.load_conversation(tenant.id, contact)
        result = self._orchestrator.run(
            TurnInput(
                tenant=tenant,
                contact_identity=contact,
                message=text,
                client_name=resolution.client_name,
                booking_status=status,
                is_voice=is_voice,
                is_initial_message=resolution.is_initial_message,
            ),
            conversation,
        )

        reply = result.reply
        booking_changed = result.booking_changed
        paused = result.aborted

        finalize = result.control.finalize
        if finalize is not None and not result.aborted:
            try:
                booked = self._engine.auto_book(
                    tenant.id,
                    contact,
                    service=finalize.service,
                    date=finalize.date,
                    time=finalize.time,
                    client_name=result.client_name or resolution.client_name,
                )
                booking_changed = booking_changed or booked.created
            except BookingError as exc:
                logger.warning("Auto-booking for %s failed: %s (%s)", contact, exc.code, exc)
                reply = AUTO_BOOK_FAILED_REPLY

        if not result.aborted:
            if booking_changed:
                self._governor.reset_governor(contact, tenant.id)
            else:
                self._governor.record_interaction(contact, tenant.id)

        if result.control.pause and not result.aborted:
            self._contacts.pause(contact, tenant.id, AI_PAUSE_REASON)
            self._contacts.flag_chat(tenant.id, contact)
            metrics.record_escalation(AI_PAUSE_REASON)
            paused = True

        audit.log_ai_interaction(
            self._store,
            tenant_id=tenant.id,
            contact_identity=contact,
            input_message=text,
            ai_response=reply,
            tools_used=result.tools_used,
            latency_ms=(time.perf_counter() - t0) * 1000,
            status="aborted" if result.aborted else "success",
        )
        return ConciergeReply(reply=format_for_channel(reply, is_voice), tenant_id=tenant.id, paused=paused)


# ── Composition ──────────────────────────────────────────────────────


def build_store(settings: Settings) -> DocumentStore:
    """Pick the store backend named by ``STORE_BACKEND``."""
    if settings.store_backend == "dynamodb":
        from src.services.dynamo_store import DynamoDocumentStore

        return DynamoDocumentStore(settings.dynamodb_table)
    return InMemoryDocumentStore()


def build_controller(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    llm: Any = None,
    clock: Clock = utc_clock,
) -> ConciergeController:
    """Wire every component of the pipeline from *settings*."""
    store = store if store is not None else build_store(settings)
    contacts = ContactDirectory(store, clock=clock)
    engine = BookingEngine(store, clock=clock)
    return ConciergeController(
        store=store,
        switchboard=Switchboard(
            store, contacts, stickiness_minutes=settings.stickiness_minutes, clock=clock,
        ),
        engine=engine,
        contacts=contacts,
        governor=ConversationGovernor(
            store, contacts, max_interactions=settings.max_interactions, clock=clock,
        ),
        breaker=CircuitBreaker(store, contacts),
        orchestrator=ToolOrchestrator(
            llm if llm is not None else build_llm(settings), store, engine, contacts, settings,
        ),
    )
