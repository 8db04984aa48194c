"""System prompt for the booking concierge.

The prompt is rebuilt on every turn from the tenant document, the contact's
current booking and a scheduler context computed in the tenant's local time,
so the model never has to do date arithmetic on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.control import PAUSE_MARKER
from src.models import Tenant
from src.services.booking import BookingStatus

MENU_DAYS = 10
SUGGESTED_TIMES = ("11:00", "15:00")

LANGUAGE_MAP = {
    "US": "English (US)",
    "GB": "English (UK)",
    "BR": "Portuguese (Brazil)",
    "PT": "Portuguese (Portugal)",
    "ES": "Spanish",
    "FR": "French",
    "IT": "Italian",
}


def target_language(country: str | None) -> str:
    return LANGUAGE_MAP.get((country or "US").upper(), LANGUAGE_MAP["US"])


# ── Scheduler context ────────────────────────────────────────────────


@dataclass
class DayOption:
    option: int
    label: str
    iso: str
    weekday: int
    is_open: bool


@dataclass
class SchedulerContext:
    today_iso: str
    current_time: str
    date_menu: list[DayOption] = field(default_factory=list)
    golden_slots: list[str] = field(default_factory=list)

    def menu_lines(self) -> str:
        return "\n".join(
            f"{d.option}) {d.label} ({d.iso}) - Status: {'[OPEN]' if d.is_open else '[CLOSED]'}"
            for d in self.date_menu
        )


def _in_break(slot: str, break_range: str | None) -> bool:
    if not break_range or "-" not in break_range:
        return False
    start, end = (part.strip() for part in break_range.split("-", 1))
    return start <= slot < end


def build_scheduler_context(tenant: Tenant, now_local: datetime) -> SchedulerContext:
    """Ten-day date menu and a few suggested slots, in tenant-local time.

    Suggestions go on the first open day that still has time left before
    closing: the opening time plus :data:`SUGGESTED_TIMES`, skipping the
    break and anything already in the past.
    """
    hours = tenant.business_hours
    current_time = now_local.strftime("%H:%M")
    menu = []
    for offset in range(MENU_DAYS):
        day = now_local + timedelta(days=offset)
        label = "Today" if offset == 0 else "Tomorrow" if offset == 1 else day.strftime("%A")
        menu.append(
            DayOption(
                option=offset + 1,
                label=label,
                iso=day.date().isoformat(),
                weekday=day.isoweekday(),
                is_open=day.isoweekday() in hours.days,
            )
        )

    golden: list[str] = []
    for day in menu:
        if not day.is_open:
            continue
        candidates = sorted({hours.open, *SUGGESTED_TIMES})
        slots = [
            slot for slot in candidates
            if hours.open <= slot < hours.close
            and not _in_break(slot, hours.break_)
            and (day.option != 1 or slot > current_time)
        ]
        if slots:
            golden = [f"{day.label} at {slot}" for slot in slots]
            break

    return SchedulerContext(
        today_iso=now_local.date().isoformat(),
        current_time=current_time,
        date_menu=menu,
        golden_slots=golden,
    )


# ── Prompt ───────────────────────────────────────────────────────────

SYSTEM_PROMPT_TEMPLATE = """You are the booking concierge for **{tenant_name}**.
Your personality: premium, direct and efficient. Never use five words where two will do.

## Client
Client name: {client_name}
Current booking: {booking_line}
If the client asks to reschedule or cancel and there is no current booking, say you found nothing and ask for details.

## Rules
1. IDENTITY: if the client name is UNKNOWN, ask for it and call `save_identity` the moment they answer.
2. AVAILABILITY: call `read_agenda` for the day before proposing or confirming any time.
3. DAYS OFF: suggest only [OPEN] dates. Never book a [CLOSED] date or a time inside the break.
4. EXECUTION: book with `create_appointment`, move with `update_appointment`, cancel with `delete_appointment`.
   Use service names exactly as listed below. If the tools fail but the client has agreed, end your reply with
   [FINALIZE_BOOKING: {{"service": "<name>", "date": "YYYY-MM-DD", "time": "HH:MM"}}] and the booking is made for you.
5. TOOL RESULTS: `SUCCESS:` means it happened. `ERROR: SLOT_OCCUPIED` means offer another time.
   `ERROR: PAST_DATE` means the time has passed. `ERROR: SYNC_FAIL` is temporary; you may retry once.
   Never tell the client something was booked unless a tool returned SUCCESS.
6. SCARCITY: never say the day is empty or that any time works. Recommend: {golden_slots}.
7. HANDOFF: if the client is upset or you cannot help, end your reply with {pause_marker}.
{first_contact}
## Calendar
Current local time: {current_time} | Today: {today}
Available dates:
{date_menu}

Business hours: {open} to {close}
Break: {break_range}

## Services
{services}

Reply language: {language}.
{channel_rules}"""

_TEXT_RULES = "TEXT MODE: use bold for dates and times. Keep it short."
_VOICE_RULES = "VOICE MODE: short phrases, at most 15 words, no markdown, no emojis."
_FIRST_CONTACT = (
    "8. FIRST CONTACT: this is the client's first message. Greet them, ask for their name "
    "and the service, and suggest the recommended times.\n"
)


def _booking_line(status: BookingStatus | None) -> str:
    if status is None or not status.exists or not status.summary:
        return "NO ACTIVE APPOINTMENTS."
    summary = status.summary
    state = status.state.value if status.state else "UNKNOWN"
    return f"{summary['service']} at {summary['time']} (status {state})"


def _services_block(tenant: Tenant) -> str:
    if not tenant.services:
        return "- Ask the client which service they need."
    return "\n".join(
        f'- SERVICE: "{s.name}" | PRICE: {s.price:g} | DURATION: {s.duration} min'
        for s in tenant.services
    )


def build_system_prompt(
    tenant: Tenant,
    scheduler: SchedulerContext,
    *,
    client_name: str | None = None,
    booking_status: BookingStatus | None = None,
    is_voice: bool = False,
    is_initial_message: bool = False,
    additional_context: str = "",
) -> str:
    """Render the system prompt for one turn."""
    hours = tenant.business_hours
    prompt = SYSTEM_PROMPT_TEMPLATE.format(
        tenant_name=tenant.name,
        client_name=client_name or "UNKNOWN",
        booking_line=_booking_line(booking_status),
        golden_slots=", ".join(scheduler.golden_slots) or "the earliest open times",
        pause_marker=PAUSE_MARKER,
        first_contact=_FIRST_CONTACT if is_initial_message else "",
        current_time=scheduler.current_time,
        today=scheduler.today_iso,
        date_menu=scheduler.menu_lines(),
        open=hours.open,
        close=hours.close,
        break_range=hours.break_ or "None",
        services=_services_block(tenant),
        language=target_language(tenant.country),
        channel_rules=_VOICE_RULES if is_voice else _TEXT_RULES,
    )
    if additional_context:
        prompt += "\n\n" + additional_context.strip()
    return prompt
