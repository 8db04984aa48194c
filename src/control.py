"""Control signals carried alongside the model's reply.

The model can ask for two side effects:

* **pause**: hand the conversation to a human;
* **finalize**: commit a booking it has agreed on, through the
  deterministic auto-booking path.

Models emit these as text markers at the end of their reply
(``[PAUSE_AI]``, ``[FINALIZE_BOOKING: {...}]``).  :func:`extract_control`
strips them at the channel boundary and turns them into a typed
:class:`ControlSignal`, so nothing downstream ever parses reply text.  The
older ``[FINALIZAR_AGENDAMENTO: {...}]`` marker with ``servico`` / ``data``
/ ``hora`` keys is still accepted.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

PAUSE_MARKER = "[PAUSE_AI]"

_PAUSE_RE = re.compile(r"\[PAUSE_AI\]", re.IGNORECASE)
_FINALIZE_RE = re.compile(
    r"\[(?:FINALIZE_BOOKING|FINALIZAR_AGENDAMENTO):\s*(\{.*?\})\s*\]",
    re.IGNORECASE | re.DOTALL,
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")


class FinalizeBooking(BaseModel):
    """Booking the model has agreed with the contact."""

    service: str = Field(validation_alias=AliasChoices("service", "servico"))
    date: str = Field(validation_alias=AliasChoices("date", "data"))
    time: str = Field(validation_alias=AliasChoices("time", "hora"))

    @field_validator("service")
    @classmethod
    def _service_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("service must not be blank")
        return value

    @field_validator("date")
    @classmethod
    def _date_format(cls, value: str) -> str:
        value = value.strip()
        if not _DATE_RE.match(value):
            raise ValueError(f"date must be YYYY-MM-DD, got {value!r}")
        return value

    @field_validator("time")
    @classmethod
    def _time_format(cls, value: str) -> str:
        value = value.strip()
        if not _TIME_RE.match(value):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        hours, minutes = value.split(":")[:2]
        return f"{int(hours):02d}:{minutes}"


class ControlSignal(BaseModel):
    pause: bool = False
    finalize: FinalizeBooking | None = None

    @property
    def is_empty(self) -> bool:
        return not self.pause and self.finalize is None


def extract_control(text: str | None) -> tuple[str, ControlSignal]:
    """Split a raw model reply into clean text and its control signal.

    A malformed finalize payload is dropped with a warning; the marker is
    still removed from the text.
    """
    if not text:
        return "", ControlSignal()

    pause = bool(_PAUSE_RE.search(text))
    finalize = None

    match = _FINALIZE_RE.search(text)
    if match:
        try:
            finalize = FinalizeBooking.model_validate(json.loads(match.group(1)))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Dropping malformed finalize marker %r: %s", match.group(1), exc)

    clean = _FINALIZE_RE.sub("", _PAUSE_RE.sub("", text))
    clean = re.sub(r"[ \t]+\n", "\n", clean).strip()
    return clean, ControlSignal(pause=pause, finalize=finalize)
