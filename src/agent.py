"""LangGraph tool-calling loop for one concierge turn.

Architecture:
  Every turn compiles a small StateGraph bound to the contact's own
  toolset:

    1. **chatbot** - Claude with the six booking tools bound
    2. **tools**   - runs every tool call of the last AI message and
                     counts the ``ERROR`` results
    3. **abort**   - pauses the contact once the tool error budget is spent

  Routing:
    chatbot → (has tool calls?) → tools → (errors < budget?) → chatbot (loop)
                                        → (budget spent?)    → abort → END
            → (no tool calls?)  → END

  The graph recursion limit bounds a model that keeps calling tools
  without ever failing; hitting it is treated like an abort.

  Memory:
    There is no in-process memory.  The chat document in the store keeps
    a sliding window of the conversation; the model sees the tail of it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from src.config import Settings
from src.control import ControlSignal, extract_control
from src.models import Tenant, utc_now_iso
from src.prompts import build_scheduler_context, build_system_prompt
from src.services.booking import BookingEngine, BookingStatus
from src.services.contacts import ContactDirectory, chat_path
from src.services.metrics import metrics
from src.services.store import DocumentStore
from src.tools.booking_tools import ConciergeToolset

logger = logging.getLogger(__name__)

TOOL_ERRORS_REASON = "tool_errors"
LOOP_LIMIT_REASON = "tool_loop_limit"

APOLOGY_MESSAGE = (
    "Sorry, I couldn't complete that on my own. "
    "I've asked the professional to take over and they'll reply shortly."
)


# ── Turn input / output ──────────────────────────────────────────────


@dataclass
class TurnInput:
    tenant: Tenant
    contact_identity: str
    message: str
    client_name: str | None = None
    booking_status: BookingStatus | None = None
    is_voice: bool = False
    is_initial_message: bool = False


@dataclass
class ConversationState:
    """Stored history window plus the global prompt addendum."""

    history: list[dict[str, str]] = field(default_factory=list)
    additional_context: str = ""


@dataclass
class TurnResult:
    reply: str
    control: ControlSignal = field(default_factory=ControlSignal)
    tools_used: list[str] = field(default_factory=list)
    tool_errors: int = 0
    aborted: bool = False
    booking_changed: bool = False
    client_name: str | None = None


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer so nodes only return
    what they append.  ``tool_errors`` is the running count of ``ERROR``
    tool results in this turn.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    tool_errors: int
    aborted: bool


# ── LLM builder ──────────────────────────────────────────────────────


def build_llm(settings: Settings) -> ChatAnthropic:
    """Claude client; transient 5xx/overloaded errors are retried by the client."""
    return ChatAnthropic(
        model=settings.model_name,
        api_key=settings.anthropic_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        max_retries=settings.llm_max_retries,
    )


def message_text(message: Any) -> str:
    """Plain text of an AI message (Anthropic may return content blocks)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")


# ── Orchestrator ─────────────────────────────────────────────────────


class ToolOrchestrator:
    """Runs one model turn against a per-contact toolset."""

    def __init__(
        self,
        llm: Any,
        store: DocumentStore,
        engine: BookingEngine,
        contacts: ContactDirectory,
        settings: Settings,
    ) -> None:
        self._llm = llm
        self._store = store
        self._engine = engine
        self._contacts = contacts
        self._settings = settings

    # ── Conversation persistence ─────────────────────────────────────

    def load_conversation(self, tenant_id: str, contact_identity: str) -> ConversationState:
        chat = self._store.get(chat_path(tenant_id, contact_identity)) or {}
        config = self._store.get("settings/ai_config") or {}
        return ConversationState(
            history=list(chat.get("history") or []),
            additional_context=config.get("additional_context", ""),
        )

    def _context_messages(self, history: list[dict[str, str]]) -> list[AnyMessage]:
        messages: list[AnyMessage] = []
        for entry in history[-self._settings.context_messages:]:
            if entry.get("role") == "user":
                messages.append(HumanMessage(content=entry.get("content", "")))
            else:
                messages.append(AIMessage(content=entry.get("content", "")))
        return messages

    def _save_history(
        self, turn: TurnInput, conversation: ConversationState, reply: str,
    ) -> None:
        history = conversation.history + [
            {"role": "user", "content": turn.message},
            {"role": "assistant", "content": reply},
        ]
        self._store.set(
            chat_path(turn.tenant.id, turn.contact_identity),
            {
                "history": history[-self._settings.history_window:],
                "last_message": turn.message,
                "updated_at": utc_now_iso(),
            },
            merge=True,
        )

    # ── Graph ────────────────────────────────────────────────────────

    def _build_graph(self, toolset: ConciergeToolset, system_prompt: str, turn: TurnInput):
        llm_with_tools = self._llm.bind_tools(toolset.as_tools())
        budget = self._settings.tool_error_budget

        def chatbot_node(state: TurnState) -> dict:
            system = SystemMessage(content=system_prompt)
            t0 = time.perf_counter()
            try:
                response = llm_with_tools.invoke([system] + state["messages"])
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
                logger.debug("chatbot responded in %.0fms", elapsed)
                return {"messages": [response]}
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise

        def tools_node(state: TurnState) -> dict:
            results = []
            errors = 0
            for call in state["messages"][-1].tool_calls:
                content = toolset.invoke(call["name"], call.get("args"))
                if content.startswith("ERROR"):
                    errors += 1
                results.append(ToolMessage(content=content, tool_call_id=call["id"], name=call["name"]))
            return {"messages": results, "tool_errors": state["tool_errors"] + errors}

        def abort_node(state: TurnState) -> dict:
            logger.warning(
                "Tool error budget spent for %s (%d errors), pausing",
                turn.contact_identity, state["tool_errors"],
            )
            return {"aborted": True}

        def should_use_tools(state: TurnState) -> str:
            last_message = state["messages"][-1]
            if getattr(last_message, "tool_calls", None):
                return "tools"
            return END

        def within_budget(state: TurnState) -> str:
            return "abort" if state["tool_errors"] >= budget else "chatbot"

        graph = StateGraph(TurnState)
        graph.add_node("chatbot", chatbot_node)
        graph.add_node("tools", tools_node)
        graph.add_node("abort", abort_node)
        graph.set_entry_point("chatbot")
        graph.add_conditional_edges("chatbot", should_use_tools, {"tools": "tools", END: END})
        graph.add_conditional_edges("tools", within_budget, {"chatbot": "chatbot", "abort": "abort"})
        graph.add_edge("abort", END)
        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    def run(self, turn: TurnInput, conversation: ConversationState) -> TurnResult:
        """Drive the tool loop for *turn* and persist the exchange."""
        tenant = turn.tenant
        toolset = ConciergeToolset(
            self._engine, self._contacts, self._store, tenant, turn.contact_identity, turn.client_name,
        )
        system_prompt = build_system_prompt(
            tenant,
            build_scheduler_context(tenant, self._engine.local_now(tenant)),
            client_name=turn.client_name,
            booking_status=turn.booking_status,
            is_voice=turn.is_voice,
            is_initial_message=turn.is_initial_message,
            additional_context=conversation.additional_context,
        )
        graph = self._build_graph(toolset, system_prompt, turn)
        initial: TurnState = {
            "messages": self._context_messages(conversation.history) + [HumanMessage(content=turn.message)],
            "tool_errors": 0,
            "aborted": False,
        }

        abort_reason = None
        state: dict[str, Any] = {}
        try:
            state = graph.invoke(initial, config={"recursion_limit": self._settings.max_graph_steps})
        except GraphRecursionError:
            logger.warning("Tool loop limit reached for %s", turn.contact_identity)
            abort_reason = LOOP_LIMIT_REASON
        if state.get("aborted"):
            abort_reason = TOOL_ERRORS_REASON

        if abort_reason:
            self._contacts.pause(turn.contact_identity, tenant.id, abort_reason)
            metrics.record_escalation(abort_reason)
            result = TurnResult(
                reply=APOLOGY_MESSAGE,
                tools_used=list(toolset.tools_used),
                tool_errors=state.get("tool_errors", 0),
                aborted=True,
                booking_changed=toolset.booking_changed,
                client_name=toolset.client_name,
            )
        else:
            reply, control = extract_control(message_text(state["messages"][-1]))
            result = TurnResult(
                reply=reply,
                control=control,
                tools_used=list(toolset.tools_used),
                tool_errors=state.get("tool_errors", 0),
                booking_changed=toolset.booking_changed,
                client_name=toolset.client_name,
            )

        self._save_history(turn, conversation, result.reply)
        logger.info(
            "Turn for %s/%s done: tools=%s errors=%d aborted=%s",
            tenant.id, turn.contact_identity, result.tools_used, result.tool_errors, result.aborted,
        )
        return result
