"""Tests for the LangGraph tool loop.

Covers:
  - Plain replies and tool round-trips with a scripted LLM
  - Tool error budget abort (pause + apology)
  - Recursion limit on a model that never stops calling tools
  - Control markers surfacing as a typed signal
  - History window and context slicing
"""

from __future__ import annotations

import itertools

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from src.agent import (
    APOLOGY_MESSAGE,
    LOOP_LIMIT_REASON,
    TOOL_ERRORS_REASON,
    ConversationState,
    ToolOrchestrator,
    TurnInput,
    message_text,
)
from tests.factories import CONTACT, TENANT_ID

# ── Helpers ──────────────────────────────────────────────────────────

_ids = itertools.count(1)


def _tool_call(name: str, **args) -> AIMessage:
    """A fresh AI message asking for one tool call."""
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": f"call_{next(_ids)}"}])


@pytest.fixture
def orchestrator(mock_llm, store, engine, contacts, settings) -> ToolOrchestrator:
    return ToolOrchestrator(mock_llm, store, engine, contacts, settings)


@pytest.fixture
def turn(engine) -> TurnInput:
    return TurnInput(
        tenant=engine.load_tenant(TENANT_ID),
        contact_identity=CONTACT,
        message="Can I get a haircut tomorrow?",
        client_name="Ana",
    )


def _sent_messages(mock_llm, call_index: int = 0):
    return mock_llm.bound.invoke.call_args_list[call_index][0][0]


# ── Plain replies ────────────────────────────────────────────────────


class TestPlainReply:
    def test_reply_without_tools(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.return_value = AIMessage(content="Sure! What time works for you?")

        result = orchestrator.run(turn, ConversationState())

        assert result.reply == "Sure! What time works for you?"
        assert result.control.is_empty
        assert result.tools_used == []
        assert not result.aborted
        mock_llm.bind_tools.assert_called_once()
        assert len(mock_llm.bind_tools.call_args[0][0]) == 6

    def test_system_prompt_comes_first(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.return_value = AIMessage(content="Hi")

        orchestrator.run(turn, ConversationState(additional_context="Always mention parking."))

        sent = _sent_messages(mock_llm)
        assert isinstance(sent[0], SystemMessage)
        assert "Fade Studio" in sent[0].content
        assert "Always mention parking." in sent[0].content
        assert isinstance(sent[-1], HumanMessage)
        assert sent[-1].content == "Can I get a haircut tomorrow?"

    def test_llm_errors_propagate(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.side_effect = RuntimeError("Anthropic API down")
        with pytest.raises(RuntimeError, match="Anthropic API down"):
            orchestrator.run(turn, ConversationState())


# ── Tool loop ────────────────────────────────────────────────────────


class TestToolLoop:
    def test_tool_round_trip(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.side_effect = [
            _tool_call("read_agenda", date="2026-03-03"),
            AIMessage(content="Tomorrow is wide open. Morning or afternoon?"),
        ]

        result = orchestrator.run(turn, ConversationState())

        assert result.reply == "Tomorrow is wide open. Morning or afternoon?"
        assert result.tools_used == ["read_agenda"]
        assert result.tool_errors == 0
        tool_message = _sent_messages(mock_llm, 1)[-1]
        assert isinstance(tool_message, ToolMessage)
        assert tool_message.content == "SUCCESS: ALL SLOTS FREE on 2026-03-03."

    def test_successful_create_marks_booking_changed(self, orchestrator, mock_llm, turn, store):
        mock_llm.bound.invoke.side_effect = [
            _tool_call(
                "create_appointment",
                client_name="Ana", service_name="Haircut", start_time="2026-03-03T10:00:00",
            ),
            AIMessage(content="You're booked for 10:00 tomorrow!"),
        ]

        result = orchestrator.run(turn, ConversationState())

        assert result.booking_changed
        assert len(store.query(f"tenants/{TENANT_ID}/appointments")) == 1

    def test_single_error_is_fed_back_to_the_model(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.side_effect = [
            _tool_call("read_agenda", date="someday"),
            AIMessage(content="Which date did you mean?"),
        ]

        result = orchestrator.run(turn, ConversationState())

        assert not result.aborted
        assert result.tool_errors == 1
        assert result.reply == "Which date did you mean?"

    def test_error_budget_aborts_and_pauses(self, orchestrator, mock_llm, turn, contacts):
        mock_llm.bound.invoke.side_effect = [
            _tool_call("create_appointment", client_name="Ana", service_name="Haircut",
                       start_time="2026-03-01T10:00:00"),
            _tool_call("create_appointment", client_name="Ana", service_name="Haircut",
                       start_time="2026-03-01T11:00:00"),
            AIMessage(content="never reached"),
        ]

        result = orchestrator.run(turn, ConversationState())

        assert result.aborted
        assert result.reply == APOLOGY_MESSAGE
        assert result.tool_errors == 2
        assert mock_llm.bound.invoke.call_count == 2
        link = contacts.load(CONTACT).link_for(TENANT_ID)
        assert link.is_paused
        assert link.paused_reason == TOOL_ERRORS_REASON

    def test_endless_tool_calls_hit_the_loop_limit(self, orchestrator, mock_llm, turn, contacts):
        mock_llm.bound.invoke.side_effect = lambda messages: _tool_call("read_agenda", date="2026-03-03")

        result = orchestrator.run(turn, ConversationState())

        assert result.aborted
        assert result.reply == APOLOGY_MESSAGE
        assert contacts.load(CONTACT).link_for(TENANT_ID).paused_reason == LOOP_LIMIT_REASON

    def test_finalize_marker_becomes_control_signal(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.return_value = AIMessage(
            content='See you at 10!\n[FINALIZE_BOOKING: {"service": "Haircut", "date": "2026-03-03", "time": "10:00"}]'
        )

        result = orchestrator.run(turn, ConversationState())

        assert result.reply == "See you at 10!"
        assert result.control.finalize.service == "Haircut"


# ── Conversation persistence ─────────────────────────────────────────


class TestHistory:
    def _history(self, n: int) -> list[dict[str, str]]:
        return [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"msg {i}"}
            for i in range(n)
        ]

    def test_exchange_is_saved(self, orchestrator, mock_llm, turn, store):
        mock_llm.bound.invoke.return_value = AIMessage(content="Sure!")

        orchestrator.run(turn, ConversationState())

        chat = store.get(f"tenants/{TENANT_ID}/chats/{CONTACT}")
        assert chat["history"] == [
            {"role": "user", "content": "Can I get a haircut tomorrow?"},
            {"role": "assistant", "content": "Sure!"},
        ]
        assert chat["last_message"] == "Can I get a haircut tomorrow?"

    def test_history_is_windowed(self, orchestrator, mock_llm, turn, store):
        mock_llm.bound.invoke.return_value = AIMessage(content="Sure!")

        orchestrator.run(turn, ConversationState(history=self._history(19)))

        history = store.get(f"tenants/{TENANT_ID}/chats/{CONTACT}")["history"]
        assert len(history) == 20
        assert history[0]["content"] == "msg 1"
        assert history[-1]["content"] == "Sure!"

    def test_only_recent_messages_reach_the_model(self, orchestrator, mock_llm, turn):
        mock_llm.bound.invoke.return_value = AIMessage(content="Sure!")

        orchestrator.run(turn, ConversationState(history=self._history(10)))

        sent = _sent_messages(mock_llm)
        # system + last 6 history entries + the new message
        assert len(sent) == 8
        assert [m.content for m in sent[1:7]] == [f"msg {i}" for i in range(4, 10)]
        assert isinstance(sent[1], HumanMessage)
        assert isinstance(sent[2], AIMessage)

    def test_aborted_turn_saves_apology(self, orchestrator, mock_llm, turn, store):
        mock_llm.bound.invoke.side_effect = lambda messages: _tool_call("read_agenda", date="bad")

        orchestrator.run(turn, ConversationState())

        history = store.get(f"tenants/{TENANT_ID}/chats/{CONTACT}")["history"]
        assert history[-1] == {"role": "assistant", "content": APOLOGY_MESSAGE}

    def test_load_conversation(self, orchestrator, store):
        store.set(f"tenants/{TENANT_ID}/chats/{CONTACT}", {"history": self._history(2)})
        store.set("settings/ai_config", {"additional_context": "Closed on holidays."})

        conversation = orchestrator.load_conversation(TENANT_ID, CONTACT)

        assert len(conversation.history) == 2
        assert conversation.additional_context == "Closed on holidays."

    def test_load_conversation_defaults(self, orchestrator):
        conversation = orchestrator.load_conversation(TENANT_ID, CONTACT)
        assert conversation.history == []
        assert conversation.additional_context == ""


class TestMessageText:
    def test_string_content(self):
        assert message_text(AIMessage(content="hello")) == "hello"

    def test_content_blocks(self):
        msg = AIMessage(content=[{"type": "text", "text": "Hi "}, {"type": "tool_use", "id": "x"}, "there"])
        assert message_text(msg) == "Hi there"
