"""Booking Concierge - a multi-tenant conversational booking assistant.

Architecture Overview
=====================

Customers message one shared channel address.  Each inbound message goes
through a fixed pipeline (``src/controller.py``):

1. **Switchboard** - decides which business (tenant) the contact is talking
   to: onboarding tokens, a 30-minute stickiness window and a numbered menu.
2. **Gates** - pro-plan check, paused contacts stay silent, hand-off keywords
   pause the AI.
3. **Governor** - after 10 turns without an outcome the conversation is
   handed to a human.
4. **Tool loop** - a LangGraph StateGraph where Claude calls six
   deterministic tools bound to the contact.  Two ``ERROR`` results in one
   turn abort the loop and pause the contact.
5. **Control signal** - pause / finalize markers are stripped from the reply
   and acted on; finalize goes through the idempotent auto-booking path.

The **booking engine** owns every calendar write: all creates, moves and
cancels run in one store transaction scoped to the tenant, so two concurrent
requests can never double-book a slot.  Anything that escapes the pipeline
trips the **circuit breaker**, which records the incident, pauses the contact
and returns a fallback reply.

Package Structure
-----------------
- ``src/controller.py`` - pipeline and composition root
- ``src/agent.py`` - LangGraph tool loop
- ``src/control.py`` - pause / finalize control signal
- ``src/prompts.py`` - system prompt and scheduler context
- ``src/models.py`` - pydantic domain models
- ``src/config.py`` - settings from env vars / SSM
- ``src/server.py`` - FastAPI application
- ``src/main.py`` - CLI simulator
- ``src/services/`` - store backends, booking engine, switchboard, governor,
  circuit breaker, audit records, metrics
- ``src/tools/`` - LangChain booking tools
- ``src/api/`` - FastAPI routes and Pydantic schemas
"""
