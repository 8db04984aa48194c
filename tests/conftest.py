"""Shared test fixtures for the booking concierge test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest

from src.config import Settings
from src.services.booking import BookingEngine
from src.services.contacts import ContactDirectory
from src.services.store import InMemoryDocumentStore
from tests.factories import FREE_TENANT_ID, OTHER_TENANT_ID, TENANT_ID, FakeClock, tenant_doc


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("STORE_BACKEND", "memory")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """In-memory store seeded with two pro tenants and one free tenant."""
    s = InMemoryDocumentStore()
    s.set(f"tenants/{TENANT_ID}", tenant_doc("Fade Studio", "fade-studio"))
    s.set(f"tenants/{OTHER_TENANT_ID}", tenant_doc("Glow Spa", "glow-spa"))
    s.set(f"tenants/{FREE_TENANT_ID}", tenant_doc("Basic Cuts", "basic-cuts", plan="free"))
    return s


@pytest.fixture
def contacts(store, clock) -> ContactDirectory:
    return ContactDirectory(store, clock=clock)


@pytest.fixture
def engine(store, clock) -> BookingEngine:
    return BookingEngine(store, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(anthropic_api_key="test-anthropic-key-123")


@pytest.fixture
def mock_llm():
    """LLM stand-in: ``bind_tools`` returns ``mock_llm.bound`` whose
    ``invoke`` tests script with ``side_effect`` / ``return_value``."""
    llm = MagicMock()
    llm.bound = MagicMock()
    llm.bind_tools.return_value = llm.bound
    return llm
