# backend/tests/conftest.py

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load the test environment FIRST, before any flowbot imports, so that
# Settings() finds WHATSAPP_VERIFY_TOKEN and STORE_BACKEND=memory.
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env.test")

from flowbot.config.settings import settings  # noqa: E402
from flowbot.dependencies.context import build_context  # noqa: E402
from flowbot.main import app  # noqa: E402
from flowbot.services.memory_store import InMemoryStore  # noqa: E402
from flowbot.services.whatsapp_service import SendResult  # noqa: E402
from flowbot.utils.locks import AddressLockManager  # noqa: E402
from flowbot.workflows.definitions import Collaborators  # noqa: E402
from flowbot.workflows.executor import FlowExecutor  # noqa: E402


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def collaborators():
    """Outbound services replaced by AsyncMocks; every send is delivered."""
    messaging = AsyncMock()
    messaging.send.return_value = SendResult(delivered=True, provider_message_id="wamid.TEST")
    return Collaborators(messaging=messaging, ai=AsyncMock(), http=AsyncMock(), sheets=AsyncMock(), http_timeout_ms=10000)


@pytest.fixture
def executor(store, collaborators):
    return FlowExecutor(store, collaborators, AddressLockManager(acquire_timeout=1), max_hops=50)


@pytest.fixture
def add_flow(store):
    """Saves a flow in the keyed graph form and returns its id. Usable from sync tests."""
    def _add_flow(flow_id, nodes, keywords=None, status="active", name=None, start_node=None):
        config = {"nodes": nodes}
        if start_node:
            config["start_node"] = start_node
        store.flows[flow_id] = {
            "id": flow_id,
            "name": name or flow_id,
            "status": status,
            "trigger_keywords": keywords or [],
            "config": config,
        }
        return flow_id
    return _add_flow


@pytest.fixture
def app_context(store, collaborators):
    return build_context(settings, store=store, collaborators=collaborators)


@pytest.fixture(scope="function")
def test_client(app_context):
    """
    Provides a TestClient for API integration tests, running the real
    lifespan against the in-memory store and mocked collaborators.
    """
    app.state.context = app_context
    with TestClient(app) as client:
        yield client
    app.state.context = None
