# backend/tests/unit/test_services.py
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import redis.asyncio as aioredis

from flowbot.config.settings import settings
from flowbot.dependencies.context import build_context
from flowbot.models.execution import AuditLogEntry
from flowbot.services import whatsapp_service as wa
from flowbot.services.ai_service import AIService, Completion
from flowbot.services.audit_service import AuditLogWriter
from flowbot.services.db_service import AUDIT_LOG, MongoStore
from flowbot.services.http_service import HttpService
from flowbot.services.memory_store import InMemoryStore
from flowbot.services.sheets_service import SheetsService, _column_letter
from flowbot.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from flowbot.utils.errors import ConfigError, ProviderError, UpstreamTimeoutError
from flowbot.utils.locks import AddressBusy, AddressLockManager, RedisAddressLockManager


# --- WhatsAppService ---

@pytest.mark.asyncio
async def test_whatsapp_send_message_success(mocker):
    """Test successful message sending."""
    mock_response = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"messages": [{"id": "wamid_123"}]}))
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    service = wa.WhatsAppService("token", "phone-id")
    result = await service.send("+1 (555) 123-4567", wa.build_text("Hello World"))

    assert result.delivered is True
    assert result.provider_message_id == "wamid_123"
    payload = mock_response.await_args.kwargs["json"]
    assert payload["to"] == "+15551234567"
    assert payload["text"] == {"body": "Hello World"}


@pytest.mark.asyncio
async def test_whatsapp_send_api_error_is_not_delivered(mocker):
    error_body = {"error": {"message": "Invalid parameter"}}
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call',
                 AsyncMock(return_value=MagicMock(status_code=400, json=lambda: error_body)))

    result = await wa.WhatsAppService("token", "phone-id").send("+15551234567", wa.build_text("Hi"))

    assert result.delivered is False
    assert "Invalid parameter" in result.error


@pytest.mark.asyncio
async def test_whatsapp_send_without_credentials(mocker):
    api_call = mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call', new_callable=AsyncMock)

    result = await wa.WhatsAppService(None, None).send("+15551234567", wa.build_text("Hi"))

    assert result.delivered is False
    api_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_whatsapp_send_timeout_raises(mocker):
    mocker.patch('flowbot.services.whatsapp_service.WhatsAppService.resilient_api_call',
                 AsyncMock(side_effect=httpx.ReadTimeout("slow")))

    with pytest.raises(UpstreamTimeoutError):
        await wa.WhatsAppService("token", "phone-id").send("+15551234567", wa.build_text("Hi"))


def test_button_builder_applies_payload_limits():
    buttons = [{"id": f"b{i}", "text": "A very long button title indeed"} for i in range(5)]
    content = wa.build_buttons("Pick", buttons)
    rendered = content["interactive"]["action"]["buttons"]
    assert len(rendered) == wa.MAX_REPLY_BUTTONS
    assert all(len(b["reply"]["title"]) <= wa.MAX_BUTTON_TITLE for b in rendered)


def test_template_builder_defaults_language():
    assert wa.build_template("order_update")["template"]["language"] == {"code": "en_US"}


# --- AIService ---

@pytest.mark.asyncio
async def test_ai_service_without_key_is_config_error():
    service = AIService(openai_api_key=None, anthropic_api_key=None)
    with pytest.raises(ConfigError):
        await service.complete("openai", None, None, "hello")


@pytest.mark.asyncio
async def test_ai_service_unknown_provider():
    with pytest.raises(ConfigError):
        await AIService(openai_api_key="sk-test").complete("mystery", None, None, "hello")


@pytest.mark.asyncio
async def test_ai_service_uses_default_model(mocker):
    service = AIService(openai_api_key="sk-test")
    mock_complete = mocker.patch.object(service, "_complete_openai", new_callable=AsyncMock,
                                        return_value=Completion(text="hi", tokens_used=3, provider="openai", model="gpt-3.5-turbo"))

    completion = await service.complete("OpenAI", None, "sys", "hello")

    assert completion.text == "hi"
    model, system_prompt, user_prompt, temperature, max_tokens = mock_complete.await_args.args
    assert (model, temperature, max_tokens) == ("gpt-3.5-turbo", 0.7, 1000)


# --- HttpService ---

@pytest.mark.asyncio
async def test_http_service_decodes_json_and_sends_json_body():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 9})

    service = HttpService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await service.call("https://api.example.com/items", "post", {"X-Key": "1"}, {"name": "a"}, 5000)

    assert result.status == 201
    assert result.body == {"id": 9}
    assert seen == {"method": "POST", "body": {"name": "a"}}
    await service.close()


@pytest.mark.asyncio
async def test_http_service_timeout_and_transport_errors():
    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamTimeoutError):
        await HttpService(client=httpx.AsyncClient(transport=httpx.MockTransport(slow))).call("https://x.test", timeout_ms=10)
    with pytest.raises(ProviderError):
        await HttpService(client=httpx.AsyncClient(transport=httpx.MockTransport(refused))).call("https://x.test")


# --- SheetsService ---

SHEET = {"values": [["phone", "name", "status"], ["+1", "Ana", "new"], ["+2", "Ben", "new"]]}


@pytest.mark.asyncio
async def test_sheets_lookup_and_update_columns():
    writes = []

    def handler(request: httpx.Request):
        if request.method == "GET":
            return httpx.Response(200, json=SHEET)
        writes.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"updatedRows": 1})

    service = SheetsService(api_key="key")
    service.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    rows = await service.lookup("sheet-id", "Leads", {"phone": "+2"})
    assert rows == [{"phone": "+2", "name": "Ben", "status": "new", "_row": 3}]

    updated = await service.update_columns("sheet-id", "Leads", {"phone": "+2"}, {"status": "contacted"})
    assert updated == 1
    assert writes[0][1] == {"values": [["+2", "Ben", "contacted"]]}

    with pytest.raises(ConfigError):
        await service.update_columns("sheet-id", "Leads", {"phone": "+2"}, {"nope": "x"})
    await service.close()


@pytest.mark.asyncio
async def test_sheets_without_api_key():
    with pytest.raises(ConfigError):
        await SheetsService(api_key=None).read_rows("sheet-id", "Leads")


def test_column_letter():
    assert [_column_letter(i) for i in (0, 25, 26, 27)] == ["A", "Z", "AA", "AB"]


# --- Audit writer ---

@pytest.mark.asyncio
async def test_audit_writer_applies_insert_then_outcome_fields():
    store = InMemoryStore()
    writer = AuditLogWriter(store)
    await writer.start_worker()

    entry_id = writer.open(AuditLogEntry(source="whatsapp", method="POST", payload={"a": 1}))
    writer.append(entry_id, session_found=True, status_code=200)
    await writer.stop_worker()

    entry = await store.get_audit_entry(entry_id)
    assert entry.session_found is True
    assert entry.status_code == 200


@pytest.mark.asyncio
async def test_audit_writer_failure_never_raises(mocker):
    store = InMemoryStore()
    mocker.patch.object(store, "insert_audit_entry", new_callable=AsyncMock, side_effect=RuntimeError("db down"))
    writer = AuditLogWriter(store)

    writer.open(AuditLogEntry(source="whatsapp", method="POST"))
    await writer.flush()

    assert writer.queue.empty()


# --- Circuit breaker and locks ---

@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker("test", failure_threshold=2, timeout=60)
    failing = AsyncMock(side_effect=ProviderError("boom"))

    for _ in range(2):
        with pytest.raises(ProviderError):
            await breaker.call(failing)
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_address_lock_serializes_and_times_out():
    locks = AddressLockManager(acquire_timeout=0.05)

    async with locks.hold("+1555"):
        assert locks.is_locked("+1555")
        with pytest.raises(AddressBusy):
            async with locks.hold("+1555"):
                pass
        # Other addresses are independent
        async with locks.hold("+1666"):
            pass

    assert not locks.is_locked("+1555")


# --- MongoStore ---

@pytest.mark.asyncio
async def test_mongo_indexes_keep_audit_log_append_only():
    collection = MagicMock()
    collection.create_index = AsyncMock()
    store = MongoStore.__new__(MongoStore)
    store.db = MagicMock()
    store.db.__getitem__.return_value = collection

    await store.create_indexes()

    requested = store.db.__getitem__.call_args_list
    assert AUDIT_LOG in [call.args[0] for call in requested]
    for call in collection.create_index.await_args_list:
        assert "expireAfterSeconds" not in call.kwargs


# --- Application context ---

@pytest.mark.asyncio
async def test_build_context_uses_redis_locks_when_configured():
    redis_settings = settings.model_copy(update={"redis_url": "redis://localhost:6379/0"})

    context = build_context(redis_settings, store=InMemoryStore(), collaborators=MagicMock())

    assert isinstance(context.redis, aioredis.Redis)
    assert isinstance(context.locks, RedisAddressLockManager)
    assert context.executor.locks is context.locks
    await context.redis.aclose()


def test_build_context_defaults_to_in_process_locks():
    context = build_context(settings, store=InMemoryStore(), collaborators=MagicMock())
    assert context.redis is None
    assert isinstance(context.locks, AddressLockManager)
