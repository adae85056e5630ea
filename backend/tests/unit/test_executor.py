# backend/tests/unit/test_executor.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from flowbot.models.events import InboundEvent, MessageContent, SourceKind
from flowbot.models.execution import Session, SessionStatus, WebhookExecutionRecord, WebhookRequestData
from flowbot.services.ai_service import Completion
from flowbot.services.http_service import HttpResult
from flowbot.services.whatsapp_service import SendResult
from flowbot.utils.errors import ProviderError, UpstreamTimeoutError
from flowbot.utils.locks import AddressLockManager
from flowbot.workflows.executor import FlowExecutor

AGE_FLOW = {
    "start": {"type": "on_message", "next": "greet"},
    "greet": {"type": "send_message", "config": {"text": "Hi {{USER_NAME}}!"}, "next": "ask"},
    "ask": {"type": "ask_question", "config": {"question": "How old are you?", "saveAs": "age"}, "next": "check"},
    "check": {
        "type": "condition",
        "config": {"variable": "age", "operator": ">=", "value": "18"},
        "next": {"true": "adult", "false": "minor"},
    },
    "adult": {"type": "send_message", "config": {"text": "Welcome aboard"}, "next": "bye"},
    "minor": {"type": "send_message", "config": {"text": "Sorry, adults only"}, "next": "bye"},
    "bye": {"type": "stop_chatbot"},
}


def chat(address, text, name=None):
    return InboundEvent(
        source_kind=SourceKind.WHATSAPP,
        end_user_address=address,
        contact_name=name,
        message=MessageContent(type="text", text=text),
    )


def sent_texts(collaborators):
    return [call.args[1].get("text", {}).get("body") for call in collaborators.messaging.send.await_args_list]


def texts_to(collaborators, address):
    return [call.args[1].get("text", {}).get("body") for call in collaborators.messaging.send.await_args_list
            if call.args[0] == address]


@pytest.mark.asyncio
async def test_new_conversation_starts_session_and_parks_on_question(executor, store, collaborators, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])

    outcome = await executor.handle_message(chat("+1555", "Hello there", name="Ana"))

    assert outcome.flow_matched is True
    assert outcome.session_found is False
    assert outcome.message_sent is True
    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.RUNNING
    assert session.current_node == "ask"
    assert session.awaiting_reply is True
    assert session.variables["USER_PHONE"] == "+1555"
    assert session.variables["USER_NAME"] == "Ana"
    assert session.variables["TRIGGER_MESSAGE"] == "Hello there"
    assert session.variables["greet"]["executed"] is True
    assert sent_texts(collaborators) == ["Hi Ana!", "How old are you?"]


@pytest.mark.asyncio
async def test_no_keyword_match_creates_no_session(executor, store, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])

    outcome = await executor.handle_message(chat("+1555", "what is this"))

    assert outcome.flow_matched is False
    assert outcome.execution_id is None
    assert store.sessions == {}


@pytest.mark.asyncio
async def test_inactive_flow_is_never_matched(executor, store, add_flow):
    add_flow("draft-flow", AGE_FLOW, keywords=["hello"], status="draft")

    outcome = await executor.handle_message(chat("+1555", "hello"))

    assert outcome.flow_matched is False
    assert store.sessions == {}


@pytest.mark.asyncio
async def test_reply_is_stored_and_auto_advance_continues(executor, store, collaborators, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])
    first = await executor.handle_message(chat("+1555", "hello"))

    outcome = await executor.handle_message(chat("+1555", "42"))

    assert outcome.session_found is True
    assert outcome.execution_id == first.execution_id
    session = await store.get_session(first.execution_id)
    assert session.variables["age"] == "42"
    assert session.variables["LAST_USER_MESSAGE"] == "42"
    assert session.variables["condition.result"] is True
    assert session.status == SessionStatus.COMPLETED
    assert "Welcome aboard" in sent_texts(collaborators)


@pytest.mark.asyncio
async def test_condition_false_branch(executor, store, collaborators, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])
    first = await executor.handle_message(chat("+1555", "hello"))

    await executor.handle_message(chat("+1555", "15"))

    session = await store.get_session(first.execution_id)
    assert session.variables["condition.result"] is False
    assert session.variables["check"]["edge"] == "false"
    assert "Sorry, adults only" in sent_texts(collaborators)
    assert "Welcome aboard" not in sent_texts(collaborators)


@pytest.mark.asyncio
async def test_condition_on_non_numeric_reply_takes_false_edge_with_error(executor, store, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])
    first = await executor.handle_message(chat("+1555", "hello"))

    await executor.handle_message(chat("+1555", "not telling"))

    session = await store.get_session(first.execution_id)
    assert session.variables["condition.result"] is False
    assert "numerically" in session.variables["condition.error"]
    assert session.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_cyclic_graph_hits_hop_ceiling(store, collaborators, add_flow):
    add_flow("loop", {
        "a": {"type": "send_message", "config": {"text": "ping"}, "next": "b"},
        "b": {"type": "send_message", "config": {"text": "pong"}, "next": "a"},
    }, keywords=["loop"], start_node="a")
    executor = FlowExecutor(store, collaborators, AddressLockManager(), max_hops=5)

    outcome = await executor.handle_message(chat("+1555", "loop"))

    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.FAILED
    assert session.error_kind == "hop_limit_exceeded"
    assert collaborators.messaging.send.await_count == 5


@pytest.mark.asyncio
async def test_round_trip_resumes_at_stored_node_with_stored_variables(executor, store, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])
    first = await executor.handle_message(chat("+1555", "hello"))
    stored = await store.get_session(first.execution_id)

    reloaded = Session.model_validate(stored.model_dump())

    assert reloaded.current_node == "ask"
    assert reloaded.variables == stored.variables
    assert reloaded.awaiting_reply is True


@pytest.mark.asyncio
async def test_at_most_one_running_session_per_address(executor, store, add_flow):
    add_flow("age-check", AGE_FLOW, keywords=["hello"])
    older = Session(flow_id="age-check", user_phone="+1555", current_node="ask", awaiting_reply=True,
                    started_at=datetime.now(timezone.utc) - timedelta(hours=1))
    newer = Session(flow_id="age-check", user_phone="+1555", current_node="ask", awaiting_reply=True)
    await store.save_session(older)
    await store.save_session(newer)

    outcome = await executor.handle_message(chat("+1555", "30"))

    assert outcome.execution_id == newer.id
    superseded = await store.get_session(older.id)
    assert superseded.status == SessionStatus.FAILED
    assert superseded.error_message == "superseded"
    running = await store.list_running_sessions("+1555")
    assert len(running) <= 1


@pytest.mark.asyncio
async def test_unknown_node_type_fails_session(executor, store, add_flow):
    add_flow("broken", {
        "start": {"type": "on_message", "next": "weird"},
        "weird": {"type": "teleport"},
    }, keywords=["go"])

    outcome = await executor.handle_message(chat("+1555", "go"))

    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.FAILED
    assert session.error_kind == "flow_definition_error"


@pytest.mark.asyncio
async def test_ai_failure_fails_session_but_keeps_earlier_variables(executor, store, collaborators, add_flow):
    collaborators.ai.complete.side_effect = ProviderError("rate limited")
    add_flow("ai", {
        "start": {"type": "on_message", "next": "ask"},
        "ask": {"type": "ask_question", "config": {"question": "Topic?", "saveAs": "topic"}, "next": "bot"},
        "bot": {"type": "ai_agent", "config": {"prompt": "Tell me about {{topic}}"}, "next": "reply"},
        "reply": {"type": "send_message", "config": {"text": "{{ai.response}}"}},
    }, keywords=["ai"])
    first = await executor.handle_message(chat("+1555", "ai please"))

    outcome = await executor.handle_message(chat("+1555", "cats"))

    assert outcome.status == "failed"
    session = await store.get_session(first.execution_id)
    assert session.status == SessionStatus.FAILED
    assert session.error_kind == "provider_error"
    assert session.current_node == "bot"
    assert session.variables["topic"] == "cats"
    assert session.variables["ai.error"] == "rate limited"


@pytest.mark.asyncio
async def test_ai_agent_stores_response(executor, store, collaborators, add_flow):
    collaborators.ai.complete.return_value = Completion(text="Cats are great", tokens_used=12, provider="openai", model="gpt-3.5-turbo")
    add_flow("ai", {
        "bot": {"type": "ai_agent", "config": {"system_prompt": "Be brief", "response_variable": "answer"}, "next": "reply"},
        "reply": {"type": "send_message", "config": {"text": "{{answer}}"}, "next": "end"},
        "end": {"type": "stop_chatbot"},
    }, keywords=["cats"])

    outcome = await executor.handle_message(chat("+1555", "tell me about cats"))

    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.variables["answer"] == "Cats are great"
    assert session.variables["ai.tokens_used"] == 12
    provider, model, system_prompt, user_prompt, temperature, max_tokens = collaborators.ai.complete.await_args.args
    assert (provider, system_prompt, user_prompt) == ("openai", "Be brief", "tell me about cats")
    assert sent_texts(collaborators) == ["Cats are great"]


@pytest.mark.asyncio
async def test_http_node_stores_response_and_timeout_fails(executor, store, collaborators, add_flow):
    collaborators.http.call.return_value = HttpResult(status=200, status_text="OK", headers={}, body={"plan": "gold"}, duration_ms=5)
    add_flow("http", {
        "call": {"type": "http", "config": {"url": "https://api.example.com/users/{{USER_PHONE}}", "method": "get"}, "next": "done"},
        "done": {"type": "send_message", "config": {"text": "Plan: {{http.response.plan}}"}},
    }, keywords=["plan"])

    outcome = await executor.handle_message(chat("+1555", "my plan"))

    session = await store.get_session(outcome.execution_id)
    assert session.variables["http.response.status"] == 200
    assert session.variables["http.response.plan"] == "gold"
    url, method, headers, body, timeout_ms = collaborators.http.call.await_args.args
    assert url == "https://api.example.com/users/+1555"
    assert method == "GET"
    assert timeout_ms == 10000
    assert sent_texts(collaborators) == ["Plan: gold"]

    collaborators.http.call.side_effect = UpstreamTimeoutError("HTTP request timed out after 10000ms")
    outcome = await executor.handle_message(chat("+1666", "my plan"))

    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.FAILED
    assert session.error_kind == "timeout"
    assert "timed out" in session.variables["http.error"]


@pytest.mark.asyncio
async def test_delay_parks_and_resumes_when_due(executor, store, collaborators, add_flow):
    add_flow("drip", {
        "first": {"type": "send_message", "config": {"text": "one"}, "next": "wait"},
        "wait": {"type": "delay", "config": {"delay": 2, "unit": "minutes"}, "next": "second"},
        "second": {"type": "send_message", "config": {"text": "two"}, "next": "end"},
        "end": {"type": "stop_chatbot"},
    }, keywords=["drip"])

    outcome = await executor.handle_message(chat("+1555", "drip"))
    session = await store.get_session(outcome.execution_id)
    assert session.current_node == "wait"
    assert session.awaiting_reply is False
    assert session.resume_at is not None

    # Messages before the resume time leave it parked
    await executor.handle_message(chat("+1555", "are you there?"))
    assert (await store.get_session(session.id)).current_node == "wait"

    early = await executor.resume_delayed(session.id, now=session.resume_at - timedelta(seconds=1))
    assert early is None

    resumed = await executor.resume_delayed(session.id, now=session.resume_at + timedelta(seconds=1))
    assert resumed.status == "completed"
    assert sent_texts(collaborators) == ["one", "two"]


@pytest.mark.asyncio
async def test_button_reply_routes_by_option_id(executor, store, collaborators, add_flow):
    add_flow("menu", {
        "menu": {
            "type": "send_button",
            "config": {
                "text": "Pick one",
                "buttons": [
                    {"id": "sales", "text": "Sales", "nextNodeId": "to_sales"},
                    {"id": "support", "text": "Support", "nextNodeId": "to_support"},
                ],
            },
        },
        "to_sales": {"type": "send_message", "config": {"text": "Sales here"}},
        "to_support": {"type": "send_message", "config": {"text": "Support here"}},
    }, keywords=["menu"])
    first = await executor.handle_message(chat("+1555", "menu"))
    assert (await store.get_session(first.execution_id)).awaiting_reply is True

    reply = InboundEvent(
        source_kind=SourceKind.WHATSAPP,
        end_user_address="+1555",
        message=MessageContent(type="interactive_button", text="Support", id="support", title="Support"),
    )
    await executor.handle_message(reply)

    assert sent_texts(collaborators)[-1] == "Support here"


@pytest.mark.asyncio
async def test_consume_webhook_record_flattens_request(executor, store, collaborators, add_flow):
    add_flow("orders", {
        "hook": {"type": "webhook", "config": {"webhook_id": "orders", "address_field": "body.phone"}, "next": "notify"},
        "notify": {"type": "send_message", "config": {"text": "Order {{webhook.body.order_id}} shipped"}},
    })
    record = WebhookExecutionRecord(
        flow_id="orders", node_id="hook", webhook_id="orders",
        request_data=WebhookRequestData(method="POST", body={"order_id": "A-1", "phone": "+1777"}, query={"src": "shop"}),
    )
    await store.create_webhook_record(record)

    processed = await executor.consume_webhook_record(record.id)

    assert processed.status.value == "completed"
    session = await store.get_session(processed.result["execution_id"])
    assert session.user_phone == "+1777"
    assert session.variables["webhook.method"] == "POST"
    assert session.variables["webhook.query.src"] == "shop"
    assert collaborators.messaging.send.await_args.args[0] == "+1777"
    assert sent_texts(collaborators) == ["Order A-1 shipped"]

    # A record is consumed at most once
    assert await executor.consume_webhook_record(record.id) is None


@pytest.mark.asyncio
async def test_expire_stale_sessions_marks_timeout(executor, store):
    session = Session(flow_id="any", user_phone="+1555", current_node="ask", awaiting_reply=True)
    await store.save_session(session)
    store.sessions[session.id]["updated_at"] = datetime.now(timezone.utc) - timedelta(days=2)

    expired = await executor.expire_stale_sessions()

    assert expired == 1
    assert (await store.get_session(session.id)).status == SessionStatus.TIMEOUT


@pytest.mark.asyncio
async def test_node_without_next_edge_keeps_session_running(executor, store, add_flow):
    add_flow("dead-end", {
        "c": {"type": "condition", "config": {"variable": "x", "operator": "==", "value": "1"}},
    }, keywords=["hello"])

    outcome = await executor.handle_message(chat("+1555", "hello"))

    assert outcome.status == "running"
    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.RUNNING
    assert session.current_node == "c"
    assert session.awaiting_reply is False

    # Later messages are recorded without advancing or starting a new session
    again = await executor.handle_message(chat("+1555", "hello again"))
    assert again.session_found is True
    assert again.execution_id == outcome.execution_id
    session = await store.get_session(outcome.execution_id)
    assert session.current_node == "c"
    assert session.variables["LAST_USER_MESSAGE"] == "hello again"
    assert len(store.sessions) == 1


@pytest.mark.asyncio
async def test_handler_crash_fails_session_without_raising(executor, store, add_flow):
    add_flow("menu", {
        "menu": {"type": "send_button", "config": {"text": "Pick", "buttons": ["Yes", "No"]}},
    }, keywords=["menu"])

    outcome = await executor.handle_message(chat("+1555", "menu"))

    assert outcome.status == "failed"
    session = await store.get_session(outcome.execution_id)
    assert session.status == SessionStatus.FAILED
    assert session.error_kind == "internal_error"
    assert session.error_message.startswith("TypeError")


@pytest.mark.asyncio
async def test_concurrent_events_for_one_address_are_serialized(executor, store, collaborators, add_flow):
    async def slow_send(address, content):
        await asyncio.sleep(0.01)
        return SendResult(delivered=True, provider_message_id="wamid.SLOW")

    collaborators.messaging.send.side_effect = slow_send
    add_flow("age-check", AGE_FLOW, keywords=["hello"])

    starts = await asyncio.gather(
        executor.handle_message(chat("+1555", "hello")),
        executor.handle_message(chat("+1555", "hello")),
    )
    assert sorted(o.session_found for o in starts) == [False, True]
    assert len([doc for doc in store.sessions.values() if doc["user_phone"] == "+1555"]) == 1
    assert texts_to(collaborators, "+1555").count("Hi ~!") == 1

    first = await executor.handle_message(chat("+1666", "hello"))
    replies = await asyncio.gather(
        executor.handle_message(chat("+1666", "42")),
        executor.handle_message(chat("+1666", "17")),
    )

    assert [o.session_found for o in replies] == [True, False]
    session = await store.get_session(first.execution_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.variables["age"] == "42"
    verdicts = [t for t in texts_to(collaborators, "+1666") if t in ("Welcome aboard", "Sorry, adults only")]
    assert verdicts == ["Welcome aboard"]


@pytest.mark.asyncio
async def test_webhook_record_fails_on_handler_crash(executor, store, add_flow):
    add_flow("orders", {
        "hook": {"type": "webhook", "config": {"address_field": "body.phone"}, "next": "menu"},
        "menu": {"type": "send_button", "config": {"text": "Pick", "buttons": ["Yes"]}},
    })
    record = WebhookExecutionRecord(
        flow_id="orders", node_id="hook",
        request_data=WebhookRequestData(method="POST", body={"phone": "+1777"}),
    )
    await store.create_webhook_record(record)

    processed = await executor.consume_webhook_record(record.id)

    assert processed.status.value == "failed"
    assert processed.error.startswith("TypeError")
    assert store.webhook_records[record.id]["status"] == "failed"
    assert store.webhook_records[record.id]["processed_at"] is not None


@pytest.mark.asyncio
async def test_webhook_record_fails_on_store_error(executor, store, add_flow, mocker):
    add_flow("orders", {"hook": {"type": "webhook", "config": {}}})
    record = WebhookExecutionRecord(flow_id="orders", node_id="hook", request_data=WebhookRequestData(method="POST"))
    await store.create_webhook_record(record)
    mocker.patch.object(store, "get_flow", side_effect=RuntimeError("connection reset"))

    processed = await executor.consume_webhook_record(record.id)

    assert processed.status.value == "failed"
    assert processed.error == "RuntimeError: connection reset"
    assert store.webhook_records[record.id]["status"] == "failed"


@pytest.mark.asyncio
async def test_webhook_record_returns_to_pending_when_address_busy(store, collaborators, add_flow):
    locks = AddressLockManager(acquire_timeout=0.01)
    executor = FlowExecutor(store, collaborators, locks)
    add_flow("orders", {
        "hook": {"type": "webhook", "config": {"address_field": "body.phone"}, "next": "notify"},
        "notify": {"type": "send_message", "config": {"text": "Got it"}},
    })
    record = WebhookExecutionRecord(
        flow_id="orders", node_id="hook",
        request_data=WebhookRequestData(method="POST", body={"phone": "+1777"}),
    )
    await store.create_webhook_record(record)

    async with locks.hold("+1777"):
        deferred = await executor.consume_webhook_record(record.id)

    assert deferred.status.value == "pending"
    assert store.webhook_records[record.id]["status"] == "pending"
    assert store.webhook_records[record.id]["processed_at"] is None
    collaborators.messaging.send.assert_not_awaited()

    processed = await executor.consume_webhook_record(record.id)
    assert processed.status.value == "completed"
    assert store.webhook_records[record.id]["attempts"] == 2
