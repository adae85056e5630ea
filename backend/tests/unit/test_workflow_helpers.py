# backend/tests/unit/test_workflow_helpers.py
import pytest

from flowbot.models.flow import Flow
from flowbot.workflows.conditions import compare, evaluate_condition, ConditionError
from flowbot.workflows.definitions import NodeType
from flowbot.workflows.matcher import match_flow
from flowbot.workflows.registry import NODE_HANDLERS, resolve_handler
from flowbot.utils.errors import FlowDefinitionError
from flowbot.workflows.templating import render, render_value


def make_flow(flow_id, keywords, status="active"):
    return Flow(id=flow_id, name=flow_id, status=status, trigger_keywords=keywords)


# --- Trigger matching ---

def test_match_flow_is_case_insensitive_substring():
    flows = [make_flow("greet", ["Hello"])]
    assert match_flow(flows, "  well HELLO there ").id == "greet"


def test_match_flow_first_flow_wins_ties():
    flows = [make_flow("first", ["order"]), make_flow("second", ["order status"])]
    assert match_flow(flows, "my order status").id == "first"


def test_match_flow_skips_inactive_and_empty_keywords():
    flows = [make_flow("paused", ["hi"], status="paused"), make_flow("blank", ["", "  "])]
    assert match_flow(flows, "hi") is None


def test_match_flow_empty_message():
    assert match_flow([make_flow("greet", ["hi"])], "") is None


# --- Templating ---

def test_render_substitutes_flat_and_nested_variables():
    variables = {"name": "Ana", "http.response": {"user": {"plan": "gold"}}, "webhook.body.items": [{"sku": "A1"}]}
    text = "{{name}} has {{http.response.user.plan}} and {{webhook.body.items.0.sku}}"
    assert render(text, variables) == "Ana has gold and A1"


def test_render_unknown_variable_is_empty():
    assert render("Hi {{missing}}!", {}) == "Hi !"


def test_render_formats_bool_and_structures():
    assert render("{{ok}} {{data}}", {"ok": True, "data": {"a": 1}}) == 'true {"a": 1}'


def test_render_system_date():
    assert len(render("{{system.current_date}}", {})) == len("2024-01-01")


def test_render_value_walks_nested_config():
    rendered = render_value({"to": "{{USER_PHONE}}", "rows": [{"title": "{{x}}"}], "n": 3}, {"USER_PHONE": "+1", "x": "y"})
    assert rendered == {"to": "+1", "rows": [{"title": "y"}], "n": 3}


# --- Conditions ---

@pytest.mark.parametrize("config,variables,expected", [
    ({"expression": "age >= 18"}, {"age": "21"}, True),
    ({"expression": "{{plan}} == 'gold'"}, {"plan": "gold"}, True),
    ({"expression": "message contains 'help'"}, {"message": "I need HELP"}, True),
    ({"variable": "age", "operator": "less_than", "value": 18}, {"age": 15}, True),
    ({"variable": "email", "operator": "is_empty"}, {}, True),
    ({"conditions": [{"expression": "a == 1"}, {"expression": "b == 2"}], "logic": "or"}, {"a": 0, "b": 2}, True),
    ({"conditions": [{"expression": "a == 1"}, {"expression": "b == 2"}]}, {"a": 0, "b": 2}, False),
])
def test_evaluate_condition(config, variables, expected):
    result, error = evaluate_condition(config, variables)
    assert result is expected
    assert error is None


def test_evaluate_condition_missing_variable_is_false_with_error():
    result, error = evaluate_condition({"expression": "age >= 18"}, {})
    assert result is False
    assert "age" in error


def test_evaluate_condition_garbage_expression_is_false():
    result, error = evaluate_condition({"expression": "just words"}, {"just": 1})
    assert result is False
    assert error


def test_compare_numeric_mismatch_raises():
    with pytest.raises(ConditionError):
        compare("abc", ">", 3)


# --- Registry ---

def test_every_node_type_has_a_handler():
    assert set(NODE_HANDLERS) == set(NodeType)


def test_resolve_unknown_node_type():
    with pytest.raises(FlowDefinitionError):
        resolve_handler("teleport")
