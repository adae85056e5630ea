# /flowbot/workflows/conditions.py

"""
Condition evaluation for `condition` nodes.

Three config shapes are accepted:

- `expression`: "age >= 18", "{{plan}} == 'gold'", "message contains 'help'"
- `variable` / `operator` / `value`: a single built-in comparison
- `conditions` (list of the above) combined with `logic` ("and" | "or")

Evaluation never raises. A missing variable, a type mismatch or an
unparseable expression yields (False, reason) so the node takes its
`false` edge deterministically.
"""

import re
from typing import Any, Dict, Optional, Tuple

from flowbot.workflows.templating import MISSING, PLACEHOLDER, lookup_variable, stringify

NUMERIC_OPERATORS = {">", ">=", "<", "<="}
UNARY_OPERATORS = {"is_empty", "is_not_empty"}

_OPERATOR_ALIASES = {
    "equals": "==", "eq": "==", "=": "==",
    "not_equals": "!=", "ne": "!=",
    "greater_than": ">", "gt": ">",
    "greater_or_equal": ">=", "gte": ">=",
    "less_than": "<", "lt": "<",
    "less_or_equal": "<=", "lte": "<=",
}

_EXPRESSION = re.compile(
    r"^\s*(?P<lhs>.+?)\s*"
    r"(?P<op>>=|<=|==|!=|>|<|\bnot_contains\b|\bcontains\b|\bstarts_with\b|\bends_with\b|\bis_not_empty\b|\bis_empty\b)"
    r"\s*(?P<rhs>.*?)\s*$"
)


class ConditionError(Exception):
    pass


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _variable_name(token: str) -> str:
    match = PLACEHOLDER.fullmatch(token.strip())
    return match.group(1).strip() if match else token.strip()


def _resolve(variables: Dict[str, Any], name: str) -> Any:
    value = lookup_variable(variables, name)
    if value is MISSING:
        raise ConditionError(f"variable '{name}' is not set")
    return value


def _literal(token: str, variables: Dict[str, Any]) -> Any:
    token = token.strip()
    if PLACEHOLDER.fullmatch(token):
        return _resolve(variables, _variable_name(token))
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    lowered = token.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    number = _to_number(token)
    return number if number is not None else token


def compare(left: Any, operator: str, right: Any) -> bool:
    """Applies one operator; raises ConditionError on a type mismatch."""
    op = _OPERATOR_ALIASES.get(operator, operator)

    if op == "is_empty":
        return left in (None, "", [], {})
    if op == "is_not_empty":
        return left not in (None, "", [], {})

    if op in NUMERIC_OPERATORS:
        lnum, rnum = _to_number(left), _to_number(right)
        if lnum is None or rnum is None:
            raise ConditionError(f"cannot compare {left!r} {op} {right!r} numerically")
        return {">": lnum > rnum, ">=": lnum >= rnum, "<": lnum < rnum, "<=": lnum <= rnum}[op]

    if op in ("==", "!="):
        lnum, rnum = _to_number(left), _to_number(right)
        if lnum is not None and rnum is not None:
            equal = lnum == rnum
        elif isinstance(left, bool) or isinstance(right, bool):
            equal = stringify(left).lower() == stringify(right).lower()
        else:
            equal = stringify(left) == stringify(right)
        return equal if op == "==" else not equal

    left_text, right_text = stringify(left).casefold(), stringify(right).casefold()
    if op == "contains":
        return right_text in left_text
    if op == "not_contains":
        return right_text not in left_text
    if op == "starts_with":
        return left_text.startswith(right_text)
    if op == "ends_with":
        return left_text.endswith(right_text)
    raise ConditionError(f"unknown operator '{operator}'")


def _evaluate_expression(expression: str, variables: Dict[str, Any]) -> bool:
    match = _EXPRESSION.match(expression or "")
    if not match:
        raise ConditionError(f"cannot parse expression '{expression}'")
    op = match.group("op")
    name = _variable_name(match.group("lhs"))
    if op in UNARY_OPERATORS:
        left = lookup_variable(variables, name)
        return compare(None if left is MISSING else left, op, None)
    return compare(_resolve(variables, name), op, _literal(match.group("rhs"), variables))


def _evaluate_comparison(clause: Dict[str, Any], variables: Dict[str, Any]) -> bool:
    if clause.get("expression"):
        return _evaluate_expression(clause["expression"], variables)
    name = _variable_name(str(clause.get("variable") or clause.get("field") or ""))
    if not name:
        raise ConditionError("condition has no variable")
    op = str(clause.get("operator") or "==").lower()
    if _OPERATOR_ALIASES.get(op, op) in UNARY_OPERATORS:
        left = lookup_variable(variables, name)
        return compare(None if left is MISSING else left, op, None)
    right = clause.get("value")
    if isinstance(right, str):
        right = _literal(right, variables) if PLACEHOLDER.fullmatch(right.strip()) else right
    return compare(_resolve(variables, name), op, right)


def evaluate_condition(config: Dict[str, Any], variables: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Returns (result, error). On any evaluation failure the result is False
    and `error` describes why.
    """
    try:
        clauses = config.get("conditions")
        if clauses:
            logic = str(config.get("logic") or "and").lower()
            results = (_evaluate_comparison(clause, variables) for clause in clauses)
            return (any(results) if logic == "or" else all(results)), None
        return _evaluate_comparison(config, variables), None
    except ConditionError as e:
        return False, str(e)
