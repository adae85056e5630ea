# /flowbot/workflows/templating.py

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

MISSING = object()


def lookup_variable(variables: Dict[str, Any], name: str) -> Any:
    """
    Resolves a variable by exact key first ("http.response.status" is a
    flat key), then as a dotted path into nested mappings and lists.
    Returns the module-level sentinel when nothing matches.
    """
    if name in variables:
        return variables[name]

    parts = name.split(".")
    # Longest flat prefix first, so "webhook.body.user.id" can walk into a
    # dict stored under "webhook.body.user"
    for cut in range(len(parts) - 1, 0, -1):
        head = ".".join(parts[:cut])
        if head not in variables:
            continue
        current: Any = variables[head]
        for part in parts[cut:]:
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                current = MISSING
                break
        if current is not MISSING:
            return current
    return MISSING


def _system_value(name: str, now: Optional[datetime] = None) -> Optional[str]:
    now = now or datetime.now(timezone.utc)
    if name == "current_date":
        return now.date().isoformat()
    if name == "current_time":
        return now.strftime("%H:%M:%S")
    if name == "current_datetime":
        return now.isoformat()
    return None


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render(text: Any, variables: Dict[str, Any]) -> str:
    """Substitutes `{{name}}` placeholders; unknown names render as ""."""
    if text is None:
        return ""
    if not isinstance(text, str):
        return stringify(text)

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if name.startswith("system."):
            value = _system_value(name[len("system."):])
            if value is not None:
                return value
        value = lookup_variable(variables, name)
        return "" if value is MISSING else stringify(value)

    return PLACEHOLDER.sub(_replace, text)


def render_value(value: Any, variables: Dict[str, Any]) -> Any:
    """Renders every string inside a nested structure (node config values)."""
    if isinstance(value, str):
        return render(value, variables)
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    return value


def first_config(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among alternative config key spellings."""
    for key in keys:
        value = config.get(key)
        if value not in (None, ""):
            return value
    return default
