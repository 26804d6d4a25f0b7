"""Template resolution for action configuration.

Placeholders use ``{{ ... }}`` and are looked up against a context of the form::

    {
        "trigger": <raw trigger payload>,
        "run": <trigger envelope>,
        "steps": {<step_key or action id>: <processed step output>},
    }

``trigger.member_email`` falls back to ``trigger.member.email`` when the flat key is
missing. A string holding a single placeholder resolves to the raw value so numbers
and objects keep their type; mixed strings are interpolated as text.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping

from .conditions import payload_lookup

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")


def build_context(
    trigger_payload: dict[str, Any],
    envelope: dict[str, Any] | None = None,
    step_outputs: Iterable[tuple[Iterable[str], dict[str, Any]]] = (),
) -> dict[str, Any]:
    steps: dict[str, Any] = {}
    for keys, output in step_outputs:
        for key in keys:
            steps[str(key)] = output
    return {"trigger": trigger_payload, "run": envelope or {}, "steps": steps}


def _lookup_trigger(payload: Any, path: str) -> Any:
    value = payload_lookup(payload, path)
    if value is None and "_" in path:
        value = payload_lookup(payload, path.replace("_", "."))
    return value


def _lookup_step(steps: Mapping[str, Any], path: str) -> Any:
    head, _, rest = path.partition(".")
    output = steps.get(head)
    if output is None:
        return None
    if not rest:
        return output
    if isinstance(output, dict) and rest in output:
        return output[rest]
    return payload_lookup(output, rest)


def resolve_variable(variable: str, context: Mapping[str, Any]) -> Any:
    scope, _, path = variable.partition(".")
    if scope == "trigger" and path:
        return _lookup_trigger(context.get("trigger") or {}, path)
    if scope == "steps" and path:
        return _lookup_step(context.get("steps") or {}, path)
    if scope == "run" and path:
        return payload_lookup(context.get("run") or {}, path)
    return payload_lookup(dict(context), variable)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, dict):
        return {key: resolve_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    if not isinstance(value, str) or "{{" not in value:
        return value

    whole = PLACEHOLDER_RE.fullmatch(value.strip())
    if whole is not None:
        resolved = resolve_variable(whole.group(1), context)
        return "" if resolved is None else resolved

    return PLACEHOLDER_RE.sub(lambda match: _as_text(resolve_variable(match.group(1), context)), value)


def process_output(output: dict[str, Any]) -> dict[str, Any]:
    """Add flattened ``key[i]`` / ``key[i].field`` entries for list values."""
    processed: dict[str, Any] = {}
    for key, value in output.items():
        processed[key] = value
        if not isinstance(value, list):
            continue
        for index, item in enumerate(value):
            if isinstance(item, dict):
                for sub_key, sub_value in item.items():
                    processed[f"{key}[{index}].{sub_key}"] = sub_value
            else:
                processed[f"{key}[{index}]"] = item
    return processed
