"""Fill required tool arguments the model left out.

Weaker models often omit required properties; rather than letting the tool
reject the call, each missing property gets a type-driven default.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

_logger = logging.getLogger(__name__)

_TYPE_DEFAULTS: dict[str, Any] = {
    "string": "",
    "number": 0,
    "integer": 0,
    "boolean": False,
    "array": [],
    "object": {},
    "null": None,
}


def default_for_schema(schema: dict[str, Any] | None) -> Any:
    """Default value for a property schema.

    A schema-declared ``default`` wins.  Union types containing ``"null"``
    default to ``None``; other unions use their first member.
    """
    if not isinstance(schema, dict):
        return None
    type_ = schema.get("type")
    if not type_:
        return None

    if isinstance(type_, list):
        if "null" in type_:
            return None
        return default_for_schema({**schema, "type": type_[0]})

    if type_ not in _TYPE_DEFAULTS:
        return None
    if type_ != "null" and "default" in schema and schema["default"] is not None:
        return copy.deepcopy(schema["default"])
    return copy.deepcopy(_TYPE_DEFAULTS[type_])


def fill_missing_required(
    args: dict[str, Any],
    tool_name: str,
    schema: dict[str, Any] | None,
) -> dict[str, Any]:
    """Return *args* with every missing required property defaulted."""
    if not isinstance(schema, dict):
        return args
    required = schema.get("required")
    if not isinstance(required, list):
        return args

    properties = schema.get("properties")
    if not isinstance(properties, dict):
        properties = {}

    filled = dict(args)
    added: list[str] = []
    for name in required:
        if name in filled:
            continue
        value = default_for_schema(properties.get(name))
        filled[name] = value
        added.append(f"{name}={value!r}")

    if added:
        _logger.info(
            "Auto-filled missing required properties for %s: %s",
            tool_name, ", ".join(added),
        )
    return filled
