"""Typed records parsed from the agent's stream-json output.

Every stdout line is validated here into one of a closed set of record
types. Anything that is not a JSON object yields None so callers can fall
back to raw text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass
class SystemEvent:
    subtype: str
    session_id: Optional[str] = None


@dataclass
class AssistantEvent:
    texts: list[str] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserEvent:
    """Tool results echoed back by the agent. Not used for output."""


@dataclass
class ResultEvent:
    is_error: bool
    result: str = ""
    errors: list[str] = field(default_factory=list)
    subtype: str = ""
    session_id: Optional[str] = None
    total_cost_usd: Optional[float] = None


@dataclass
class ControlRequestEvent:
    request_id: str
    subtype: str
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ControlResponseEvent:
    request_id: str
    subtype: str
    error: Optional[str] = None


@dataclass
class UnknownEvent:
    type: str
    raw: dict[str, Any] = field(default_factory=dict)


AgentEvent = Union[
    SystemEvent,
    AssistantEvent,
    UserEvent,
    ResultEvent,
    ControlRequestEvent,
    ControlResponseEvent,
    UnknownEvent,
]


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _parse_assistant(obj: dict) -> AssistantEvent:
    event = AssistantEvent()
    message = obj.get("message")
    if not isinstance(message, dict):
        return event
    usage = message.get("usage")
    if isinstance(usage, dict):
        event.usage = usage
    content = message.get("content")
    if isinstance(content, str):
        event.texts.append(content)
        return event
    for block in content if isinstance(content, list) else []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and _as_str(block.get("text")):
            event.texts.append(block["text"])
        elif block.get("type") == "thinking" and _as_str(block.get("thinking")):
            event.thinking.append(block["thinking"])
    return event


def _parse_result(obj: dict) -> ResultEvent:
    errors = obj.get("errors")
    cost = obj.get("total_cost_usd")
    return ResultEvent(
        is_error=bool(obj.get("is_error")),
        result=_as_str(obj.get("result")),
        errors=[str(e) for e in errors] if isinstance(errors, list) else [],
        subtype=_as_str(obj.get("subtype")),
        session_id=obj.get("session_id") if isinstance(obj.get("session_id"), str) else None,
        total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
    )


def _parse_control_request(obj: dict) -> ControlRequestEvent:
    request = obj.get("request") if isinstance(obj.get("request"), dict) else {}
    tool_input = request.get("input")
    return ControlRequestEvent(
        request_id=str(obj.get("request_id", "")),
        subtype=_as_str(request.get("subtype")),
        tool_name=_as_str(request.get("tool_name")),
        input=tool_input if isinstance(tool_input, dict) else {},
    )


def _parse_control_response(obj: dict) -> ControlResponseEvent:
    response = obj.get("response") if isinstance(obj.get("response"), dict) else {}
    error = response.get("error")
    return ControlResponseEvent(
        request_id=str(response.get("request_id", "")),
        subtype=_as_str(response.get("subtype")),
        error=str(error) if error else None,
    )


def parse_event(line: str) -> Optional[AgentEvent]:
    """Parse one stdout line. Returns None for blank or non-JSON-object lines."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    kind = _as_str(obj.get("type"))
    if kind == "system":
        session_id = obj.get("session_id")
        return SystemEvent(
            subtype=_as_str(obj.get("subtype")),
            session_id=session_id if isinstance(session_id, str) else None,
        )
    if kind == "assistant":
        return _parse_assistant(obj)
    if kind == "user":
        return UserEvent()
    if kind == "result":
        return _parse_result(obj)
    if kind == "control_request":
        return _parse_control_request(obj)
    if kind == "control_response":
        return _parse_control_response(obj)
    return UnknownEvent(type=kind, raw=obj)
