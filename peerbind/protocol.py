"""Naming, registration records and wire frames shared by both sides of a channel."""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any

from peerbind.errors import ApiDefinitionError, ProtocolError

# Reserved channel names for the discovery handshake.
API_REQUEST_CHANNEL = "__api_request"
API_RESPONSE_CHANNEL = "__api_response"

PRIVATE_PREFIX = "_"


def to_channel_name(class_name: str, method_name: str) -> str:
    """Channel name carrying calls to ``class_name.method_name``."""
    return f"{class_name}:{method_name}"


def is_public_name(name: str) -> bool:
    return not name.startswith(PRIVATE_PREFIX)


@dataclass(frozen=True, slots=True)
class ApiRegistration:
    """Methods an exposed API class makes callable."""

    class_name: str
    method_names: tuple[str, ...]
    one_way: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"className": self.class_name, "methodNames": list(self.method_names), "oneWay": self.one_way}

    @classmethod
    def from_payload(cls, payload: Any) -> ApiRegistration | None:
        """Parse a discovery reply; None when it is not a registration."""
        row = safe_dict(payload)
        class_name = row.get("className")
        method_names = row.get("methodNames")
        if not isinstance(class_name, str) or not isinstance(method_names, list):
            return None
        return cls(
            class_name=class_name,
            method_names=tuple(str(name) for name in method_names),
            one_way=row.get("oneWay") is True,
        )


# class name -> exposed method names
ApiRegistrationMap = dict[str, tuple[str, ...]]


def _is_method_attribute(cls: type, name: str, attr: Any) -> bool:
    # properties and nested classes are data, not methods
    if inspect.isclass(attr) or inspect.isdatadescriptor(attr):
        return False
    method = getattr(cls, name, None)
    return callable(method) and not inspect.isclass(method)


def _class_attributes(cls: type) -> list[tuple[str, Any]]:
    """Public class-level attributes in definition order, base classes first."""
    seen: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        for name, attr in vars(klass).items():
            if is_public_name(name):
                seen[name] = attr
    return list(seen.items())


def public_method_names(instance: Any) -> tuple[str, ...]:
    """
    Names of the public methods of an API instance.

    Anything callable through the class counts, so methods wrapped by
    decorators such as ``functools.lru_cache`` are included.
    """
    cls = type(instance)
    return tuple(name for name, attr in _class_attributes(cls) if _is_method_attribute(cls, name, attr))


def check_api_class(cls: type) -> None:
    """Raise ApiDefinitionError when a public class attribute is not a method."""
    bad = [name for name, attr in _class_attributes(cls) if not _is_method_attribute(cls, name, attr)]
    if bad:
        raise ApiDefinitionError(cls.__name__, bad)


def check_api(instance: Any) -> Any:
    """
    Check that every public attribute of an API instance is a method.

    Returns the instance so the check can wrap the exposure call site.
    """
    check_api_class(type(instance))
    bad = [name for name in getattr(instance, "__dict__", {}) if is_public_name(name)]
    if bad:
        raise ApiDefinitionError(type(instance).__name__, bad)
    return instance


def safe_dict(value: Any) -> dict[str, Any]:
    """Return the value when dict-like, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


@dataclass(slots=True)
class CallFrame:
    """Request half of a request/response call."""

    id: str
    channel: str
    args: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class ReplyFrame:
    """Response to a CallFrame with the same id."""

    id: str
    ok: bool
    result: Any = None
    error: dict[str, Any] | None = None


@dataclass(slots=True)
class SendFrame:
    """Fire-and-forget message."""

    channel: str
    payload: Any = None


Frame = CallFrame | ReplyFrame | SendFrame


def encode_frame(frame: Frame) -> str:
    """Encode a frame into one line of JSON."""
    if isinstance(frame, CallFrame):
        row = {"type": "call", "id": frame.id, "channel": frame.channel, "args": frame.args}
    elif isinstance(frame, ReplyFrame):
        row = {"type": "reply", "id": frame.id, "ok": frame.ok, "result": frame.result, "error": frame.error}
    else:
        row = {"type": "send", "channel": frame.channel, "payload": frame.payload}
    return json.dumps(row, ensure_ascii=False)


def decode_frame(line: str | bytes) -> Frame:
    """Decode one JSON line into a frame."""
    try:
        row = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"invalid frame: {e}") from e
    if not isinstance(row, dict):
        raise ProtocolError("frame must be a JSON object")
    kind = row.get("type")
    if kind == "call":
        args = row.get("args")
        return CallFrame(id=str(row.get("id")), channel=str(row.get("channel")), args=args if isinstance(args, list) else [])
    if kind == "reply":
        error = row.get("error")
        return ReplyFrame(
            id=str(row.get("id")),
            ok=bool(row.get("ok")),
            result=row.get("result"),
            error=error if isinstance(error, dict) else None,
        )
    if kind == "send":
        return SendFrame(channel=str(row.get("channel")), payload=row.get("payload"))
    raise ProtocolError(f"unknown frame type: {kind!r}")
