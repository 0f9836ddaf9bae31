"""Restorable encoding of values that may contain class instances.

Values cross the channel by copy. ``encode`` turns every class instance it
reaches into a tagged envelope carrying the class name and a structural copy
of its data fields; ``decode`` walks the envelope back and hands each tagged
node to a caller-supplied restorer, which returns the live instance. A node
the restorer does not recognize stays a plain dict of its fields.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Any

from loguru import logger

from peerbind.errors import RelayedError

RESTORABLE_TAG = "__isRestorable"
THROWN_ERROR_TAG = "__isThrownError"

Restorer = Callable[[str, dict[str, Any]], Any]

_PLAIN_TYPES = (str, int, float, bool, type(None))


def _slot_names(cls: type) -> list[str]:
    names: list[str] = []
    for klass in cls.__mro__:
        slots = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for name in slots:
            if name not in ("__dict__", "__weakref__") and name not in names:
                names.append(name)
    return names


def instance_fields(value: Any) -> dict[str, Any]:
    """Public data fields of a class instance, without methods or private names."""
    fields: dict[str, Any] = {}
    if isinstance(value, BaseException):
        fields["message"] = str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for field in dataclasses.fields(value):
            fields[field.name] = getattr(value, field.name)
    else:
        fields.update(getattr(value, "__dict__", {}))
        for name in _slot_names(type(value)):
            if name not in fields and hasattr(value, name):
                fields[name] = getattr(value, name)
    return {name: item for name, item in fields.items() if not name.startswith("_")}


def is_restorable(value: Any) -> bool:
    """True when value is a tagged class-instance envelope."""
    return isinstance(value, dict) and value.get(RESTORABLE_TAG) is True


def encode(value: Any) -> Any:
    """Encode value so that class instances inside it survive the channel."""
    if isinstance(value, _PLAIN_TYPES):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode(item) for item in value]
    if isinstance(value, dict):
        return {key: encode(item) for key, item in value.items()}
    return {
        RESTORABLE_TAG: True,
        "className": type(value).__name__,
        "fields": {name: encode(item) for name, item in instance_fields(value).items()},
    }


def decode(value: Any, restorer: Restorer | None = None) -> Any:
    """
    Inverse of ``encode``.

    Args:
        value: Encoded value received from the channel.
        restorer: Optional ``(class_name, fields) -> instance`` lookup. Inner
            instances are restored before the instance containing them.

    Returns:
        The decoded value. Tagged nodes the restorer leaves alone (or all of
        them, without a restorer) come back as plain field dicts.
    """
    if isinstance(value, list):
        return [decode(item, restorer) for item in value]
    if isinstance(value, dict):
        if is_restorable(value):
            fields = decode(value.get("fields") or {}, restorer)
            if restorer is not None:
                restored = restorer(str(value.get("className", "")), fields)
                if restored is not None:
                    return restored
            return fields
        return {key: decode(item, restorer) for key, item in value.items()}
    return value


def encode_thrown_error(payload: Any) -> dict[str, Any]:
    """Wrap a relayed error payload so the receiving side raises it."""
    return {THROWN_ERROR_TAG: True, "error": encode(payload)}


def is_thrown_error(value: Any) -> bool:
    return isinstance(value, dict) and value.get(THROWN_ERROR_TAG) is True


def decode_thrown_error(value: dict[str, Any], restorer: Restorer | None = None) -> BaseException:
    """Exception to raise for a relayed error reply.

    A payload that restores to an exception is returned as is; any other
    payload is wrapped in RelayedError with the payload unchanged.
    """
    payload = decode(value.get("error"), restorer)
    if isinstance(payload, BaseException):
        return payload
    return RelayedError(payload)


def _restore_with_class(cls: type, fields: dict[str, Any]) -> Any:
    restore = getattr(cls, "restore_class", None)
    if restore is not None:
        return restore(fields)
    try:
        if issubclass(cls, BaseException):
            exc = cls(fields.get("message", ""))
            for name, item in fields.items():
                if name != "message":
                    setattr(exc, name, item)
            return exc
        return cls(**fields)
    except TypeError as e:
        # constructor does not accept the fields; keep them as a dict
        logger.debug(f"Leaving {cls.__name__} unrestored: {e}")
        return None


def class_restorer(*classes: type) -> Restorer:
    """
    Build a restorer for a fixed set of classes, keyed by class name.

    A class with a ``restore_class(fields)`` classmethod is restored through it;
    other classes are constructed with their fields as keyword arguments, and
    exceptions with their message. Unknown class names, and classes whose
    constructor rejects those arguments, are left unrestored.
    """
    by_name = {cls.__name__: cls for cls in classes}

    def restorer(class_name: str, fields: dict[str, Any]) -> Any:
        cls = by_name.get(class_name)
        if cls is None:
            return None
        return _restore_with_class(cls, fields)

    return restorer
