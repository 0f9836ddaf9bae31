"""Binding: discover remote APIs and build local proxies for them."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from peerbind.channel import Channel
from peerbind.config import IpcSettings
from peerbind.errors import BindingTimeoutError, ChannelClosedError
from peerbind.protocol import API_REQUEST_CHANNEL, API_RESPONSE_CHANNEL, ApiRegistration, is_public_name, to_channel_name
from peerbind.restoration import Restorer, decode, decode_thrown_error, encode, is_thrown_error

# (endpoint id, class name, one-way)
BindingKey = tuple[str, str, bool]


class ApiBinding:
    """
    Local stand-in for an API exposed by a remote endpoint.

    Each registered method is an attribute. On a call binding the methods are
    coroutine functions returning the remote result; on a one-way binding they
    send the call and return None.
    """

    def __init__(self, registration: ApiRegistration, endpoint_id: str, methods: dict[str, Callable[..., Any]], one_way: bool):
        self._registration = registration
        self._endpoint_id = endpoint_id
        self._one_way = one_way
        for name, method in methods.items():
            setattr(self, name, method)

    def __repr__(self) -> str:
        kind = "one-way " if self._one_way else ""
        return f"<{kind}ApiBinding {self._registration.class_name} @ {self._endpoint_id}>"


def binding_registration(binding: ApiBinding) -> ApiRegistration:
    """Registration a binding was built from."""
    return binding._registration


def _call_method(channel: Channel, class_name: str, method_name: str, restorer: Restorer | None) -> Callable[..., Any]:
    channel_name = to_channel_name(class_name, method_name)

    async def invoke(*args: Any) -> Any:
        reply = await channel.call(channel_name, [encode(arg) for arg in args])
        if is_thrown_error(reply):
            raise decode_thrown_error(reply, restorer)
        return decode(reply, restorer)

    invoke.__name__ = method_name
    invoke.__qualname__ = f"{class_name}.{method_name}"
    return invoke


def _send_method(channel: Channel, class_name: str, method_name: str) -> Callable[..., None]:
    channel_name = to_channel_name(class_name, method_name)

    def send(*args: Any) -> None:
        channel.send(channel_name, [encode(arg) for arg in args])

    send.__name__ = method_name
    send.__qualname__ = f"{class_name}.{method_name}"
    return send


def build_binding(channel: Channel, registration: ApiRegistration, restorer: Restorer | None = None, *, one_way: bool = False) -> ApiBinding:
    """Proxy with exactly the registered methods."""
    methods: dict[str, Callable[..., Any]] = {}
    for method_name in registration.method_names:
        if not is_public_name(method_name):
            continue
        if one_way:
            methods[method_name] = _send_method(channel, registration.class_name, method_name)
        else:
            methods[method_name] = _call_method(channel, registration.class_name, method_name, restorer)
    return ApiBinding(registration, channel.endpoint_id, methods, one_way)


class ApiBinder:
    """Tracks remote registrations and bound proxies, per endpoint and binding kind."""

    def __init__(self, settings_getter: Callable[[], IpcSettings]):
        self._settings_getter = settings_getter
        self._bound: dict[BindingKey, ApiBinding] = {}
        self._pending: dict[BindingKey, asyncio.Future[ApiBinding]] = {}
        self._registrations: dict[str, dict[tuple[str, bool], ApiRegistration]] = {}
        self._arrivals: dict[BindingKey, asyncio.Event] = {}
        self._response_listeners: dict[str, tuple[Channel, Callable[[Any], None]]] = {}

    async def bind(self, channel: Channel, class_name: str, restorer: Restorer | None = None, *, one_way: bool = False) -> ApiBinding:
        """
        Bind to an API the remote endpoint exposes, waiting for it to be exposed.

        Concurrent binds for the same endpoint, class and kind share one
        discovery and resolve to the same proxy. A registration of the other
        kind never satisfies the bind.

        Raises:
            BindingTimeoutError: No registration arrived within the binding timeout.
            ChannelClosedError: The channel was detached while waiting.
        """
        key = (channel.endpoint_id, class_name, one_way)
        binding = self._bound.get(key)
        if binding is not None:
            return binding
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._discover(channel, class_name, restorer, one_way))
            self._pending[key] = pending

            def _forget(fut: asyncio.Future[ApiBinding]) -> None:
                if self._pending.get(key) is fut:
                    del self._pending[key]

            pending.add_done_callback(_forget)
        return await asyncio.shield(pending)

    async def _discover(self, channel: Channel, class_name: str, restorer: Restorer | None, one_way: bool) -> ApiBinding:
        endpoint_id = channel.endpoint_id
        self.listen(channel)
        registration = self.registration(endpoint_id, class_name, one_way=one_way)
        if registration is None:
            channel.send(API_REQUEST_CHANNEL, {"className": class_name})
            registration = await self._wait_for_registration(endpoint_id, class_name, one_way)
        binding = build_binding(channel, registration, restorer, one_way=one_way)
        self._bound[(endpoint_id, class_name, one_way)] = binding
        logger.debug(f"Bound {'one-way ' if one_way else ''}API {class_name} on {endpoint_id}")
        return binding

    async def _wait_for_registration(self, endpoint_id: str, class_name: str, one_way: bool) -> ApiRegistration:
        settings = self._settings_getter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.binding_timeout_seconds
        key = (endpoint_id, class_name, one_way)
        arrival = self._arrivals.setdefault(key, asyncio.Event())
        try:
            while True:
                if endpoint_id not in self._response_listeners:
                    raise ChannelClosedError(endpoint_id)
                registration = self.registration(endpoint_id, class_name, one_way=one_way)
                if registration is not None:
                    return registration
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning(f"Timed out binding to API {class_name} on {endpoint_id}")
                    raise BindingTimeoutError(class_name, endpoint_id, settings.binding_timeout_ms)
                arrival.clear()
                try:
                    await asyncio.wait_for(arrival.wait(), timeout=min(settings.retry_interval_seconds, remaining))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._arrivals.pop(key, None)

    def listen(self, channel: Channel) -> None:
        """Start caching registrations announced over a channel."""
        endpoint_id = channel.endpoint_id
        if endpoint_id in self._response_listeners:
            return

        def on_registration(payload: Any) -> None:
            registration = ApiRegistration.from_payload(payload)
            if registration is None:
                logger.warning(f"Ignoring malformed API registration from {endpoint_id}")
                return
            kind = (registration.class_name, registration.one_way)
            self._registrations.setdefault(endpoint_id, {})[kind] = registration
            arrival = self._arrivals.get((endpoint_id, *kind))
            if arrival is not None:
                arrival.set()

        channel.on(API_RESPONSE_CHANNEL, on_registration)
        self._response_listeners[endpoint_id] = (channel, on_registration)

    def registration(self, endpoint_id: str, class_name: str, *, one_way: bool = False) -> ApiRegistration | None:
        return self._registrations.get(endpoint_id, {}).get((class_name, one_way))

    def cached_binding(self, endpoint_id: str, class_name: str, *, one_way: bool = False) -> ApiBinding | None:
        return self._bound.get((endpoint_id, class_name, one_way))

    def detach(self, endpoint_id: str) -> None:
        """Forget an endpoint's registrations and proxies, waking any pending binds."""
        listener = self._response_listeners.pop(endpoint_id, None)
        if listener is not None:
            channel, on_registration = listener
            channel.remove_listener(API_RESPONSE_CHANNEL, on_registration)
        self._registrations.pop(endpoint_id, None)
        for key in [key for key in self._bound if key[0] == endpoint_id]:
            del self._bound[key]
        for key, arrival in self._arrivals.items():
            if key[0] == endpoint_id:
                arrival.set()
