"""Exposure: serve calls to local API instances over channels."""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from peerbind.channel import Channel, Listener
from peerbind.errors import RelayedError
from peerbind.protocol import (
    API_REQUEST_CHANNEL,
    API_RESPONSE_CHANNEL,
    ApiRegistration,
    ApiRegistrationMap,
    public_method_names,
    safe_dict,
    to_channel_name,
)
from peerbind.restoration import Restorer, decode, encode, encode_thrown_error

ErrorLogger = Callable[[BaseException], None]


@dataclass(slots=True)
class ExposedApi:
    """An API instance registered for exposure."""

    instance: Any
    registration: ApiRegistration
    restorer: Restorer | None

    @property
    def class_name(self) -> str:
        return self.registration.class_name

    @property
    def one_way(self) -> bool:
        return self.registration.one_way


@dataclass(slots=True)
class _ChannelState:
    channel: Channel
    class_names: set[str]
    handler_names: list[str]
    listeners: list[tuple[str, Listener]]


class ApiExposer:
    """Registers API instances and installs their handlers on channels.

    Each class name is registered once; the first instance exposed under a
    name serves every channel it is later exposed on.
    """

    def __init__(self):
        self.call_registrations: ApiRegistrationMap = {}
        self.peer_registrations: ApiRegistrationMap = {}
        self.error_logger: ErrorLogger | None = None
        self._apis: dict[str, ExposedApi] = {}
        self._channels: dict[str, _ChannelState] = {}

    def expose(self, channel: Channel, instance: Any, restorer: Restorer | None = None, *, one_way: bool = False) -> ApiRegistration:
        """
        Make an API instance callable from the endpoint at the other end of a channel.

        Args:
            channel: Channel to the endpoint that may bind to the API.
            instance: API instance; its public methods become callable.
            restorer: Optional lookup restoring class instances in arguments.
            one_way: Serve fire-and-forget sends instead of calls.

        Returns:
            The API's registration.
        """
        api = self._register(instance, restorer, one_way)
        state = self._channel_state(channel)
        if api.class_name not in state.class_names:
            if api.one_way:
                self._install_listeners(state, api)
            else:
                self._install_responders(state, api)
            state.class_names.add(api.class_name)
            logger.debug(
                f"Exposed {'one-way ' if api.one_way else ''}API {api.class_name} "
                f"({len(api.registration.method_names)} methods) to {channel.endpoint_id}"
            )
        channel.send(API_RESPONSE_CHANNEL, api.registration.to_payload())
        return api.registration

    def _register(self, instance: Any, restorer: Restorer | None, one_way: bool) -> ExposedApi:
        class_name = type(instance).__name__
        api = self._apis.get(class_name)
        if api is not None:
            if api.one_way != one_way:
                kind = "one-way" if api.one_way else "call"
                raise ValueError(f"API class '{class_name}' is already exposed as a {kind} API")
            return api
        registration = ApiRegistration(class_name=class_name, method_names=public_method_names(instance), one_way=one_way)
        api = ExposedApi(instance=instance, registration=registration, restorer=restorer)
        self._apis[class_name] = api
        registrations = self.peer_registrations if one_way else self.call_registrations
        registrations[class_name] = registration.method_names
        return api

    def _channel_state(self, channel: Channel) -> _ChannelState:
        state = self._channels.get(channel.endpoint_id)
        if state is not None:
            return state
        state = _ChannelState(channel=channel, class_names=set(), handler_names=[], listeners=[])

        def on_request(payload: Any) -> None:
            class_name = safe_dict(payload).get("className")
            if class_name not in state.class_names:
                return
            channel.send(API_RESPONSE_CHANNEL, self._apis[class_name].registration.to_payload())

        channel.on(API_REQUEST_CHANNEL, on_request)
        state.listeners.append((API_REQUEST_CHANNEL, on_request))
        self._channels[channel.endpoint_id] = state
        return state

    def _install_responders(self, state: _ChannelState, api: ExposedApi) -> None:
        for method_name in api.registration.method_names:
            name = to_channel_name(api.class_name, method_name)
            state.channel.handle(name, self._responder(api, method_name))
            state.handler_names.append(name)

    def _install_listeners(self, state: _ChannelState, api: ExposedApi) -> None:
        for method_name in api.registration.method_names:
            name = to_channel_name(api.class_name, method_name)
            listener = self._listener(api, method_name)
            state.channel.on(name, listener)
            state.listeners.append((name, listener))

    def _responder(self, api: ExposedApi, method_name: str) -> Callable[[list[Any]], Awaitable[Any]]:
        method = getattr(api.instance, method_name)

        async def respond(args: list[Any]) -> Any:
            try:
                result = method(*[decode(arg, api.restorer) for arg in args or []])
                if inspect.isawaitable(result):
                    result = await result
                encoded = encode(result)
                # unserializable replies are faults of the exposed method
                json.dumps(encoded)
                return encoded
            except RelayedError as e:
                return encode_thrown_error(e.payload)
            except Exception as e:
                self._report_fault(api, method_name, e)
                raise

        return respond

    def _listener(self, api: ExposedApi, method_name: str) -> Listener:
        method = getattr(api.instance, method_name)

        def listen(payload: Any) -> Awaitable[None] | None:
            args = payload if isinstance(payload, list) else []
            try:
                result = method(*[decode(arg, api.restorer) for arg in args])
            except Exception as e:
                self._report_fault(api, method_name, e)
                return None
            if inspect.isawaitable(result):
                return self._finish_one_way(api, method_name, result)
            return None

        return listen

    async def _finish_one_way(self, api: ExposedApi, method_name: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            self._report_fault(api, method_name, e)

    def _report_fault(self, api: ExposedApi, method_name: str, exc: Exception) -> None:
        logger.warning(f"API method {api.class_name}.{method_name} raised {type(exc).__name__}: {exc}")
        if self.error_logger is None:
            return
        try:
            self.error_logger(exc)
        except Exception:
            logger.exception("Error logger failed")

    def detach(self, endpoint_id: str) -> None:
        """Remove every handler and listener installed on a channel."""
        state = self._channels.pop(endpoint_id, None)
        if state is None:
            return
        for name in state.handler_names:
            state.channel.remove_handler(name)
        for name, listener in state.listeners:
            state.channel.remove_listener(name, listener)
        logger.debug(f"Removed {len(state.class_names)} exposed APIs from {endpoint_id}")
