"""IpcContext: the exposure and binding state owned by one process or session."""

from __future__ import annotations

from typing import Any

from loguru import logger

from peerbind.binding import ApiBinder, ApiBinding
from peerbind.channel import Channel
from peerbind.config import IpcSettings, get_settings
from peerbind.errors import ErrorCategory, PeerBindError
from peerbind.exposure import ApiExposer, ErrorLogger
from peerbind.protocol import ApiRegistration, ApiRegistrationMap
from peerbind.restoration import Restorer


class IpcContext:
    """
    Owns API registrations, bound proxies and the channel listeners behind them.

    A channel's state is purged when the channel reports that it closed, or
    explicitly with ``detach``. ``close`` detaches every channel.
    """

    def __init__(self, settings: IpcSettings | None = None):
        self._settings = settings
        self._exposer = ApiExposer()
        self._binder = ApiBinder(lambda: self.settings)
        self._channels: dict[str, Channel] = {}
        self._closed = False

    @property
    def settings(self) -> IpcSettings:
        """Settings for this context; the process-wide settings unless given explicitly."""
        return self._settings if self._settings is not None else get_settings()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def registrations(self) -> ApiRegistrationMap:
        """Call-style APIs exposed by this context."""
        return dict(self._exposer.call_registrations)

    @property
    def peer_registrations(self) -> ApiRegistrationMap:
        """One-way APIs exposed by this context."""
        return dict(self._exposer.peer_registrations)

    def set_error_logger(self, func: ErrorLogger | None) -> None:
        """Receive exceptions raised by exposed methods other than RelayedError."""
        self._exposer.error_logger = func

    def expose_api(self, channel: Channel, api: Any, restorer: Restorer | None = None) -> ApiRegistration:
        """Expose an API instance whose methods the remote endpoint calls and awaits."""
        self._attach(channel)
        return self._exposer.expose(channel, api, restorer)

    def expose_peer_api(self, channel: Channel, api: Any, restorer: Restorer | None = None) -> ApiRegistration:
        """Expose an API instance whose methods the remote endpoint invokes without a reply."""
        self._attach(channel)
        return self._exposer.expose(channel, api, restorer, one_way=True)

    async def bind_api(self, channel: Channel, class_name: str, restorer: Restorer | None = None) -> ApiBinding:
        """
        Bind to a call-style API exposed at the other end of a channel.

        Args:
            channel: Channel to the exposing endpoint.
            class_name: Name of the exposed API class.
            restorer: Optional lookup restoring class instances in results and relayed errors.

        Returns:
            A proxy whose methods are coroutine functions.
        """
        self._attach(channel)
        return await self._binder.bind(channel, class_name, restorer)

    async def bind_peer_api(self, channel: Channel, class_name: str) -> ApiBinding:
        """Bind to a one-way API exposed at the other end of a channel."""
        self._attach(channel)
        return await self._binder.bind(channel, class_name, one_way=True)

    def cached_binding(self, channel: Channel, class_name: str, *, one_way: bool = False) -> ApiBinding | None:
        return self._binder.cached_binding(channel.endpoint_id, class_name, one_way=one_way)

    def detach(self, channel: Channel | str) -> None:
        """Drop a channel's handlers, listeners, registrations and proxies."""
        endpoint_id = channel if isinstance(channel, str) else channel.endpoint_id
        if self._channels.pop(endpoint_id, None) is None:
            return
        self._exposer.detach(endpoint_id)
        self._binder.detach(endpoint_id)
        logger.debug(f"Detached endpoint {endpoint_id}")

    def close(self) -> None:
        """Detach every channel. The context cannot be used afterwards."""
        if self._closed:
            return
        for endpoint_id in list(self._channels):
            self.detach(endpoint_id)
        self._closed = True

    def _attach(self, channel: Channel) -> None:
        if self._closed:
            raise PeerBindError("IpcContext is closed", code="CONTEXT_CLOSED", category=ErrorCategory.CHANNEL)
        endpoint_id = channel.endpoint_id
        if endpoint_id in self._channels:
            return
        self._channels[endpoint_id] = channel
        channel.on_close(lambda: self.detach(endpoint_id))


_default_context: IpcContext | None = None


def get_default_context() -> IpcContext:
    """Process-wide context used by the module-level helpers."""
    global _default_context
    if _default_context is None or _default_context.closed:
        _default_context = IpcContext()
    return _default_context


def reset_default_context() -> None:
    """Close the process-wide context; the next helper call creates a fresh one."""
    global _default_context
    if _default_context is not None:
        _default_context.close()
    _default_context = None


def set_error_logger(func: ErrorLogger | None) -> None:
    get_default_context().set_error_logger(func)


def expose_api(channel: Channel, api: Any, restorer: Restorer | None = None) -> ApiRegistration:
    return get_default_context().expose_api(channel, api, restorer)


def expose_peer_api(channel: Channel, api: Any, restorer: Restorer | None = None) -> ApiRegistration:
    return get_default_context().expose_peer_api(channel, api, restorer)


async def bind_api(channel: Channel, class_name: str, restorer: Restorer | None = None) -> ApiBinding:
    return await get_default_context().bind_api(channel, class_name, restorer)


async def bind_peer_api(channel: Channel, class_name: str) -> ApiBinding:
    return await get_default_context().bind_peer_api(channel, class_name)
