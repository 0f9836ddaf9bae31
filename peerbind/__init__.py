"""peerbind - call class-based APIs across an asynchronous message channel."""

__version__ = "0.1.0"

from peerbind.binding import ApiBinding, binding_registration
from peerbind.channel import Channel, FrameChannel, LoopbackChannel, StreamChannel
from peerbind.config import IpcSettings, get_settings, load_settings, set_binding_timeout, set_retry_interval
from peerbind.context import (
    IpcContext,
    bind_api,
    bind_peer_api,
    expose_api,
    expose_peer_api,
    get_default_context,
    reset_default_context,
    set_error_logger,
)
from peerbind.errors import (
    ApiDefinitionError,
    BindingTimeoutError,
    ChannelCallError,
    ChannelClosedError,
    ChannelError,
    ErrorCategory,
    PeerBindError,
    ProtocolError,
    RelayedError,
)
from peerbind.protocol import (
    API_REQUEST_CHANNEL,
    API_RESPONSE_CHANNEL,
    ApiRegistration,
    check_api,
    check_api_class,
    to_channel_name,
)
from peerbind.restoration import Restorer, class_restorer, decode, encode

__all__ = [
    "API_REQUEST_CHANNEL",
    "API_RESPONSE_CHANNEL",
    "ApiBinding",
    "ApiDefinitionError",
    "ApiRegistration",
    "BindingTimeoutError",
    "Channel",
    "ChannelCallError",
    "ChannelClosedError",
    "ChannelError",
    "ErrorCategory",
    "FrameChannel",
    "IpcContext",
    "IpcSettings",
    "LoopbackChannel",
    "PeerBindError",
    "ProtocolError",
    "RelayedError",
    "Restorer",
    "StreamChannel",
    "bind_api",
    "bind_peer_api",
    "binding_registration",
    "check_api",
    "check_api_class",
    "class_restorer",
    "decode",
    "encode",
    "expose_api",
    "expose_peer_api",
    "get_default_context",
    "get_settings",
    "load_settings",
    "reset_default_context",
    "set_binding_timeout",
    "set_error_logger",
    "set_retry_interval",
    "to_channel_name",
]
