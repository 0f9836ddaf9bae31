"""Channel contract and reference transports.

A channel connects this process to one remote endpoint. It offers a
request/response ``call`` answered by the remote ``handle`` responder, and a
fire-and-forget ``send`` delivered to every remote ``on`` listener. Frames are
one JSON object per line, so every value crosses by copy.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from loguru import logger

from peerbind.config import get_settings
from peerbind.errors import ChannelCallError, ChannelClosedError, ProtocolError, describe_fault
from peerbind.protocol import CallFrame, Frame, ReplyFrame, SendFrame, decode_frame, encode_frame, safe_dict

Handler = Callable[[list[Any]], Any]
Listener = Callable[[Any], Any]


@runtime_checkable
class Channel(Protocol):
    endpoint_id: str

    async def call(self, name: str, args: list[Any]) -> Any: ...
    def send(self, name: str, payload: Any) -> None: ...
    def handle(self, name: str, handler: Handler) -> None: ...
    def remove_handler(self, name: str) -> None: ...
    def on(self, name: str, listener: Listener) -> None: ...
    def remove_listener(self, name: str, listener: Listener) -> None: ...
    def remove_all_listeners(self, name: str | None = None) -> None: ...
    def on_close(self, callback: Callable[[], None]) -> None: ...


class FrameChannel:
    """Frame dispatch shared by the reference transports.

    Subclasses deliver outgoing frames in ``_write_frame`` and feed incoming
    frames to ``receive_frame``. ``endpoint_id`` names the remote endpoint.
    """

    def __init__(self, endpoint_id: str | None = None, *, sanitize_faults: bool | None = None):
        self.endpoint_id = endpoint_id or uuid4().hex
        self.sanitize_faults = sanitize_faults
        self._handlers: dict[str, Handler] = {}
        self._listeners: dict[str, list[Listener]] = {}
        self._pending: dict[str, asyncio.Future[ReplyFrame]] = {}
        self._close_callbacks: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _write_frame(self, frame: Frame) -> None:
        raise NotImplementedError

    def _after_close(self) -> None:
        pass

    async def call(self, name: str, args: list[Any]) -> Any:
        if self._closed:
            raise ChannelClosedError(self.endpoint_id)
        call_id = uuid4().hex
        fut: asyncio.Future[ReplyFrame] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = fut
        try:
            self._write_frame(CallFrame(id=call_id, channel=name, args=list(args)))
            reply = await fut
        finally:
            self._pending.pop(call_id, None)
        if not reply.ok:
            error = safe_dict(reply.error)
            data = error.get("data")
            raise ChannelCallError(
                name,
                str(error.get("code") or "CALL_FAILED"),
                str(error.get("message") or f"call to '{name}' failed"),
                data if isinstance(data, dict) else None,
            )
        return reply.result

    def send(self, name: str, payload: Any) -> None:
        if self._closed:
            raise ChannelClosedError(self.endpoint_id)
        self._write_frame(SendFrame(channel=name, payload=payload))

    def handle(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            raise ValueError(f"a handler is already registered for '{name}'")
        self._handlers[name] = handler

    def remove_handler(self, name: str) -> None:
        self._handlers.pop(name, None)

    def on(self, name: str, listener: Listener) -> None:
        self._listeners.setdefault(name, []).append(listener)

    def remove_listener(self, name: str, listener: Listener) -> None:
        listeners = self._listeners.get(name)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                self._listeners.pop(name, None)

    def remove_all_listeners(self, name: str | None = None) -> None:
        if name is None:
            self._listeners.clear()
            return
        self._listeners.pop(name, None)

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def handler_names(self) -> list[str]:
        return sorted(self._handlers)

    def listener_count(self, name: str | None = None) -> int:
        if name is not None:
            return len(self._listeners.get(name, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    def receive_frame(self, frame: Frame) -> None:
        """Dispatch one incoming frame."""
        if self._closed:
            return
        if isinstance(frame, ReplyFrame):
            fut = self._pending.get(frame.id)
            if fut is None or fut.done():
                logger.warning(f"Dropping reply for unknown call {frame.id} from {self.endpoint_id}")
                return
            fut.set_result(frame)
        elif isinstance(frame, CallFrame):
            self._spawn(self._serve_call(frame))
        else:
            self._dispatch_send(frame)

    async def _serve_call(self, frame: CallFrame) -> None:
        handler = self._handlers.get(frame.channel)
        if handler is None:
            reply = ReplyFrame(
                id=frame.id,
                ok=False,
                error={"code": "NO_HANDLER", "message": f"No handler registered for '{frame.channel}'"},
            )
        else:
            try:
                result = handler(frame.args)
                if inspect.isawaitable(result):
                    result = await result
                reply = ReplyFrame(id=frame.id, ok=True, result=result)
            except Exception as e:
                reply = self._fault_reply(frame, e)
        if self._closed:
            return
        try:
            self._write_frame(reply)
        except (TypeError, ValueError) as e:
            # result could not be serialized
            self._write_frame(self._fault_reply(frame, e))

    def _sanitize(self) -> bool:
        if self.sanitize_faults is not None:
            return self.sanitize_faults
        return get_settings().sanitize_faults

    def _fault_reply(self, frame: CallFrame, exc: Exception) -> ReplyFrame:
        return ReplyFrame(
            id=frame.id,
            ok=False,
            error={
                "code": "HANDLER_ERROR",
                "message": f"Error invoking remote method '{frame.channel}': {describe_fault(exc, self._sanitize())}",
            },
        )

    def _dispatch_send(self, frame: SendFrame) -> None:
        for listener in list(self._listeners.get(frame.channel, ())):
            try:
                result = listener(frame.payload)
            except Exception as e:
                logger.warning(f"Listener for '{frame.channel}' from {self.endpoint_id} failed: {e}")
                continue
            if inspect.isawaitable(result):
                self._spawn(self._await_listener(frame.channel, result))

    async def _await_listener(self, name: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception as e:
            logger.warning(f"Listener for '{name}' from {self.endpoint_id} failed: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        """Close the channel, failing pending calls and notifying close callbacks."""
        if self._closed:
            return
        self._closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(ChannelClosedError(self.endpoint_id))
        self._pending.clear()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Close callback for {self.endpoint_id} failed: {e}")
        self._after_close()
        logger.debug(f"Channel to {self.endpoint_id} closed")


class LoopbackChannel(FrameChannel):
    """In-process channel end. Create connected ends with ``LoopbackChannel.pair``."""

    def __init__(self, endpoint_id: str | None = None, *, sanitize_faults: bool | None = None):
        super().__init__(endpoint_id, sanitize_faults=sanitize_faults)
        self._peer: LoopbackChannel | None = None

    @classmethod
    def pair(
        cls,
        first_id: str = "host",
        second_id: str = "peer",
        *,
        sanitize_faults: bool | None = None,
    ) -> tuple[LoopbackChannel, LoopbackChannel]:
        """
        Two connected ends: the first is used by ``first_id``, the second by ``second_id``.

        Each end's ``endpoint_id`` names the process at the other end.
        """
        first = cls(second_id, sanitize_faults=sanitize_faults)
        second = cls(first_id, sanitize_faults=sanitize_faults)
        first._peer = second
        second._peer = first
        return first, second

    def _write_frame(self, frame: Frame) -> None:
        peer = self._peer
        if peer is None or peer.closed:
            raise ChannelClosedError(self.endpoint_id)
        line = encode_frame(frame)
        asyncio.get_running_loop().call_soon(peer._receive_line, line)

    def _receive_line(self, line: str) -> None:
        try:
            frame = decode_frame(line)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed frame from {self.endpoint_id}: {e}")
            return
        self.receive_frame(frame)

    def _after_close(self) -> None:
        peer = self._peer
        if peer is not None and not peer.closed:
            peer.close()


class StreamChannel(FrameChannel):
    """Newline-delimited JSON frames over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        endpoint_id: str | None = None,
        *,
        sanitize_faults: bool | None = None,
    ):
        super().__init__(endpoint_id, sanitize_faults=sanitize_faults)
        self._reader = reader
        self._writer = writer
        self._reader_task: asyncio.Task[None] | None = None

    @classmethod
    async def open_connection(cls, host: str, port: int, endpoint_id: str | None = None) -> StreamChannel:
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer, endpoint_id or f"{host}:{port}").start()

    def start(self) -> StreamChannel:
        """Start reading frames. Must be called from a running event loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())
        return self

    async def _read_loop(self) -> None:
        try:
            while not self.closed:
                line = await self._reader.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    frame = decode_frame(line)
                except ProtocolError as e:
                    logger.warning(f"Dropping malformed frame from {self.endpoint_id}: {e}")
                    continue
                self.receive_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Reader for {self.endpoint_id} stopped")
        finally:
            self.close()

    def _write_frame(self, frame: Frame) -> None:
        if self._writer.is_closing():
            raise ChannelClosedError(self.endpoint_id)
        self._writer.write((encode_frame(frame) + "\n").encode("utf-8"))

    def _after_close(self) -> None:
        self._writer.close()
        task = self._reader_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
