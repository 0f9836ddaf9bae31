import asyncio

import pytest

from peerbind import (
    ApiBinding,
    BindingTimeoutError,
    ChannelCallError,
    ChannelClosedError,
    IpcContext,
    IpcSettings,
    RelayedError,
    bind_api,
    binding_registration,
    class_restorer,
    expose_api,
    set_binding_timeout,
    set_retry_interval,
)
from peerbind.protocol import API_REQUEST_CHANNEL


class Catter:
    def __init__(self, s1: str, s2: str):
        self.s1 = s1
        self.s2 = s2

    def cat(self) -> str:
        return self.s1 + self.s2

    @staticmethod
    def restore_class(fields):
        return Catter(fields["s1"], fields["s2"])


class CustomError(Exception):
    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code

    @staticmethod
    def restore_class(fields):
        return CustomError(fields["message"], fields["code"])


restorer = class_restorer(Catter, CustomError)


class Greeter:
    def hello(self, name: str) -> str:
        if not name:
            raise RelayedError("bad name")
        return "Hi, " + name

    async def wait_then_echo(self, delay: float, value):
        await asyncio.sleep(delay)
        return value

    def swap(self, catter: Catter) -> Catter:
        return Catter(catter.s2, catter.s1)

    def fail_custom(self, code: int):
        raise RelayedError(CustomError("custom failure", code))

    def crash(self):
        raise RuntimeError("host bug")


class Recorder:
    def __init__(self):
        self._seen = []

    def record(self, catter):
        self._seen.append(catter)


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_hello_scenario(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())

    greeter = await peer.bind_api(peer_side, "Greeter")

    assert await greeter.hello("Ada") == "Hi, Ada"


@pytest.mark.asyncio
async def test_relayed_error_rejects_with_payload(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")

    with pytest.raises(RelayedError) as exc_info:
        await greeter.hello("")

    assert exc_info.value.payload == "bad name"
    assert str(exc_info.value) == "bad name"


@pytest.mark.asyncio
async def test_relayed_exception_payload_is_restored(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter", restorer)

    with pytest.raises(CustomError) as exc_info:
        await greeter.fail_custom(42)

    assert exc_info.value.code == 42
    assert str(exc_info.value) == "custom failure"


@pytest.mark.asyncio
async def test_fault_is_logged_and_rejects_generically(host, peer, channels):
    host_side, peer_side = channels
    logged = []
    host.set_error_logger(logged.append)
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")

    with pytest.raises(ChannelCallError) as exc_info:
        await greeter.crash()

    assert len(logged) == 1
    assert str(logged[0]) == "host bug"
    assert exc_info.value.remote_message
    assert not isinstance(exc_info.value, RelayedError)


@pytest.mark.asyncio
async def test_class_instances_cross_both_ways(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter(), restorer)
    greeter = await peer.bind_api(peer_side, "Greeter", restorer)

    swapped = await greeter.swap(Catter("a", "b"))

    assert isinstance(swapped, Catter)
    assert swapped.cat() == "ba"


@pytest.mark.asyncio
async def test_unrestored_results_are_structural(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter(), restorer)
    greeter = await peer.bind_api(peer_side, "Greeter")

    assert await greeter.swap(Catter("a", "b")) == {"s1": "b", "s2": "a"}


@pytest.mark.asyncio
async def test_binding_exposes_exactly_registered_methods(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")

    assert isinstance(greeter, ApiBinding)
    assert binding_registration(greeter).method_names == ("hello", "wait_then_echo", "swap", "fail_custom", "crash")
    assert "Greeter" in repr(greeter)
    with pytest.raises(AttributeError):
        greeter.unknown


@pytest.mark.asyncio
async def test_concurrent_calls_complete_independently(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")
    finished = []

    async def _call(delay, value):
        finished.append(await greeter.wait_then_echo(delay, value))

    await asyncio.gather(_call(0.05, "slow"), _call(0, "fast"))

    assert finished == ["fast", "slow"]


@pytest.mark.asyncio
async def test_repeated_bind_returns_cached_proxy(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    requests = []
    host_side.on(API_REQUEST_CHANNEL, requests.append)

    first = await peer.bind_api(peer_side, "Greeter")
    second = await peer.bind_api(peer_side, "Greeter")

    assert first is second
    assert peer.cached_binding(peer_side, "Greeter") is first
    assert len(requests) <= 1


@pytest.mark.asyncio
async def test_concurrent_binds_share_one_discovery(host, peer, channels):
    host_side, peer_side = channels
    requests = []
    host_side.on(API_REQUEST_CHANNEL, requests.append)

    async def _expose_later():
        await asyncio.sleep(0.05)
        host.expose_api(host_side, Greeter())

    first, second, _ = await asyncio.gather(
        peer.bind_api(peer_side, "Greeter"),
        peer.bind_api(peer_side, "Greeter"),
        _expose_later(),
    )

    assert first is second
    assert requests == [{"className": "Greeter"}]


@pytest.mark.slow
@pytest.mark.asyncio
async def test_bind_before_exposure_uses_retry_loop(host, peer, channels):
    host_side, peer_side = channels
    set_binding_timeout(300)
    set_retry_interval(50)

    async def _expose_later():
        await asyncio.sleep(0.12)
        host.expose_api(host_side, Greeter())

    greeter, _ = await asyncio.gather(peer.bind_api(peer_side, "Greeter"), _expose_later())

    assert await greeter.hello("Ada") == "Hi, Ada"


@pytest.mark.slow
@pytest.mark.asyncio
async def test_bind_before_exposure_answers_from_request(host, peer, channels):
    host_side, peer_side = channels
    set_binding_timeout(300)
    set_retry_interval(50)
    host.expose_api(host_side, Greeter())
    await _settle()

    greeter = await peer.bind_api(peer_side, "Greeter")

    assert await greeter.hello("Bo") == "Hi, Bo"


@pytest.mark.slow
@pytest.mark.asyncio
async def test_bind_times_out_within_one_interval(peer, channels):
    _, peer_side = channels
    set_binding_timeout(300)
    set_retry_interval(50)
    loop = asyncio.get_running_loop()

    started = loop.time()
    with pytest.raises(BindingTimeoutError) as exc_info:
        await peer.bind_api(peer_side, "Nobody")
    elapsed = loop.time() - started

    assert 0.29 <= elapsed < 0.3 + 0.05 + 0.05
    assert "Nobody" in str(exc_info.value)
    assert "host" in str(exc_info.value)
    assert exc_info.value.timeout_ms == 300


@pytest.mark.slow
@pytest.mark.asyncio
async def test_context_settings_override_process_settings(channels):
    _, peer_side = channels
    ctx = IpcContext(IpcSettings(binding_timeout_ms=60, retry_interval_ms=10))
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        with pytest.raises(BindingTimeoutError):
            await ctx.bind_api(peer_side, "Nobody")
    finally:
        ctx.close()
    assert loop.time() - started < 0.5


@pytest.mark.asyncio
async def test_one_way_binding_sends_without_reply(host, peer, channels):
    host_side, peer_side = channels
    recorder = Recorder()
    peer.expose_peer_api(peer_side, recorder, restorer)

    bound = await host.bind_peer_api(host_side, "Recorder")
    result = bound.record(Catter("x", "y"))
    await _settle()

    assert result is None
    assert len(recorder._seen) == 1
    assert recorder._seen[0].cat() == "xy"


@pytest.mark.asyncio
async def test_call_bind_ignores_one_way_registration(host, peer, channels):
    host_side, peer_side = channels
    set_binding_timeout(100)
    peer.expose_peer_api(peer_side, Recorder())

    one_way = await host.bind_peer_api(host_side, "Recorder")
    with pytest.raises(BindingTimeoutError):
        await host.bind_api(host_side, "Recorder")

    assert host.cached_binding(host_side, "Recorder") is None
    assert host.cached_binding(host_side, "Recorder", one_way=True) is one_way


@pytest.mark.asyncio
async def test_one_way_bind_ignores_call_registration(host, peer, channels):
    host_side, peer_side = channels
    set_binding_timeout(100)
    host.expose_api(host_side, Greeter())

    with pytest.raises(BindingTimeoutError):
        await peer.bind_peer_api(peer_side, "Greeter")
    greeter = await peer.bind_api(peer_side, "Greeter")

    assert await greeter.hello("Ed") == "Hi, Ed"
    assert peer.cached_binding(peer_side, "Greeter", one_way=True) is None


@pytest.mark.asyncio
async def test_detach_wakes_pending_bind(peer, channels):
    _, peer_side = channels
    pending = asyncio.ensure_future(peer.bind_api(peer_side, "Nobody"))
    await asyncio.sleep(0.03)

    peer.detach(peer_side)

    with pytest.raises(ChannelClosedError):
        await pending


@pytest.mark.asyncio
async def test_channel_close_evicts_bound_proxies(host, peer, channels):
    host_side, peer_side = channels
    host.expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")

    host_side.close()

    assert peer.cached_binding(peer_side, "Greeter") is None
    with pytest.raises(ChannelClosedError):
        await greeter.hello("Ada")


@pytest.mark.asyncio
async def test_module_level_helpers_use_default_context(channels):
    host_side, peer_side = channels
    host = IpcContext()
    try:
        host.expose_api(host_side, Greeter())
        greeter = await bind_api(peer_side, "Greeter")
        assert await greeter.hello("Cy") == "Hi, Cy"
    finally:
        host.close()


@pytest.mark.asyncio
async def test_module_level_expose(peer, channels):
    host_side, peer_side = channels
    expose_api(host_side, Greeter())
    greeter = await peer.bind_api(peer_side, "Greeter")
    assert await greeter.hello("Di") == "Hi, Di"
