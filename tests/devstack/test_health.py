from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
import pytest

from devstack.health import ReadinessProbe, ReadinessTimeout
from devstack.types import ProbeTarget, ReadinessCheck


def make_check(
    *,
    max_attempts: int = 5,
    expect_status: int | None = 200,
    timeout: float | None = None,
    interval: float = 0.01,
) -> ReadinessCheck:
    return ReadinessCheck(
        target=ProbeTarget(host="127.0.0.1", port=3002, path="/health"),
        max_attempts=max_attempts,
        expect_status=expect_status,
        interval=interval,
        attempt_timeout=0.5,
        initial_delay=0.0,
        timeout=timeout,
    )


def mock_client_factory(handler: Callable) -> Callable[..., httpx.AsyncClient]:
    def _factory(**kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return _factory


def succeed_after(failures: int, *, failure: str = "refused") -> Callable:
    calls = {"count": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] <= failures:
            if failure == "refused":
                raise httpx.ConnectError("connection refused", request=request)
            if failure == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(503)
        return httpx.Response(200, json={"status": "ok"})

    return _handler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
@pytest.mark.parametrize("failure", ["refused", "timeout", "status"])
async def test_probe_retries_until_ready(failure: str) -> None:
    probe = ReadinessProbe(
        make_check(),
        name="backend",
        client_factory=mock_client_factory(succeed_after(2, failure=failure)),
    )

    attempts = await probe.wait()

    assert attempts == 3
    assert probe.resolved is True


@pytest.mark.anyio
async def test_probe_requests_target_url() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200)

    probe = ReadinessProbe(
        make_check(), name="backend", client_factory=mock_client_factory(handler)
    )
    await probe.wait()

    assert seen == ["http://127.0.0.1:3002/health"]


@pytest.mark.anyio
async def test_probe_times_out_when_budget_exhausted() -> None:
    probe = ReadinessProbe(
        make_check(max_attempts=4),
        name="backend",
        client_factory=mock_client_factory(lambda request: httpx.Response(503)),
    )

    with pytest.raises(ReadinessTimeout) as excinfo:
        await probe.wait()

    assert excinfo.value.stage == "backend"
    assert excinfo.value.attempts == 4
    assert probe.attempts == 4
    assert probe.resolved is False


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("ready_after", "expect_ready"), [(3, True), (5, True), (6, False), (20, False)]
)
async def test_probe_resolves_once_depending_on_when_target_recovers(
    ready_after: int, expect_ready: bool
) -> None:
    probe = ReadinessProbe(
        make_check(max_attempts=5),
        name="backend",
        client_factory=mock_client_factory(succeed_after(ready_after - 1)),
    )

    if expect_ready:
        assert await probe.wait() == ready_after
    else:
        with pytest.raises(ReadinessTimeout):
            await probe.wait()
    assert probe.resolved is expect_ready


@pytest.mark.anyio
async def test_connection_only_probe_accepts_any_status() -> None:
    probe = ReadinessProbe(
        make_check(expect_status=None),
        name="frontend",
        client_factory=mock_client_factory(lambda request: httpx.Response(404)),
    )

    assert await probe.wait() == 1


@pytest.mark.anyio
async def test_probe_cannot_be_reused() -> None:
    probe = ReadinessProbe(
        make_check(),
        name="backend",
        client_factory=mock_client_factory(lambda request: httpx.Response(200)),
    )
    await probe.wait()

    with pytest.raises(RuntimeError):
        await probe.wait()


@pytest.mark.anyio
async def test_probe_never_overlaps_attempts() -> None:
    active = 0
    peak = 0
    calls = 0

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak, calls
        active += 1
        peak = max(peak, active)
        calls += 1
        await asyncio.sleep(0.02)
        active -= 1
        return httpx.Response(200 if calls >= 4 else 503)

    probe = ReadinessProbe(
        make_check(max_attempts=6, interval=0.005),
        name="backend",
        client_factory=mock_client_factory(slow_handler),
    )

    assert await probe.wait() == 4
    assert peak == 1
    assert probe.in_flight == 0


@pytest.mark.anyio
async def test_overall_timeout_stops_before_max_attempts() -> None:
    clock = FakeClock()
    probe = ReadinessProbe(
        make_check(max_attempts=10, interval=1.0, timeout=2.5),
        name="backend",
        client_factory=mock_client_factory(lambda request: httpx.Response(503)),
        sleep=clock.sleep,
        clock=clock,
    )

    with pytest.raises(ReadinessTimeout):
        await probe.wait()

    assert probe.attempts == 3


@pytest.mark.anyio
async def test_initial_delay_precedes_first_attempt() -> None:
    clock = FakeClock()
    attempt_times: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempt_times.append(clock.now)
        return httpx.Response(200 if len(attempt_times) == 2 else 503)

    check = ReadinessCheck(
        target=ProbeTarget(host="127.0.0.1", port=3002, path="/health"),
        max_attempts=5,
        expect_status=200,
        interval=1.0,
        initial_delay=2.0,
    )
    probe = ReadinessProbe(
        check,
        name="backend",
        client_factory=mock_client_factory(handler),
        sleep=clock.sleep,
        clock=clock,
    )

    await probe.wait()

    assert attempt_times == [2.0, 3.0]


async def start_local_server(handler: Callable) -> tuple[asyncio.AbstractServer, int]:
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


def local_check(port: int, *, expect_status: int | None, max_attempts: int) -> ReadinessCheck:
    return ReadinessCheck(
        target=ProbeTarget(host="127.0.0.1", port=port, path="/"),
        max_attempts=max_attempts,
        expect_status=expect_status,
        interval=1.0,
        attempt_timeout=0.2,
        initial_delay=0.0,
    )


@pytest.mark.anyio
async def test_connection_only_check_accepts_silent_listener() -> None:
    accepted: list[int] = []

    async def silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        accepted.append(1)
        await reader.read()
        writer.close()

    server, port = await start_local_server(silent)
    try:
        probe = ReadinessProbe(
            local_check(port, expect_status=None, max_attempts=3), name="frontend"
        )
        assert await probe.wait() == 1
    finally:
        server.close()

    assert accepted == [1]
    assert probe.resolved is True


@pytest.mark.anyio
async def test_status_check_does_not_accept_silent_listener() -> None:
    async def silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.read()
        writer.close()

    server, port = await start_local_server(silent)
    try:
        probe = ReadinessProbe(
            local_check(port, expect_status=200, max_attempts=1), name="backend"
        )
        with pytest.raises(ReadinessTimeout):
            await probe.wait()
    finally:
        server.close()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "error", [httpx.ReadError, httpx.RemoteProtocolError, httpx.ReadTimeout]
)
async def test_connection_only_check_accepts_errors_after_connect(error: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error("connection dropped", request=request)

    probe = ReadinessProbe(
        make_check(expect_status=None),
        name="frontend",
        client_factory=mock_client_factory(handler),
    )

    assert await probe.wait() == 1


@pytest.mark.anyio
async def test_connection_only_check_retries_refused_connections() -> None:
    probe = ReadinessProbe(
        make_check(expect_status=None, max_attempts=3),
        name="frontend",
        client_factory=mock_client_factory(succeed_after(5)),
    )

    with pytest.raises(ReadinessTimeout):
        await probe.wait()
    assert probe.attempts == 3


@pytest.mark.anyio
async def test_attempt_timeout_bounds_slow_responses() -> None:
    async def trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            writer.write(b"HTTP/1.1 200 OK\r\nX-Pad: ")
            while True:
                writer.write(b"a")
                await writer.drain()
                await asyncio.sleep(0.1)
        except ConnectionError:
            writer.close()

    server, port = await start_local_server(trickle)
    check = local_check(port, expect_status=200, max_attempts=1)
    try:
        probe = ReadinessProbe(check, name="backend")
        started = time.monotonic()
        with pytest.raises(ReadinessTimeout):
            await probe.wait()
        elapsed = time.monotonic() - started
    finally:
        server.close()

    assert elapsed < check.interval
    assert probe.in_flight == 0
