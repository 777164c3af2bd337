from __future__ import annotations

import asyncio

import httpx
import pytest

from near_sandbox.errors import ProcessExitedError, ReadinessTimeoutError, SandboxConfigError
from near_sandbox.readiness import (
    ReadinessProbe,
    ReadinessState,
    RpcAddressScanner,
    parse_bind_address,
)


class StubProcess:
    """Just enough of NodeProcess for the probe."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def log_tail(self) -> str:
        return "ERROR neard: boom"


def _client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _status_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"chain_id": "sandbox"})


def test_parse_bind_address() -> None:
    assert parse_bind_address("127.0.0.1:3030") == ("127.0.0.1", 3030)
    assert parse_bind_address("0.0.0.0:0") == ("127.0.0.1", 0)
    assert parse_bind_address(":8080") == ("127.0.0.1", 8080)


@pytest.mark.parametrize("addr", ["localhost", "127.0.0.1:", "127.0.0.1:port"])
def test_parse_bind_address_rejects_garbage(addr: str) -> None:
    with pytest.raises(SandboxConfigError):
        parse_bind_address(addr)


@pytest.mark.parametrize(
    "line",
    [
        "2024-05-01T10:00:00Z INFO near_jsonrpc: listening on 127.0.0.1:41234",
        "INFO network: Listening on http://127.0.0.1:41234",
        "\x1b[2m2024-05-01\x1b[0m \x1b[32m INFO\x1b[0m near_jsonrpc: Starting http server at addr=127.0.0.1:41234",
        "INFO near_jsonrpc: listening on 0.0.0.0:41234",
    ],
)
def test_scanner_recognises_bound_address(line: str) -> None:
    scanner = RpcAddressScanner()

    scanner.feed(line)

    assert scanner.address == "127.0.0.1:41234"


def test_scanner_ignores_unbound_port_and_noise() -> None:
    scanner = RpcAddressScanner()

    scanner.feed("INFO stats: #0 Waiting for peers 0 peers")
    scanner.feed("INFO near_jsonrpc: Starting http server at addr=127.0.0.1:0")
    assert scanner.address is None

    scanner.feed("INFO near_jsonrpc: listening on 127.0.0.1:5555")
    scanner.feed("INFO near_jsonrpc: listening on 127.0.0.1:6666")
    assert scanner.address == "127.0.0.1:5555"


@pytest.mark.anyio
async def test_scanner_wait_resolves_on_later_line() -> None:
    scanner = RpcAddressScanner()
    waiter = asyncio.ensure_future(scanner.wait())
    await asyncio.sleep(0)

    scanner.feed("listening on 127.0.0.1:9999")

    assert await asyncio.wait_for(waiter, 1.0) == "127.0.0.1:9999"


@pytest.mark.anyio
async def test_probe_polls_fixed_port_until_json() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if len(calls) < 3:
            return httpx.Response(503, text="starting up")
        return httpx.Response(200, json={"sync_info": {"latest_block_height": 1}})

    probe = ReadinessProbe(timeout=5.0, interval=0.01, client_factory=_client_factory(handler))

    url = await probe.wait_until_ready(StubProcess(), bind_addr="127.0.0.1:3030", scanner=RpcAddressScanner())

    assert url == "http://127.0.0.1:3030"
    assert calls == ["http://127.0.0.1:3030/status"] * 3
    assert probe.state is ReadinessState.READY


@pytest.mark.anyio
async def test_probe_discovers_port_from_logs() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return _status_ok(request)

    scanner = RpcAddressScanner()
    probe = ReadinessProbe(timeout=5.0, interval=0.01, client_factory=_client_factory(handler))
    task = asyncio.ensure_future(probe.wait_until_ready(StubProcess(), bind_addr="127.0.0.1:0", scanner=scanner))
    await asyncio.sleep(0.05)
    assert probe.state is ReadinessState.DISCOVERING_ADDRESS

    scanner.feed("INFO near_jsonrpc: listening on 127.0.0.1:40404")

    assert await asyncio.wait_for(task, 2.0) == "http://127.0.0.1:40404"
    assert seen == ["http://127.0.0.1:40404/status"]


@pytest.mark.anyio
async def test_probe_times_out_while_polling() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    probe = ReadinessProbe(timeout=0.3, interval=0.02, client_factory=_client_factory(refuse))

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await probe.wait_until_ready(StubProcess(), bind_addr="127.0.0.1:3030", scanner=RpcAddressScanner())

    assert excinfo.value.phase == "polling"
    assert "ConnectError" in (excinfo.value.last_error or "")
    assert probe.state is ReadinessState.FAILED


@pytest.mark.anyio
async def test_probe_times_out_while_discovering() -> None:
    probe = ReadinessProbe(timeout=0.2, client_factory=_client_factory(_status_ok))

    with pytest.raises(ReadinessTimeoutError, match="discovering_address"):
        await probe.wait_until_ready(StubProcess(), bind_addr="127.0.0.1:0", scanner=RpcAddressScanner())


@pytest.mark.anyio
async def test_probe_reports_process_exit_during_discovery() -> None:
    process = StubProcess()
    probe = ReadinessProbe(timeout=5.0, client_factory=_client_factory(_status_ok))
    task = asyncio.ensure_future(
        probe.wait_until_ready(process, bind_addr="127.0.0.1:0", scanner=RpcAddressScanner())
    )
    await asyncio.sleep(0.02)

    process.exit(3)

    with pytest.raises(ProcessExitedError) as excinfo:
        await asyncio.wait_for(task, 2.0)
    assert excinfo.value.returncode == 3
    assert "boom" in excinfo.value.log_tail


@pytest.mark.anyio
async def test_probe_reports_process_exit_during_polling() -> None:
    process = StubProcess()

    def handler(request: httpx.Request) -> httpx.Response:
        process.exit(1)
        return httpx.Response(502, text="bad gateway")

    probe = ReadinessProbe(timeout=5.0, interval=0.01, client_factory=_client_factory(handler))

    with pytest.raises(ProcessExitedError):
        await probe.wait_until_ready(process, bind_addr="127.0.0.1:3030", scanner=RpcAddressScanner())
