"""Wait for a spawned node to bind its RPC port and answer `/status`."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence
from enum import Enum

import httpx

from near_sandbox.errors import (
    ProcessExitedError,
    ReadinessTimeoutError,
    SandboxConfigError,
)
from near_sandbox.process import NodeProcess

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5
STATUS_PATH = "/status"
_REQUEST_TIMEOUT_SECONDS = 2.0

# Log targets that announce the bound RPC address; they must stay at INFO
# when the port is discovered from logs.
RPC_STARTUP_LOG_DIRECTIVES: dict[str, str] = {"network": "info", "near_jsonrpc": "info"}

_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_ADDRESS = r"(?P<host>\d{1,3}(?:\.\d{1,3}){3}):(?P<port>\d{1,5})"
# The wording belongs to the node binary and changes between releases.
DEFAULT_ADDRESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"[Ll]istening on\s+(?:https?://)?{_ADDRESS}"),
    re.compile(rf"Starting http server at addr={_ADDRESS}"),
)
_WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::", "[::]"})  # noqa: S104


class ReadinessState(str, Enum):
    """Startup phases of a sandbox node."""

    SPAWNED = "spawned"
    DISCOVERING_ADDRESS = "discovering_address"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"


def parse_bind_address(addr: str) -> tuple[str, int]:
    """Split `host:port`, mapping wildcard hosts to loopback."""

    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise SandboxConfigError(f"invalid RPC bind address: {addr!r}")
    if host in _WILDCARD_HOSTS:
        host = "127.0.0.1"
    return host, int(port)


class RpcAddressScanner:
    """Pick the bound RPC address out of node log lines.

    Everything that depends on the node's log wording lives here so it can be
    swapped for a structured readiness signal later.
    """

    def __init__(self, patterns: Sequence[re.Pattern[str]] = DEFAULT_ADDRESS_PATTERNS) -> None:
        self._patterns = tuple(patterns)
        self._address: str | None = None
        self._found: asyncio.Future[str] | None = None

    @property
    def address(self) -> str | None:
        return self._address

    def feed(self, line: str) -> None:
        if self._address is not None:
            return
        clean = _ANSI_ESCAPE_RE.sub("", line)
        for pattern in self._patterns:
            match = pattern.search(clean)
            if match is None or int(match["port"]) == 0:
                continue
            host, port = parse_bind_address(f"{match['host']}:{match['port']}")
            self._address = f"{host}:{port}"
            if self._found is not None and not self._found.done():
                self._found.set_result(self._address)
            return

    async def wait(self) -> str:
        if self._address is not None:
            return self._address
        if self._found is None:
            self._found = asyncio.get_running_loop().create_future()
        return await self._found


def _default_client() -> httpx.AsyncClient:
    # trust_env=False: proxies from the environment must not intercept loopback polls.
    return httpx.AsyncClient(timeout=_REQUEST_TIMEOUT_SECONDS, trust_env=False)


class ReadinessProbe:
    """Drives `SPAWNED -> DISCOVERING_ADDRESS -> POLLING -> READY` under one deadline."""

    def __init__(
        self,
        *,
        timeout: float,
        interval: float = POLL_INTERVAL_SECONDS,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._timeout = timeout
        self._interval = interval
        self._client_factory = client_factory or _default_client
        self._last_error: str | None = None
        self.state = ReadinessState.SPAWNED

    def _transition(self, state: ReadinessState) -> None:
        logger.debug("sandbox readiness %s -> %s", self.state.value, state.value)
        self.state = state

    async def wait_until_ready(
        self,
        process: NodeProcess,
        *,
        bind_addr: str,
        scanner: RpcAddressScanner,
    ) -> str:
        """Return the RPC base URL once `/status` answers with JSON."""

        start = time.monotonic()
        try:
            async with asyncio.timeout(self._timeout):
                address = await self._resolve_address(process, bind_addr, scanner)
                rpc_url = f"http://{address}"
                await self._poll(process, rpc_url)
        except TimeoutError as exc:
            phase = self.state
            self._transition(ReadinessState.FAILED)
            raise ReadinessTimeoutError(self._timeout, phase.value, self._last_error) from exc
        except BaseException:
            self._transition(ReadinessState.FAILED)
            raise
        self._transition(ReadinessState.READY)
        logger.info(
            "sandbox ready",
            extra={
                "data": {
                    "pid": process.pid,
                    "rpc_url": rpc_url,
                    "elapsed_s": round(time.monotonic() - start, 3),
                }
            },
        )
        return rpc_url

    async def _resolve_address(self, process: NodeProcess, bind_addr: str, scanner: RpcAddressScanner) -> str:
        host, port = parse_bind_address(bind_addr)
        if port != 0:
            return f"{host}:{port}"

        self._transition(ReadinessState.DISCOVERING_ADDRESS)
        found = asyncio.ensure_future(scanner.wait())
        exited = asyncio.ensure_future(process.wait())
        try:
            done, _ = await asyncio.wait({found, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (found, exited):
                if not task.done():
                    task.cancel()
        if found in done:
            return found.result()
        raise ProcessExitedError(exited.result(), process.log_tail())

    async def _poll(self, process: NodeProcess, rpc_url: str) -> None:
        self._transition(ReadinessState.POLLING)
        url = f"{rpc_url}{STATUS_PATH}"
        async with self._client_factory() as client:
            while True:
                if process.returncode is not None:
                    raise ProcessExitedError(process.returncode, process.log_tail())
                try:
                    response = await client.get(url)
                    response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    self._last_error = f"{type(exc).__name__}: {exc}"
                else:
                    return
                await asyncio.sleep(self._interval)


__all__ = [
    "DEFAULT_ADDRESS_PATTERNS",
    "POLL_INTERVAL_SECONDS",
    "RPC_STARTUP_LOG_DIRECTIVES",
    "ReadinessProbe",
    "ReadinessState",
    "RpcAddressScanner",
    "parse_bind_address",
]
