"""Sandbox handle and the launch pipeline behind it.

`resolve binary -> init + patch home dir -> spawn node -> wait for RPC`,
strictly in that order. The returned `Sandbox` owns the process and the home
directory; closing it (explicitly, via `async with`, or when it is garbage
collected) kills the node and deletes the directory.
"""

from __future__ import annotations

import logging
import shutil
import sys
import tempfile
import weakref
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

import httpx

from near_sandbox.binary import DEFAULT_NEAR_SANDBOX_VERSION, BinaryResolver
from near_sandbox.config.settings import SandboxSettings, load_settings
from near_sandbox.home import synthesize_home
from near_sandbox.options import SandboxConfig, validate_config
from near_sandbox.process import DEFAULT_TERMINATE_GRACE_SECONDS, LineConsumer, NodeProcess, node_env
from near_sandbox.readiness import (
    RPC_STARTUP_LOG_DIRECTIVES,
    ReadinessProbe,
    RpcAddressScanner,
    parse_bind_address,
)

logger = logging.getLogger(__name__)


def _reap(process: NodeProcess, home_dir: Path) -> None:
    process.kill_now()
    shutil.rmtree(home_dir, ignore_errors=True)


def _echo_to_stderr(line: str) -> None:
    sys.stderr.write(f"{line}\n")
    sys.stderr.flush()


class Sandbox:
    """A ready sandbox node bound to a loopback RPC address."""

    def __init__(self, *, rpc_addr: str, home_dir: Path, process: NodeProcess, version: str) -> None:
        self._rpc_addr = rpc_addr
        self._home_dir = home_dir
        self._process = process
        self._version = version
        self._closed = False
        self._finalizer = weakref.finalize(self, _reap, process, home_dir)

    # ------------------------------------------------------------------
    # construction

    @classmethod
    async def start(cls) -> Sandbox:
        """Start a sandbox with the default configuration and version."""
        return await SandboxLauncher().launch()

    @classmethod
    async def start_with_version(cls, version: str) -> Sandbox:
        return await SandboxLauncher().launch(version=version)

    @classmethod
    async def start_with_config(cls, config: SandboxConfig) -> Sandbox:
        return await SandboxLauncher().launch(config)

    @classmethod
    async def start_with_config_and_version(cls, config: SandboxConfig, version: str) -> Sandbox:
        return await SandboxLauncher().launch(config, version)

    # ------------------------------------------------------------------
    # accessors

    @property
    def rpc_addr(self) -> str:
        """Base URL of the node's JSON-RPC endpoint, e.g. `http://127.0.0.1:3030`."""
        return self._rpc_addr

    @property
    def rpc_port(self) -> int:
        return parse_bind_address(self._rpc_addr.removeprefix("http://"))[1]

    @property
    def home_dir(self) -> Path:
        return self._home_dir

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def version(self) -> str:
        return self._version

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait(self) -> int:
        """Block until the node exits on its own; returns its exit code."""
        return await self._process.wait()

    # ------------------------------------------------------------------
    # teardown

    async def aclose(self, grace: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None:
        """Terminate the node and delete its home directory. Idempotent."""

        if self._closed:
            return
        self._closed = True
        logger.info("cleaning up sandbox", extra={"data": {"pid": self.pid, "home_dir": self._home_dir}})
        try:
            await self._process.terminate(grace)
        finally:
            self._finalizer()

    def close(self) -> None:
        """Synchronous teardown: SIGKILL without waiting, then delete the home directory."""

        if self._closed:
            return
        self._closed = True
        logger.info("cleaning up sandbox", extra={"data": {"pid": self.pid, "home_dir": self._home_dir}})
        self._finalizer()

    async def __aenter__(self) -> Sandbox:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "running"
        return f"Sandbox(rpc_addr={self._rpc_addr!r}, pid={self.pid}, version={self._version!r}, {state})"


class SandboxLauncher:
    """Runs the launch pipeline with injectable collaborators."""

    def __init__(
        self,
        *,
        settings: SandboxSettings | None = None,
        resolver: BinaryResolver | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        home_root: Path | None = None,
        node_log_consumer: LineConsumer | None = None,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._client_factory = client_factory
        self._home_root = home_root
        self._node_log_consumer = node_log_consumer

    @property
    def settings(self) -> SandboxSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    async def launch(self, config: SandboxConfig | None = None, version: str | None = None) -> Sandbox:
        config = config or SandboxConfig()
        settings = self.settings
        validate_config(config)

        resolver = self._resolver or BinaryResolver(settings=settings)
        binary = await resolver.ensure(version)

        if self._home_root is not None:
            self._home_root.mkdir(parents=True, exist_ok=True)
        home_dir = Path(tempfile.mkdtemp(prefix="near-sandbox-", dir=self._home_root))
        process: NodeProcess | None = None
        try:
            bind_addr = await synthesize_home(binary, home_dir, config, settings, env=node_env(settings))
            discover = parse_bind_address(bind_addr)[1] == 0
            scanner = RpcAddressScanner()
            consumers: list[LineConsumer] = [scanner.feed]
            if settings.enable_node_log:
                consumers.append(self._node_log_consumer or _echo_to_stderr)
            process = await NodeProcess.spawn(
                binary,
                home_dir,
                env=node_env(settings, log_directives=RPC_STARTUP_LOG_DIRECTIVES if discover else None),
                line_consumers=consumers,
            )
            probe = ReadinessProbe(timeout=settings.rpc_timeout_seconds, client_factory=self._client_factory)
            rpc_url = await probe.wait_until_ready(process, bind_addr=bind_addr, scanner=scanner)
            return Sandbox(
                rpc_addr=rpc_url,
                home_dir=home_dir,
                process=process,
                version=version or DEFAULT_NEAR_SANDBOX_VERSION,
            )
        except BaseException as exc:
            logger.warning(
                "sandbox startup failed; cleaning up",
                extra={
                    "data": {
                        "error": f"{type(exc).__name__}: {exc}",
                        "pid": process.pid if process is not None else None,
                        "home_dir": home_dir,
                    }
                },
            )
            await _discard(process, home_dir)
            raise


async def _discard(process: NodeProcess | None, home_dir: Path) -> None:
    try:
        if process is not None:
            await process.terminate()
    finally:
        if process is not None:
            process.kill_now()
        shutil.rmtree(home_dir, ignore_errors=True)


__all__ = ["Sandbox", "SandboxLauncher"]
