"""Spawn and supervise the sandbox node process."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from pathlib import Path

from near_sandbox.config.settings import SandboxSettings
from near_sandbox.errors import SpawnError

logger = logging.getLogger(__name__)

LineConsumer = Callable[[str], None]

# nearcore ignores a plain level here, so quiet the noisy targets explicitly.
QUIET_NODE_LOG_FILTER = "near=error,stats=error,network=error"
DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
_LOG_TAIL_LINES = 50
_READER_DRAIN_SECONDS = 1.0


def _merge_directives(log_filter: str, directives: Mapping[str, str]) -> str:
    """Overlay `target=level` directives onto an env-filter string."""

    merged: dict[str, str] = {}
    for part in log_filter.split(","):
        part = part.strip()
        if not part:
            continue
        target, sep, level = part.partition("=")
        merged[target] = level if sep else ""
    merged.update(directives)
    return ",".join(f"{target}={level}" if level else target for target, level in merged.items())


def node_env(
    settings: SandboxSettings,
    *,
    log_directives: Mapping[str, str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for node subprocesses: inherited vars plus the node log filter.

    `NEAR_SANDBOX_LOG` is forwarded as `RUST_LOG` so it does not collide with
    the caller's own `RUST_LOG`. Without it, node logs stay quiet unless
    `NEAR_ENABLE_SANDBOX_LOG` is set. `log_directives` are overlaid on the
    resulting filter.
    """

    env = dict(os.environ if base_env is None else base_env)
    log_filter: str | None
    if settings.node_log_filter:
        log_filter = settings.node_log_filter
    elif settings.enable_node_log:
        log_filter = env.get("RUST_LOG")
    else:
        log_filter = QUIET_NODE_LOG_FILTER

    if log_filter is not None and log_directives:
        log_filter = _merge_directives(log_filter, log_directives)
    if log_filter is not None:
        env["RUST_LOG"] = log_filter
    if settings.node_log_style:
        env["RUST_LOG_STYLE"] = settings.node_log_style
    return env


class NodeProcess:
    """Owns one running node: its handle, its output reader and its termination."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        binary: Path,
        line_consumers: Sequence[LineConsumer] = (),
    ) -> None:
        self._process = process
        self._binary = binary
        self._consumers = list(line_consumers)
        self._tail: deque[str] = deque(maxlen=_LOG_TAIL_LINES)
        self._reader = asyncio.create_task(self._read_output(), name=f"near-sandbox-output-{process.pid}")

    @classmethod
    async def spawn(
        cls,
        binary: Path,
        home_dir: Path,
        *,
        env: Mapping[str, str],
        line_consumers: Sequence[LineConsumer] = (),
        extra_args: Sequence[str] = (),
    ) -> NodeProcess:
        """Start `<binary> --home <home_dir> run` with stdout and stderr merged into one pipe."""

        args = [str(binary), "--home", str(home_dir), "run", *extra_args]
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=dict(env),
            )
        except OSError as exc:
            raise SpawnError(binary, str(exc)) from exc
        logger.info(
            "started sandbox process",
            extra={"data": {"pid": process.pid, "binary": binary, "home_dir": home_dir}},
        )
        return cls(process, binary, line_consumers)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def log_tail(self) -> str:
        return "\n".join(self._tail)

    async def wait(self) -> int:
        return await self._process.wait()

    async def _read_output(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Oversized line; the reader already discarded it.
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            self._tail.append(line)
            for consumer in self._consumers:
                try:
                    consumer(line)
                except Exception:
                    logger.exception("sandbox output consumer failed", extra={"data": {"pid": self.pid}})

    async def terminate(self, grace: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None:
        """SIGTERM, then SIGKILL after `grace`; safe to call any number of times."""

        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), grace)
            except TimeoutError:
                logger.warning(
                    "sandbox process ignored SIGTERM; killing",
                    extra={"data": {"pid": self.pid, "grace_s": grace}},
                )
                with suppress(ProcessLookupError):
                    self._process.kill()
                try:
                    await asyncio.wait_for(self._process.wait(), grace)
                except TimeoutError:
                    logger.error("sandbox process did not exit after SIGKILL", extra={"data": {"pid": self.pid}})
        await self._stop_reader()

    async def _stop_reader(self) -> None:
        if self._reader.done():
            return
        # Grandchildren can keep the pipe open past the node's exit.
        done, _ = await asyncio.wait({self._reader}, timeout=_READER_DRAIN_SECONDS)
        if not done:
            self._reader.cancel()

    def kill_now(self) -> None:
        """Synchronous best-effort SIGKILL for finalizers and sync teardown."""

        if self._process.returncode is None:
            try:
                self._process.kill()
            except (ProcessLookupError, RuntimeError):
                # Transport already closed together with its event loop.
                with suppress(ProcessLookupError, PermissionError):
                    os.kill(self._process.pid, signal.SIGKILL)
        if not self._reader.done():
            with suppress(RuntimeError):
                self._reader.cancel()


__all__ = [
    "DEFAULT_TERMINATE_GRACE_SECONDS",
    "LineConsumer",
    "NodeProcess",
    "QUIET_NODE_LOG_FILTER",
    "node_env",
]
