from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from near_sandbox.config.settings import SandboxSettings
from near_sandbox.errors import SpawnError
from near_sandbox.home import init_home_dir
from near_sandbox.process import QUIET_NODE_LOG_FILTER, NodeProcess, node_env


def test_node_env_is_quiet_by_default() -> None:
    env = node_env(SandboxSettings(), base_env={"PATH": "/usr/bin", "RUST_LOG": "debug"})

    assert env["RUST_LOG"] == QUIET_NODE_LOG_FILTER
    assert env["PATH"] == "/usr/bin"
    assert "RUST_LOG_STYLE" not in env


def test_node_env_keeps_inherited_filter_when_logs_enabled() -> None:
    env = node_env(SandboxSettings(enable_node_log=True), base_env={"RUST_LOG": "near=debug"})

    assert env["RUST_LOG"] == "near=debug"


def test_node_env_without_any_filter_leaves_rust_log_unset() -> None:
    env = node_env(SandboxSettings(enable_node_log=True), base_env={})

    assert "RUST_LOG" not in env


def test_node_env_forwards_sandbox_specific_filter_and_style() -> None:
    settings = SandboxSettings(node_log_filter="near=info,runtime=warn", node_log_style="never")

    env = node_env(settings, base_env={"RUST_LOG": "trace"})

    assert env["RUST_LOG"] == "near=info,runtime=warn"
    assert env["RUST_LOG_STYLE"] == "never"


def test_node_env_overlays_directives() -> None:
    env = node_env(SandboxSettings(), log_directives={"network": "info", "near_jsonrpc": "info"}, base_env={})

    assert env["RUST_LOG"] == "near=error,stats=error,network=info,near_jsonrpc=info"


def test_node_env_directives_keep_bare_level() -> None:
    settings = SandboxSettings(node_log_filter="warn")

    env = node_env(settings, log_directives={"near_jsonrpc": "info"}, base_env={})

    assert env["RUST_LOG"] == "warn,near_jsonrpc=info"


def test_node_env_does_not_touch_os_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUST_LOG", "trace")

    node_env(SandboxSettings())

    assert os.environ["RUST_LOG"] == "trace"


@pytest.fixture
async def initialized_home(anyio_backend: str, fake_binary: Path, tmp_path: Path) -> Path:
    home_dir = tmp_path / "node"
    home_dir.mkdir()
    await init_home_dir(fake_binary, home_dir)
    config_path = home_dir / "config.json"
    config_path.write_text(
        config_path.read_text(encoding="utf-8").replace("0.0.0.0:3030", "127.0.0.1:0"),
        encoding="utf-8",
    )
    return home_dir


@pytest.mark.anyio
async def test_spawn_streams_output_to_consumers(fake_binary: Path, initialized_home: Path) -> None:
    lines: list[str] = []
    listening = asyncio.Event()

    def consume(line: str) -> None:
        lines.append(line)
        if "listening on" in line:
            listening.set()

    process = await NodeProcess.spawn(
        fake_binary, initialized_home, env=node_env(SandboxSettings()), line_consumers=[consume]
    )
    try:
        await asyncio.wait_for(listening.wait(), 10.0)
        assert process.returncode is None
        assert "listening on 127.0.0.1:" in process.log_tail()
    finally:
        await process.terminate(grace=2.0)

    assert process.returncode is not None
    with pytest.raises(ProcessLookupError):
        os.kill(process.pid, 0)


@pytest.mark.anyio
async def test_failing_consumer_does_not_stop_reader(fake_binary: Path, initialized_home: Path) -> None:
    seen: list[str] = []

    def explode(line: str) -> None:
        raise RuntimeError("consumer bug")

    process = await NodeProcess.spawn(
        fake_binary,
        initialized_home,
        env={**node_env(SandboxSettings()), "FAKE_NEARD_EXIT_CODE": "4"},
        line_consumers=[explode, seen.append],
    )

    assert await asyncio.wait_for(process.wait(), 10.0) == 4
    await process.terminate()
    assert any("exiting early" in line for line in seen)


@pytest.mark.anyio
async def test_terminate_escalates_to_sigkill(fake_binary: Path, initialized_home: Path) -> None:
    env = {**node_env(SandboxSettings()), "FAKE_NEARD_IGNORE_SIGTERM": "1"}
    lines: list[str] = []
    process = await NodeProcess.spawn(fake_binary, initialized_home, env=env, line_consumers=[lines.append])
    for _ in range(200):
        if any("listening on" in line for line in lines):
            break
        await asyncio.sleep(0.05)

    await process.terminate(grace=0.3)

    assert process.returncode is not None
    assert process.returncode < 0
    # Second call is a no-op.
    await process.terminate(grace=0.3)


@pytest.mark.anyio
async def test_spawn_missing_binary_raises(tmp_path: Path) -> None:
    with pytest.raises(SpawnError) as excinfo:
        await NodeProcess.spawn(tmp_path / "nope" / "near-sandbox", tmp_path, env={})
    assert excinfo.value.binary == tmp_path / "nope" / "near-sandbox"
