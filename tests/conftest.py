from __future__ import annotations

import sys
from pathlib import Path

import pytest

from near_sandbox.config.settings import SandboxSettings

FAKE_NEARD_SOURCE = Path(__file__).with_name("fake_neard.py")

_SANDBOX_ENV_VARS = (
    "NEAR_SANDBOX_BIN_PATH",
    "SANDBOX_ARTIFACT_URL",
    "NEAR_SANDBOX_CACHE_DIR",
    "NEAR_SANDBOX_LOCK_TIMEOUT_SECS",
    "NEAR_RPC_TIMEOUT_SECS",
    "NEAR_ENABLE_SANDBOX_LOG",
    "NEAR_SANDBOX_LOG",
    "NEAR_SANDBOX_LOG_STYLE",
    "NEAR_SANDBOX_MAX_PAYLOAD_SIZE",
    "NEAR_SANDBOX_MAX_FILES",
    "NEAR_SANDBOX_LOG_JSON",
    "RUST_LOG",
    "RUST_LOG_STYLE",
)


@pytest.fixture
def anyio_backend() -> str:
    # Subprocess supervision is asyncio-only.
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in _SANDBOX_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the settings under test.
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """Executable stand-in for the node binary, run by the current interpreter."""

    target = tmp_path / "bin" / "near-sandbox"
    target.parent.mkdir()
    target.write_text(f"#!{sys.executable}\n" + FAKE_NEARD_SOURCE.read_text(encoding="utf-8"), encoding="utf-8")
    target.chmod(0o755)
    return target


@pytest.fixture
def sandbox_settings(fake_binary: Path, tmp_path: Path) -> SandboxSettings:
    return SandboxSettings(
        bin_path=fake_binary,
        cache_dir=tmp_path / "cache",
        rpc_timeout_seconds=15.0,
    )

