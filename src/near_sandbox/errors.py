"""Exception hierarchy raised by the sandbox lifecycle."""

from __future__ import annotations

from pathlib import Path


class SandboxError(Exception):
    """Base class for sandbox-specific failures."""


# ---------------------------------------------------------------------------
# binary acquisition


class AcquisitionError(SandboxError):
    """Raised when the node binary cannot be made available locally."""


class UnsupportedPlatformError(AcquisitionError):
    """Raised when no prebuilt binary exists for the current OS/architecture."""

    def __init__(self, system: str, machine: str) -> None:
        super().__init__(f"unsupported platform for near-sandbox: system={system} machine={machine}")
        self.system = system
        self.machine = machine


class DownloadError(AcquisitionError):
    """Raised when the binary archive could not be fetched."""

    def __init__(self, url: str, version: str, reason: str) -> None:
        super().__init__(f"failed to download near-sandbox {version} from {url}: {reason}")
        self.url = url
        self.version = version
        self.reason = reason


class ExtractionError(AcquisitionError):
    """Raised when the downloaded archive does not yield an executable."""

    def __init__(self, archive: Path, version: str, reason: str) -> None:
        super().__init__(f"failed to extract near-sandbox {version} from {archive}: {reason}")
        self.archive = archive
        self.version = version
        self.reason = reason


class LockTimeoutError(AcquisitionError):
    """Raised when another process holds the cache lock for too long."""

    def __init__(self, lock_path: Path, timeout: float) -> None:
        super().__init__(f"timed out after {timeout}s waiting for binary cache lock {lock_path}")
        self.lock_path = lock_path
        self.timeout = timeout


# ---------------------------------------------------------------------------
# configuration synthesis


class SandboxConfigError(SandboxError):
    """Raised when the sandbox home directory cannot be configured."""


class MalformedPatchError(SandboxConfigError):
    """Raised when a genesis/config patch is not a JSON object."""


class DuplicateAccountError(SandboxConfigError):
    """Raised when two genesis accounts share an account id."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"duplicate genesis account id: {account_id!r}")
        self.account_id = account_id


class HomeInitError(SandboxConfigError):
    """Raised when `<binary> init` exits unsuccessfully."""

    def __init__(self, home_dir: Path, returncode: int, output: str) -> None:
        detail = output.strip()
        if len(detail) > 500:
            detail = detail[-500:]
        super().__init__(f"near-sandbox init failed in {home_dir} (returncode={returncode}): {detail}")
        self.home_dir = home_dir
        self.returncode = returncode
        self.output = output


class SettingsError(SandboxConfigError):
    """Raised when sandbox environment variables cannot be parsed."""


# ---------------------------------------------------------------------------
# process lifecycle


class SpawnError(SandboxError):
    """Raised when the node executable cannot be started."""

    def __init__(self, binary: Path, reason: str) -> None:
        super().__init__(f"failed to start {binary}: {reason}")
        self.binary = binary
        self.reason = reason


class ReadinessError(SandboxError):
    """Raised when a spawned node never becomes ready to serve RPC."""


class ReadinessTimeoutError(ReadinessError):
    """Raised when the readiness deadline elapses."""

    def __init__(self, timeout: float, phase: str, last_error: str | None = None) -> None:
        message = f"sandbox did not become ready within {timeout}s (phase={phase})"
        if last_error:
            message = f"{message}: last_error={last_error}"
        super().__init__(message)
        self.timeout = timeout
        self.phase = phase
        self.last_error = last_error


class ProcessExitedError(ReadinessError):
    """Raised when the node process exits before it becomes ready."""

    def __init__(self, returncode: int, log_tail: str) -> None:
        message = f"sandbox process exited before becoming ready (returncode={returncode})"
        if log_tail:
            message = f"{message}\n{log_tail}"
        super().__init__(message)
        self.returncode = returncode
        self.log_tail = log_tail


__all__ = [
    "AcquisitionError",
    "DownloadError",
    "DuplicateAccountError",
    "ExtractionError",
    "HomeInitError",
    "LockTimeoutError",
    "MalformedPatchError",
    "ProcessExitedError",
    "ReadinessError",
    "ReadinessTimeoutError",
    "SandboxConfigError",
    "SandboxError",
    "SettingsError",
    "SpawnError",
    "UnsupportedPlatformError",
]
