"""Launch local NEAR sandbox nodes for tests and development."""

from near_sandbox.binary import DEFAULT_NEAR_SANDBOX_VERSION, BinaryResolver, ensure_sandbox_bin
from near_sandbox.config.settings import SandboxSettings
from near_sandbox.errors import (
    AcquisitionError,
    DownloadError,
    DuplicateAccountError,
    ExtractionError,
    HomeInitError,
    LockTimeoutError,
    MalformedPatchError,
    ProcessExitedError,
    ReadinessError,
    ReadinessTimeoutError,
    SandboxConfigError,
    SandboxError,
    SettingsError,
    SpawnError,
    UnsupportedPlatformError,
)
from near_sandbox.options import (
    DEFAULT_GENESIS_ACCOUNT,
    DEFAULT_GENESIS_ACCOUNT_BALANCE,
    DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY,
    DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY,
    GenesisAccount,
    SandboxConfig,
)
from near_sandbox.sandbox import Sandbox, SandboxLauncher

__all__ = [
    "AcquisitionError",
    "BinaryResolver",
    "DEFAULT_GENESIS_ACCOUNT",
    "DEFAULT_GENESIS_ACCOUNT_BALANCE",
    "DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY",
    "DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY",
    "DEFAULT_NEAR_SANDBOX_VERSION",
    "DownloadError",
    "DuplicateAccountError",
    "ExtractionError",
    "GenesisAccount",
    "HomeInitError",
    "LockTimeoutError",
    "MalformedPatchError",
    "ProcessExitedError",
    "ReadinessError",
    "ReadinessTimeoutError",
    "Sandbox",
    "SandboxConfig",
    "SandboxConfigError",
    "SandboxError",
    "SandboxLauncher",
    "SandboxSettings",
    "SettingsError",
    "SpawnError",
    "UnsupportedPlatformError",
    "ensure_sandbox_bin",
]
