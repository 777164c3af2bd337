"""Sandbox option types: genesis accounts and per-instance configuration."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from near_sandbox.errors import DuplicateAccountError, SandboxConfigError
from near_sandbox.json_types import JsonValue
from near_sandbox.merge_patch import coerce_patch

DEFAULT_GENESIS_ACCOUNT = "sandbox"
DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY = (  # noqa: S105 - well-known sandbox-only key
    "ed25519:3tgdk2wPraJzT4nsTuf86UX41xgPNk3MHnq8epARMdBNs29AFEztAuaQ7iHddDfXG9F2RzV1XNQYgJyAyoW51UBB"
)
DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY = "ed25519:5BGSaf6YjVm7565VzWQHNxoyEjwr3jUpRJSGjREvU9dB"
DEFAULT_GENESIS_ACCOUNT_BALANCE = 10_000 * 10**24

_U128_LIMIT = 2**128

JsonPatch = Mapping[str, JsonValue] | str


@dataclass(frozen=True, slots=True)
class GenesisAccount:
    """Account injected into genesis; `balance` is in yoctoNEAR."""

    account_id: str
    public_key: str
    private_key: str
    balance: int = DEFAULT_GENESIS_ACCOUNT_BALANCE

    def __post_init__(self) -> None:
        if not self.account_id:
            raise SandboxConfigError("genesis account id must be non-empty")
        if "/" in self.account_id or "\\" in self.account_id:
            raise SandboxConfigError(f"genesis account id contains a path separator: {self.account_id!r}")
        if isinstance(self.balance, bool) or not isinstance(self.balance, int):
            raise SandboxConfigError(f"balance for {self.account_id!r} must be an integer")
        if not 0 <= self.balance < _U128_LIMIT:
            raise SandboxConfigError(f"balance for {self.account_id!r} must fit in an unsigned 128-bit integer")

    @classmethod
    def default(cls) -> GenesisAccount:
        """The well-known `sandbox` account every sandbox genesis carries."""
        return cls(
            account_id=DEFAULT_GENESIS_ACCOUNT,
            public_key=DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY,
            private_key=DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY,
            balance=DEFAULT_GENESIS_ACCOUNT_BALANCE,
        )


@dataclass(frozen=True)
class SandboxConfig:
    """Per-instance overrides; every field is optional and defaults to "leave as is"."""

    additional_genesis: JsonPatch | None = None
    additional_accounts: Sequence[GenesisAccount] = field(default_factory=tuple)
    additional_config: JsonPatch | None = None
    max_payload_size: int | None = None
    max_open_files: int | None = None
    rpc_port: int | None = None
    net_port: int | None = None

    def genesis_accounts(self) -> tuple[GenesisAccount, ...]:
        """Default account followed by caller-supplied accounts."""
        return (GenesisAccount.default(), *self.additional_accounts)


def validate_config(config: SandboxConfig) -> None:
    """Reject malformed patches and duplicate accounts before anything is spawned."""

    coerce_patch(config.additional_genesis, name="additional_genesis")
    coerce_patch(config.additional_config, name="additional_config")

    seen: set[str] = set()
    for account in config.genesis_accounts():
        if account.account_id in seen:
            raise DuplicateAccountError(account.account_id)
        seen.add(account.account_id)

    for name in ("max_payload_size", "max_open_files"):
        value = getattr(config, name)
        if value is not None and value < 0:
            raise SandboxConfigError(f"{name} must be non-negative, got {value}")
    for name in ("rpc_port", "net_port"):
        value = getattr(config, name)
        if value is not None and not 0 <= value <= 65535:
            raise SandboxConfigError(f"{name} must be a TCP port, got {value}")


__all__ = [
    "DEFAULT_GENESIS_ACCOUNT",
    "DEFAULT_GENESIS_ACCOUNT_BALANCE",
    "DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY",
    "DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY",
    "GenesisAccount",
    "SandboxConfig",
    "validate_config",
]
