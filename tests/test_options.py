from __future__ import annotations

import pytest

from near_sandbox.errors import DuplicateAccountError, MalformedPatchError, SandboxConfigError
from near_sandbox.options import (
    DEFAULT_GENESIS_ACCOUNT,
    DEFAULT_GENESIS_ACCOUNT_BALANCE,
    GenesisAccount,
    SandboxConfig,
    validate_config,
)


def _account(account_id: str, balance: int = 10**24) -> GenesisAccount:
    return GenesisAccount(
        account_id=account_id,
        public_key="ed25519:6E8sCci9badyRkXb3JoRpBj5p8C6Tw41ELDZoiihKEtp",
        private_key="ed25519:3D4YudUahN1nawWogh8pAKSj92sUNMdbZGjn7kERKzYoTy8tnFQuwoGUC51DowKqorvkr2pytJSnwuSbsNVfqygr",
        balance=balance,
    )


def test_default_account_matches_well_known_values() -> None:
    account = GenesisAccount.default()

    assert account.account_id == DEFAULT_GENESIS_ACCOUNT == "sandbox"
    assert account.balance == DEFAULT_GENESIS_ACCOUNT_BALANCE == 10_000 * 10**24
    assert account.public_key.startswith("ed25519:")


def test_genesis_accounts_puts_default_first() -> None:
    config = SandboxConfig(additional_accounts=(_account("alice.sandbox"), _account("bob.sandbox")))

    ids = [account.account_id for account in config.genesis_accounts()]

    assert ids == ["sandbox", "alice.sandbox", "bob.sandbox"]


def test_balance_must_fit_u128() -> None:
    _account("max.sandbox", balance=2**128 - 1)
    with pytest.raises(SandboxConfigError, match="128-bit"):
        _account("overflow.sandbox", balance=2**128)


def test_balance_rejects_negative_and_non_integers() -> None:
    with pytest.raises(SandboxConfigError):
        _account("negative.sandbox", balance=-1)
    with pytest.raises(SandboxConfigError, match="integer"):
        _account("float.sandbox", balance=1.5)  # type: ignore[arg-type]
    with pytest.raises(SandboxConfigError, match="integer"):
        _account("bool.sandbox", balance=True)


@pytest.mark.parametrize("account_id", ["", "../escape", "dir\\name"])
def test_account_id_rejects_empty_and_path_like_values(account_id: str) -> None:
    with pytest.raises(SandboxConfigError):
        _account(account_id)


def test_validate_config_accepts_defaults() -> None:
    validate_config(SandboxConfig())


def test_validate_config_rejects_duplicate_additional_accounts() -> None:
    config = SandboxConfig(additional_accounts=(_account("alice.sandbox"), _account("alice.sandbox")))

    with pytest.raises(DuplicateAccountError) as excinfo:
        validate_config(config)
    assert excinfo.value.account_id == "alice.sandbox"


def test_validate_config_rejects_shadowing_default_account() -> None:
    config = SandboxConfig(additional_accounts=(_account("sandbox"),))

    with pytest.raises(DuplicateAccountError, match="'sandbox'"):
        validate_config(config)


def test_validate_config_rejects_malformed_patches() -> None:
    with pytest.raises(MalformedPatchError, match="additional_genesis"):
        validate_config(SandboxConfig(additional_genesis="[]"))
    with pytest.raises(MalformedPatchError, match="additional_config"):
        validate_config(SandboxConfig(additional_config="nope"))


def test_validate_config_checks_ports_and_sizes() -> None:
    with pytest.raises(SandboxConfigError, match="rpc_port"):
        validate_config(SandboxConfig(rpc_port=70_000))
    with pytest.raises(SandboxConfigError, match="max_open_files"):
        validate_config(SandboxConfig(max_open_files=-1))
