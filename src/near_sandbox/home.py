"""Materialize a sandbox home directory: baseline init, then genesis/config patches.

The node owns the schema of `genesis.json` and `config.json` and it changes
between releases, so documents are treated as JSON trees and only the few
fields the sandbox depends on are touched directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from contextlib import suppress
from pathlib import Path

from near_sandbox.config.settings import SandboxSettings
from near_sandbox.errors import (
    DuplicateAccountError,
    HomeInitError,
    SandboxConfigError,
    SpawnError,
)
from near_sandbox.json_types import JsonObject, JsonValue
from near_sandbox.merge_patch import apply_merge_patch, coerce_patch
from near_sandbox.options import GenesisAccount, SandboxConfig, validate_config

logger = logging.getLogger(__name__)

GENESIS_FILE = "genesis.json"
CONFIG_FILE = "config.json"
DEFAULT_RPC_HOST = "127.0.0.1"
EMPTY_CODE_HASH = "11111111111111111111111111111111"
ACCOUNT_STORAGE_USAGE = 182
INIT_TIMEOUT_SECONDS = 120.0

_RESERVED_KEY_FILES = frozenset({GENESIS_FILE, CONFIG_FILE, "node_key.json", "validator_key.json"})


async def init_home_dir(
    binary: Path,
    home_dir: Path,
    *,
    env: Mapping[str, str] | None = None,
    extra_args: Sequence[str] = (),
    timeout: float = INIT_TIMEOUT_SECONDS,
) -> None:
    """Run `<binary> --home <dir> init` to produce the baseline documents."""

    args = [str(binary), "--home", str(home_dir), "init", *extra_args]
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        raise SpawnError(binary, str(exc)) from exc

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
    except TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise HomeInitError(home_dir, -1, f"init did not finish within {timeout}s") from None

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    returncode = process.returncode if process.returncode is not None else -1
    logger.info(
        "sandbox init finished",
        extra={"data": {"home_dir": home_dir, "returncode": returncode}},
    )
    if returncode != 0:
        raise HomeInitError(home_dir, returncode, output)


def _load_document(path: Path) -> JsonObject:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SandboxConfigError(f"cannot read {path}: {exc}") from exc
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SandboxConfigError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise SandboxConfigError(f"{path} must contain a JSON object")
    return document


def _write_document(path: Path, document: JsonValue) -> None:
    try:
        path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        raise SandboxConfigError(f"cannot write {path}: {exc}") from exc


def _account_records(account: GenesisAccount) -> list[JsonValue]:
    return [
        {
            "Account": {
                "account_id": account.account_id,
                "account": {
                    "amount": str(account.balance),
                    "locked": "0",
                    "code_hash": EMPTY_CODE_HASH,
                    "storage_usage": ACCOUNT_STORAGE_USAGE,
                },
            }
        },
        {
            "AccessKey": {
                "account_id": account.account_id,
                "public_key": account.public_key,
                "access_key": {"nonce": 0, "permission": "FullAccess"},
            }
        },
    ]


def _existing_account_ids(records: list[JsonValue]) -> set[str]:
    ids: set[str] = set()
    for record in records:
        if isinstance(record, dict):
            account = record.get("Account")
            if isinstance(account, dict) and isinstance(account.get("account_id"), str):
                ids.add(account["account_id"])
    return ids


def write_genesis(home_dir: Path, config: SandboxConfig) -> JsonObject:
    """Patch the baseline genesis and append the sandbox accounts."""

    path = home_dir / GENESIS_FILE
    genesis = _load_document(path)
    patch = coerce_patch(config.additional_genesis, name="additional_genesis")
    if patch is not None:
        genesis = apply_merge_patch(genesis, patch)

    records = genesis.get("records", [])
    if not isinstance(records, list):
        raise SandboxConfigError(f"{path}: 'records' must be a list")
    records = list(records)

    try:
        total_supply = int(str(genesis.get("total_supply", "0")))
    except ValueError as exc:
        raise SandboxConfigError(f"{path}: 'total_supply' is not an integer") from exc

    seen = _existing_account_ids(records)
    for account in config.genesis_accounts():
        if account.account_id in seen:
            raise DuplicateAccountError(account.account_id)
        seen.add(account.account_id)
        records.extend(_account_records(account))
        total_supply += account.balance

    genesis["records"] = records
    genesis["total_supply"] = str(total_supply)
    _write_document(path, genesis)
    _save_account_keys(home_dir, config.genesis_accounts())
    return genesis


def _save_account_keys(home_dir: Path, accounts: Sequence[GenesisAccount]) -> None:
    for account in accounts:
        file_name = f"{account.account_id}.json"
        if file_name in _RESERVED_KEY_FILES:
            raise SandboxConfigError(f"account id {account.account_id!r} collides with {file_name}")
        _write_document(
            home_dir / file_name,
            {
                "account_id": account.account_id,
                "public_key": account.public_key,
                "private_key": account.private_key,
            },
        )


def write_node_config(home_dir: Path, config: SandboxConfig, settings: SandboxSettings) -> str:
    """Patch the baseline node config and return the configured RPC bind address."""

    path = home_dir / CONFIG_FILE
    document: JsonValue = _load_document(path)

    defaults: JsonObject = {
        "rpc": {
            "addr": f"{DEFAULT_RPC_HOST}:{config.rpc_port or 0}",
            "limits_config": {"json_payload_max_size": settings.max_payload_size},
        },
        "network": {"addr": f"{DEFAULT_RPC_HOST}:{config.net_port or 0}"},
        "store": {"max_open_files": settings.max_open_files},
    }
    document = apply_merge_patch(document, defaults)

    patch = coerce_patch(config.additional_config, name="additional_config")
    if patch is not None:
        document = apply_merge_patch(document, patch)

    overrides: JsonObject = {}
    if config.max_payload_size is not None:
        overrides["rpc"] = {"limits_config": {"json_payload_max_size": config.max_payload_size}}
    if config.max_open_files is not None:
        overrides["store"] = {"max_open_files": config.max_open_files}
    if overrides:
        document = apply_merge_patch(document, overrides)

    rpc_section = document.get("rpc") if isinstance(document, dict) else None
    rpc_addr = rpc_section.get("addr") if isinstance(rpc_section, dict) else None
    if not isinstance(rpc_addr, str) or not rpc_addr:
        raise SandboxConfigError(f"{path}: config patch removed the required 'rpc.addr' setting")

    _write_document(path, document)
    return rpc_addr


async def synthesize_home(
    binary: Path,
    home_dir: Path,
    config: SandboxConfig,
    settings: SandboxSettings,
    *,
    env: Mapping[str, str] | None = None,
) -> str:
    """Initialize `home_dir` and apply `config`; returns the RPC bind address."""

    validate_config(config)
    await init_home_dir(binary, home_dir, env=env)
    write_genesis(home_dir, config)
    rpc_addr = write_node_config(home_dir, config, settings)
    logger.debug(
        "sandbox home configured",
        extra={
            "data": {
                "home_dir": home_dir,
                "rpc_addr": rpc_addr,
                "additional_accounts": len(config.additional_accounts),
            }
        },
    )
    return rpc_addr


__all__ = [
    "CONFIG_FILE",
    "DEFAULT_RPC_HOST",
    "GENESIS_FILE",
    "init_home_dir",
    "synthesize_home",
    "write_genesis",
    "write_node_config",
]
