"""`near-sandbox` command line: install the binary, init/run a home dir, or start a full sandbox."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic import JsonValue as PydanticJsonValue

from near_sandbox.binary import BinaryResolver
from near_sandbox.config.settings import load_settings
from near_sandbox.errors import SandboxConfigError, SandboxError
from near_sandbox.home import init_home_dir
from near_sandbox.observability.logging import NODE_LOGGER_NAME, configure_logging
from near_sandbox.options import GenesisAccount, SandboxConfig
from near_sandbox.process import NodeProcess, node_env
from near_sandbox.sandbox import SandboxLauncher

logger = logging.getLogger("near_sandbox.cli")


class GenesisAccountModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str
    public_key: str
    private_key: str
    balance: int = Field(ge=0)


class SandboxConfigFile(BaseModel):
    """On-disk shape of `start --config`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    additional_genesis: dict[str, PydanticJsonValue] | None = None
    additional_accounts: list[GenesisAccountModel] = []
    additional_config: dict[str, PydanticJsonValue] | None = None
    max_payload_size: int | None = Field(default=None, ge=0)
    max_open_files: int | None = Field(default=None, ge=0)
    rpc_port: int | None = Field(default=None, ge=0, le=65535)
    net_port: int | None = Field(default=None, ge=0, le=65535)

    def to_config(self) -> SandboxConfig:
        return SandboxConfig(
            additional_genesis=self.additional_genesis,
            additional_accounts=tuple(
                GenesisAccount(
                    account_id=account.account_id,
                    public_key=account.public_key,
                    private_key=account.private_key,
                    balance=account.balance,
                )
                for account in self.additional_accounts
            ),
            additional_config=self.additional_config,
            max_payload_size=self.max_payload_size,
            max_open_files=self.max_open_files,
            rpc_port=self.rpc_port,
            net_port=self.net_port,
        )


def load_config_file(path: Path) -> SandboxConfig:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SandboxConfigError(f"cannot read sandbox config {path}: {exc}") from exc
    try:
        return SandboxConfigFile.model_validate_json(raw).to_config()
    except ValidationError as exc:
        raise SandboxConfigError(f"invalid sandbox config {path}: {exc}") from exc


async def _install(args: argparse.Namespace) -> None:
    path = await BinaryResolver(settings=load_settings()).ensure(args.version)
    print(path)


async def _init(args: argparse.Namespace) -> None:
    settings = load_settings()
    binary = await BinaryResolver(settings=settings).ensure(args.version)
    home_dir = Path(args.home)
    home_dir.mkdir(parents=True, exist_ok=True)
    await init_home_dir(binary, home_dir, env=node_env(settings))
    print(home_dir)


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    binary = await BinaryResolver(settings=settings).ensure(args.version)
    node_log = logging.getLogger(NODE_LOGGER_NAME)
    process = await NodeProcess.spawn(
        binary,
        Path(args.home),
        env=node_env(settings.model_copy(update={"enable_node_log": True})),
        line_consumers=[lambda line: node_log.info("%s", line)],
        extra_args=args.node_args,
    )
    try:
        return await process.wait()
    finally:
        await process.terminate()


async def _start(args: argparse.Namespace) -> None:
    config = load_config_file(Path(args.config)) if args.config else SandboxConfig()
    node_log = logging.getLogger(NODE_LOGGER_NAME)
    launcher = SandboxLauncher(node_log_consumer=lambda line: node_log.info("%s", line))
    sandbox = await launcher.launch(config, args.version)
    async with sandbox:
        print(
            json.dumps(
                {
                    "rpc_addr": sandbox.rpc_addr,
                    "home_dir": str(sandbox.home_dir),
                    "pid": sandbox.pid,
                    "version": sandbox.version,
                }
            ),
            flush=True,
        )
        exit_code = await sandbox.wait()
        logger.warning("sandbox process exited", extra={"data": {"returncode": exit_code}})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="near-sandbox", description="Manage local NEAR sandbox nodes.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", help="Download the sandbox binary and print its path.")
    install.add_argument("--version", default=None, help="Binary version (defaults to the pinned release).")

    init = subparsers.add_parser("init", help="Initialize a node home directory.")
    init.add_argument("--home", required=True, help="Directory to initialize.")
    init.add_argument("--version", default=None)

    run = subparsers.add_parser("run", help="Run the node in an existing home directory.")
    run.add_argument("--home", required=True, help="Initialized home directory.")
    run.add_argument("--version", default=None)
    run.add_argument("node_args", nargs=argparse.REMAINDER, help="Extra arguments passed to `run`.")

    start = subparsers.add_parser("start", help="Start a throwaway sandbox until interrupted.")
    start.add_argument("--version", default=None)
    start.add_argument("--config", default=None, help="JSON file with sandbox overrides.")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging()

    handlers = {"install": _install, "init": _init, "run": _run, "start": _start}
    try:
        result = asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except SandboxError as exc:
        raise SystemExit(str(exc)) from exc
    if isinstance(result, int) and result != 0:
        raise SystemExit(result)


__all__ = ["SandboxConfigFile", "build_parser", "load_config_file", "main"]
