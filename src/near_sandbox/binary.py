"""Resolve, download and cache the near-sandbox executable per (version, platform)."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import tarfile
import tempfile
import time
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
from filelock import AsyncFileLock, Timeout

from near_sandbox.config.settings import SandboxSettings, load_settings
from near_sandbox.errors import (
    DownloadError,
    ExtractionError,
    LockTimeoutError,
    UnsupportedPlatformError,
)

logger = logging.getLogger(__name__)

DEFAULT_NEAR_SANDBOX_VERSION = "2.6.5"
BINARY_NAME = "near-sandbox"
ARTIFACT_HOST = "https://s3-us-west-1.amazonaws.com/build.nearprotocol.com/nearcore"

_PLATFORMS: dict[tuple[str, str], str] = {
    ("Linux", "x86_64"): "Linux-x86_64",
    ("Linux", "aarch64"): "Linux-aarch64",
    ("Linux", "arm64"): "Linux-aarch64",
    ("Darwin", "arm64"): "Darwin-arm64",
}


def current_platform(system: str | None = None, machine: str | None = None) -> str:
    """Return the artifact platform triplet for this host (or the given one)."""

    system = system or platform.system()
    machine = machine or platform.machine()
    try:
        return _PLATFORMS[(system, machine)]
    except KeyError:
        raise UnsupportedPlatformError(system, machine) from None


def bin_url(version: str, *, platform_name: str, artifact_url: str | None = None) -> str:
    if artifact_url:
        return artifact_url
    return f"{ARTIFACT_HOST}/{platform_name}/{version}/{BINARY_NAME}.tar.gz"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Filesystem locations owned by one (version, platform) cache key."""

    version: str
    platform_name: str
    directory: Path
    binary: Path
    lock_path: Path

    @classmethod
    def for_version(cls, cache_root: Path, version: str, platform_name: str) -> CacheEntry:
        key = f"{BINARY_NAME}-{version}-{platform_name}"
        directory = cache_root / key
        return cls(
            version=version,
            platform_name=platform_name,
            directory=directory,
            binary=directory / BINARY_NAME,
            lock_path=cache_root / f"{key}.lock",
        )


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0), follow_redirects=True)


class BinaryResolver:
    """Hands out a local executable path, downloading it at most once per cache key."""

    def __init__(
        self,
        *,
        settings: SandboxSettings | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        platform_name: str | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or _default_client
        self._platform_name = platform_name

    @property
    def settings(self) -> SandboxSettings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    def cache_entry(self, version: str | None = None) -> CacheEntry:
        platform_name = self._platform_name or current_platform()
        return CacheEntry.for_version(
            self.settings.cache_root,
            version or DEFAULT_NEAR_SANDBOX_VERSION,
            platform_name,
        )

    async def ensure(self, version: str | None = None) -> Path:
        """Return a path to an executable binary for `version` (default when None)."""

        settings = self.settings
        if settings.bin_path is not None:
            logger.debug("using prebuilt near-sandbox binary", extra={"data": {"path": settings.bin_path}})
            return settings.bin_path

        entry = self.cache_entry(version)
        entry.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = AsyncFileLock(str(entry.lock_path), timeout=settings.lock_timeout_seconds)
        try:
            await lock.acquire()
        except Timeout as exc:
            raise LockTimeoutError(entry.lock_path, settings.lock_timeout_seconds) from exc
        try:
            # Re-check under the lock: another process may have installed it meanwhile.
            if entry.binary.exists():
                logger.debug("near-sandbox binary cache hit", extra={"data": {"path": entry.binary}})
                return entry.binary
            await self._install(entry)
        finally:
            await lock.release()
        return entry.binary

    async def _install(self, entry: CacheEntry) -> None:
        url = bin_url(
            entry.version,
            platform_name=entry.platform_name,
            artifact_url=self.settings.artifact_url,
        )
        entry.directory.mkdir(parents=True, exist_ok=True)
        fd, archive_name = tempfile.mkstemp(dir=entry.directory, prefix=".download-", suffix=".tar.gz")
        os.close(fd)
        archive = Path(archive_name)
        staged = entry.directory / f".{BINARY_NAME}.{os.getpid()}.partial"
        start = time.monotonic()
        logger.info(
            "downloading near-sandbox binary",
            extra={"data": {"version": entry.version, "platform": entry.platform_name, "url": url}},
        )
        try:
            await self._download(url, archive, entry.version)
            await asyncio.to_thread(_extract_binary, archive, staged, entry.version)
            staged.chmod(0o755)
            os.replace(staged, entry.binary)
        finally:
            archive.unlink(missing_ok=True)
            staged.unlink(missing_ok=True)
        logger.info(
            "installed near-sandbox binary",
            extra={
                "data": {
                    "version": entry.version,
                    "path": entry.binary,
                    "elapsed_s": round(time.monotonic() - start, 3),
                }
            },
        )

    async def _download(self, url: str, archive: Path, version: str) -> None:
        async with self._client_factory() as client:
            try:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with archive.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
            except httpx.HTTPStatusError as exc:
                raise DownloadError(url, version, f"status {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                raise DownloadError(url, version, str(exc) or type(exc).__name__) from exc


def _select_member(members: list[tarfile.TarInfo]) -> tarfile.TarInfo | None:
    files = [member for member in members if member.isfile()]
    for member in files:
        if Path(member.name).name == BINARY_NAME:
            return member
    if len(files) == 1:
        return files[0]
    return None


def _extract_binary(archive: Path, destination: Path, version: str) -> None:
    try:
        with tarfile.open(archive, "r:*") as tar:
            member = _select_member(tar.getmembers())
            if member is None:
                raise ExtractionError(archive, version, f"archive does not contain a {BINARY_NAME} executable")
            source = tar.extractfile(member)
            if source is None:
                raise ExtractionError(archive, version, f"archive member {member.name} is not readable")
            with source, destination.open("wb") as out:
                shutil.copyfileobj(source, out)
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise ExtractionError(archive, version, str(exc) or type(exc).__name__) from exc


async def ensure_sandbox_bin(version: str | None = None, *, settings: SandboxSettings | None = None) -> Path:
    """Resolve the binary with default collaborators."""

    return await BinaryResolver(settings=settings).ensure(version)


__all__ = [
    "ARTIFACT_HOST",
    "BINARY_NAME",
    "BinaryResolver",
    "CacheEntry",
    "DEFAULT_NEAR_SANDBOX_VERSION",
    "bin_url",
    "current_platform",
    "ensure_sandbox_bin",
]
