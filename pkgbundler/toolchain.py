"""Toolchain location and on-demand download.

Lookup order for an executable:
    1. the path configured under ``[toolchain.<name>]``
    2. the search path (PATH)
    3. a platform registry (Windows SDK / WiX install locations)
    4. the toolchain cache directory
    5. a download of the pinned toolchain archive into the cache

Downloads are verified against a pinned SHA-256 digest before anything is
extracted; a download without a pinned digest is refused.
"""

import hashlib
import logging
import os
import shutil
import stat
import sys
import tempfile
import threading
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path

import requests

from .binaries import APPIMAGE_ARCHS, host_architecture
from .config import EngineConfig, ToolchainSource, get_config
from .errors import Cancelled, ChecksumMismatch, ToolchainUnavailable

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class Toolchain:
    """A toolchain the engine knows how to fetch."""

    name: str
    url: str | None
    sha256: str | None
    #: "zip" archives are extracted, "file" downloads are the executable
    archive: str
    #: Host platforms (sys.platform prefixes) the toolchain runs on
    platforms: tuple[str, ...]


TOOLCHAINS = {
    "wix": Toolchain(
        name="wix",
        url="https://github.com/wixtoolset/wix3/releases/download/wix3141rtm/wix314-binaries.zip",
        sha256="6ac824e1642d6f7277d0ed7ea09411a508f6116ba6fae0aa5f2c7daa2ff43d31",
        archive="zip",
        platforms=("win32",),
    ),
    "appimagetool": Toolchain(
        name="appimagetool",
        url="https://github.com/AppImage/AppImageKit/releases/download/13/appimagetool-{arch}.AppImage",
        sha256=None,
        archive="file",
        platforms=("linux",),
    ),
}

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def _toolchain_lock(name: str) -> threading.Lock:
    with _locks_guard:
        return _locks.setdefault(name, threading.Lock())


def _windows_kits_signtool() -> Path | None:
    """Find signtool.exe through the Windows Kits registry key."""
    import winreg

    key_path = r"SOFTWARE\Microsoft\Windows Kits\Installed Roots"
    try:
        with winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE,
            key_path,
            0,
            winreg.KEY_READ | winreg.KEY_WOW64_32KEY,
        ) as key:
            kits_root, _ = winreg.QueryValueEx(key, "KitsRoot10")
    except OSError:
        return None
    arch = {"x86_64": "x64", "aarch64": "arm64", "i686": "x86"}.get(
        host_architecture(), "x64"
    )
    bin_dir = Path(kits_root) / "bin"
    if not bin_dir.is_dir():
        return None
    # newest SDK version first
    for version_dir in sorted(bin_dir.iterdir(), reverse=True):
        candidate = version_dir / arch / "signtool.exe"
        if candidate.is_file():
            return candidate
    candidate = bin_dir / arch / "signtool.exe"
    return candidate if candidate.is_file() else None


def _wix_install() -> Path | None:
    """The WiX v3 installer records its location in the WIX variable."""
    root = os.environ.get("WIX")
    if root and (Path(root) / "bin").is_dir():
        return Path(root) / "bin"
    return None


def sha256_file(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ToolchainLocator:
    """Locate external executables, fetching pinned toolchains on demand.

    Args:
        config: Engine configuration (default: the global configuration)
        token: Cancellation token checked between download chunks
        session: requests session used for downloads
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        token=None,
        session: requests.Session | None = None,
    ):
        self.config = config or get_config()
        self.token = token
        self.session = session or requests.Session()
        self.log = logging.getLogger(self.__class__.__name__)

    def _source(self, toolchain: str) -> ToolchainSource:
        return self.config.toolchains.get(toolchain, ToolchainSource())

    def cache_dir(self, toolchain: str) -> Path:
        return self.config.cache_dir / toolchain

    def find(self, executable: str, toolchain: str | None = None) -> Path | None:
        """Find an installed executable without downloading anything."""
        name = toolchain or executable
        configured = self._source(name).path
        if configured is not None:
            candidate = configured / executable if configured.is_dir() else configured
            if candidate.is_file():
                return candidate
            self.log.warning("configured path for %s does not exist: %s", name, configured)

        for candidate_name in (executable, executable.removesuffix(".exe")):
            found = shutil.which(candidate_name)
            if found:
                return Path(found)

        if sys.platform == "win32":
            registry = self._registry_lookup(executable, toolchain)
            if registry is not None:
                return registry

        cached = self.cache_dir(name) / executable
        if cached.is_file():
            return cached
        return None

    def _registry_lookup(self, executable: str, toolchain: str | None) -> Path | None:
        if toolchain == "signtool":
            return _windows_kits_signtool()
        if toolchain == "wix":
            bin_dir = _wix_install()
            if bin_dir and (bin_dir / executable).is_file():
                return bin_dir / executable
        return None

    def locate(self, executable: str, toolchain: str | None = None) -> Path:
        """Find an executable, fetching its toolchain if necessary.

        Raises:
            ToolchainUnavailable: If the executable is not installed and
                cannot be fetched
            ChecksumMismatch: If a fetched archive fails verification
        """
        found = self.find(executable, toolchain)
        if found is not None:
            return found
        if toolchain is None or toolchain not in TOOLCHAINS:
            raise ToolchainUnavailable(f"{executable} not found on PATH")

        with _toolchain_lock(toolchain):
            # another worker may have fetched it while we waited
            cached = self.cache_dir(toolchain) / executable
            if cached.is_file():
                return cached
            self.fetch(toolchain, executable)
        if not cached.is_file():
            raise ToolchainUnavailable(
                f"{executable} not found in fetched {toolchain} toolchain"
            )
        return cached

    def fetch(self, toolchain: str, executable: str) -> Path:
        """Download, verify and install a toolchain into the cache.

        Returns:
            The toolchain cache directory
        """
        known = TOOLCHAINS[toolchain]
        if not any(sys.platform.startswith(p) for p in known.platforms):
            raise ToolchainUnavailable(
                f"{toolchain} toolchain does not run on {sys.platform}"
            )
        source = self._source(toolchain)
        url = source.url or known.url
        expected = source.sha256 or (known.sha256 if not source.url else None)
        if not url:
            raise ToolchainUnavailable(f"no download url configured for {toolchain}")
        if not expected:
            raise ToolchainUnavailable(
                f"refusing to download {toolchain} without a pinned sha256 "
                f"(set [toolchain.{toolchain}] sha256)"
            )
        url = url.format(arch=APPIMAGE_ARCHS.get(host_architecture(), "x86_64"))

        target_dir = self.cache_dir(toolchain)
        target_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target_dir, suffix=".part")
        os.close(fd)
        download = Path(tmp_name)
        try:
            self.download(url, download)
            actual = sha256_file(download)
            if actual.lower() != expected.lower():
                raise ChecksumMismatch(toolchain, expected, actual)
            if known.archive == "zip":
                self._extract(download, target_dir)
            else:
                destination = target_dir / executable
                download.replace(destination)
                destination.chmod(
                    destination.stat().st_mode
                    | stat.S_IXUSR
                    | stat.S_IXGRP
                    | stat.S_IXOTH
                )
        finally:
            download.unlink(missing_ok=True)
        self.log.info("installed %s toolchain into %s", toolchain, target_dir)
        return target_dir

    def _extract(self, archive: Path, target_dir: Path) -> None:
        root = target_dir.resolve()
        try:
            with zipfile.ZipFile(archive) as zf:
                for member in zf.namelist():
                    destination = (target_dir / member).resolve()
                    if not destination.is_relative_to(root):
                        raise ToolchainUnavailable(
                            f"archive member escapes cache directory: {member}"
                        )
                zf.extractall(target_dir)
        except zipfile.BadZipFile as e:
            raise ToolchainUnavailable(f"corrupt toolchain archive: {e}") from e

    def download(self, url: str, destination: Path) -> None:
        """Download a url with retries, exponential backoff and a deadline.

        Raises:
            ToolchainUnavailable: When every attempt failed or the overall
                deadline passed
            Cancelled: If the run was cancelled mid-download
        """
        deadline = time.monotonic() + self.config.fetch_timeout
        attempts = self.config.fetch_retries
        delay = 1.0
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.log.info("downloading %s (attempt %d/%d)", url, attempt, attempts)
            try:
                self._stream(url, destination, deadline)
                return
            except requests.RequestException as e:
                last_error = e
                self.log.warning("download failed: %s", e)
            if attempt < attempts:
                pause = min(delay, max(deadline - time.monotonic(), 0))
                time.sleep(pause)
                delay *= self.config.fetch_backoff
        if last_error is None:
            raise ToolchainUnavailable(f"download of {url} timed out")
        raise ToolchainUnavailable(
            f"download of {url} failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _stream(self, url: str, destination: Path, deadline: float) -> None:
        timeout = max(deadline - time.monotonic(), 1.0)
        with self.session.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if self.token is not None and self.token.cancelled:
                        raise Cancelled(f"download of {url} cancelled")
                    if time.monotonic() > deadline:
                        raise requests.Timeout(f"deadline exceeded for {url}")
                    f.write(chunk)
