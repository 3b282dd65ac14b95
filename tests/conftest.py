"""Shared fixtures: fake executables, icon sources and raw specifications."""

import io
import struct
import tarfile
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from pkgbundler.config import EngineConfig
from pkgbundler.errors import ToolchainUnavailable
from pkgbundler.toolchain import ToolchainLocator


def write_elf(path: Path, machine: int = 62) -> Path:
    """Write a minimal little-endian ELF header with the given e_machine."""
    header = bytearray(64)
    header[0:4] = b"\x7fELF"
    header[4] = 2  # 64-bit
    header[5] = 1  # little endian
    header[6] = 1
    header[18:20] = struct.pack("<H", machine)
    path.write_bytes(bytes(header) + b"payload")
    path.chmod(0o644)
    return path


def write_pe(path: Path, machine: int = 0x8664) -> Path:
    """Write a DOS stub pointing at a PE header with the given machine."""
    dos = bytearray(64)
    dos[0:2] = b"MZ"
    dos[0x3C:0x40] = struct.pack("<I", 64)
    pe = b"PE\x00\x00" + struct.pack("<H", machine) + bytes(18)
    path.write_bytes(bytes(dos) + pe)
    return path


def write_macho(path: Path) -> Path:
    """Write a thin 64-bit Mach-O magic followed by an empty header."""
    path.write_bytes(b"\xcf\xfa\xed\xfe" + bytes(28))
    return path


AR_MAGIC = b"!<arch>\n"


def read_ar(path: Path) -> list[tuple[str, bytes, bytes]]:
    """Parse an ar archive into (name, header, data) triples."""
    data = path.read_bytes()
    assert data.startswith(AR_MAGIC)
    members = []
    offset = len(AR_MAGIC)
    while offset < len(data):
        header = data[offset : offset + 60]
        name = header[:16].decode("ascii").strip()
        size = int(header[48:58].decode("ascii").strip())
        body = data[offset + 60 : offset + 60 + size]
        members.append((name, header, body))
        offset += 60 + size + (size % 2)
    return members


def deb_members(path: Path) -> dict[str, tarfile.TarFile]:
    """Open the control and data tarballs of a Debian package."""
    return {
        name: tarfile.open(fileobj=io.BytesIO(body))
        for name, _header, body in read_ar(path)
        if name.endswith(".tar.gz")
    }


def write_png(path: Path, size: int, color: tuple = (255, 0, 0, 255)) -> Path:
    Image.new("RGBA", (size, size), color).save(path, format="PNG")
    return path


def write_truncated_png(path: Path, size: int) -> Path:
    """Write a noisy PNG and cut it in half, leaving a readable header."""
    Image.effect_noise((size, size), 64).convert("RGBA").save(path, format="PNG")
    data = path.read_bytes()
    path.write_bytes(data[: len(data) // 2])
    return path


def fake_locator(missing: tuple[str, ...] = ()) -> MagicMock:
    """A locator that resolves every executable to /fake/<name>."""
    locator = MagicMock(spec=ToolchainLocator)

    def locate(executable, toolchain=None):
        if executable in missing:
            raise ToolchainUnavailable(f"{executable} not found on PATH")
        return Path("/fake") / executable

    locator.locate.side_effect = locate
    locator.find.side_effect = lambda executable, toolchain=None: (
        None if executable in missing else Path("/fake") / executable
    )
    return locator


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def engine_config(temp_dir):
    """Engine configuration isolated from the user's cache."""
    return EngineConfig(cache_dir=temp_dir / "cache", fetch_retries=2, fetch_backoff=1.0)


@pytest.fixture
def project(temp_dir):
    """A project directory with an ELF and a PE build of 'demo'."""
    root = temp_dir / "project"
    (root / "build").mkdir(parents=True)
    write_elf(root / "build" / "demo")
    write_pe(root / "build" / "demo.exe")
    (root / "data").mkdir()
    (root / "data" / "config.ini").write_text("[demo]\nanswer = 42\n")
    (root / "LICENSE").write_text("Demo license\n")
    return root


@pytest.fixture
def raw_spec(project):
    """Raw specification mapping for a Linux/Windows 'Demo 1.2.3' build."""
    return {
        "base_dir": str(project),
        "name": "Demo",
        "version": "1.2.3",
        "identifier": "com.example.demo",
        "description": "A demonstration application",
        "binaries": [
            {"path": "build/demo", "arch": "x86_64", "main": True},
            {"path": "build/demo.exe", "arch": "x86_64"},
        ],
        "resources": ["data/config.ini"],
        "output_dir": "dist",
        "arch": "x86_64",
        "source_date_epoch": 1700000000,
        "linux": {"compute_depends": False, "depends": ["libc6"]},
    }


@pytest.fixture
def staging_dir(temp_dir):
    """Route staging trees into a directory the test can inspect."""
    directory = temp_dir / "staging"
    directory.mkdir()
    with patch.object(tempfile, "tempdir", str(directory)):
        yield directory
