"""Binary inspection: executable format, architecture and host detection.

Mach-O binaries are read with macholib; ELF and PE headers only need their
machine field, which sits at a fixed offset.
"""

import enum
import logging
import os
import platform
import struct
from pathlib import Path

from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO

log = logging.getLogger(__name__)

Pathlike = Path | str

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

ELF_MAGIC = b"\x7fELF"
PE_MAGIC = b"MZ"

UNIVERSAL = "universal"

# Canonical architecture names and their accepted aliases
ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "i686": "i686",
    "i586": "i686",
    "i386": "i686",
    "x86": "i686",
    "armv7": "armv7",
    "armv7l": "armv7",
    "armhf": "armv7",
    "arm": "armv7",
    UNIVERSAL: UNIVERSAL,
}

# ELF e_machine values
ELF_MACHINES = {
    3: "i686",
    40: "armv7",
    62: "x86_64",
    183: "aarch64",
}

# PE/COFF machine values
PE_MACHINES = {
    0x014C: "i686",
    0x01C4: "armv7",
    0x8664: "x86_64",
    0xAA64: "aarch64",
}

MACHO_CPU_NAMES = {
    "i386": "i686",
    "x86_64": "x86_64",
    "ARM": "armv7",
    "ARM64": "aarch64",
}


class BinaryKind(enum.Enum):
    """Executable container formats."""

    ELF = "elf"
    PE = "pe"
    MACHO = "macho"
    UNKNOWN = "unknown"


def normalize_arch(arch: str) -> str | None:
    """Map an architecture alias to its canonical name (None if unknown)."""
    return ARCH_ALIASES.get(arch.strip().lower())


def read_magic(path: Pathlike, size: int = 4) -> bytes:
    """Read the first bytes of a file ('' if it cannot be read)."""
    try:
        with open(path, "rb") as f:
            return f.read(size)
    except OSError:
        return b""


def detect_kind(path: Pathlike) -> BinaryKind:
    """Detect the executable container format of a file."""
    magic = read_magic(path)
    if magic == ELF_MAGIC:
        return BinaryKind.ELF
    if magic in MACHO_MAGIC_NUMBERS:
        return BinaryKind.MACHO
    if magic[:2] == PE_MAGIC:
        return BinaryKind.PE
    return BinaryKind.UNKNOWN


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file is a Mach-O binary."""
    return detect_kind(path) is BinaryKind.MACHO


def _elf_arch(path: Path) -> str | None:
    with open(path, "rb") as f:
        header = f.read(20)
    if len(header) < 20:
        return None
    endian = "<" if header[5] == 1 else ">"
    (machine,) = struct.unpack(endian + "H", header[18:20])
    return ELF_MACHINES.get(machine)


def _pe_arch(path: Path) -> str | None:
    with open(path, "rb") as f:
        dos_header = f.read(64)
        if len(dos_header) < 64:
            return None
        (pe_offset,) = struct.unpack("<I", dos_header[0x3C:0x40])
        f.seek(pe_offset)
        pe_header = f.read(6)
    if len(pe_header) < 6 or pe_header[:4] != b"PE\x00\x00":
        return None
    (machine,) = struct.unpack("<H", pe_header[4:6])
    return PE_MACHINES.get(machine)


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary using macholib.

    Args:
        binary_path: Path to the binary file

    Returns:
        List of canonical architecture names (e.g., ["x86_64", "aarch64"]),
        empty if the file is not a readable Mach-O binary
    """
    path = Path(binary_path)
    if not is_valid_macho(path):
        return []
    try:
        macho = MachO(str(path))
    except (ValueError, struct.error, OSError) as e:
        log.debug("macholib could not parse %s: %s", path, e)
        return []
    archs = []
    for header in macho.headers:
        name = CPU_TYPE_NAMES.get(header.header.cputype)
        arch = MACHO_CPU_NAMES.get(name) if name else None
        if arch and arch not in archs:
            archs.append(arch)
    return archs


def detect_architecture(path: Pathlike) -> str | None:
    """Detect the canonical architecture of an executable.

    Returns:
        The architecture, ``"universal"`` for multi-arch Mach-O files, or
        None when the format or machine is not recognized
    """
    path = Path(path)
    kind = detect_kind(path)
    try:
        if kind is BinaryKind.ELF:
            return _elf_arch(path)
        if kind is BinaryKind.PE:
            return _pe_arch(path)
    except OSError:
        return None
    if kind is BinaryKind.MACHO:
        archs = get_binary_architectures(path)
        if len(archs) > 1:
            return UNIVERSAL
        return archs[0] if archs else None
    return None


def host_architecture() -> str:
    """Detect the host's processor architecture.

    The process word size decides between the 32- and 64-bit variants of a
    machine family, and WOW64 hosts report their native architecture.
    """
    machine = os.environ.get("PROCESSOR_ARCHITEW6432") or platform.machine()
    arch = normalize_arch(machine) or machine.lower()
    bits = host_word_size()
    if bits == 32 and arch == "x86_64":
        return "i686"
    if bits == 32 and arch == "aarch64":
        return "armv7"
    return arch


def host_word_size() -> int:
    """Return the host pointer size in bits."""
    return struct.calcsize("P") * 8


# ----------------------------------------------------------------------------
# Per-format architecture names

DEBIAN_ARCHS = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "i686": "i386",
    "armv7": "armhf",
}

RPM_ARCHS = {
    "x86_64": "x86_64",
    "aarch64": "aarch64",
    "i686": "i686",
    "armv7": "armv7hl",
}

APPIMAGE_ARCHS = {
    "x86_64": "x86_64",
    "aarch64": "aarch64",
    "i686": "i686",
    "armv7": "armhf",
}

WIX_ARCHS = {
    "x86_64": "x64",
    "aarch64": "arm64",
    "i686": "x86",
}

MACOS_ARCHS = {
    "x86_64": "x86_64",
    "aarch64": "arm64",
    UNIVERSAL: UNIVERSAL,
}
