"""Archive writers.

All writers walk a staging root in lexicographic order of the relative
POSIX path, stamp every entry with a fixed modification time and root
ownership, and refuse entries that resolve outside the root. The same
staging tree and epoch therefore always produce the same bytes.
"""

import datetime
import gzip
import io
import logging
import os
import stat
import tarfile
import time
import zipfile
from collections.abc import Iterator
from pathlib import Path

from .errors import CommandError, FatalPackagingError
from .tools import AppImageTool, Hdiutil

log = logging.getLogger(__name__)

AR_MAGIC = b"!<arch>\n"
AR_FILE_MODE = "100644"
DEBIAN_BINARY = b"2.0\n"

# Earliest timestamp representable in a zip entry
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


# ----------------------------------------------------------------------------
# Path checks


def ensure_within(root: Path, path: Path) -> Path:
    """Check that a staged entry stays inside the staging root.

    The entry itself is not followed when it is a symbolic link; a relative
    link target must resolve inside the root as well. Absolute link targets
    name locations on the installed system and are kept as-is.

    Returns:
        The path relative to the root

    Raises:
        FatalPackagingError: If the entry or its link target escapes
    """
    root_real = Path(os.path.realpath(root))
    path = Path(path)
    if path == Path(root):
        return Path(".")
    entry = Path(os.path.realpath(path.parent)) / path.name
    if not entry.is_relative_to(root_real) or path.name == "..":
        raise FatalPackagingError(f"{path} resolves outside staging root {root}")
    if path.is_symlink():
        target = os.readlink(path)
        if not os.path.isabs(target):
            resolved = Path(os.path.normpath(entry.parent / target))
            if not resolved.is_relative_to(root_real):
                raise FatalPackagingError(
                    f"symbolic link {path} -> {target} escapes staging root {root}"
                )
    return entry.relative_to(root_real)


def walk_sorted(root: Path) -> Iterator[Path]:
    """Yield every entry under root, sorted by relative POSIX path.

    Symbolic links to directories are yielded but not descended into.
    """
    entries: list[tuple[str, Path]] = []
    stack = [Path(root)]
    while stack:
        directory = stack.pop()
        with os.scandir(directory) as it:
            for item in it:
                path = Path(item.path)
                rel = path.relative_to(root).as_posix()
                entries.append((rel, path))
                if item.is_dir(follow_symlinks=False):
                    stack.append(path)
    for _rel, path in sorted(entries):
        yield path


# ----------------------------------------------------------------------------
# ar


class ArWriter:
    """Writer for the common ar archive format used by Debian packages.

    Member headers carry a zero timestamp, zero owner and mode 100644.

    Example:
        with open("pkg.deb", "wb") as f:
            ar = ArWriter(f)
            ar.add_bytes("debian-binary", b"2.0\\n")
    """

    def __init__(self, fileobj: io.BufferedIOBase):
        self.fileobj = fileobj
        self.names: list[str] = []
        self.fileobj.write(AR_MAGIC)

    def _header(self, name: str, size: int) -> bytes:
        if len(name) > 16:
            raise FatalPackagingError(f"ar member name too long: {name}")
        header = (
            f"{name:<16}"
            f"{0:<12}"
            f"{0:<6}"
            f"{0:<6}"
            f"{AR_FILE_MODE:<8}"
            f"{size:<10}"
            "`\n"
        )
        return header.encode("ascii")

    def add_bytes(self, name: str, data: bytes) -> None:
        self.fileobj.write(self._header(name, len(data)))
        self.fileobj.write(data)
        if len(data) % 2:
            self.fileobj.write(b"\n")
        self.names.append(name)

    def add_file(self, name: str, path: Path) -> None:
        size = path.stat().st_size
        self.fileobj.write(self._header(name, size))
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(64 * 1024), b""):
                self.fileobj.write(chunk)
        if size % 2:
            self.fileobj.write(b"\n")
        self.names.append(name)


# ----------------------------------------------------------------------------
# tar / zip


def _tarinfo(path: Path, arcname: str, mtime: int) -> tarfile.TarInfo:
    st = os.lstat(path)
    info = tarfile.TarInfo(arcname)
    info.mtime = mtime
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    info.mode = stat.S_IMODE(st.st_mode)
    if stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    elif stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    else:
        raise FatalPackagingError(f"unsupported file type in staging tree: {path}")
    return info


def write_tarball(
    root: Path,
    out: Path,
    level: int = 9,
    mtime: int = 0,
    dot_prefix: bool = False,
) -> Path:
    """Write a reproducible gzip-compressed tarball of a directory.

    Args:
        root: Staging directory to archive (its contents, not itself)
        out: Output .tar.gz path
        level: gzip compression level
        mtime: Timestamp stamped on every entry
        dot_prefix: Prefix entries with "./" and add a "./" root entry,
            as dpkg expects

    Returns:
        The output path
    """
    root = Path(root)
    out = Path(out)
    with open(out, "wb") as raw:
        with gzip.GzipFile(
            filename="", mode="wb", fileobj=raw, compresslevel=level, mtime=0
        ) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                if dot_prefix:
                    info = _tarinfo(root, "./", mtime)
                    info.mode = 0o755
                    tar.addfile(info)
                for path in walk_sorted(root):
                    rel = ensure_within(root, path).as_posix()
                    arcname = f"./{rel}" if dot_prefix else rel
                    info = _tarinfo(path, arcname, mtime)
                    if info.isreg():
                        with open(path, "rb") as f:
                            tar.addfile(info, f)
                    else:
                        tar.addfile(info)
    return out


def zip_date_time(epoch: int) -> tuple[int, int, int, int, int, int]:
    """Convert a Unix timestamp to a zip entry date, clamped to 1980."""
    moment = datetime.datetime.fromtimestamp(epoch, datetime.timezone.utc)
    date_time = moment.timetuple()[:6]
    return max(date_time, ZIP_EPOCH)


def write_zip(
    root: Path,
    out: Path,
    level: int = 9,
    mtime: int = 0,
    include: str | None = None,
) -> Path:
    """Write a reproducible zip archive of a directory.

    Unix modes and symbolic links are preserved in the external attributes.

    Args:
        root: Directory to archive (its contents, not itself)
        out: Output .zip path
        level: deflate compression level (0 stores entries)
        mtime: Timestamp stamped on every entry
        include: Only archive this top-level entry of root
    """
    root = Path(root)
    date_time = zip_date_time(mtime)
    with zipfile.ZipFile(out, "w") as zf:
        for path in walk_sorted(root):
            rel = ensure_within(root, path).as_posix()
            if include is not None and rel != include and not rel.startswith(include + "/"):
                continue
            st = os.lstat(path)
            if stat.S_ISDIR(st.st_mode):
                info = zipfile.ZipInfo(rel + "/", date_time=date_time)
                data = b""
            elif stat.S_ISLNK(st.st_mode):
                info = zipfile.ZipInfo(rel, date_time=date_time)
                data = os.readlink(path).encode("utf-8")
            elif stat.S_ISREG(st.st_mode):
                info = zipfile.ZipInfo(rel, date_time=date_time)
                data = path.read_bytes()
            else:
                raise FatalPackagingError(
                    f"unsupported file type in staging tree: {path}"
                )
            info.create_system = 3
            info.external_attr = (st.st_mode & 0xFFFF) << 16
            if stat.S_ISREG(st.st_mode) and level > 0:
                info.compress_type = zipfile.ZIP_DEFLATED
                zf.writestr(info, data, compresslevel=level)
            else:
                info.compress_type = zipfile.ZIP_STORED
                zf.writestr(info, data)
    return out


# ----------------------------------------------------------------------------
# Debian packages


def write_deb(
    control_dir: Path,
    data_dir: Path,
    out: Path,
    level: int = 9,
    mtime: int = 0,
) -> Path:
    """Assemble a Debian package from a control tree and a data tree.

    The ar members are ``debian-binary``, ``control.tar.gz`` and
    ``data.tar.gz``, in that order.
    """
    out = Path(out)
    work = out.parent
    control_tar = write_tarball(
        control_dir, work / "control.tar.gz", level, mtime, dot_prefix=True
    )
    data_tar = write_tarball(
        data_dir, work / "data.tar.gz", level, mtime, dot_prefix=True
    )
    try:
        with open(out, "wb") as f:
            ar = ArWriter(f)
            ar.add_bytes("debian-binary", DEBIAN_BINARY)
            ar.add_file("control.tar.gz", control_tar)
            ar.add_file("data.tar.gz", data_tar)
    finally:
        control_tar.unlink(missing_ok=True)
        data_tar.unlink(missing_ok=True)
    log.debug("wrote %s", out)
    return out


# ----------------------------------------------------------------------------
# Tool-driven containers


def create_dmg(tool: Hdiutil, source: Path, out: Path, volume_name: str) -> Path:
    """Create a compressed disk image from a folder using hdiutil."""
    if out.exists():
        out.unlink()
    command = [
        "create",
        "-volname",
        volume_name,
        "-srcfolder",
        str(source),
        "-ov",
        "-format",
        "UDZO",
        str(out),
    ]
    try:
        tool.invoke(command)
    except CommandError as e:
        raise FatalPackagingError(f"Failed to create DMG {out}: {e.output or e}") from e
    if not tool.dry_run and not out.exists():
        raise FatalPackagingError(f"Failed to create DMG: {out}")
    return out


def create_appimage(
    tool: AppImageTool, appdir: Path, out: Path, arch: str, mtime: int = 0
) -> Path:
    """Build an AppImage from an AppDir using appimagetool."""
    env = dict(os.environ)
    env["ARCH"] = arch
    env["SOURCE_DATE_EPOCH"] = str(mtime)
    start = time.monotonic()
    try:
        tool.invoke(["--no-appstream", str(appdir), str(out)], env=env)
    except CommandError as e:
        raise FatalPackagingError(
            f"Failed to create AppImage {out}: {e.output or e}"
        ) from e
    if not tool.dry_run and not out.exists():
        raise FatalPackagingError(f"Failed to create AppImage: {out}")
    log.debug("appimagetool finished in %.1fs", time.monotonic() - start)
    return out
