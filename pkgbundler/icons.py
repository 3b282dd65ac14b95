"""Icon conversion with Pillow.

Every size a platform container needs is produced from the smallest source
image that covers it, downsampled with Lanczos. Sources are never
upsampled: a size no source covers is skipped (optional sizes) or fails
the conversion (required sizes).
"""

import enum
import io
import logging
import struct
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import MissingIconResolution, ResourceMissing

log = logging.getLogger(__name__)


class IconKind(enum.Enum):
    """Platform icon families."""

    APPLE = "apple"
    WINDOWS = "windows"
    FREEDESKTOP = "freedesktop"


# (pixel size, scale, required)
SIZE_TABLES: dict[IconKind, tuple[tuple[int, int, bool], ...]] = {
    IconKind.APPLE: (
        (16, 1, True),
        (32, 1, True),
        (64, 2, False),  # 32x32@2x
        (128, 1, True),
        (256, 1, False),
        (512, 1, False),
        (1024, 2, False),  # 512x512@2x
    ),
    IconKind.WINDOWS: (
        (16, 1, True),
        (24, 1, False),
        (32, 1, True),
        (48, 1, True),
        (64, 1, False),
        (128, 1, False),
        (256, 1, False),
    ),
    IconKind.FREEDESKTOP: (
        (32, 1, True),
        (64, 1, False),
        (128, 1, False),
        (256, 1, False),
        (512, 1, False),
    ),
}

# .icns chunk types holding PNG data, by pixel size
ICNS_TYPES = {
    16: b"icp4",
    32: b"icp5",
    64: b"icp6",
    128: b"ic07",
    256: b"ic08",
    512: b"ic09",
    1024: b"ic10",
}


@dataclass(frozen=True)
class IconImage:
    """One square PNG rendition."""

    size: int
    scale: int
    png: bytes


@dataclass(frozen=True)
class IconSet:
    """The renditions of one icon family, smallest first."""

    kind: IconKind
    images: tuple[IconImage, ...]
    warnings: tuple[str, ...] = ()

    @property
    def sizes(self) -> list[int]:
        return [image.size for image in self.images]

    def largest(self) -> IconImage:
        return self.images[-1]

    def get(self, size: int) -> IconImage | None:
        return next((i for i in self.images if i.size == size), None)


@dataclass(frozen=True)
class _Source:
    path: Path
    width: int
    height: int


IMAGE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


def _probe(path: Path) -> _Source:
    try:
        with Image.open(path) as img:
            img.load()
            width, height = img.size
    except IMAGE_ERRORS as e:
        raise ResourceMissing(f"Cannot read icon image {path}: {e}") from e
    return _Source(path, width, height)


def _pick(sources: list[_Source], size: int) -> _Source | None:
    """Smallest source whose width and height both cover the size."""
    candidates = [s for s in sources if s.width >= size and s.height >= size]
    if not candidates:
        return None
    return min(candidates, key=lambda s: (s.width * s.height, str(s.path)))


def _render(source: _Source, size: int) -> bytes:
    buf = io.BytesIO()
    try:
        with Image.open(source.path) as img:
            img = img.convert("RGBA")
            if img.size != (size, size):
                img = ImageOps.fit(img, (size, size), Image.Resampling.LANCZOS)
            img.save(buf, format="PNG")
    except IMAGE_ERRORS as e:
        raise ResourceMissing(f"Cannot decode icon image {source.path}: {e}") from e
    return buf.getvalue()


def convert(sources: list[Path] | tuple[Path, ...], kind: IconKind) -> IconSet:
    """Produce every size of an icon family from the source images.

    Args:
        sources: Source images (any format Pillow can decode)
        kind: The icon family to produce

    Returns:
        The IconSet, with a warning for each optional size left out

    Raises:
        MissingIconResolution: If a required size, or every size, is not
            covered by any source
        ResourceMissing: If a source image cannot be decoded
    """
    table = SIZE_TABLES[kind]
    probed = [_probe(Path(p)) for p in sources]

    unmet_required = [size for size, _, required in table if required and not _pick(probed, size)]
    if unmet_required:
        raise MissingIconResolution(min(unmet_required), kind.value)

    images = []
    warnings = []
    for size, scale, _required in table:
        source = _pick(probed, size)
        if source is None:
            message = f"no {kind.value} icon source covers {size}x{size}; size omitted"
            log.warning(message)
            warnings.append(message)
            continue
        images.append(IconImage(size, scale, _render(source, size)))

    if not images:
        raise MissingIconResolution(min(size for size, _, _ in table), kind.value)
    log.debug("%s icon sizes: %s", kind.value, [i.size for i in images])
    return IconSet(kind, tuple(images), tuple(warnings))


# ----------------------------------------------------------------------------
# Containers


def write_icns(icons: IconSet, out: Path) -> Path:
    """Write an Apple .icns container of PNG chunks.

    Each chunk is a 4-byte type, a big-endian length that includes the
    8-byte chunk header, then the PNG data.
    """
    chunks = []
    for image in icons.images:
        ostype = ICNS_TYPES[image.size]
        chunks.append(ostype + struct.pack(">I", 8 + len(image.png)) + image.png)
    body = b"".join(chunks)
    out.write_bytes(b"icns" + struct.pack(">I", 8 + len(body)) + body)
    return out


def write_ico(icons: IconSet, out: Path) -> Path:
    """Write a Windows .ico container with embedded PNG images."""
    count = len(icons.images)
    header = struct.pack("<HHH", 0, 1, count)
    offset = 6 + 16 * count
    directory = b""
    data = b""
    for image in icons.images:
        # 0 means 256 in ICONDIRENTRY
        edge = 0 if image.size >= 256 else image.size
        directory += struct.pack(
            "<BBBBHHII",
            edge,
            edge,
            0,
            0,
            1,
            32,
            len(image.png),
            offset + len(data),
        )
        data += image.png
    out.write_bytes(header + directory + data)
    return out


def write_hicolor(icons: IconSet, share_dir: Path, name: str) -> list[Path]:
    """Install PNGs into a freedesktop hicolor theme tree.

    Args:
        icons: Freedesktop icon set
        share_dir: The ``usr/share`` directory of the staging tree
        name: Icon name (file stem)

    Returns:
        The written files
    """
    written = []
    for image in icons.images:
        directory = share_dir / "icons" / "hicolor" / f"{image.size}x{image.size}" / "apps"
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name}.png"
        path.write_bytes(image.png)
        written.append(path)
    return written
