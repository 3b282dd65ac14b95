"""Bundle specification: the validated, immutable input of a run.

``validate`` turns an already-loaded mapping into a ``BundleSpecification``
or raises ``ValidationError`` naming the offending field. It never returns
a partially-constructed specification.
"""

import enum
import glob
import hashlib
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType

from .binaries import (
    UNIVERSAL,
    BinaryKind,
    detect_architecture,
    detect_kind,
    host_architecture,
    normalize_arch,
)
from .config import EngineConfig, get_config
from .errors import ValidationError

Pathlike = Path | str

# Maximum file size for validation (4GB)
MAX_FILE_SIZE = 4 * 1024 * 1024 * 1024

DEFAULT_MIN_SYSTEM_VERSION = "10.13"
DEFAULT_COMPRESSION_LEVEL = 9

SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+$")

WINDOWS_RESERVED_CHARS = set('<>:"/\\|?*')


# ----------------------------------------------------------------------------
# Target formats


class TargetFormat(enum.Enum):
    """The packaging schemes the engine can produce."""

    APP = "app"
    DMG = "dmg"
    MSI = "msi"
    DEB = "deb"
    RPM = "rpm"
    APPIMAGE = "appimage"

    @classmethod
    def from_short_name(cls, name: str) -> "TargetFormat":
        """Map a short name ("deb", "app", ...) to a TargetFormat."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            choices = ", ".join(f.value for f in cls)
            raise ValueError(
                f"Unknown target format '{name}' (expected one of {choices})"
            ) from None

    @property
    def platform(self) -> str:
        """The settings block ("macos", "windows", "linux") of this format."""
        return _PLATFORMS[self]

    @property
    def binary_kind(self) -> BinaryKind:
        """The executable container format this target ships."""
        return _BINARY_KINDS[_PLATFORMS[self]]


_PLATFORMS = {
    TargetFormat.APP: "macos",
    TargetFormat.DMG: "macos",
    TargetFormat.MSI: "windows",
    TargetFormat.DEB: "linux",
    TargetFormat.RPM: "linux",
    TargetFormat.APPIMAGE: "linux",
}

_BINARY_KINDS = {
    "macos": BinaryKind.MACHO,
    "windows": BinaryKind.PE,
    "linux": BinaryKind.ELF,
}


# ----------------------------------------------------------------------------
# Data model


@dataclass(frozen=True)
class Version:
    """A parsed semantic version."""

    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build:
            text += f"+{self.build}"
        return text


@dataclass(frozen=True)
class BinarySpec:
    """One input executable."""

    path: Path
    arch: str | None
    kind: BinaryKind
    main: bool = False
    explicit_arch: bool = False

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class ResourceSpec:
    """One resolved resource and its relative destination."""

    source: Path
    target: PurePosixPath


@dataclass(frozen=True)
class SigningContext:
    """A credential reference plus signing options.

    ``identity`` is resolved by the platform signing tool (a Developer ID
    name, a certificate thumbprint or a GPG key id); it never carries secret
    material.
    """

    identity: str
    options: Mapping[str, object] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def option(self, key: str, default: object = None) -> object:
        return self.options.get(key, default)


@dataclass(frozen=True)
class PlatformSettings:
    """Per-platform settings block."""

    signing: SigningContext | None = None
    template_overrides: Mapping[str, Path] = field(
        default_factory=lambda: MappingProxyType({})
    )
    files: tuple[ResourceSpec, ...] = ()
    arch: str | None = None
    # macOS
    minimum_system_version: str = DEFAULT_MIN_SYSTEM_VERSION
    frameworks: tuple[Path, ...] = ()
    # Windows
    allow_downgrades: bool = True
    # Linux
    depends: tuple[str, ...] = ()
    compute_depends: bool = True
    section: str = "utils"
    priority: str = "optional"


@dataclass(frozen=True)
class BundleSpecification:
    """Normalized, validated description of what to package."""

    name: str
    version: Version
    identifier: str
    binaries: tuple[BinarySpec, ...]
    output_dir: Path
    resources: tuple[ResourceSpec, ...] = ()
    icons: tuple[Path, ...] = ()
    description: str | None = None
    long_description: str | None = None
    license: str | None = None
    license_file: Path | None = None
    copyright: str | None = None
    publisher: str | None = None
    homepage: str | None = None
    category: str | None = None
    arch: str | None = None
    source_date_epoch: int = 0
    checksum_algorithm: str = "sha256"
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    macos: PlatformSettings = field(default_factory=PlatformSettings)
    windows: PlatformSettings = field(default_factory=PlatformSettings)
    linux: PlatformSettings = field(default_factory=PlatformSettings)

    @property
    def main_binary(self) -> BinarySpec:
        return next(b for b in self.binaries if b.main)

    @property
    def package_name(self) -> str:
        """Name usable as a Linux package name ("My App" -> "my-app")."""
        name = re.sub(r"[^a-z0-9+.-]+", "-", self.name.lower()).strip("-.+")
        return name or "app"

    @property
    def maintainer(self) -> str:
        """Publisher, defaulting to the identifier's second label."""
        if self.publisher:
            return self.publisher
        return self.identifier.split(".")[1]

    def settings_for(self, target: TargetFormat) -> PlatformSettings:
        return getattr(self, target.platform)

    def target_arch(self, target: TargetFormat) -> str:
        """The architecture a target is built for.

        Platform setting, then specification, then the main binary when it
        is universal (macOS only), then the host.
        """
        settings = self.settings_for(target)
        if settings.arch:
            return settings.arch
        if self.arch:
            return self.arch
        if target.platform == "macos" and self.main_binary.arch == UNIVERSAL:
            return UNIVERSAL
        return host_architecture()

    def binary_for(self, target: TargetFormat) -> BinarySpec | None:
        """Select the binary variant matching a target's format and arch.

        The main binary wins when several binaries match.
        """
        arch = self.target_arch(target)
        matches = [b for b in self.binaries if _binary_matches(b, target, arch)]
        if not matches:
            return None
        return next((b for b in matches if b.main), matches[0])

    def binaries_for(self, target: TargetFormat) -> tuple[BinarySpec, ...]:
        """All binaries shipped by a target, the selected main variant first."""
        selected = self.binary_for(target)
        if selected is None:
            return ()
        arch = self.target_arch(target)
        extras = [
            b
            for b in self.binaries
            if b is not selected
            and not b.main
            and b.name != selected.name
            and _binary_matches(b, target, arch)
        ]
        return (selected, *extras)


def _binary_matches(binary: BinarySpec, target: TargetFormat, arch: str) -> bool:
    if binary.kind is not target.binary_kind:
        if not (binary.kind is BinaryKind.UNKNOWN and binary.explicit_arch):
            return False
    if binary.arch == arch:
        return True
    return target.platform == "macos" and binary.arch == UNIVERSAL


# ----------------------------------------------------------------------------
# Field validation


def parse_version(text: str) -> Version:
    """Parse a semantic version string.

    Raises:
        ValueError: If the string is not MAJOR.MINOR.PATCH[-PRE][+BUILD]
    """
    match = SEMVER_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"'{text}' is not a MAJOR.MINOR.PATCH version")
    major, minor, patch, pre, build = match.groups()
    return Version(int(major), int(minor), int(patch), pre, build)


def validate_identifier(identifier: str) -> None:
    """Validate a reverse-DNS bundle identifier.

    Raises:
        ValidationError: If the identifier is empty, contains characters
            reserved on Windows, or is not reverse-DNS
    """
    if not identifier or not identifier.strip():
        raise ValidationError("identifier", "cannot be empty")
    reserved = sorted(set(identifier) & WINDOWS_RESERVED_CHARS)
    if reserved:
        raise ValidationError(
            "identifier",
            f"'{identifier}' contains characters reserved on Windows: "
            + " ".join(reserved),
        )
    if not IDENTIFIER_PATTERN.match(identifier):
        raise ValidationError(
            "identifier",
            f"'{identifier}' is not a reverse-DNS identifier "
            "(e.g. 'com.example.app')",
        )


def validate_file(
    path: Pathlike,
    field_name: str,
    allow_symlink: bool = False,
    max_size: int = MAX_FILE_SIZE,
) -> Path:
    """Validate a referenced input file.

    Checks that the file exists, is a regular file (symbolic links are
    rejected unless allowed), is readable, non-empty and not larger than
    max_size.

    Args:
        path: Path to the file to validate
        field_name: Specification field reported on failure
        allow_symlink: Accept a symbolic link to a regular file
        max_size: Maximum allowed file size in bytes

    Returns:
        The absolute path

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.exists():
        raise ValidationError(field_name, f"file does not exist: {path}")

    if path.is_symlink() and not allow_symlink:
        raise ValidationError(field_name, f"file is a symbolic link: {path}")

    if not path.is_file():
        raise ValidationError(field_name, f"path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(field_name, f"file is not readable: {path}")

    size = path.stat().st_size
    if size == 0:
        raise ValidationError(field_name, f"file is empty (zero bytes): {path}")
    if size > max_size:
        raise ValidationError(
            field_name,
            f"file exceeds maximum size ({size} > {max_size} bytes): {path}",
        )
    return path.absolute()


def resource_relpath(path: Path) -> PurePosixPath:
    """Relative destination of a resource inside a resources directory.

    ``./data/a.png`` -> ``data/a.png``; ``../../a.png`` -> ``_up_/_up_/a.png``;
    ``/home/me/a.png`` -> ``_root_/home/me/a.png``.
    """
    parts: list[str] = []
    for part in path.parts:
        if part == path.anchor and path.is_absolute():
            parts.append("_root_")
        elif part == "..":
            parts.append("_up_")
        elif part in (".", ""):
            continue
        else:
            parts.append(part)
    return PurePosixPath(*parts)


def _single_line(value: str, field_name: str) -> str:
    if "\n" in value or "\r" in value:
        raise ValidationError(field_name, "must be a single line")
    return value


def _text(
    raw: Mapping[str, object],
    key: str,
    required: bool = False,
    multiline: bool = False,
) -> str | None:
    value = raw.get(key)
    if value is None:
        if required:
            raise ValidationError(key, "is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(key, "must be a string")
    value = value.strip()
    if not multiline:
        _single_line(value, key)
    if required and not value:
        raise ValidationError(key, "cannot be empty")
    return value or None


def _resolve(base_dir: Path, value: object, field_name: str) -> Path:
    if not isinstance(value, (str, os.PathLike)):
        raise ValidationError(field_name, "must be a path")
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _validate_binaries(raw: object, base_dir: Path) -> tuple[BinarySpec, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValidationError("binaries", "at least one binary is required")
    entries: list[BinarySpec] = []
    for i, item in enumerate(raw):
        field_name = f"binaries[{i}]"
        if isinstance(item, Mapping):
            path_value = item.get("path")
            arch_value = item.get("arch")
            main = bool(item.get("main", False))
        else:
            path_value, arch_value, main = item, None, False
        path = validate_file(_resolve(base_dir, path_value, field_name), field_name)
        if arch_value is not None:
            arch = normalize_arch(str(arch_value))
            if arch is None:
                raise ValidationError(
                    field_name, f"unknown architecture '{arch_value}'"
                )
        else:
            arch = detect_architecture(path)
        entries.append(
            BinarySpec(
                path=path,
                arch=arch,
                kind=detect_kind(path),
                main=main,
                explicit_arch=arch_value is not None,
            )
        )
    mains = [b for b in entries if b.main]
    if len(mains) > 1:
        raise ValidationError("binaries", "only one binary can be marked main")
    if not mains:
        first = entries[0]
        entries[0] = BinarySpec(
            first.path, first.arch, first.kind, True, first.explicit_arch
        )
    return tuple(entries)


def _expand(pattern: str, base_dir: Path, field_name: str) -> list[Path]:
    full = pattern if os.path.isabs(pattern) else str(base_dir / pattern)
    matches = sorted(glob.glob(full, recursive=True))
    if not matches:
        raise ValidationError(field_name, f"'{pattern}' matched no files")
    paths = []
    for match in matches:
        path = Path(match)
        if not os.access(path, os.R_OK):
            raise ValidationError(field_name, f"not readable: {path}")
        paths.append(path)
    return paths


def _validate_resources(raw: object, base_dir: Path) -> tuple[ResourceSpec, ...]:
    if raw is None:
        return ()
    resources: list[ResourceSpec] = []
    if isinstance(raw, Mapping):
        for pattern, target_dir in raw.items():
            field_name = f"resources[{pattern}]"
            for path in _expand(str(pattern), base_dir, field_name):
                target = PurePosixPath(str(target_dir)) / path.name
                resources.append(ResourceSpec(path, target))
    elif isinstance(raw, (list, tuple)):
        for i, pattern in enumerate(raw):
            field_name = f"resources[{i}]"
            if not isinstance(pattern, str):
                raise ValidationError(field_name, "must be a glob pattern")
            for path in _expand(pattern, base_dir, field_name):
                relative = Path(os.path.relpath(path, base_dir))
                if not os.path.isabs(pattern):
                    target = resource_relpath(relative)
                else:
                    target = resource_relpath(path)
                resources.append(ResourceSpec(path, target))
    else:
        raise ValidationError("resources", "must be a list or a mapping")
    return tuple(resources)


def _validate_files(raw: object, base_dir: Path, field_name: str) -> tuple[ResourceSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise ValidationError(field_name, "must map destination to source")
    files = []
    for dest, source in sorted(raw.items()):
        path = _resolve(base_dir, source, f"{field_name}[{dest}]")
        if not path.exists():
            raise ValidationError(f"{field_name}[{dest}]", f"does not exist: {path}")
        files.append(ResourceSpec(path, PurePosixPath(str(dest).lstrip("/"))))
    return tuple(files)


def _validate_signing(raw: object, base_dir: Path, field_name: str) -> SigningContext | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"identity": raw}
    if not isinstance(raw, Mapping):
        raise ValidationError(field_name, "must be a mapping with an identity")
    identity = raw.get("identity")
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError(f"{field_name}.identity", "cannot be empty")
    options = {k: v for k, v in raw.items() if k != "identity"}
    if "entitlements" in options:
        options["entitlements"] = validate_file(
            _resolve(base_dir, options["entitlements"], f"{field_name}.entitlements"),
            f"{field_name}.entitlements",
        )
    return SigningContext(identity.strip(), MappingProxyType(options))


def _validate_platform(
    name: str, raw: object, base_dir: Path
) -> PlatformSettings:
    if raw is None:
        return PlatformSettings()
    if not isinstance(raw, Mapping):
        raise ValidationError(name, "must be a mapping")

    overrides: dict[str, Path] = {}
    for template_id, path in dict(raw.get("template_overrides") or {}).items():
        field_name = f"{name}.template_overrides[{template_id}]"
        overrides[str(template_id)] = validate_file(
            _resolve(base_dir, path, field_name), field_name
        )

    arch = None
    if raw.get("arch") is not None:
        arch = normalize_arch(str(raw["arch"]))
        if arch is None:
            raise ValidationError(f"{name}.arch", f"unknown architecture '{raw['arch']}'")

    frameworks = []
    for i, framework in enumerate(raw.get("frameworks") or ()):
        path = _resolve(base_dir, framework, f"{name}.frameworks[{i}]")
        if not path.is_dir():
            raise ValidationError(
                f"{name}.frameworks[{i}]", f"framework bundle not found: {path}"
            )
        frameworks.append(path)

    depends = raw.get("depends") or ()
    if not isinstance(depends, (list, tuple)) or not all(
        isinstance(d, str) for d in depends
    ):
        raise ValidationError(f"{name}.depends", "must be a list of strings")

    return PlatformSettings(
        signing=_validate_signing(raw.get("signing"), base_dir, f"{name}.signing"),
        template_overrides=MappingProxyType(overrides),
        files=_validate_files(raw.get("files"), base_dir, f"{name}.files"),
        arch=arch,
        minimum_system_version=str(
            raw.get("minimum_system_version", DEFAULT_MIN_SYSTEM_VERSION)
        ),
        frameworks=tuple(frameworks),
        allow_downgrades=bool(raw.get("allow_downgrades", True)),
        depends=tuple(depends),
        compute_depends=bool(raw.get("compute_depends", True)),
        section=_single_line(str(raw.get("section", "utils")), f"{name}.section"),
        priority=_single_line(str(raw.get("priority", "optional")), f"{name}.priority"),
    )


def _validate_int(
    raw: Mapping[str, object],
    key: str,
    default: int | str,
    low: int,
    high: int | None = None,
) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(key, "must be an integer")
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(key, f"'{value}' is not an integer") from None
    if number < low or (high is not None and number > high):
        bounds = f"{low}..{high}" if high is not None else f">= {low}"
        raise ValidationError(key, f"must be in range {bounds}")
    return number


def validate(
    raw: Mapping[str, object],
    targets: Iterable[TargetFormat] | None = None,
    config: EngineConfig | None = None,
) -> BundleSpecification:
    """Validate a raw specification mapping.

    Args:
        raw: The already-loaded specification fields
        targets: Requested target formats; when given, each must have a
            binary for its architecture
        config: Engine configuration (defaults to the global config)

    Returns:
        The validated, immutable specification

    Raises:
        ValidationError: Naming the first offending field
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("specification", "must be a mapping")
    config = config or get_config()
    base_dir = Path(str(raw.get("base_dir") or Path.cwd())).absolute()

    name = _text(raw, "name", required=True)
    version_text = _text(raw, "version", required=True)
    try:
        version = parse_version(version_text)
    except ValueError as e:
        raise ValidationError("version", str(e)) from None
    identifier = raw.get("identifier")
    if not isinstance(identifier, str):
        raise ValidationError("identifier", "is required")
    validate_identifier(identifier)

    binaries = _validate_binaries(raw.get("binaries"), base_dir)
    resources = _validate_resources(raw.get("resources"), base_dir)

    icons = []
    for i, icon in enumerate(raw.get("icons") or ()):
        field_name = f"icons[{i}]"
        icons.append(
            validate_file(_resolve(base_dir, icon, field_name), field_name, allow_symlink=True)
        )

    license_file = None
    if raw.get("license_file") is not None:
        license_file = validate_file(
            _resolve(base_dir, raw["license_file"], "license_file"),
            "license_file",
            allow_symlink=True,
        )

    output_value = raw.get("output_dir")
    if not output_value:
        raise ValidationError("output_dir", "is required")
    output_dir = _resolve(base_dir, output_value, "output_dir").absolute()
    if output_dir.exists() and not output_dir.is_dir():
        raise ValidationError("output_dir", f"not a directory: {output_dir}")

    arch = None
    if raw.get("arch") is not None:
        arch = normalize_arch(str(raw["arch"]))
        if arch is None:
            raise ValidationError("arch", f"unknown architecture '{raw['arch']}'")

    epoch_default = os.environ.get("SOURCE_DATE_EPOCH") or "0"
    source_date_epoch = _validate_int(raw, "source_date_epoch", epoch_default, 0)
    compression_level = _validate_int(
        raw, "compression_level", DEFAULT_COMPRESSION_LEVEL, 0, 9
    )

    algorithm = str(raw.get("checksum_algorithm") or config.checksum_algorithm)
    if algorithm not in hashlib.algorithms_guaranteed or algorithm.startswith("shake"):
        raise ValidationError(
            "checksum_algorithm", f"unsupported digest algorithm '{algorithm}'"
        )

    spec = BundleSpecification(
        name=name,
        version=version,
        identifier=identifier,
        binaries=binaries,
        output_dir=output_dir,
        resources=resources,
        icons=tuple(icons),
        description=_text(raw, "description"),
        long_description=_text(raw, "long_description", multiline=True),
        license=_text(raw, "license"),
        license_file=license_file,
        copyright=_text(raw, "copyright"),
        publisher=_text(raw, "publisher"),
        homepage=_text(raw, "homepage"),
        category=_text(raw, "category"),
        arch=arch,
        source_date_epoch=source_date_epoch,
        checksum_algorithm=algorithm,
        compression_level=compression_level,
        macos=_validate_platform("macos", raw.get("macos"), base_dir),
        windows=_validate_platform("windows", raw.get("windows"), base_dir),
        linux=_validate_platform("linux", raw.get("linux"), base_dir),
    )

    for target in targets or ():
        if spec.binary_for(target) is None:
            arch = spec.target_arch(target)
            raise ValidationError(
                "binaries",
                f"no {target.binary_kind.value} binary for {arch} "
                f"(required by target '{target.value}'); "
                "set 'arch' on the binary if it cannot be detected",
            )
    return spec
