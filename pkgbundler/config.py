"""Engine configuration.

Engine settings (toolchain cache, network policy, checksum defaults) live
in a TOML file. Bundle specifications are never read from here: they are
handed to :func:`pkgbundler.spec.validate` as already-loaded mappings.

Example .pkgbundler.toml:
    [toolchain]
    cache_dir = "~/.cache/pkgbundler"
    timeout = 300
    retries = 3
    backoff = 2.0

    [toolchain.wix]
    url = "https://example.com/wix314-binaries.zip"
    sha256 = "..."

    [toolchain.appimagetool]
    path = "/opt/bin/appimagetool"

    [checksum]
    algorithm = "sha512"
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

# Environment variable names
ENV_CACHE_DIR = "PKGBUNDLER_CACHE_DIR"
ENV_KEYCHAIN_PROFILE = "KEYCHAIN_PROFILE"

CONFIG_FILENAMES = [".pkgbundler.toml", "pkgbundler.toml"]

DEFAULT_CACHE_DIR = Path("~/.cache/pkgbundler")
DEFAULT_FETCH_TIMEOUT = 300.0
DEFAULT_FETCH_RETRIES = 3
DEFAULT_FETCH_BACKOFF = 2.0
DEFAULT_CHECKSUM_ALGORITHM = "sha256"


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .pkgbundler.toml in current directory
    3. pkgbundler.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the explicit file is missing or a config
            file cannot be parsed
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [cwd / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: object = None,
) -> object:
    """Get a value from config with section.key lookup.

    Nested sections are addressed with dots, e.g. ``"toolchain.wix"``.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "toolchain", "toolchain.wix")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    node: object = config
    for part in section.split("."):
        if not isinstance(node, dict):
            return default
        node = node.get(part, {})
    if not isinstance(node, dict):
        return default
    return node.get(key, default)


@dataclass(frozen=True)
class ToolchainSource:
    """Where a downloadable toolchain comes from and how to verify it."""

    url: str | None = None
    sha256: str | None = None
    path: Path | None = None


@dataclass(frozen=True)
class EngineConfig:
    """Typed view of the engine configuration."""

    cache_dir: Path = DEFAULT_CACHE_DIR
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    fetch_backoff: float = DEFAULT_FETCH_BACKOFF
    checksum_algorithm: str = DEFAULT_CHECKSUM_ALGORITHM
    toolchains: dict[str, ToolchainSource] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: dict[str, object]) -> "EngineConfig":
        """Build an EngineConfig from a raw configuration dictionary."""
        cache_dir = os.getenv(ENV_CACHE_DIR) or get_config_value(
            config, "toolchain", "cache_dir", str(DEFAULT_CACHE_DIR)
        )
        try:
            timeout = float(
                get_config_value(
                    config, "toolchain", "timeout", DEFAULT_FETCH_TIMEOUT
                )
            )
            retries = int(
                get_config_value(
                    config, "toolchain", "retries", DEFAULT_FETCH_RETRIES
                )
            )
            backoff = float(
                get_config_value(
                    config, "toolchain", "backoff", DEFAULT_FETCH_BACKOFF
                )
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid [toolchain] value: {e}") from e
        if retries < 1:
            raise ConfigurationError("[toolchain] retries must be at least 1")

        toolchains: dict[str, ToolchainSource] = {}
        section = config.get("toolchain", {})
        if isinstance(section, dict):
            for name, value in section.items():
                if not isinstance(value, dict):
                    continue
                path = value.get("path")
                toolchains[name] = ToolchainSource(
                    url=value.get("url"),
                    sha256=value.get("sha256"),
                    path=Path(path).expanduser() if path else None,
                )

        algorithm = get_config_value(
            config, "checksum", "algorithm", DEFAULT_CHECKSUM_ALGORITHM
        )
        return cls(
            cache_dir=Path(str(cache_dir)).expanduser(),
            fetch_timeout=timeout,
            fetch_retries=retries,
            fetch_backoff=backoff,
            checksum_algorithm=str(algorithm),
            toolchains=toolchains,
        )


# Global config (loaded lazily)
_config: EngineConfig | None = None


def get_config() -> EngineConfig:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = EngineConfig.from_dict(load_config())
    return _config
