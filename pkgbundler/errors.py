"""Exception hierarchy for pkgbundler.

``ValidationError`` is raised before any target runs. Every other error is
a ``BundleError``: it is scoped to a single target pipeline and reported in
that target's outcome while sibling targets carry on.
"""


class BundlerError(Exception):
    """Base exception class for pkgbundler errors."""


class ValidationError(BundlerError):
    """Exception raised when a bundle specification is invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class ConfigurationError(BundlerError):
    """Exception raised when engine configuration is invalid."""


class BundleError(BundlerError):
    """Base class for errors scoped to one target pipeline."""


class CommandError(BundleError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ResourceMissing(BundleError):
    """Exception raised when a referenced file cannot be found or read."""


class PermissionDenied(BundleError):
    """Exception raised when a file cannot be copied into the staging tree."""


class MissingIconResolution(BundleError):
    """Exception raised when no source image covers a required icon size."""

    def __init__(self, size: int, kind: str = ""):
        self.size = size
        self.kind = kind
        where = f" for {kind} icons" if kind else ""
        super().__init__(
            f"No source image of at least {size}x{size} pixels{where}"
        )


class RenderError(BundleError):
    """Exception raised when a template references an unresolved field."""

    def __init__(self, template_id: str, field: str = "", message: str | None = None):
        self.template_id = template_id
        self.field = field
        super().__init__(
            message or f"Template '{template_id}' references missing field '{field}'"
        )


class FatalPackagingError(BundleError):
    """Exception raised when an archive invariant is violated."""


class SigningError(BundleError):
    """Exception raised when signing was requested but failed."""


class ToolchainUnavailable(BundleError):
    """Exception raised when a required external tool cannot be located."""


class ChecksumMismatch(ToolchainUnavailable):
    """Exception raised when a fetched toolchain fails its integrity check."""

    def __init__(self, name: str, expected: str, actual: str):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {name}: expected {expected}, got {actual}"
        )


class Cancelled(BundleError):
    """Exception raised when the run was cancelled by the caller."""
