"""pkgbundler: package application binaries into native distributable artifacts.

Example:
    from pkgbundler import bundle, validate

    spec = validate(raw_mapping, targets=["deb"])
    for outcome in bundle(spec, ["deb"]):
        print(outcome.format, outcome.artifact or outcome.error)
"""

from .engine import ArtifactDescriptor, BundleOutcome, bundle
from .errors import (
    BundleError,
    BundlerError,
    Cancelled,
    ChecksumMismatch,
    CommandError,
    ConfigurationError,
    FatalPackagingError,
    MissingIconResolution,
    PermissionDenied,
    RenderError,
    ResourceMissing,
    SigningError,
    ToolchainUnavailable,
    ValidationError,
)
from .signing import SignatureRecord, SigningSkipped
from .spec import BundleSpecification, SigningContext, TargetFormat, validate
from .tools import CancellationToken

__version__ = "0.1.0"

__all__ = [
    "ArtifactDescriptor",
    "BundleError",
    "BundleOutcome",
    "BundleSpecification",
    "BundlerError",
    "Cancelled",
    "CancellationToken",
    "ChecksumMismatch",
    "CommandError",
    "ConfigurationError",
    "FatalPackagingError",
    "MissingIconResolution",
    "PermissionDenied",
    "RenderError",
    "ResourceMissing",
    "SignatureRecord",
    "SigningContext",
    "SigningError",
    "SigningSkipped",
    "TargetFormat",
    "ToolchainUnavailable",
    "ValidationError",
    "bundle",
    "validate",
]
