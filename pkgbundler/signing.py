"""Code signing and checksums.

Signing delegates to the platform tool (codesign, SignTool, gpg); no
cryptography happens here. Credentials are referenced by identity and
resolved by the tool. Checksums are always computed, signed or not.
"""

import enum
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from .archive import walk_sorted, write_zip
from .config import ENV_KEYCHAIN_PROFILE
from .errors import CommandError, SigningError, ToolchainUnavailable
from .logutil import ProgressReporter
from .spec import SigningContext
from .toolchain import ToolchainLocator
from .tools import CancellationToken, Codesign, Gpg, Security, SignTool, Xcrun

Pathlike = Path | str

SIGNABLE_FILE_EXTENSIONS = [".so", ".dylib"]
SIGNABLE_FOLDER_EXTENSIONS = [".mxo", ".framework", ".app", ".bundle", ".plugin"]

DEVELOPER_ID_PREFIX = "Developer ID Application: "
SHA1_THUMBPRINT = re.compile(r"^[0-9A-Fa-f]{40}$")

DEFAULT_SIGNTOOL_DIGEST = "sha256"


class SignerKind(enum.Enum):
    """Platform signing schemes."""

    CODESIGN = "codesign"
    SIGNTOOL = "signtool"
    GPG = "gpg"


@dataclass(frozen=True)
class SignatureRecord:
    """A signature that was applied.

    ``path`` is the detached signature file, or the artifact itself when the
    signature is embedded.
    """

    kind: SignerKind
    identity: str
    path: Path
    notarized: bool = False


@dataclass(frozen=True)
class SigningSkipped:
    """Signing was not requested for the artifact."""

    reason: str


# ----------------------------------------------------------------------------
# macOS


def codesign_authority(identity: str) -> str | None:
    """Map a signing identity to a codesign authority (None for ad-hoc)."""
    if identity in ("-", ""):
        return None
    if ":" in identity or SHA1_THUMBPRINT.match(identity):
        return identity
    return DEVELOPER_ID_PREFIX + identity


class Codesigner:
    """Recursively codesign a macOS bundle.

    This class handles the proper ordering of codesigning operations:
    1. Sign internal binaries (.so, .dylib) and plug-in bundles first
    2. Sign nested .app bundles
    3. Sign frameworks
    4. Sign the main bundle/runtime with entitlements

    Args:
        path: Path to the bundle (or single file) to sign
        identity: Developer ID name, full certificate name or hash
            ("-" for ad-hoc signing)
        entitlements: Path to entitlements.plist file
        hardened_runtime: Sign runtimes with ``--options runtime``
        tool: codesign tool wrapper
        verify: If True, verify signatures after signing

    Example:
        signer = Codesigner("MyApp.app", identity="John Doe",
                            entitlements=Path("entitlements.plist"))
        signer.process()
    """

    FILE_EXTENSIONS: list[str] = SIGNABLE_FILE_EXTENSIONS
    FOLDER_EXTENSIONS: list[str] = SIGNABLE_FOLDER_EXTENSIONS

    def __init__(
        self,
        path: Pathlike,
        identity: str = "-",
        entitlements: Path | None = None,
        hardened_runtime: bool = True,
        tool: Codesign | None = None,
        verify: bool = True,
    ) -> None:
        self.path = Path(path)
        self.authority = codesign_authority(identity)
        self.entitlements = entitlements
        self.hardened_runtime = hardened_runtime
        self.tool = tool or Codesign()
        self.verify_after = verify
        self.log = logging.getLogger(self.__class__.__name__)

        if self.entitlements is not None and not self.entitlements.exists():
            raise SigningError(f"Entitlements file not found: {self.entitlements}")

        # Target collections
        self.targets_internals: set[Path] = set()
        self.targets_apps: set[Path] = set()
        self.targets_frameworks: set[Path] = set()

        self._base_args = [
            "--sign",
            self.authority if self.authority else "-",
            "--force",
        ]
        if self.authority:
            self._base_args.append("--timestamp")

    def collect(self) -> None:
        """Walk the bundle and categorize all signable targets."""
        if not self.path.is_dir():
            return
        for root, folders, files in os.walk(self.path):
            root_path = Path(root)

            for fname in files:
                fpath = root_path / fname
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FILE_EXTENSIONS:
                    self.log.debug("added binary: %s", fpath)
                    self.targets_internals.add(fpath)

            for folder in folders:
                fpath = root_path / folder
                if fpath.is_symlink():
                    continue
                if fpath.suffix in self.FOLDER_EXTENSIONS:
                    self.log.debug("added bundle: %s", fpath)
                    if fpath.suffix == ".framework":
                        self.targets_frameworks.add(fpath)
                    elif fpath.suffix == ".app":
                        self.targets_apps.add(fpath)
                    else:
                        self.targets_internals.add(fpath)

    def sign_internal_binary(self, path: Path) -> None:
        """Sign an internal binary without runtime hardening."""
        self.log.info("signing internal: %s", path)
        self.tool.invoke(self._base_args + [str(path)])

    def sign_runtime(self, path: Path | None = None) -> None:
        """Sign with runtime hardening and optional entitlements.

        Args:
            path: Path to sign (defaults to main bundle path)
        """
        if path is None:
            path = self.path
        args = list(self._base_args)
        if self.hardened_runtime:
            args.extend(["--options", "runtime"])
        if self.entitlements:
            args.extend(["--entitlements", str(self.entitlements)])
        args.append(str(path))
        self.log.info("signing runtime: %s", path)
        self.tool.invoke(args)

    def verify_signature(self, path: Path) -> bool:
        """Verify codesigning of a path."""
        try:
            self.tool.invoke(["--verify", "--strict", "--verbose", str(path)])
        except CommandError as e:
            self.log.error("verification failed for %s: %s", path, e)
            return False
        self.log.info("verified: %s", path)
        return True

    def _sign_main_executables(self, app: Path) -> None:
        macos_path = app / "Contents" / "MacOS"
        if macos_path.exists():
            for exe in sorted(macos_path.iterdir()):
                if exe.is_file() and not exe.is_symlink():
                    self.sign_internal_binary(exe)

    def process(self) -> None:
        """Execute the full signing workflow, innermost code first."""
        self.log.info("processing: %s", self.path)
        if not self.targets_internals:
            self.collect()

        for path in sorted(self.targets_internals, key=lambda p: len(p.parts), reverse=True):
            self.sign_internal_binary(path)

        for path in sorted(self.targets_apps, key=lambda p: len(p.parts), reverse=True):
            self._sign_main_executables(path)
            self.sign_runtime(path)

        for path in sorted(self.targets_frameworks):
            self.sign_internal_binary(path)

        if self.path.suffix == ".app":
            self._sign_main_executables(self.path)
        self.sign_runtime()

        if self.verify_after and not self.tool.dry_run:
            if not self.verify_signature(self.path):
                raise SigningError(f"Signature verification failed: {self.path}")


class Notarizer:
    """Submit an artifact for notarization and staple the ticket.

    Args:
        keychain_profile: notarytool keychain profile
        xcrun: xcrun tool wrapper
    """

    def __init__(self, keychain_profile: str, xcrun: Xcrun):
        self.keychain_profile = keychain_profile
        self.xcrun = xcrun
        self.log = logging.getLogger(self.__class__.__name__)

    def submit(self, path: Path) -> None:
        """Submit a DMG, zip or pkg to notarytool and wait for the result."""
        self.log.info("Notarizing: %s", path)
        command = [
            "notarytool",
            "submit",
            str(path),
            "--keychain-profile",
            self.keychain_profile,
            "--wait",
        ]
        try:
            if self.xcrun.dry_run:
                self.xcrun.invoke(command)
            else:
                # notarization can take minutes
                with ProgressReporter("Waiting for notarization", log=self.log):
                    self.xcrun.invoke(command)
        except CommandError as e:
            raise SigningError(f"Notarization failed for {path}: {e.output or e}") from e

    def staple(self, path: Path) -> None:
        self.log.info("Stapling: %s", path)
        try:
            self.xcrun.invoke(["stapler", "staple", str(path)])
        except CommandError as e:
            raise SigningError(f"Stapling failed for {path}: {e.output or e}") from e

    def process(self, artifact: Path) -> None:
        """Notarize and staple; bundles are submitted as a zip archive."""
        if artifact.is_dir():
            archive = artifact.parent / f"{artifact.name}.notarize.zip"
            try:
                write_zip(artifact.parent, archive, mtime=0, include=artifact.name)
                self.submit(archive)
            finally:
                archive.unlink(missing_ok=True)
        else:
            self.submit(artifact)
        self.staple(artifact)


def _check_codesign_identity(authority: str, security: Security) -> None:
    try:
        output = security.invoke(["find-identity", "-v", "-p", "codesigning"]).stdout
    except CommandError as e:
        raise SigningError(f"Cannot list signing identities: {e.output or e}") from e
    if not security.dry_run and authority not in output:
        raise SigningError(f"Signing identity not found in keychain: {authority}")


def _sign_codesign(
    artifact: Path,
    context: SigningContext,
    locator: ToolchainLocator,
    token: CancellationToken | None,
    dry_run: bool,
) -> SignatureRecord:
    codesign = Codesign(locator, token, dry_run)
    authority = codesign_authority(context.identity)
    if authority:
        _check_codesign_identity(authority, Security(locator, token, dry_run))
    entitlements = context.option("entitlements")
    signer = Codesigner(
        artifact,
        identity=context.identity,
        entitlements=Path(entitlements) if entitlements else None,
        hardened_runtime=bool(context.option("hardened_runtime", True)),
        tool=codesign,
    )
    signer.process()

    notarized = False
    profile = context.option("keychain_profile") or os.getenv(ENV_KEYCHAIN_PROFILE)
    if profile and authority and context.option("notarize", True):
        Notarizer(str(profile), Xcrun(locator, token, dry_run)).process(artifact)
        notarized = True
    return SignatureRecord(SignerKind.CODESIGN, context.identity, artifact, notarized)


# ----------------------------------------------------------------------------
# Windows


def _sign_signtool(
    artifact: Path,
    context: SigningContext,
    locator: ToolchainLocator,
    token: CancellationToken | None,
    dry_run: bool,
) -> SignatureRecord:
    tool = SignTool(locator, token, dry_run)
    digest = str(context.option("digest_algorithm", DEFAULT_SIGNTOOL_DIGEST))
    args = ["sign", "/sha1", context.identity, "/fd", digest]
    timestamp_url = context.option("timestamp_url")
    if timestamp_url:
        if context.option("tsp", False):
            args += ["/tr", str(timestamp_url), "/td", digest]
        else:
            args += ["/t", str(timestamp_url)]
    description = context.option("description")
    if description:
        args += ["/d", str(description)]
    args.append(str(artifact))
    try:
        tool.invoke(args)
    except CommandError as e:
        raise SigningError(f"SignTool failed for {artifact.name}: {e.output or e}") from e
    return SignatureRecord(SignerKind.SIGNTOOL, context.identity, artifact)


# ----------------------------------------------------------------------------
# Linux


def _sign_gpg(
    artifact: Path,
    context: SigningContext,
    locator: ToolchainLocator,
    token: CancellationToken | None,
    dry_run: bool,
) -> SignatureRecord:
    gpg = Gpg(locator, token, dry_run)
    base = ["--batch", "--yes"]
    homedir = context.option("homedir")
    if homedir:
        base += ["--homedir", str(homedir)]
    try:
        gpg.invoke(base + ["--list-secret-keys", context.identity])
    except CommandError as e:
        raise SigningError(f"GPG key not found: {context.identity}") from e
    signature = artifact.with_name(artifact.name + ".asc")
    try:
        gpg.invoke(
            base
            + [
                "--local-user",
                context.identity,
                "--armor",
                "--detach-sign",
                "--output",
                str(signature),
                str(artifact),
            ]
        )
    except CommandError as e:
        raise SigningError(f"gpg failed for {artifact.name}: {e.output or e}") from e
    return SignatureRecord(SignerKind.GPG, context.identity, signature)


_SIGNERS = {
    SignerKind.CODESIGN: _sign_codesign,
    SignerKind.SIGNTOOL: _sign_signtool,
    SignerKind.GPG: _sign_gpg,
}


def sign(
    artifact: Path,
    context: SigningContext | None,
    kind: SignerKind,
    locator: ToolchainLocator | None = None,
    token: CancellationToken | None = None,
    dry_run: bool = False,
) -> SignatureRecord | SigningSkipped:
    """Sign an artifact with the platform tool.

    Args:
        artifact: File or bundle directory to sign
        context: Signing context, None when signing was not requested
        kind: Which platform scheme to use
        locator: Toolchain locator for the signing tool
        token: Cancellation token for the run
        dry_run: If True, only log the commands

    Returns:
        The SignatureRecord, or SigningSkipped when there is no context

    Raises:
        SigningError: If the tool is unavailable, the credential cannot be
            resolved, or the tool fails
    """
    if context is None:
        return SigningSkipped("no signing context configured")
    locator = locator or ToolchainLocator(token=token)
    try:
        return _SIGNERS[kind](artifact, context, locator, token, dry_run)
    except ToolchainUnavailable as e:
        raise SigningError(f"Cannot sign {artifact.name}: {e}") from e
    except CommandError as e:
        raise SigningError(f"Cannot sign {artifact.name}: {e.output or e}") from e


# ----------------------------------------------------------------------------
# Checksums


def compute_digest(path: Path, algorithm: str = "sha256") -> str:
    """Digest a file, or a directory tree in sorted order.

    A tree digest covers every entry's relative path and type, file
    contents, executable bits and symbolic link targets.
    """
    digest = hashlib.new(algorithm)
    path = Path(path)
    if not path.is_dir():
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(64 * 1024), b""):
                digest.update(chunk)
        return digest.hexdigest()

    for entry in walk_sorted(path):
        rel = entry.relative_to(path).as_posix().encode("utf-8")
        if entry.is_symlink():
            digest.update(b"L" + rel + b"\0" + os.readlink(entry).encode("utf-8") + b"\0")
        elif entry.is_dir():
            digest.update(b"D" + rel + b"\0")
        else:
            executable = b"x" if os.access(entry, os.X_OK) else b"-"
            digest.update(b"F" + rel + b"\0" + executable)
            with open(entry, "rb") as f:
                for chunk in iter(lambda: f.read(64 * 1024), b""):
                    digest.update(chunk)
            digest.update(b"\0")
    return digest.hexdigest()


def checksum_path(artifact: Path, algorithm: str) -> Path:
    return artifact.with_name(f"{artifact.name}.{algorithm}")


def write_checksum(artifact: Path, digest: str, algorithm: str) -> Path:
    """Write ``<artifact>.<algorithm>`` containing ``<hex>  <basename>``."""
    out = checksum_path(artifact, algorithm)
    out.write_text(f"{digest}  {artifact.name}\n", encoding="utf-8")
    return out
