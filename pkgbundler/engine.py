"""Bundling engine.

``bundle`` runs one pipeline per requested target on a thread pool. Every
pipeline walks the same stages:

    readiness -> stage -> icons -> render -> package -> sign -> checksum -> emit

and differs only through the ``TargetPolicy`` of its format. Artifacts are
built inside the pipeline's staging tree and moved into the output
directory in the emit stage, so a failed or cancelled target never leaves
a partial artifact behind.
"""

import enum
import logging
import os
import shutil
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path

from .config import EngineConfig, get_config
from .errors import (
    BundleError,
    FatalPackagingError,
    MissingIconResolution,
    RenderError,
    ValidationError,
)
from .hooks import BuildContext, FormatHooks, StagingTree
from .icons import SIZE_TABLES, IconKind, IconSet, convert
from .linux import AppImageHooks, DebHooks, RpmHooks
from .macos import AppHooks, DmgHooks
from .resources import ResourceResolver
from .signing import (
    SignatureRecord,
    SignerKind,
    SigningSkipped,
    compute_digest,
    sign,
    write_checksum,
)
from .spec import BundleSpecification, TargetFormat
from .templates import TEMPLATES, TemplateRenderer, template_fields
from .toolchain import ToolchainLocator
from .tools import CancellationToken
from .windows import MsiHooks

log = logging.getLogger(__name__)


class Stage(enum.Enum):
    """Pipeline stages, in execution order."""

    READINESS = "readiness"
    STAGE = "stage"
    ICONS = "icons"
    RENDER = "render"
    PACKAGE = "package"
    SIGN = "sign"
    CHECKSUM = "checksum"
    EMIT = "emit"


@dataclass(frozen=True)
class TargetPolicy:
    """What distinguishes one target format's pipeline."""

    icon_kind: IconKind
    icons_required: bool
    templates: tuple[str, ...]
    signer: SignerKind
    hooks: FormatHooks


POLICIES: dict[TargetFormat, TargetPolicy] = {
    TargetFormat.APP: TargetPolicy(
        icon_kind=IconKind.APPLE,
        icons_required=False,
        templates=("info_plist", "entitlements_plist"),
        signer=SignerKind.CODESIGN,
        hooks=AppHooks(),
    ),
    TargetFormat.DMG: TargetPolicy(
        icon_kind=IconKind.APPLE,
        icons_required=False,
        templates=("info_plist", "entitlements_plist"),
        signer=SignerKind.CODESIGN,
        hooks=DmgHooks(),
    ),
    TargetFormat.MSI: TargetPolicy(
        icon_kind=IconKind.WINDOWS,
        icons_required=True,
        templates=("wix_main",),
        signer=SignerKind.SIGNTOOL,
        hooks=MsiHooks(),
    ),
    TargetFormat.DEB: TargetPolicy(
        icon_kind=IconKind.FREEDESKTOP,
        icons_required=False,
        templates=("deb_control", "desktop_entry"),
        signer=SignerKind.GPG,
        hooks=DebHooks(),
    ),
    TargetFormat.RPM: TargetPolicy(
        icon_kind=IconKind.FREEDESKTOP,
        icons_required=False,
        templates=("rpm_spec", "desktop_entry"),
        signer=SignerKind.GPG,
        hooks=RpmHooks(),
    ),
    TargetFormat.APPIMAGE: TargetPolicy(
        icon_kind=IconKind.FREEDESKTOP,
        icons_required=True,
        templates=("desktop_entry", "apprun"),
        signer=SignerKind.GPG,
        hooks=AppImageHooks(),
    ),
}


@dataclass(frozen=True)
class ArtifactDescriptor:
    """A published artifact."""

    format: TargetFormat
    path: Path
    size: int
    digest: str
    digest_algorithm: str
    checksum_path: Path
    signature: SignatureRecord | SigningSkipped
    warnings: tuple[str, ...] = ()

    @property
    def signed(self) -> bool:
        return isinstance(self.signature, SignatureRecord)


@dataclass(frozen=True)
class BundleOutcome:
    """Result of one requested target: an artifact or an error."""

    format: TargetFormat
    artifact: ArtifactDescriptor | None = None
    error: BundleError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def artifact_size(path: Path) -> int:
    """Size of a file, or the summed file sizes of a directory tree."""
    if not path.is_dir():
        return path.stat().st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            entry = Path(root) / name
            if not entry.is_symlink():
                total += entry.stat().st_size
    return total


def publish(source: Path, output_dir: Path) -> Path:
    """Move a file or directory into output_dir, replacing atomically.

    The entry is first moved next to its destination under a temporary
    name, then renamed over it.
    """
    destination = output_dir / source.name
    temporary = output_dir / f".{source.name}.{uuid.uuid4().hex}.partial"
    shutil.move(str(source), str(temporary))
    try:
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        os.replace(temporary, destination)
    except OSError:
        if temporary.is_dir():
            shutil.rmtree(temporary)
        else:
            temporary.unlink(missing_ok=True)
        raise
    return destination


def precompute_icons(
    spec: BundleSpecification, targets: Iterable[TargetFormat]
) -> dict[IconKind, IconSet | BundleError | None]:
    """Convert the icon sources once per icon family needed by the run.

    A conversion error is kept in place of the set and raised by the icons
    stage of each target that needs it.
    """
    results: dict[IconKind, IconSet | BundleError | None] = {}
    for target in targets:
        kind = POLICIES[target].icon_kind
        if kind in results:
            continue
        if not spec.icons:
            results[kind] = None
            continue
        try:
            results[kind] = convert(spec.icons, kind)
        except BundleError as e:
            results[kind] = e
        except Exception as e:
            log.exception("%s icon conversion failed unexpectedly", kind.value)
            error = FatalPackagingError(f"unexpected error converting icons: {e}")
            error.__cause__ = e
            results[kind] = error
    return results


class Pipeline:
    """Run the stages of one target inside its own staging tree.

    Args:
        spec: Validated specification
        target: Target format to build
        icons: Precomputed icon set for the target's family, the error the
            conversion raised, or None when no icon sources were given
        config: Engine configuration
        locator: Shared toolchain locator
        token: Run cancellation token
    """

    def __init__(
        self,
        spec: BundleSpecification,
        target: TargetFormat,
        icons: IconSet | BundleError | None,
        config: EngineConfig,
        locator: ToolchainLocator,
        token: CancellationToken,
    ):
        self.spec = spec
        self.target = target
        self.policy = POLICIES[target]
        self.hooks = self.policy.hooks
        self.icons = icons
        self.config = config
        self.locator = locator
        self.token = token
        self.log = logging.getLogger(self.__class__.__name__)
        self.steps: list[tuple[Stage, Callable[[BuildContext], None]]] = [
            (Stage.READINESS, self.readiness),
            (Stage.STAGE, self.stage),
            (Stage.ICONS, self.install_icons),
            (Stage.RENDER, self.render),
            (Stage.PACKAGE, self.package),
            (Stage.SIGN, self.sign),
            (Stage.CHECKSUM, self.checksum),
            (Stage.EMIT, self.emit),
        ]

    def run(self) -> ArtifactDescriptor:
        """Run every stage; raises the BundleError of the failing stage."""
        settings = self.spec.settings_for(self.target)
        with StagingTree(self.target) as tree:
            ctx = BuildContext(
                spec=self.spec,
                target=self.target,
                arch=self.spec.target_arch(self.target),
                tree=tree,
                config=self.config,
                renderer=TemplateRenderer(settings.template_overrides),
                locator=self.locator,
                token=self.token,
                signing=settings.signing,
            )
            for stage, step in self.steps:
                self.token.check()
                self.log.info("%s: %s", self.target.value, stage.value)
                step(ctx)
            return ctx.metadata["descriptor"]

    def readiness(self, ctx: BuildContext) -> None:
        for template_id in ctx.settings.template_overrides:
            if template_id not in TEMPLATES:
                raise RenderError(
                    template_id, message=f"Unknown template '{template_id}'"
                )
        # overridden templates are parsed before any staging work
        for template_id in self.policy.templates:
            if template_id in ctx.settings.template_overrides:
                try:
                    template_fields(ctx.renderer.source(template_id))
                except ValueError as e:
                    raise RenderError(
                        template_id,
                        message=f"Template '{template_id}' is malformed: {e}",
                    ) from e
        self.hooks.readiness(ctx)

    def stage(self, ctx: BuildContext) -> None:
        ctx.root = self.hooks.stage_root(ctx)
        ctx.root.mkdir(parents=True, exist_ok=True)
        resolver = ResourceResolver(ctx.spec, ctx.target)
        ctx.staged = resolver.stage(ctx.root, self.hooks.layout(ctx))

    def install_icons(self, ctx: BuildContext) -> None:
        if isinstance(self.icons, BundleError):
            raise self.icons
        if self.icons is None:
            if self.policy.icons_required:
                required = [s for s, _, req in SIZE_TABLES[self.policy.icon_kind] if req]
                raise MissingIconResolution(min(required), self.policy.icon_kind.value)
            ctx.warn("no icons provided")
            return
        ctx.icons = self.icons
        ctx.warnings.extend(self.icons.warnings)
        self.hooks.install_icons(ctx)

    def render(self, ctx: BuildContext) -> None:
        self.hooks.render(ctx)

    def package(self, ctx: BuildContext) -> None:
        ctx.artifact = self.hooks.package(ctx)
        if not ctx.artifact.exists():
            raise FatalPackagingError(f"{self.target.value} artifact was not produced")

    def sign(self, ctx: BuildContext) -> None:
        ctx.signature = sign(
            ctx.artifact, ctx.signing, self.policy.signer, ctx.locator, ctx.token
        )
        if isinstance(ctx.signature, SigningSkipped):
            ctx.warn(f"artifact is unsigned: {ctx.signature.reason}")

    def checksum(self, ctx: BuildContext) -> None:
        algorithm = ctx.spec.checksum_algorithm
        ctx.digest = compute_digest(ctx.artifact, algorithm)
        ctx.checksum = write_checksum(ctx.artifact, ctx.digest, algorithm)

    def emit(self, ctx: BuildContext) -> None:
        output_dir = ctx.spec.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        size = artifact_size(ctx.artifact)
        artifact = publish(ctx.artifact, output_dir)
        checksum = publish(ctx.checksum, output_dir)
        signature = ctx.signature
        if isinstance(signature, SignatureRecord):
            if signature.path == ctx.artifact:
                signature = replace(signature, path=artifact)
            else:
                signature = replace(signature, path=publish(signature.path, output_dir))
        self.log.info("%s: published %s", self.target.value, artifact)
        ctx.metadata["descriptor"] = ArtifactDescriptor(
            format=self.target,
            path=artifact,
            size=size,
            digest=ctx.digest,
            digest_algorithm=ctx.spec.checksum_algorithm,
            checksum_path=checksum,
            signature=signature,
            warnings=tuple(ctx.warnings),
        )


def _run_pipeline(pipeline: Pipeline) -> BundleOutcome:
    try:
        return BundleOutcome(pipeline.target, artifact=pipeline.run())
    except BundleError as e:
        log.error("%s failed: %s", pipeline.target.value, e)
        return BundleOutcome(pipeline.target, error=e)
    except Exception as e:
        log.exception("%s failed unexpectedly", pipeline.target.value)
        error = FatalPackagingError(f"unexpected error: {e}")
        error.__cause__ = e
        return BundleOutcome(pipeline.target, error=error)


def _normalize_targets(targets: Iterable[TargetFormat | str]) -> list[TargetFormat]:
    normalized = []
    for target in targets:
        if isinstance(target, str):
            try:
                target = TargetFormat.from_short_name(target)
            except ValueError as e:
                raise ValidationError("targets", str(e)) from None
        if target in normalized:
            raise ValidationError("targets", f"'{target.value}' requested twice")
        normalized.append(target)
    if not normalized:
        raise ValidationError("targets", "at least one target is required")
    return normalized


def bundle(
    spec: BundleSpecification,
    targets: Iterable[TargetFormat | str],
    jobs: int | None = None,
    token: CancellationToken | None = None,
    config: EngineConfig | None = None,
    locator: ToolchainLocator | None = None,
) -> list[BundleOutcome]:
    """Build every requested target.

    Args:
        spec: Validated bundle specification
        targets: Target formats (or their short names)
        jobs: Maximum concurrent pipelines (default: one per target)
        token: Cancellation token; ``token.cancel()`` stops the run
        config: Engine configuration (default: the global configuration)
        locator: Toolchain locator shared by all pipelines

    Returns:
        One outcome per requested target, in request order

    Raises:
        ValidationError: Before any target runs, if a target is unknown,
            repeated, or has no matching binary
    """
    targets = _normalize_targets(targets)
    for target in targets:
        if spec.binary_for(target) is None:
            raise ValidationError(
                "binaries",
                f"no {target.binary_kind.value} binary for "
                f"{spec.target_arch(target)} (required by target '{target.value}')",
            )
    config = config or get_config()
    token = token or CancellationToken()
    locator = locator or ToolchainLocator(config, token)

    icon_sets = precompute_icons(spec, targets)
    pipelines = [
        Pipeline(
            spec,
            target,
            icon_sets[POLICIES[target].icon_kind],
            config,
            locator,
            token,
        )
        for target in targets
    ]
    workers = max(1, min(jobs or len(pipelines), len(pipelines)))
    log.info(
        "bundling %s with %d worker(s)",
        ", ".join(t.value for t in targets),
        workers,
    )
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pkgbundler") as pool:
        futures = [pool.submit(_run_pipeline, p) for p in pipelines]
        return [f.result() for f in futures]
