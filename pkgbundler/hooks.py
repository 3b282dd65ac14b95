"""Per-target build state and the format hook interface.

A pipeline run owns one ``StagingTree`` and one ``BuildContext``. Format
modules implement ``FormatHooks``; the pipeline calls the hooks stage by
stage and never branches on the target format itself.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .config import EngineConfig
from .icons import IconSet
from .resources import StagedFiles, StageLayout
from .signing import SignatureRecord, SigningSkipped
from .spec import BundleSpecification, PlatformSettings, SigningContext, TargetFormat
from .templates import TemplateRenderer
from .toolchain import ToolchainLocator
from .tools import CancellationToken, ExternalTool

log = logging.getLogger(__name__)


class StagingTree:
    """Temporary directory owned by one target pipeline.

    ``payload`` receives the staged layout, ``out`` receives the artifact
    and its side files until they are published. The whole tree is removed
    when the context exits, whatever the outcome.
    """

    def __init__(self, target: TargetFormat):
        self.target = target
        self.root: Path | None = None

    def __enter__(self) -> "StagingTree":
        self.root = Path(tempfile.mkdtemp(prefix=f"pkgbundler-{self.target.value}-"))
        self.payload.mkdir()
        self.out.mkdir()
        log.debug("created staging tree %s", self.root)
        return self

    def __exit__(self, *args: object) -> None:
        if self.root is None:
            return
        try:
            shutil.rmtree(self.root)
        except OSError as e:
            log.warning("could not remove staging tree %s: %s", self.root, e)
        self.root = None

    @property
    def payload(self) -> Path:
        return self.root / "payload"

    @property
    def out(self) -> Path:
        return self.root / "out"


@dataclass
class BuildContext:
    """Mutable state of one target pipeline."""

    spec: BundleSpecification
    target: TargetFormat
    arch: str
    tree: StagingTree
    config: EngineConfig
    renderer: TemplateRenderer
    locator: ToolchainLocator
    token: CancellationToken
    signing: SigningContext | None = None
    icons: IconSet | None = None
    root: Path | None = None
    staged: StagedFiles | None = None
    artifact: Path | None = None
    signature: SignatureRecord | SigningSkipped | None = None
    digest: str | None = None
    checksum: Path | None = None
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def settings(self) -> PlatformSettings:
        return self.spec.settings_for(self.target)

    @property
    def main_binary(self) -> Path:
        return self.staged.main_binary

    def tool(self, tool_class: type[ExternalTool]) -> ExternalTool:
        """Instantiate an external tool bound to this run."""
        return tool_class(self.locator, self.token)

    def warn(self, message: str) -> None:
        log.warning("%s: %s", self.target.value, message)
        self.warnings.append(message)


class FormatHooks:
    """Stage hooks of one target format.

    Subclasses override the stages that differ; the defaults do nothing.
    """

    def readiness(self, ctx: BuildContext) -> None:
        """Check tools and settings before anything is staged."""

    def stage_root(self, ctx: BuildContext) -> Path:
        """Directory the resource resolver populates."""
        return ctx.tree.payload

    def layout(self, ctx: BuildContext) -> StageLayout:
        raise NotImplementedError

    def install_icons(self, ctx: BuildContext) -> None:
        """Write ctx.icons into the staged layout."""

    def render(self, ctx: BuildContext) -> None:
        """Write metadata files rendered from templates."""

    def package(self, ctx: BuildContext) -> Path:
        """Produce the artifact inside ctx.tree.out and return its path."""
        raise NotImplementedError
