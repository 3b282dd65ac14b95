"""Windows installer (.msi) built with the WiX v3 toolset."""

import hashlib
import logging
import uuid
from pathlib import Path, PurePosixPath
from xml.sax.saxutils import quoteattr

from .archive import ensure_within
from .binaries import WIX_ARCHS
from .errors import CommandError, FatalPackagingError
from .hooks import BuildContext, FormatHooks
from .icons import write_ico
from .resources import StageLayout
from .signing import SignerKind, sign
from .spec import Version
from .templates import Markup
from .tools import Candle, Light

log = logging.getLogger(__name__)

MSI_MAX_MAJOR = 255
MSI_MAX_MINOR = 255
MSI_MAX_PATCH = 65535

ALLOW_DOWNGRADES = '<MajorUpgrade Schedule="afterInstallInitialize" AllowDowngrades="yes" />'
BLOCK_DOWNGRADES = (
    '<MajorUpgrade Schedule="afterInstallInitialize" '
    'DowngradeErrorMessage="A newer version of [ProductName] is already installed." />'
)


def msi_version(version: Version) -> str:
    """Convert a semantic version to an MSI ProductVersion.

    A numeric pre-release becomes the fourth field; build metadata is
    dropped.

    Raises:
        FatalPackagingError: If the version does not fit MSI limits
    """
    if version.major > MSI_MAX_MAJOR:
        raise FatalPackagingError(
            f"MSI major version must be at most {MSI_MAX_MAJOR}, got {version.major}"
        )
    if version.minor > MSI_MAX_MINOR:
        raise FatalPackagingError(
            f"MSI minor version must be at most {MSI_MAX_MINOR}, got {version.minor}"
        )
    if version.patch > MSI_MAX_PATCH:
        raise FatalPackagingError(
            f"MSI patch version must be at most {MSI_MAX_PATCH}, got {version.patch}"
        )
    text = f"{version.major}.{version.minor}.{version.patch}"
    if version.prerelease:
        if not version.prerelease.isdigit() or int(version.prerelease) > MSI_MAX_PATCH:
            raise FatalPackagingError(
                f"MSI pre-release must be numeric and at most {MSI_MAX_PATCH}, "
                f"got '{version.prerelease}'"
            )
        text += f".{int(version.prerelease)}"
    return text


def upgrade_code(identifier: str) -> str:
    """Stable upgrade code derived from the bundle identifier."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, identifier)).upper()


def _wix_id(prefix: str, rel: str) -> str:
    return prefix + hashlib.sha1(rel.encode("utf-8")).hexdigest().upper()


def wix_tree(root: Path, indent: int = 20) -> tuple[str, str]:
    """Describe a staged directory as WiX Directory/Component elements.

    An MSI cannot carry symbolic links, so staged links are rejected rather
    than followed.

    Returns:
        The directory markup and the matching ComponentRef markup

    Raises:
        FatalPackagingError: If an entry is a symbolic link or escapes the root
    """
    lines: list[str] = []
    refs: list[str] = []

    def visit(directory: Path, depth: int) -> None:
        pad = " " * (indent + 4 * depth)
        for child in sorted(directory.iterdir()):
            rel = ensure_within(root, child).as_posix()
            if child.is_symlink():
                raise FatalPackagingError(
                    f"{rel}: symbolic links cannot be packaged in an MSI"
                )
            if child.is_dir():
                lines.append(
                    f"{pad}<Directory Id={quoteattr(_wix_id('dir', rel))} "
                    f"Name={quoteattr(child.name)}>"
                )
                visit(child, depth + 1)
                lines.append(f"{pad}</Directory>")
            else:
                component = _wix_id("cmp", rel)
                lines.append(f'{pad}<Component Id="{component}" Guid="*">')
                lines.append(
                    f"{pad}    <File Id={quoteattr(_wix_id('fil', rel))} "
                    f'Source={quoteattr(str(child))} KeyPath="yes" />'
                )
                lines.append(f"{pad}</Component>")
                refs.append(f'            <ComponentRef Id="{component}" />')

    visit(root, 0)
    return "\n".join(lines), "\n".join(refs)


class MsiHooks(FormatHooks):
    """Stage program files, render main.wxs, run candle and light."""

    def stage_root(self, ctx: BuildContext) -> Path:
        return ctx.tree.payload / "files"

    def layout(self, ctx: BuildContext) -> StageLayout:
        return StageLayout(
            binary_dir=PurePosixPath("."),
            resource_dir=PurePosixPath("."),
            files_dir=PurePosixPath("."),
            force_executable=False,
        )

    def readiness(self, ctx: BuildContext) -> None:
        if ctx.arch not in WIX_ARCHS:
            raise FatalPackagingError(
                f"architecture {ctx.arch} is not supported by the MSI bundler"
            )
        msi_version(ctx.spec.version)
        ctx.tool(Candle).path()
        ctx.tool(Light).path()

    def install_icons(self, ctx: BuildContext) -> None:
        ctx.metadata["icon_path"] = write_ico(ctx.icons, ctx.tree.payload / "icon.ico")

    def render(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        directories, refs = wix_tree(ctx.root)
        is_64 = ctx.arch in ("x86_64", "aarch64")
        wxs = ctx.renderer.render_to(
            "wix_main",
            {
                "product_name": spec.name,
                "upgrade_code": upgrade_code(spec.identifier),
                "manufacturer": spec.maintainer,
                "version": msi_version(spec.version),
                "platform": WIX_ARCHS[ctx.arch],
                "description": spec.description or spec.name,
                "copyright": spec.copyright,
                "major_upgrade": Markup(
                    ALLOW_DOWNGRADES if ctx.settings.allow_downgrades else BLOCK_DOWNGRADES
                ),
                "icon_path": str(ctx.metadata["icon_path"]),
                "program_files_folder": (
                    "ProgramFiles64Folder" if is_64 else "ProgramFilesFolder"
                ),
                "directories": Markup(directories),
                "component_refs": Markup(refs),
                "shortcut_guid": str(
                    uuid.uuid5(uuid.NAMESPACE_DNS, f"{spec.identifier}.shortcut")
                ).upper(),
                "main_binary": ctx.main_binary.name,
            },
            ctx.tree.payload / "main.wxs",
        )
        ctx.metadata["wxs"] = wxs

    def package(self, ctx: BuildContext) -> Path:
        spec = ctx.spec
        if ctx.signing is not None:
            sign(ctx.main_binary, ctx.signing, SignerKind.SIGNTOOL, ctx.locator, ctx.token)

        arch = WIX_ARCHS[ctx.arch]
        wixobj = ctx.tree.payload / "main.wixobj"
        out = ctx.tree.out / f"{spec.name}_{spec.version}_{arch}.msi"
        try:
            ctx.tool(Candle).invoke(
                ["-nologo", "-arch", arch, "-out", wixobj, ctx.metadata["wxs"]],
                cwd=ctx.tree.payload,
            )
            ctx.tool(Light).invoke(
                ["-nologo", "-out", out, wixobj], cwd=ctx.tree.payload
            )
        except CommandError as e:
            raise FatalPackagingError(f"WiX failed: {e.output or e}") from e
        if not out.exists():
            raise FatalPackagingError(f"WiX did not produce {out.name}")
        return out
