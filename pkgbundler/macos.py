"""macOS formats: application bundles and disk images."""

import logging
import os
from pathlib import Path, PurePosixPath
from types import MappingProxyType

from .archive import create_dmg
from .binaries import MACOS_ARCHS, UNIVERSAL, get_binary_architectures
from .errors import FatalPackagingError
from .hooks import BuildContext, FormatHooks
from .icons import write_icns
from .resources import StageLayout
from .signing import SignerKind, sign
from .spec import SigningContext
from .tools import Hdiutil

log = logging.getLogger(__name__)

PKG_INFO_CONTENT = "APPL????"

APP_CATEGORY_PREFIX = "public.app-category."


def app_category(category: str | None) -> str:
    """Map a free-form category to an LSApplicationCategoryType."""
    if not category:
        return ""
    if category.startswith(APP_CATEGORY_PREFIX):
        return category
    return APP_CATEGORY_PREFIX + category.strip().lower().replace(" ", "-")


class AppHooks(FormatHooks):
    """Build ``<Name>.app`` with Contents/{MacOS,Resources,Frameworks}."""

    def bundle_dir(self, ctx: BuildContext) -> Path:
        return ctx.tree.out / f"{ctx.spec.name}.app"

    def stage_root(self, ctx: BuildContext) -> Path:
        return self.bundle_dir(ctx)

    def layout(self, ctx: BuildContext) -> StageLayout:
        return StageLayout(
            binary_dir=PurePosixPath("Contents/MacOS"),
            resource_dir=PurePosixPath("Contents/Resources"),
            files_dir=PurePosixPath("Contents"),
            frameworks_dir=PurePosixPath("Contents/Frameworks"),
        )

    def readiness(self, ctx: BuildContext) -> None:
        if ctx.arch not in MACOS_ARCHS:
            raise FatalPackagingError(
                f"architecture {ctx.arch} is not supported by macOS bundles"
            )

    def install_icons(self, ctx: BuildContext) -> None:
        resources = ctx.root / "Contents" / "Resources"
        resources.mkdir(parents=True, exist_ok=True)
        icon_file = f"{ctx.spec.name}.icns"
        write_icns(ctx.icons, resources / icon_file)
        ctx.metadata["icon_file"] = icon_file

    def render(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        version = spec.version
        short_version = f"{version.major}.{version.minor}.{version.patch}"
        archs = get_binary_architectures(ctx.main_binary)
        if archs:
            log.info("%s architectures: %s", ctx.main_binary.name, ", ".join(archs))

        contents = ctx.root / "Contents"
        ctx.renderer.render_to(
            "info_plist",
            {
                "executable": ctx.main_binary.name,
                "bundle_name": spec.name,
                "versioned_bundle_name": f"{spec.name} {version}",
                "icon_file": ctx.metadata.get("icon_file", ""),
                "bundle_identifier": spec.identifier,
                "short_version": short_version,
                "bundle_version": short_version,
                "category": app_category(spec.category),
                "min_system_version": ctx.settings.minimum_system_version,
                "copyright": spec.copyright,
            },
            contents / "Info.plist",
        )
        (contents / "PkgInfo").write_text(PKG_INFO_CONTENT, encoding="utf-8")

        # hardened runtime needs entitlements; use the defaults unless given
        if ctx.signing is not None and ctx.signing.option("entitlements") is None:
            entitlements = ctx.renderer.render_to(
                "entitlements_plist", {}, ctx.tree.root / "entitlements.plist"
            )
            ctx.signing = SigningContext(
                ctx.signing.identity,
                MappingProxyType({**ctx.signing.options, "entitlements": entitlements}),
            )

    def package(self, ctx: BuildContext) -> Path:
        return ctx.root


class DmgHooks(AppHooks):
    """Build the .app in the payload, then wrap it in a UDZO disk image."""

    def bundle_dir(self, ctx: BuildContext) -> Path:
        return ctx.tree.payload / f"{ctx.spec.name}.app"

    def readiness(self, ctx: BuildContext) -> None:
        super().readiness(ctx)
        ctx.tool(Hdiutil).path()

    def package(self, ctx: BuildContext) -> Path:
        spec = ctx.spec
        app = ctx.root
        if ctx.signing is not None:
            # contents are signed here; the image itself is notarized later
            inner = SigningContext(
                ctx.signing.identity,
                MappingProxyType({**ctx.signing.options, "notarize": False}),
            )
            sign(app, inner, SignerKind.CODESIGN, ctx.locator, ctx.token)
        os.symlink("/Applications", ctx.tree.payload / "Applications")
        arch = UNIVERSAL if ctx.arch == UNIVERSAL else MACOS_ARCHS[ctx.arch]
        out = ctx.tree.out / f"{spec.name}_{spec.version}_{arch}.dmg"
        return create_dmg(ctx.tool(Hdiutil), ctx.tree.payload, out, spec.name)
