"""Linux formats: Debian packages, RPM packages and AppImages."""

import glob
import hashlib
import logging
import math
import os
import re
import shutil
import stat
from pathlib import Path, PurePosixPath

from .archive import create_appimage, walk_sorted, write_deb
from .binaries import APPIMAGE_ARCHS, DEBIAN_ARCHS, RPM_ARCHS, BinaryKind, detect_kind
from .errors import CommandError, FatalPackagingError, ToolchainUnavailable
from .hooks import BuildContext, FormatHooks
from .icons import write_hicolor
from .resources import StageLayout
from .spec import BundleSpecification
from .tools import AppImageTool, Dpkg, Objdump, RpmBuild

log = logging.getLogger(__name__)

NEEDED_PATTERN = re.compile(r"^\s*NEEDED\s+(\S+)", re.MULTILINE)

DEFAULT_RPM_LICENSE = "Unspecified"
RPM_RELEASE = "1"


def package_version(spec: BundleSpecification) -> str:
    """Version string for deb and rpm: a pre-release sorts before the release."""
    version = spec.version
    text = f"{version.major}.{version.minor}.{version.patch}"
    if version.prerelease:
        text += f"~{version.prerelease}"
    return text


def long_description_lines(text: str | None) -> str:
    """Format an extended description for a control file.

    Every line is indented by one space; blank lines become " .".
    """
    if not text:
        return ""
    lines = []
    for line in text.strip().splitlines():
        lines.append(f" {line.rstrip()}" if line.strip() else " .")
    return "\n".join(lines) + "\n"


def installed_size_kib(root: Path) -> int:
    """Total size of the regular files under root, in KiB (rounded up)."""
    total = 0
    for path in walk_sorted(root):
        if path.is_file() and not path.is_symlink():
            total += path.stat().st_size
    return math.ceil(total / 1024)


def md5sums(root: Path) -> str:
    """Debian md5sums content for every regular file under root."""
    lines = []
    for path in walk_sorted(root):
        if path.is_file() and not path.is_symlink():
            digest = hashlib.md5(path.read_bytes()).hexdigest()
            lines.append(f"{digest}  {path.relative_to(root).as_posix()}\n")
    return "".join(lines)


def desktop_categories(category: str | None) -> str:
    if not category:
        return ""
    return category.strip().rstrip(";") + ";"


def _dpkg_owner(dpkg: Dpkg, library: str) -> str | None:
    try:
        output = dpkg.invoke(["-S", f"*/{library}"]).stdout
    except CommandError:
        log.debug("no package owns %s", library)
        return None
    for line in output.splitlines():
        # "libc6:amd64: /lib/x86_64-linux-gnu/libc.so.6"
        owner = line.split(": ", 1)[0].split(",")[0].strip()
        if owner:
            return owner.split(":", 1)[0]
    return None


def shared_library_depends(binary: Path, objdump: Objdump, dpkg: Dpkg) -> list[str]:
    """Packages owning the shared libraries an ELF binary needs.

    Raises:
        ToolchainUnavailable: If objdump or dpkg is missing
        CommandError: If objdump cannot read the binary
    """
    output = objdump.invoke(["-p", str(binary)]).stdout
    packages = []
    for library in NEEDED_PATTERN.findall(output):
        owner = _dpkg_owner(dpkg, library)
        if owner and owner not in packages:
            packages.append(owner)
    return packages


def debian_depends(ctx: BuildContext) -> list[str]:
    """Explicit dependencies plus the owners of the binary's libraries.

    Falls back to the explicit list, with a warning, when the inspection
    tools are unavailable or fail.
    """
    depends = list(ctx.settings.depends)
    if not ctx.settings.compute_depends:
        return depends
    if detect_kind(ctx.main_binary) is not BinaryKind.ELF:
        return depends
    try:
        computed = shared_library_depends(
            ctx.main_binary, ctx.tool(Objdump), ctx.tool(Dpkg)
        )
    except (ToolchainUnavailable, CommandError) as e:
        ctx.warn(f"could not compute shared library dependencies: {e}")
        return depends
    for package in computed:
        if package not in depends:
            depends.append(package)
    return depends


class LinuxHooks(FormatHooks):
    """Shared FHS layout: usr/bin, usr/lib/<package>, usr/share."""

    def layout(self, ctx: BuildContext) -> StageLayout:
        return StageLayout(
            binary_dir=PurePosixPath("usr/bin"),
            resource_dir=PurePosixPath("usr/lib") / ctx.spec.package_name,
            files_dir=PurePosixPath("."),
            force_executable=True,
        )

    def install_icons(self, ctx: BuildContext) -> None:
        write_hicolor(ctx.icons, ctx.root / "usr" / "share", ctx.spec.package_name)

    def desktop_context(self, ctx: BuildContext) -> dict[str, object]:
        return {
            "name": ctx.spec.name,
            "description": ctx.spec.description,
            "exec": ctx.main_binary.name,
            "icon": ctx.spec.package_name if ctx.icons else "",
            "categories": desktop_categories(ctx.spec.category),
        }

    def render_desktop(self, ctx: BuildContext) -> Path:
        out = ctx.root / "usr" / "share" / "applications" / f"{ctx.spec.package_name}.desktop"
        return ctx.renderer.render_to("desktop_entry", self.desktop_context(ctx), out)

    def install_license(self, ctx: BuildContext, destination: Path) -> None:
        if ctx.spec.license_file is not None:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(ctx.spec.license_file, destination)


class DebHooks(LinuxHooks):
    """Debian package: data tree, control tree, ar container."""

    def stage_root(self, ctx: BuildContext) -> Path:
        return ctx.tree.payload / "data"

    def readiness(self, ctx: BuildContext) -> None:
        if ctx.arch not in DEBIAN_ARCHS:
            raise FatalPackagingError(
                f"architecture {ctx.arch} has no Debian architecture name"
            )

    def render(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        package = spec.package_name
        self.render_desktop(ctx)
        self.install_license(
            ctx, ctx.root / "usr" / "share" / "doc" / package / "copyright"
        )

        optional = ""
        if spec.homepage:
            optional += f"Homepage: {spec.homepage}\n"
        depends = debian_depends(ctx)
        if depends:
            optional += f"Depends: {', '.join(depends)}\n"

        control_dir = ctx.tree.payload / "control"
        control_dir.mkdir(parents=True, exist_ok=True)
        ctx.renderer.render_to(
            "deb_control",
            {
                "package": package,
                "version": package_version(spec),
                "architecture": DEBIAN_ARCHS[ctx.arch],
                "installed_size": installed_size_kib(ctx.root),
                "maintainer": spec.maintainer,
                "section": ctx.settings.section,
                "priority": ctx.settings.priority,
                "optional_fields": optional,
                "description": spec.description or spec.name,
                "long_description": long_description_lines(spec.long_description),
            },
            control_dir / "control",
        )
        (control_dir / "md5sums").write_text(md5sums(ctx.root), encoding="utf-8")
        ctx.metadata["control_dir"] = control_dir

    def package(self, ctx: BuildContext) -> Path:
        spec = ctx.spec
        name = f"{spec.package_name}_{package_version(spec)}_{DEBIAN_ARCHS[ctx.arch]}.deb"
        return write_deb(
            ctx.metadata["control_dir"],
            ctx.root,
            ctx.tree.out / name,
            level=spec.compression_level,
            mtime=spec.source_date_epoch,
        )


class RpmHooks(LinuxHooks):
    """RPM package: staged buildroot, rendered spec file, rpmbuild -bb."""

    def stage_root(self, ctx: BuildContext) -> Path:
        return ctx.tree.payload / "payload"

    def readiness(self, ctx: BuildContext) -> None:
        if ctx.arch not in RPM_ARCHS:
            raise FatalPackagingError(f"architecture {ctx.arch} has no RPM name")
        ctx.tool(RpmBuild).path()

    def render(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        package = spec.package_name
        self.render_desktop(ctx)
        self.install_license(
            ctx, ctx.root / "usr" / "share" / "licenses" / package / "LICENSE"
        )

        optional = ""
        if spec.homepage:
            optional += f"URL: {spec.homepage}\n"
        if ctx.settings.depends:
            optional += f"Requires: {', '.join(ctx.settings.depends)}\n"

        files = []
        for path in walk_sorted(ctx.root):
            if path.is_symlink() or not path.is_dir():
                files.append(f'"/{path.relative_to(ctx.root).as_posix()}"')
        spec_file = ctx.tree.payload / "SPECS" / f"{package}.spec"
        ctx.renderer.render_to(
            "rpm_spec",
            {
                "rpm_dir": ctx.tree.payload / "RPMS",
                "buildroot_dir": ctx.tree.payload / "BUILDROOT",
                "package": package,
                "version": package_version(spec),
                "release": RPM_RELEASE,
                "description": spec.description or spec.name,
                "license": spec.license or DEFAULT_RPM_LICENSE,
                "architecture": RPM_ARCHS[ctx.arch],
                "optional_fields": optional,
                "long_description": spec.long_description or spec.description or spec.name,
                "payload_dir": ctx.root,
                "files": "\n".join(files),
            },
            spec_file,
        )
        ctx.metadata["spec_file"] = spec_file

    def package(self, ctx: BuildContext) -> Path:
        spec = ctx.spec
        arch = RPM_ARCHS[ctx.arch]
        env = dict(os.environ)
        env["SOURCE_DATE_EPOCH"] = str(spec.source_date_epoch)
        try:
            ctx.tool(RpmBuild).invoke(
                [
                    "-bb",
                    "--target",
                    arch,
                    "--define",
                    f"_topdir {ctx.tree.payload}",
                    "--define",
                    "use_source_date_epoch_as_buildtime 1",
                    "--define",
                    "clamp_mtime_to_source_date_epoch 1",
                    ctx.metadata["spec_file"],
                ],
                env=env,
            )
        except CommandError as e:
            raise FatalPackagingError(f"rpmbuild failed: {e.output or e}") from e
        built = sorted(glob.glob(str(ctx.tree.payload / "RPMS" / "**" / "*.rpm"), recursive=True))
        if not built:
            raise FatalPackagingError("rpmbuild did not produce a package")
        out = ctx.tree.out / f"{spec.package_name}-{package_version(spec)}-{RPM_RELEASE}.{arch}.rpm"
        shutil.move(built[0], out)
        return out


class AppImageHooks(LinuxHooks):
    """AppImage: AppDir with AppRun, desktop entry and icon, then appimagetool."""

    def stage_root(self, ctx: BuildContext) -> Path:
        return ctx.tree.payload / f"{ctx.spec.package_name}.AppDir"

    def readiness(self, ctx: BuildContext) -> None:
        if ctx.arch not in APPIMAGE_ARCHS:
            raise FatalPackagingError(f"architecture {ctx.arch} is not supported by AppImage")
        ctx.tool(AppImageTool).path()

    def install_icons(self, ctx: BuildContext) -> None:
        super().install_icons(ctx)
        package = ctx.spec.package_name
        (ctx.root / f"{package}.png").write_bytes(ctx.icons.largest().png)
        os.symlink(f"{package}.png", ctx.root / ".DirIcon")

    def render(self, ctx: BuildContext) -> None:
        package = ctx.spec.package_name
        desktop = self.render_desktop(ctx)
        shutil.copyfile(desktop, ctx.root / f"{package}.desktop")
        apprun = ctx.renderer.render_to(
            "apprun",
            {"package": package, "exec": ctx.main_binary.name},
            ctx.root / "AppRun",
        )
        apprun.chmod(apprun.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def package(self, ctx: BuildContext) -> Path:
        spec = ctx.spec
        arch = APPIMAGE_ARCHS[ctx.arch]
        out = ctx.tree.out / f"{spec.package_name}_{spec.version}_{arch}.AppImage"
        return create_appimage(
            ctx.tool(AppImageTool), ctx.root, out, arch, spec.source_date_epoch
        )
