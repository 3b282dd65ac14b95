"""Metadata templates.

Templates are ``str.format`` strings. A template override replaces the
built-in text verbatim and is rendered with the same fields. Every field a
template references must be present in the render context unless it is one
of the documented optional fields; XML templates escape their values.
"""

import logging
import re
import string
from collections.abc import Mapping
from pathlib import Path
from xml.sax.saxutils import escape

from .errors import RenderError

log = logging.getLogger(__name__)

INFO_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleDevelopmentRegion</key>
    <string>English</string>
    <key>CFBundleDisplayName</key>
    <string>{bundle_name}</string>
    <key>CFBundleExecutable</key>
    <string>{executable}</string>
    <key>CFBundleGetInfoString</key>
    <string>{versioned_bundle_name}</string>
    <key>CFBundleIconFile</key>
    <string>{icon_file}</string>
    <key>CFBundleIdentifier</key>
    <string>{bundle_identifier}</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>6.0</string>
    <key>CFBundleName</key>
    <string>{bundle_name}</string>
    <key>CFBundlePackageType</key>
    <string>APPL</string>
    <key>CFBundleShortVersionString</key>
    <string>{short_version}</string>
    <key>CFBundleSignature</key>
    <string>????</string>
    <key>CFBundleVersion</key>
    <string>{bundle_version}</string>
    <key>LSApplicationCategoryType</key>
    <string>{category}</string>
    <key>LSMinimumSystemVersion</key>
    <string>{min_system_version}</string>
    <key>NSHighResolutionCapable</key>
    <true/>
    <key>NSHumanReadableCopyright</key>
    <string>{copyright}</string>
    <key>NSPrincipalClass</key>
    <string>NSApplication</string>
</dict>
</plist>
"""

ENTITLEMENTS_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>com.apple.security.cs.allow-jit</key>
    <false/>
    <key>com.apple.security.cs.allow-unsigned-executable-memory</key>
    <false/>
    <key>com.apple.security.cs.disable-library-validation</key>
    <true/>
    <key>com.apple.security.cs.allow-dyld-environment-variables</key>
    <true/>
</dict>
</plist>
"""

DEB_CONTROL_TMPL = """\
Package: {package}
Version: {version}
Architecture: {architecture}
Installed-Size: {installed_size}
Maintainer: {maintainer}
Section: {section}
Priority: {priority}
{optional_fields}Description: {description}
{long_description}"""

DESKTOP_ENTRY_TMPL = """\
[Desktop Entry]
Type=Application
Version=1.0
Name={name}
Comment={description}
Exec={exec}
Icon={icon}
Terminal=false
Categories={categories}
"""

RPM_SPEC_TMPL = """\
%global debug_package %{{nil}}
%global __strip /bin/true
%global _build_id_links none
%define _rpmdir {rpm_dir}
%define _buildrootdir {buildroot_dir}

Name: {package}
Version: {version}
Release: {release}
Summary: {description}
License: {license}
BuildArch: {architecture}
AutoReqProv: no
{optional_fields}
%description
{long_description}

%install
mkdir -p %{{buildroot}}
cp -a "{payload_dir}/." "%{{buildroot}}/"

%files
{files}
"""

WIX_MAIN_TMPL = """\
<?xml version="1.0" encoding="utf-8"?>
<Wix xmlns="http://schemas.microsoft.com/wix/2006/wi">
    <Product
        Id="*"
        Name="{product_name}"
        UpgradeCode="{upgrade_code}"
        Language="1033"
        Codepage="1252"
        Manufacturer="{manufacturer}"
        Version="{version}">

        <Package Id="*"
            Keywords="Installer"
            InstallerVersion="450"
            Languages="1033"
            Compressed="yes"
            InstallScope="perMachine"
            Platform="{platform}"
            SummaryCodepage="1252"
            Description="{description}"
            Comments="{copyright}" />

        {major_upgrade}
        <Media Id="1" Cabinet="app.cab" EmbedCab="yes" />

        <Icon Id="ProductIcon" SourceFile="{icon_path}" />
        <Property Id="ARPPRODUCTICON" Value="ProductIcon" />

        <Directory Id="TARGETDIR" Name="SourceDir">
            <Directory Id="{program_files_folder}">
                <Directory Id="INSTALLDIR" Name="{product_name}">
{directories}
                </Directory>
            </Directory>
            <Directory Id="ProgramMenuFolder">
                <Directory Id="ApplicationProgramsFolder" Name="{product_name}" />
            </Directory>
        </Directory>

        <DirectoryRef Id="ApplicationProgramsFolder">
            <Component Id="ApplicationShortcut" Guid="{shortcut_guid}">
                <Shortcut Id="ApplicationStartMenuShortcut"
                    Name="{product_name}"
                    Description="{description}"
                    Target="[INSTALLDIR]{main_binary}"
                    WorkingDirectory="INSTALLDIR" />
                <RemoveFolder Id="ApplicationProgramsFolder" On="uninstall" />
                <RegistryValue Root="HKCU" Key="Software\\{manufacturer}\\{product_name}" Name="installed" Type="integer" Value="1" KeyPath="yes" />
            </Component>
        </DirectoryRef>

        <Feature Id="MainProgram" Title="{product_name}" Level="1">
{component_refs}
            <ComponentRef Id="ApplicationShortcut" />
        </Feature>
    </Product>
</Wix>
"""

APPRUN_TMPL = """\
#!/bin/sh
HERE="$(dirname "$(readlink -f "$0")")"
export PATH="$HERE/usr/bin:$PATH"
export LD_LIBRARY_PATH="$HERE/usr/lib:$HERE/usr/lib/{package}:$LD_LIBRARY_PATH"
export XDG_DATA_DIRS="$HERE/usr/share:$XDG_DATA_DIRS"
exec "$HERE/usr/bin/{exec}" "$@"
"""

# template id -> (text, is XML)
TEMPLATES: dict[str, tuple[str, bool]] = {
    "info_plist": (INFO_PLIST_TMPL, True),
    "entitlements_plist": (ENTITLEMENTS_PLIST_TMPL, True),
    "deb_control": (DEB_CONTROL_TMPL, False),
    "desktop_entry": (DESKTOP_ENTRY_TMPL, False),
    "rpm_spec": (RPM_SPEC_TMPL, False),
    "wix_main": (WIX_MAIN_TMPL, True),
    "apprun": (APPRUN_TMPL, False),
}

# Fields that default to an empty value when the context lacks them
OPTIONAL_FIELDS = frozenset(
    {
        "description",
        "long_description",
        "license",
        "copyright",
        "homepage",
        "category",
        "categories",
        "optional_fields",
    }
)

FIELD_ROOT = re.compile(r"^[^.\[]*")


class Markup(str):
    """A pre-rendered value inserted into XML templates without escaping."""


def template_fields(text: str) -> list[str]:
    """List the top-level field names a template references, in order.

    Raises:
        ValueError: If the template text is malformed
    """
    fields = []
    for _literal, field_name, _spec, _conversion in string.Formatter().parse(text):
        if field_name is None:
            continue
        root = FIELD_ROOT.match(field_name).group(0)
        if root not in fields:
            fields.append(root)
    return fields


class TemplateRenderer:
    """Render built-in or overridden metadata templates.

    Args:
        overrides: Map of template id to a replacement template file

    Example:
        renderer = TemplateRenderer()
        text = renderer.render("desktop_entry", {"name": "Demo", ...})
    """

    def __init__(self, overrides: Mapping[str, Path] | None = None):
        self.overrides = dict(overrides or {})
        self.log = logging.getLogger(self.__class__.__name__)

    def source(self, template_id: str) -> str:
        """The template text, override first."""
        if template_id not in TEMPLATES:
            raise RenderError(
                template_id, message=f"Unknown template '{template_id}'"
            )
        override = self.overrides.get(template_id)
        if override is not None:
            self.log.debug("using override %s for %s", override, template_id)
            return Path(override).read_text(encoding="utf-8")
        return TEMPLATES[template_id][0]

    def render(self, template_id: str, context: Mapping[str, object]) -> str:
        """Render a template with the given fields.

        Raises:
            RenderError: If the template references a field missing from the
                context that is not optional, or is malformed
        """
        text = self.source(template_id)
        is_xml = TEMPLATES[template_id][1]
        try:
            fields = template_fields(text)
        except ValueError as e:
            raise RenderError(
                template_id, message=f"Template '{template_id}' is malformed: {e}"
            ) from e

        values: dict[str, object] = {}
        for name in fields:
            if not name or name.isdigit():
                raise RenderError(template_id, name or "{}")
            if name in context and context[name] is not None:
                value = context[name]
            elif name in OPTIONAL_FIELDS:
                value = ""
            else:
                raise RenderError(template_id, name)
            if is_xml and not isinstance(value, Markup):
                value = escape(str(value), {'"': "&quot;", "'": "&apos;"})
            values[name] = value

        try:
            return text.format(**values)
        except (KeyError, AttributeError, IndexError) as e:
            raise RenderError(template_id, str(e).strip("'")) from e
        except ValueError as e:
            raise RenderError(
                template_id, message=f"Template '{template_id}' is malformed: {e}"
            ) from e

    def render_to(self, template_id: str, context: Mapping[str, object], out: Path) -> Path:
        """Render a template into a file."""
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(self.render(template_id, context), encoding="utf-8")
        return out
