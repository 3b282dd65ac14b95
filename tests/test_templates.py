"""Tests for metadata template rendering."""

import plistlib

import pytest

from pkgbundler.errors import RenderError
from pkgbundler.templates import TEMPLATES, Markup, TemplateRenderer, template_fields

DESKTOP_CONTEXT = {
    "name": "Demo",
    "description": "A demonstration application",
    "exec": "demo",
    "icon": "demo",
    "categories": "Utility;",
}

PLIST_CONTEXT = {
    "executable": "demo",
    "bundle_name": "Demo",
    "versioned_bundle_name": "Demo 1.2.3",
    "icon_file": "",
    "bundle_identifier": "com.example.demo",
    "short_version": "1.2.3",
    "bundle_version": "1.2.3",
    "category": "",
    "min_system_version": "10.13",
    "copyright": None,
}


class TestTemplateFields:
    def test_fields_in_order(self):
        assert template_fields("{b} and {a} and {b.attr}") == ["b", "a"]

    def test_escaped_braces(self):
        assert template_fields("%{{buildroot}} {package}") == ["package"]

    def test_malformed(self):
        with pytest.raises(ValueError):
            template_fields("{unclosed")

    def test_builtin_templates_parse(self):
        for text, _is_xml in TEMPLATES.values():
            template_fields(text)


class TestTemplateRenderer:
    def test_desktop_entry(self):
        text = TemplateRenderer().render("desktop_entry", DESKTOP_CONTEXT)
        assert "Name=Demo\n" in text
        assert "Exec=demo\n" in text
        assert "Categories=Utility;\n" in text

    def test_missing_field(self):
        context = dict(DESKTOP_CONTEXT)
        del context["exec"]
        with pytest.raises(RenderError) as excinfo:
            TemplateRenderer().render("desktop_entry", context)
        assert excinfo.value.template_id == "desktop_entry"
        assert excinfo.value.field == "exec"

    def test_optional_field_defaults_empty(self):
        context = dict(DESKTOP_CONTEXT)
        del context["description"]
        text = TemplateRenderer().render("desktop_entry", context)
        assert "Comment=\n" in text

    def test_unknown_template(self):
        with pytest.raises(RenderError, match="Unknown template") as excinfo:
            TemplateRenderer().render("nsis_script", {})
        assert excinfo.value.field == ""

    def test_xml_values_escaped(self):
        context = dict(PLIST_CONTEXT, bundle_name='Tom & "Jerry" <Deluxe>')
        text = TemplateRenderer().render("info_plist", context)
        plist = plistlib.loads(text.encode("utf-8"))
        assert plist["CFBundleName"] == 'Tom & "Jerry" <Deluxe>'
        assert plist["CFBundleIdentifier"] == "com.example.demo"
        assert plist["NSHumanReadableCopyright"] == ""

    def test_markup_not_escaped(self, temp_dir):
        override = temp_dir / "main.wxs"
        override.write_text("<Wix>{directories}{product_name}</Wix>")
        renderer = TemplateRenderer({"wix_main": override})
        text = renderer.render(
            "wix_main",
            {"directories": Markup("<Directory />"), "product_name": "A&B"},
        )
        assert text == "<Wix><Directory />A&amp;B</Wix>"

    def test_plain_text_not_escaped(self):
        context = dict(DESKTOP_CONTEXT, name="Tom & Jerry")
        assert "Name=Tom & Jerry\n" in TemplateRenderer().render("desktop_entry", context)

    def test_override_replaces_builtin(self, temp_dir):
        override = temp_dir / "desktop.tmpl"
        override.write_text("[Desktop Entry]\nName={name} (custom)\n")
        text = TemplateRenderer({"desktop_entry": override}).render(
            "desktop_entry", DESKTOP_CONTEXT
        )
        assert text == "[Desktop Entry]\nName=Demo (custom)\n"

    def test_override_with_unknown_field(self, temp_dir):
        override = temp_dir / "desktop.tmpl"
        override.write_text("Name={name}\nX-Vendor={vendor}\n")
        with pytest.raises(RenderError) as excinfo:
            TemplateRenderer({"desktop_entry": override}).render(
                "desktop_entry", DESKTOP_CONTEXT
            )
        assert excinfo.value.field == "vendor"

    def test_malformed_override(self, temp_dir):
        override = temp_dir / "desktop.tmpl"
        override.write_text("Name={name\n")
        with pytest.raises(RenderError, match="is malformed"):
            TemplateRenderer({"desktop_entry": override}).render(
                "desktop_entry", DESKTOP_CONTEXT
            )

    def test_positional_field_rejected(self, temp_dir):
        override = temp_dir / "desktop.tmpl"
        override.write_text("Name={0}\n")
        with pytest.raises(RenderError):
            TemplateRenderer({"desktop_entry": override}).render(
                "desktop_entry", DESKTOP_CONTEXT
            )

    def test_render_to_creates_parents(self, temp_dir):
        out = temp_dir / "usr" / "share" / "applications" / "demo.desktop"
        TemplateRenderer().render_to("desktop_entry", DESKTOP_CONTEXT, out)
        assert out.read_text().startswith("[Desktop Entry]\n")
