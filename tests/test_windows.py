"""Tests for the WiX based MSI installer."""

import os
import struct
from unittest.mock import patch
from xml.etree import ElementTree

import pytest
from conftest import fake_locator, write_png

from pkgbundler.engine import bundle
from pkgbundler.errors import ChecksumMismatch, CommandError, FatalPackagingError
from pkgbundler.spec import TargetFormat, parse_version, validate
from pkgbundler.windows import msi_version, upgrade_code, wix_tree

WIX_NS = {"wix": "http://schemas.microsoft.com/wix/2006/wi"}


class TestMsiVersion:
    def test_plain(self):
        assert msi_version(parse_version("1.2.3")) == "1.2.3"

    def test_numeric_prerelease(self):
        assert msi_version(parse_version("1.2.3-7")) == "1.2.3.7"

    def test_build_metadata_dropped(self):
        assert msi_version(parse_version("1.2.3+sha.abc")) == "1.2.3"

    @pytest.mark.parametrize(
        "version",
        ["256.0.0", "1.256.0", "1.2.65536", "1.2.3-beta", "1.2.3-70000"],
    )
    def test_out_of_range(self, version):
        with pytest.raises(FatalPackagingError):
            msi_version(parse_version(version))


class TestUpgradeCode:
    def test_stable(self):
        assert upgrade_code("com.example.demo") == upgrade_code("com.example.demo")
        assert upgrade_code("com.example.demo") != upgrade_code("com.example.other")

    def test_uppercase_guid(self):
        code = upgrade_code("com.example.demo")
        assert code == code.upper()
        assert len(code) == 36


class TestWixTree:
    def test_components(self, temp_dir):
        (temp_dir / "data").mkdir()
        (temp_dir / "data" / 'a "quoted" & file.txt').write_text("x")
        (temp_dir / "demo.exe").write_bytes(b"MZ")
        directories, refs = wix_tree(temp_dir)
        markup = f"<root>{directories}</root>"
        root = ElementTree.fromstring(markup)
        (directory,) = root.findall("Directory")
        assert directory.get("Name") == "data"
        files = root.findall(".//File")
        assert {f.get("Source") for f in files} == {
            str(temp_dir / "data" / 'a "quoted" & file.txt'),
            str(temp_dir / "demo.exe"),
        }
        assert refs.count("<ComponentRef") == 2

    def test_ids_are_stable(self, temp_dir):
        (temp_dir / "demo.exe").write_bytes(b"MZ")
        assert wix_tree(temp_dir) == wix_tree(temp_dir)

    def test_linked_directory_rejected(self, temp_dir):
        outside = temp_dir / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("x")
        root = temp_dir / "root"
        root.mkdir()
        os.symlink(outside, root / "link")
        with pytest.raises(FatalPackagingError, match="symbolic links"):
            wix_tree(root)

    def test_relative_link_rejected(self, temp_dir):
        (temp_dir / "demo.exe").write_bytes(b"MZ")
        os.symlink("demo.exe", temp_dir / "alias.exe")
        with pytest.raises(FatalPackagingError, match="alias.exe"):
            wix_tree(temp_dir)


@pytest.fixture
def msi_spec(raw_spec, project, engine_config):
    raw_spec["icons"] = [str(write_png(project / "icon.png", 256))]
    raw_spec["copyright"] = "Copyright 2024 Example & Co"
    return validate(raw_spec, [TargetFormat.MSI], engine_config)


def _fake_wix(captured):
    def run(command, **kwargs):
        out = command[command.index("-out") + 1]
        if command[0].endswith("candle.exe"):
            captured["candle"] = command
            with open(command[-1], encoding="utf-8") as f:
                captured["wxs"] = f.read()
            with open(out, "w") as f:
                f.write("<wixObject />")
        elif command[0].endswith("light.exe"):
            captured["light"] = command
            with open(out, "wb") as f:
                f.write(b"\xd0\xcf\x11\xe0msi")
        return ""

    return run


class TestMsiBundle:
    def test_installer(self, msi_spec, engine_config, staging_dir):
        captured = {}
        with patch("pkgbundler.tools.run_command", side_effect=_fake_wix(captured)):
            (outcome,) = bundle(
                msi_spec, [TargetFormat.MSI], config=engine_config, locator=fake_locator()
            )
        assert outcome.ok, outcome.error
        assert outcome.artifact.path.name == "Demo_1.2.3_x64.msi"
        assert outcome.artifact.path.read_bytes() == b"\xd0\xcf\x11\xe0msi"

        candle = captured["candle"]
        assert candle[0] == "/fake/candle.exe"
        assert candle[candle.index("-arch") + 1] == "x64"

        product = ElementTree.fromstring(captured["wxs"].encode("utf-8")).find(
            "wix:Product", WIX_NS
        )
        assert product.get("Name") == "Demo"
        assert product.get("Version") == "1.2.3"
        assert product.get("Manufacturer") == "example"
        assert product.get("UpgradeCode") == upgrade_code("com.example.demo")
        sources = {
            f.get("Source") for f in product.iter("{http://schemas.microsoft.com/wix/2006/wi}File")
        }
        assert any(s.endswith("demo.exe") for s in sources)
        assert any(s.endswith("config.ini") for s in sources)
        # the Linux build of the same program is not shipped
        assert not any(s.endswith("demo") for s in sources)

    def test_icon_written(self, msi_spec, engine_config, staging_dir):
        captured = {}

        def run(command, **kwargs):
            if command[0].endswith("candle.exe"):
                staging = command[-1].rsplit("main.wxs", 1)[0]
                with open(staging + "icon.ico", "rb") as f:
                    captured["ico"] = f.read()
            return _fake_wix({})(command, **kwargs)

        with patch("pkgbundler.tools.run_command", side_effect=run):
            (outcome,) = bundle(
                msi_spec, [TargetFormat.MSI], config=engine_config, locator=fake_locator()
            )
        assert outcome.ok, outcome.error
        reserved, kind, count = struct.unpack("<HHH", captured["ico"][:6])
        assert (reserved, kind) == (0, 1)
        assert count == 7

    def test_wix_failure(self, msi_spec, engine_config, staging_dir):
        with patch(
            "pkgbundler.tools.run_command",
            side_effect=CommandError("candle.exe", 1, "CNDL0104: not a valid source file"),
        ):
            (outcome,) = bundle(
                msi_spec, [TargetFormat.MSI], config=engine_config, locator=fake_locator()
            )
        assert isinstance(outcome.error, FatalPackagingError)
        assert "CNDL0104" in str(outcome.error)
        assert not msi_spec.output_dir.exists() or not any(msi_spec.output_dir.iterdir())

    def test_wix_unavailable(self, msi_spec, engine_config, staging_dir):
        (outcome,) = bundle(
            msi_spec,
            [TargetFormat.MSI],
            config=engine_config,
            locator=fake_locator(missing=("light.exe",)),
        )
        assert "light.exe" in str(outcome.error)

    def test_version_limits_fail_readiness(self, raw_spec, project, engine_config, staging_dir):
        raw_spec["icons"] = [str(write_png(project / "icon.png", 256))]
        raw_spec["version"] = "300.0.0"
        spec = validate(raw_spec, config=engine_config)
        with patch("pkgbundler.tools.run_command") as run:
            (outcome,) = bundle(spec, ["msi"], config=engine_config, locator=fake_locator())
        assert isinstance(outcome.error, FatalPackagingError)
        assert "major version" in str(outcome.error)
        run.assert_not_called()

    def test_linked_resource_not_followed(
        self, raw_spec, project, temp_dir, engine_config, staging_dir
    ):
        outside = temp_dir / "secret_dir"
        outside.mkdir()
        (outside / "secret.txt").write_text("host file")
        os.symlink(outside, project / "data" / "link")
        raw_spec["icons"] = [str(write_png(project / "icon.png", 256))]
        raw_spec["resources"].append("data/link")
        spec = validate(raw_spec, config=engine_config)
        captured = {}
        with patch("pkgbundler.tools.run_command", side_effect=_fake_wix(captured)):
            deb, msi = bundle(
                spec, ["deb", "msi"], config=engine_config, locator=fake_locator()
            )
        assert deb.ok, deb.error
        assert isinstance(msi.error, FatalPackagingError)
        assert "symbolic links" in str(msi.error)
        assert "wxs" not in captured

    def test_toolchain_checksum_mismatch(self, msi_spec, engine_config, staging_dir):
        locator = fake_locator()
        locator.locate.side_effect = ChecksumMismatch("wix", "aa", "bb")
        with patch("pkgbundler.tools.run_command") as run:
            (outcome,) = bundle(
                msi_spec, [TargetFormat.MSI], config=engine_config, locator=locator
            )
        assert isinstance(outcome.error, ChecksumMismatch)
        assert "expected aa" in str(outcome.error)
        run.assert_not_called()
