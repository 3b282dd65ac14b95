"""Tests for staging binaries and resources."""

import os
from pathlib import PurePosixPath
from unittest.mock import patch

import pytest

from pkgbundler.errors import FatalPackagingError, PermissionDenied, ResourceMissing
from pkgbundler.resources import ResourceResolver, StageLayout, copy_entry
from pkgbundler.spec import TargetFormat, validate

LINUX_LAYOUT = StageLayout(
    binary_dir=PurePosixPath("usr/bin"),
    resource_dir=PurePosixPath("usr/lib/demo"),
)


class TestCopyEntry:
    def test_file_keeps_mode(self, temp_dir):
        source = temp_dir / "tool"
        source.write_text("#!/bin/sh\n")
        source.chmod(0o750)
        destination = temp_dir / "out" / "nested" / "tool"
        copy_entry(source, destination)
        assert destination.read_text() == "#!/bin/sh\n"
        assert destination.stat().st_mode & 0o777 == 0o750

    def test_symlink_recreated(self, temp_dir):
        (temp_dir / "real.txt").write_text("x")
        link = temp_dir / "link.txt"
        os.symlink("real.txt", link)
        destination = temp_dir / "out" / "link.txt"
        copy_entry(link, destination)
        assert destination.is_symlink()
        assert os.readlink(destination) == "real.txt"

    def test_directory_keeps_inner_links(self, temp_dir):
        tree = temp_dir / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "a.txt").write_text("a")
        os.symlink("sub/a.txt", tree / "alias")
        copy_entry(tree, temp_dir / "copy")
        assert (temp_dir / "copy" / "sub" / "a.txt").read_text() == "a"
        assert (temp_dir / "copy" / "alias").is_symlink()

    def test_missing_source(self, temp_dir):
        with pytest.raises(ResourceMissing):
            copy_entry(temp_dir / "missing", temp_dir / "out")

    def test_permission_error(self, temp_dir):
        source = temp_dir / "a.txt"
        source.write_text("a")
        with patch(
            "pkgbundler.resources.shutil.copy2", side_effect=PermissionError("denied")
        ):
            with pytest.raises(PermissionDenied):
                copy_entry(source, temp_dir / "out" / "a.txt")


class TestResourceResolver:
    def test_stage_linux_layout(self, raw_spec, temp_dir):
        spec = validate(raw_spec)
        root = temp_dir / "stage"
        staged = ResourceResolver(spec, TargetFormat.DEB).stage(root, LINUX_LAYOUT)

        binary = root / "usr" / "bin" / "demo"
        assert staged.main_binary == binary
        assert binary.stat().st_mode & 0o111
        assert (root / "usr" / "lib" / "demo" / "data" / "config.ini").is_file()
        assert staged.resources == [root / "usr" / "lib" / "demo" / "data" / "config.ini"]
        # the PE build is not shipped in a Linux package
        assert not (root / "usr" / "bin" / "demo.exe").exists()

    def test_windows_binary_for_msi(self, raw_spec, temp_dir):
        spec = validate(raw_spec)
        layout = StageLayout(PurePosixPath("."), PurePosixPath("."), force_executable=False)
        staged = ResourceResolver(spec, TargetFormat.MSI).stage(temp_dir / "stage", layout)
        assert staged.main_binary.name == "demo.exe"
        assert [p.name for p in staged.binaries] == ["demo.exe"]

    def test_extra_binaries_follow_main(self, raw_spec, project, temp_dir):
        helper = project / "build" / "demo-helper"
        helper.write_bytes((project / "build" / "demo").read_bytes())
        raw_spec["binaries"].append({"path": "build/demo-helper", "arch": "x86_64"})
        spec = validate(raw_spec)
        staged = ResourceResolver(spec, TargetFormat.DEB).stage(temp_dir / "s", LINUX_LAYOUT)
        assert [p.name for p in staged.binaries] == ["demo", "demo-helper"]

    def test_platform_files(self, raw_spec, project, temp_dir):
        (project / "demo.service").write_text("[Unit]\n")
        raw_spec["linux"]["files"] = {"/lib/systemd/system/demo.service": "demo.service"}
        spec = validate(raw_spec)
        root = temp_dir / "stage"
        ResourceResolver(spec, TargetFormat.DEB).stage(root, LINUX_LAYOUT)
        assert (root / "lib" / "systemd" / "system" / "demo.service").is_file()

    def test_resource_escaping_root(self, raw_spec, temp_dir):
        raw_spec["linux"]["files"] = {"../../escape.ini": "data/config.ini"}
        spec = validate(raw_spec)
        with pytest.raises(FatalPackagingError):
            ResourceResolver(spec, TargetFormat.DEB).stage(temp_dir / "stage", LINUX_LAYOUT)

    def test_no_binary_for_target(self, raw_spec, temp_dir):
        raw_spec["linux"]["arch"] = "aarch64"
        spec = validate(raw_spec)
        with pytest.raises(ResourceMissing, match="No binary available"):
            ResourceResolver(spec, TargetFormat.DEB).stage(temp_dir / "stage", LINUX_LAYOUT)
