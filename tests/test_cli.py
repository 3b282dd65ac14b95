"""Tests for the command-line interface."""

import json
import signal
import subprocess
import sys
from unittest.mock import patch

import pytest

from pkgbundler.cli import load_specification, main
from pkgbundler.engine import BundleOutcome
from pkgbundler.errors import BundlerError, Cancelled
from pkgbundler.spec import TargetFormat


@pytest.fixture(autouse=True)
def isolated(temp_dir, monkeypatch):
    """Run from an empty directory and leave the root logger alone."""
    workdir = temp_dir / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    monkeypatch.setenv("PKGBUNDLER_CACHE_DIR", str(temp_dir / "cache"))
    with patch("pkgbundler.cli.setup_logging"):
        yield


@pytest.fixture
def spec_file(raw_spec, project):
    path = project / "bundle.json"
    path.write_text(json.dumps(raw_spec))
    return path


def _exit_code(argv):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


class TestBundleCommand:
    def test_deb(self, spec_file, project, staging_dir):
        assert _exit_code(["bundle", str(spec_file), "-t", "deb", "--no-color"]) == 0
        assert (project / "dist" / "demo_1.2.3_amd64.deb").is_file()
        assert (project / "dist" / "demo_1.2.3_amd64.deb.sha256").is_file()

    def test_output_override(self, spec_file, project, temp_dir, staging_dir):
        out = temp_dir / "artifacts"
        assert _exit_code(["bundle", str(spec_file), "-t", "deb", "-o", str(out)]) == 0
        assert (out / "demo_1.2.3_amd64.deb").is_file()
        assert not (project / "dist").exists()

    def test_unknown_target(self, spec_file):
        assert _exit_code(["bundle", str(spec_file), "-t", "zip"]) == 2

    def test_missing_specification(self, temp_dir):
        assert _exit_code(["bundle", str(temp_dir / "missing.json"), "-t", "deb"]) == 1

    def test_invalid_specification(self, spec_file, raw_spec):
        del raw_spec["name"]
        spec_file.write_text(json.dumps(raw_spec))
        assert _exit_code(["bundle", str(spec_file), "-t", "deb"]) == 1

    def test_failed_target(self, spec_file, staging_dir):
        # no icons: the AppImage cannot be built, the deb still is
        code = _exit_code(["bundle", str(spec_file), "-t", "deb", "-t", "appimage"])
        assert code == 1

    def test_missing_config_file(self, spec_file, temp_dir):
        argv = ["bundle", str(spec_file), "-t", "deb", "-c", str(temp_dir / "nope.toml")]
        assert _exit_code(argv) == 1

    def test_jobs_and_targets_forwarded(self, spec_file):
        outcomes = [BundleOutcome(TargetFormat.DEB), BundleOutcome(TargetFormat.RPM)]
        with patch("pkgbundler.cli.bundle", return_value=outcomes) as bundle:
            with patch("pkgbundler.cli._report", return_value=0):
                code = _exit_code(["bundle", str(spec_file), "-t", "deb", "-t", "RPM", "-j", "2"])
        assert code == 0
        args, kwargs = bundle.call_args
        assert args[1] == [TargetFormat.DEB, TargetFormat.RPM]
        assert kwargs["jobs"] == 2

    def test_cancelled_run(self, spec_file):
        outcome = BundleOutcome(TargetFormat.DEB, error=Cancelled("run was cancelled"))
        with patch("pkgbundler.cli.bundle", return_value=[outcome]):
            assert _exit_code(["bundle", str(spec_file), "-t", "deb"]) == 130

    def test_sigint_handler_restored(self, spec_file):
        before = signal.getsignal(signal.SIGINT)
        with patch("pkgbundler.cli.bundle", return_value=[]):
            _exit_code(["bundle", str(spec_file), "-t", "deb"])
        assert signal.getsignal(signal.SIGINT) is before


class TestLoadSpecification:
    def test_toml_base_dir(self, temp_dir):
        path = temp_dir / "bundle.toml"
        path.write_text('name = "Demo"\nversion = "1.0.0"\n\n[linux]\ndepends = ["libc6"]\n')
        raw = load_specification(path)
        assert raw["name"] == "Demo"
        assert raw["linux"]["depends"] == ["libc6"]
        assert raw["base_dir"] == str(temp_dir.absolute())

    def test_explicit_base_dir_kept(self, temp_dir):
        path = temp_dir / "bundle.json"
        path.write_text(json.dumps({"name": "Demo", "base_dir": "/srv/build"}))
        assert load_specification(path)["base_dir"] == "/srv/build"

    def test_invalid_json(self, temp_dir):
        path = temp_dir / "bundle.json"
        path.write_text("{not json")
        with pytest.raises(BundlerError, match="Invalid specification file"):
            load_specification(path)

    def test_not_a_mapping(self, temp_dir):
        path = temp_dir / "bundle.json"
        path.write_text("[1, 2]")
        with pytest.raises(BundlerError, match="must contain a mapping"):
            load_specification(path)


def test_module_entry_point_requires_command():
    result = subprocess.run(
        [sys.executable, "-m", "pkgbundler"],
        capture_output=True,
        text=True,
    )
    assert result.returncode != 0
    assert "required" in result.stderr.lower()
