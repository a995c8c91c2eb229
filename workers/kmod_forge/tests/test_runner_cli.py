"""
test_runner_cli — manifest loading, settings and the kmod-forge command line.

Tests verify invariant properties:
  - Manifests with duplicate modules/outputs or bad names are rejected.
  - Modules are addressed by name or by output path.
  - Exit codes: 0 success, 1 build failure or stale stage, 2 bad manifest.
"""
import json

import pytest

from kmod_forge.config import Settings
from kmod_forge.errors import ManifestError
from kmod_forge.io.schema import ModuleManifest, load_manifest
from kmod_forge.runner import main

from conftest import LIFECYCLE_MISSING_REF_C


def _entry(**overrides):
    entry = {
        "name": "xv6fs",
        "source_root": "xv6fs/rust",
        "shim": "xv6fs/module.o",
        "symbols": ["bento/Module.symvers"],
        "output": "xv6fs/xv6fs.ko",
    }
    entry.update(overrides)
    return entry


def _write_manifest(root, modules):
    path = root / "kmod.json"
    path.write_text(json.dumps({"modules": modules}, indent=2))
    return path


class TestManifest:

    def test_load(self, tmp_path):
        path = _write_manifest(tmp_path, [_entry()])
        manifest, base_dir = load_manifest(path)

        assert base_dir == tmp_path.resolve()
        spec = manifest.modules[0]
        assert spec.resolved_crate_name == "xv6fs"
        assert spec.profile.value == "release"
        assert spec.target_triple is None

    def test_crate_name_from_dashed_name(self):
        manifest = ModuleManifest.model_validate(
            {"modules": [_entry(name="bento-fs")]})

        assert manifest.modules[0].resolved_crate_name == "bento_fs"

    def test_duplicate_names(self, tmp_path):
        path = _write_manifest(tmp_path, [_entry(), _entry(output="other.ko")])

        with pytest.raises(ManifestError, match="duplicate module names"):
            load_manifest(path)

    def test_duplicate_outputs(self, tmp_path):
        path = _write_manifest(tmp_path, [_entry(), _entry(name="xv6fs2")])

        with pytest.raises(ManifestError, match="duplicate module outputs"):
            load_manifest(path)

    def test_bad_name(self, tmp_path):
        path = _write_manifest(tmp_path, [_entry(name="../escape")])

        with pytest.raises(ManifestError, match="invalid module name"):
            load_manifest(path)

    def test_bad_json(self, tmp_path):
        path = tmp_path / "kmod.json"
        path.write_text("{not json")

        with pytest.raises(ManifestError):
            load_manifest(path)

    def test_missing(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            load_manifest(tmp_path / "kmod.json")

    def test_find_module(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        manifest, base_dir = load_manifest(_write_manifest(tmp_path, [_entry()]))

        assert manifest.find_module("xv6fs", base_dir).name == "xv6fs"
        assert manifest.find_module("xv6fs/xv6fs.ko", base_dir).name == "xv6fs"
        with pytest.raises(ManifestError, match="nope.ko"):
            manifest.find_module("nope.ko", base_dir)


class TestSettings:

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("KMOD_LD", "ld.bfd")
        monkeypatch.setenv("KMOD_PHASE_TIMEOUT", "42")

        s = Settings()

        assert s.LD == "ld.bfd"
        assert s.PHASE_TIMEOUT == 42
        assert s.CARGO == "cargo"


class TestCli:

    @pytest.fixture
    def cli_project(self, kmod_project, monkeypatch):
        monkeypatch.chdir(kmod_project.root)
        monkeypatch.setenv("KMOD_CARGO", kmod_project.settings.CARGO)
        _write_manifest(kmod_project.root, [_entry()])
        return kmod_project

    def test_build_by_output(self, cli_project, capsys):
        assert main(["build", "xv6fs/xv6fs.ko"]) == 0

        assert cli_project.target.output_path.exists()
        assert "rebuilt: compile, merge, assemble" in capsys.readouterr().out

    def test_build_twice_up_to_date(self, cli_project, capsys):
        assert main(["build", "xv6fs"]) == 0
        capsys.readouterr()
        assert main(["build", "xv6fs"]) == 0

        assert "up to date" in capsys.readouterr().out

    def test_status(self, cli_project, capsys):
        assert main(["status", "xv6fs"]) == 1
        assert main(["build", "xv6fs"]) == 0
        capsys.readouterr()

        assert main(["status", "xv6fs"]) == 0
        out = capsys.readouterr().out
        assert "xv6fs\tassemble\tfresh" in out

    def test_verify(self, cli_project, capsys):
        assert main(["build", "xv6fs"]) == 0
        capsys.readouterr()

        assert main(["verify", "xv6fs"]) == 0
        out = capsys.readouterr().out
        assert "OK (init_module, cleanup_module)" in out
        assert "external bento_register" in out

    def test_verify_unbuilt(self, cli_project):
        assert main(["verify", "xv6fs"]) == 1

    def test_clean(self, cli_project):
        assert main(["build", "xv6fs"]) == 0
        assert main(["clean", "xv6fs"]) == 0

        assert not cli_project.target.output_path.exists()
        assert not cli_project.paths.build_dir.exists()

    def test_build_failure_exit_code(self, cli_project):
        cli_project.set_component({"lifecycle": LIFECYCLE_MISSING_REF_C})

        assert main(["build", "xv6fs"]) == 1
        assert not cli_project.target.output_path.exists()

    def test_unknown_module(self, cli_project):
        assert main(["build", "nope"]) == 2

    def test_missing_manifest(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert main(["-m", "absent.json", "status", "xv6fs"]) == 2
