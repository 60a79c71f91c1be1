import json

import pytest

from prepbuild.config.settings import load_config, sanitize_project_name
from prepbuild.pipeline.core.errors import ConfigError
from prepbuild.pipeline.core.types import COMPILE, EXPORT, PACK, RESOLVE
from prepbuild.pipeline.stages import build_stage_specs


@pytest.fixture
def bare_project(tmp_path, scratch_root):
    root = tmp_path / "Bare App"
    root.mkdir()
    return root


def _write_config(root, data):
    (root / "prepbuild.json").write_text(json.dumps(data), encoding="utf-8")


def test_defaults_without_config_file(bare_project, scratch_root):
    config = load_config(bare_project)

    assert config.project == "Bare-App"
    assert config.manifests == ["package.json", "package-lock.json"]
    assert config.dependency_dir == "node_modules"
    assert config.export_path == bare_project.resolve() / "dist"
    assert config.scratch_root == scratch_root
    assert config.stages[RESOLVE].command == ["npm", "ci"]
    assert config.stages[COMPILE].command is None
    assert config.dev_server.port == 9999
    assert config.dev_server.direction == "down"


def test_stage_overrides_keep_unspecified_defaults(bare_project):
    _write_config(
        bare_project,
        {"stages": {"compile": {"command": ["esbuild", "src/index.jsx"], "outputs": ["out"], "timeout": "45"}}},
    )
    config = load_config(bare_project)

    assert config.stages[COMPILE].command == ["esbuild", "src/index.jsx"]
    assert config.stages[COMPILE].outputs == ["out"]
    assert config.stages[COMPILE].timeout == 45.0
    assert config.stages[RESOLVE].timeout == 600.0


def test_pack_and_export_inputs_follow_compile_outputs(bare_project):
    _write_config(bare_project, {"stages": {"compile": {"command": ["tsc"], "outputs": ["out", "types"]}}})
    specs = build_stage_specs(load_config(bare_project))

    assert specs[PACK].inputs == ["out", "types"]
    assert specs[EXPORT].inputs == ["out", "types", "bundle.dat", "bundle.json"]
    assert callable(specs[PACK].command)
    assert callable(specs[EXPORT].command)


@pytest.mark.parametrize(
    "data",
    [
        {"colour": "blue"},
        {"stages": {"minify": {"command": ["terser"]}}},
        {"stages": {"compile": {"cmd": ["tsc"]}}},
        {"stages": {"compile": {"timeout": 0}}},
        {"stages": {"compile": {"timeout": True}}},
        {"debounce_seconds": "soon"},
        {"export_dir": "../outside"},
        {"manifests": []},
        {"dev_server": {"direction": "left"}},
        {"stages": {"pack": {"outputs": ["bundle.dat"]}}},
        {"stages": {"compile": {"outputs": ["/abs/build"]}}},
    ],
)
def test_invalid_config_is_rejected(bare_project, data):
    _write_config(bare_project, data)
    with pytest.raises(ConfigError) as exc_info:
        build_stage_specs(load_config(bare_project))
    assert exc_info.value.exit_code == 2


def test_unparseable_config_file(bare_project):
    (bare_project / "prepbuild.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(bare_project)


def test_explicit_config_path_must_exist(bare_project):
    with pytest.raises(ConfigError):
        load_config(bare_project, bare_project / "other.json")


def test_env_port_overrides_config(bare_project, monkeypatch):
    _write_config(bare_project, {"dev_server": {"port": 8080}})
    assert load_config(bare_project).dev_server.port == 8080

    monkeypatch.setenv("PREPBUILD_DEV_PORT", "3000")
    assert load_config(bare_project).dev_server.port == 3000

    monkeypatch.setenv("PREPBUILD_DEV_PORT", "abc")
    with pytest.raises(ConfigError):
        load_config(bare_project)


def test_project_env_file_is_loaded(bare_project, monkeypatch, tmp_path):
    monkeypatch.delenv("PREPBUILD_SCRATCH_ROOT", raising=False)
    (bare_project / ".env").write_text("PREPBUILD_SCRATCH_ROOT=cache-dir\n", encoding="utf-8")

    config = load_config(bare_project)

    assert config.scratch_root == (bare_project / "cache-dir").resolve()


def test_sanitize_project_name():
    assert sanitize_project_name("my app/v2") == "my-app-v2"
    assert sanitize_project_name("///") == "project"
