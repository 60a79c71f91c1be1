import json

from prepbuild.cli import _build_watcher, main
from prepbuild.config.settings import load_config
from prepbuild.net import ports
from prepbuild.watch.watcher import RebuildScheduler


def test_build_succeeds(project):
    assert main(["build", "--project", str(project)]) == 0
    assert (project / "dist" / "bundle.json").is_file()


def test_build_with_failing_compile_exits_1(project):
    (project / "src" / "index.jsx").write_text("SYNTAX_ERROR\n", encoding="utf-8")
    assert main(["build", "--project", str(project)]) == 1


def test_missing_manifest_exits_2(project):
    (project / "package.json").unlink()
    assert main(["build", "--project", str(project)]) == 2


def test_bad_config_exits_2(project):
    (project / "prepbuild.json").write_text('{"stages": {"lint": {}}}', encoding="utf-8")
    assert main(["build", "--project", str(project)]) == 2


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage: prepbuild" in capsys.readouterr().out


def test_pack_then_export_to_destination(project, tmp_path, install_calls):
    assert main(["build", "--project", str(project)]) == 0
    assert main(["pack", "--project", str(project)]) == 0
    dest = tmp_path / "release"
    assert main(["export", "--project", str(project), "--dest", str(dest)]) == 0
    assert (dest / "bundle.dat").is_file()
    assert install_calls() == 1


def test_pack_without_previous_build_exits_1(project):
    assert main(["pack", "--project", str(project)]) == 1


def test_stages_lists_pipeline(project, capsys):
    assert main(["stages", "--project", str(project)]) == 0
    out = capsys.readouterr().out
    for name in ("prepare-workspace", "resolve-dependencies", "compile", "pack", "export"):
        assert name in out
    assert "(built-in)" in out


def test_cache_list_and_evict(project, capsys):
    assert main(["cache", "list", "--project", str(project)]) == 0
    assert "No cache entries" in capsys.readouterr().out

    assert main(["build", "--project", str(project)]) == 0
    capsys.readouterr()
    assert main(["cache", "list", "--project", str(project)]) == 0
    assert "vendor" in capsys.readouterr().out

    assert main(["cache", "evict", "--older-than-days", "1", "--project", str(project)]) == 0
    assert "Removed 0 cache path(s)" in capsys.readouterr().out


def test_port_prints_first_free_port(project, monkeypatch, capsys):
    monkeypatch.setattr(ports, "is_port_free", lambda port, host="127.0.0.1": port < 9998)
    assert main(["port", "--project", str(project)]) == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == "9997"


def test_port_exhausted_exits_1(project, monkeypatch):
    monkeypatch.setattr(ports, "is_port_free", lambda port, host="127.0.0.1": False)
    assert main(["port", "--project", str(project), "--count", "3"]) == 1


def _set_config(project, **changes):
    path = project / "prepbuild.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    data.update(changes)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_watch_with_missing_watch_dir_exits_2(project):
    _set_config(project, watch_dir="does-not-exist")
    assert main(["watch", "--project", str(project)]) == 2


def test_watching_project_root_ignores_build_byproducts(project):
    _set_config(project, watch_dir=".")
    config = load_config(project)
    watcher = _build_watcher(config, RebuildScheduler(lambda: None))
    handler = watcher._handler

    assert handler._should_ignore(str(project / ".prepbuild" / "last-run.json"))
    assert handler._should_ignore(str(project / ".prepbuild" / "logs" / "compile.log"))
    assert handler._should_ignore(str(project / "dist" / "build" / "index.js"))
    assert handler._should_ignore(str(project / "node_modules" / "leftpad" / "index.js"))
    assert handler._should_ignore(str(project / "runtime" / "runtime.js"))
    assert not handler._should_ignore(str(project / "src" / "index.jsx"))
    assert not handler._should_ignore(str(project / "package.json"))
