"""
共享 fixtures：一个最小的示例项目 + 用 Python 脚本模拟的安装器 / 编译器
"""
import json
import sys
import textwrap
from pathlib import Path

import pytest

from prepbuild.config.settings import load_config

INSTALL_SCRIPT = textwrap.dedent(
    """
    import pathlib, sys

    counter = pathlib.Path(sys.argv[1])
    with counter.open("a", encoding="utf-8") as f:
        f.write("install\\n")
    if pathlib.Path("FAIL_INSTALL").exists():
        print("npm ERR! simulated install failure")
        sys.exit(7)
    dep = pathlib.Path("node_modules") / "leftpad"
    dep.mkdir(parents=True, exist_ok=True)
    lock = pathlib.Path("package-lock.json").read_text(encoding="utf-8")
    (dep / "index.js").write_text("// " + lock.strip() + "\\nmodule.exports = 1;\\n", encoding="utf-8")
    """
)

COMPILE_SCRIPT = textwrap.dedent(
    """
    import pathlib, sys

    if not pathlib.Path("node_modules/leftpad/index.js").exists():
        print("cannot resolve leftpad")
        sys.exit(3)
    src = pathlib.Path("src")
    out = pathlib.Path("build")
    out.mkdir(exist_ok=True)
    for f in sorted(src.rglob("*.jsx")):
        text = f.read_text(encoding="utf-8")
        if "SYNTAX_ERROR" in text:
            print(f"{f}: unexpected token")
            sys.exit(1)
        target = out / f.relative_to(src).with_suffix(".js")
        target.parent.mkdir(parents=True, exist_ok=True)
        body = "// compiled\\n" + text
        if "--source-maps" in sys.argv:
            body += "//# sourceMappingURL=" + target.name + ".map\\n"
        target.write_text(body, encoding="utf-8")
    print("compiled ok")
    """
)


def write_json(path: Path, data) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


@pytest.fixture
def scratch_root(tmp_path, monkeypatch) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    monkeypatch.setenv("PREPBUILD_SCRATCH_ROOT", str(root))
    monkeypatch.delenv("PREPBUILD_DEV_PORT", raising=False)
    return root


@pytest.fixture
def tools_dir(tmp_path) -> Path:
    tools = tmp_path / "tools"
    tools.mkdir()
    (tools / "install.py").write_text(INSTALL_SCRIPT, encoding="utf-8")
    (tools / "compile.py").write_text(COMPILE_SCRIPT, encoding="utf-8")
    return tools


@pytest.fixture
def install_counter(tmp_path) -> Path:
    return tmp_path / "install-calls.txt"


@pytest.fixture
def install_calls(install_counter):
    """返回一个函数：安装器到目前为止被调用的次数。"""

    def _count() -> int:
        if not install_counter.exists():
            return 0
        return len(install_counter.read_text(encoding="utf-8").splitlines())

    return _count


@pytest.fixture
def project(tmp_path, scratch_root, tools_dir, install_counter) -> Path:
    root = tmp_path / "myapp"
    (root / "src" / "components").mkdir(parents=True)
    (root / "runtime").mkdir()
    write_json(root / "package.json", {"name": "myapp", "dependencies": {"leftpad": "1.0.0"}})
    write_json(root / "package-lock.json", {"lockfileVersion": 3, "packages": {"leftpad": "1.0.0"}})
    (root / "src" / "index.jsx").write_text("render(<App />);\n", encoding="utf-8")
    (root / "src" / "components" / "App.jsx").write_text("export const App = () => <div/>;\n", encoding="utf-8")
    (root / "runtime" / "runtime.js").write_text("// runtime\n", encoding="utf-8")
    write_json(
        root / "prepbuild.json",
        {
            "project": "myapp",
            "runtime_payload": "runtime",
            "exclude": ["runtime"],
            "debounce_seconds": 0.05,
            "stages": {
                "resolve-dependencies": {
                    "command": [sys.executable, str(tools_dir / "install.py"), str(install_counter)],
                    "timeout": 60,
                },
                "compile": {
                    "command": [sys.executable, str(tools_dir / "compile.py")],
                    "dev_args": ["--source-maps"],
                    "timeout": 60,
                },
            },
        },
    )
    return root


@pytest.fixture
def config(project):
    return load_config(project)
