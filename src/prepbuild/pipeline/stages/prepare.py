"""
prepare-workspace: 把项目树复制到工作区（排除依赖目录、产物目录、状态目录与 VCS 目录）
"""
import fnmatch
import shutil
from pathlib import Path
from typing import Callable, Iterable, List

from prepbuild.config.settings import BuildConfig
from prepbuild.pipeline.core.types import RunContext
from prepbuild.utils.logger import debug

ALWAYS_EXCLUDED = [".git", ".hg", ".svn", "__pycache__", ".DS_Store", ".env"]


def make_ignore(root: Path, patterns: Iterable[str]) -> Callable[[str, List[str]], List[str]]:
    """
    构建 shutil.copytree 的 ignore 函数。

    pattern 同时匹配名称与相对项目根的 posix 路径（例如 "node_modules"、"docs/*.md"）。
    """
    patterns = list(patterns)

    def _ignore(directory: str, names: List[str]) -> List[str]:
        rel_dir = Path(directory).resolve().relative_to(root)
        ignored = []
        for name in names:
            rel = (rel_dir / name).as_posix()
            if any(fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel, p) for p in patterns):
                ignored.append(name)
        return ignored

    return _ignore


def excluded_patterns(config: BuildConfig) -> List[str]:
    patterns = [
        *ALWAYS_EXCLUDED,
        config.dependency_dir,
        config.export_dir,
        config.state_dir,
        *config.exclude,
    ]
    # scratch root 位于项目内时不能把工作区复制进自身
    scratch = Path(config.scratch_root).resolve()
    if scratch.is_relative_to(config.project_root) and scratch != config.project_root:
        patterns.append(scratch.relative_to(config.project_root).as_posix())
    return patterns


def prepare_workspace(config: BuildConfig) -> Callable[[RunContext], None]:
    """返回 prepare-workspace 阶段的进程内实现。"""
    root = config.project_root
    ignore = make_ignore(root, excluded_patterns(config))

    def _prepare(ctx: RunContext) -> None:
        shutil.copytree(root, ctx.workspace, symlinks=True, ignore=ignore, dirs_exist_ok=True)
        debug(f"Copied {root} -> {ctx.workspace}")

    return _prepare
