"""
export: 把工作区中的构建产物原子发布到项目的 export 目录

每个顶层产物单独原子替换（临时兄弟路径 + rename），
因此读者只会看到上一次或本次的完整产物，不会看到半成品。
"""
import shutil
from pathlib import Path
from typing import Callable, List

from prepbuild.pipeline.core.atomic import atomic_copy
from prepbuild.pipeline.core.errors import PrecedingArtifactMissing, StageFailure
from prepbuild.pipeline.core.fingerprints import path_size
from prepbuild.pipeline.core.types import EXPORT, RunContext
from prepbuild.utils.logger import debug, info


def export_artifacts(artifacts: List[str], default_dest: Path) -> Callable[[RunContext], None]:
    """返回内置 export 阶段的进程内实现。"""

    def _export(ctx: RunContext) -> None:
        dest_root = ctx.export_dest or default_dest
        total = 0
        for rel in artifacts:
            src = ctx.workspace / rel
            if not src.exists():
                raise StageFailure(EXPORT, f"export input missing: {rel}")
            dest = dest_root / rel
            atomic_copy(src, dest)
            size = path_size(dest)
            total += size
            debug(f"  exported {rel} ({size} bytes)")
        info(f"Exported {len(artifacts)} artifact(s), {total} bytes -> {dest_root}")

    return _export


def seed_artifacts(stage: str, artifacts: List[str], source_root: Path, workspace: Path) -> None:
    """
    跳过上游阶段时，从上一次导出的产物中恢复本阶段的输入。

    Raises:
        PrecedingArtifactMissing: 上一次导出中没有该产物
    """
    for rel in artifacts:
        src = source_root / rel
        if not src.exists():
            raise PrecedingArtifactMissing(stage, rel)
        dest = workspace / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest)
        debug(f"  seeded {rel} from {source_root}")
