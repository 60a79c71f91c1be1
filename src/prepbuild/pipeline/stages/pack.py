"""
内置打包器：compile 产物 + runtime payload → 单个 bundle

输出两个文件（均位于工作区）：
- 数据文件（默认 bundle.dat）：所有文件内容按路径排序依次拼接
- 清单文件（默认 bundle.json）：每个文件的 path / offset / size / sha256

runtime payload 中的文件以 "runtime/" 前缀写入清单。
"""
import hashlib
import json
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from prepbuild.pipeline.core.errors import ConfigError, StageFailure
from prepbuild.pipeline.core.fingerprints import iter_files
from prepbuild.pipeline.core.types import PACK, RunContext
from prepbuild.utils.logger import info

BUNDLE_FORMAT = "prepbuild-bundle/1"
RUNTIME_PREFIX = "runtime"


def _collect(workspace: Path, inputs: List[str], runtime: Optional[Path]) -> List[Tuple[str, Path]]:
    """收集 (bundle 内路径, 源文件) 列表，按 bundle 内路径排序。"""
    entries: Dict[str, Path] = {}
    for rel in inputs:
        src = workspace / rel
        if src.is_dir():
            for f in iter_files(src):
                entries[f.relative_to(workspace).as_posix()] = f
        elif src.is_file():
            entries[Path(rel).as_posix()] = src
        else:
            raise StageFailure(PACK, f"pack input missing: {rel}")

    if runtime is not None:
        if runtime.is_dir():
            for f in iter_files(runtime):
                entries[f"{RUNTIME_PREFIX}/{f.relative_to(runtime).as_posix()}"] = f
        elif runtime.is_file():
            entries[f"{RUNTIME_PREFIX}/{runtime.name}"] = runtime
        else:
            raise StageFailure(PACK, f"runtime payload not found: {runtime}")
    return sorted(entries.items())


def write_bundle(
    files: List[Tuple[str, Path]],
    data_path: Path,
    manifest_path: Path,
) -> Dict[str, object]:
    """
    写出 bundle 数据文件与清单。

    Returns:
        清单内容（dict）
    """
    records = []
    offset = 0
    data_path.parent.mkdir(parents=True, exist_ok=True)
    with data_path.open("wb") as out:
        for bundle_path, src in files:
            h = hashlib.sha256()
            size = 0
            with src.open("rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    out.write(chunk)
                    h.update(chunk)
                    size += len(chunk)
            records.append(
                {
                    "path": bundle_path,
                    "offset": offset,
                    "size": size,
                    "sha256": h.hexdigest(),
                }
            )
            offset += size

    manifest = {
        "format": BUNDLE_FORMAT,
        "data": data_path.name,
        "total_size": offset,
        "files": records,
    }
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    manifest_path.write_text(json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8")
    return manifest


def read_bundle_file(data_path: Path, manifest_path: Path, bundle_path: str) -> bytes:
    """按清单从 bundle 中取出单个文件内容。"""
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    for record in manifest["files"]:
        if record["path"] == bundle_path:
            with data_path.open("rb") as f:
                f.seek(record["offset"])
                return f.read(record["size"])
    raise KeyError(bundle_path)


def split_outputs(outputs: List[str]) -> Tuple[str, str]:
    """从声明的 outputs 中区分数据文件与清单文件（清单为 .json）。"""
    if len(outputs) != 2:
        raise ConfigError(f"Built-in packer needs exactly two outputs (data, manifest), got {outputs}")
    manifests = [o for o in outputs if o.endswith(".json")]
    if len(manifests) != 1:
        raise ConfigError(f"Built-in packer needs exactly one .json manifest output, got {outputs}")
    data = next(o for o in outputs if o != manifests[0])
    return data, manifests[0]


def pack_bundle(inputs: List[str], outputs: List[str]) -> Callable[[RunContext], None]:
    """返回内置 pack 阶段的进程内实现。"""
    data_rel, manifest_rel = split_outputs(outputs)

    def _pack(ctx: RunContext) -> None:
        files = _collect(ctx.workspace, inputs, ctx.runtime_payload)
        manifest = write_bundle(files, ctx.workspace / data_rel, ctx.workspace / manifest_rel)
        ctx.extras["bundle_files"] = len(files)
        info(f"Packed {len(files)} file(s), {manifest['total_size']} bytes -> {data_rel}")

    return _pack
