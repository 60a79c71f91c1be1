"""
CacheStore: 按 (kind, fingerprint) 存取的内容寻址缓存。

目录布局（位于共享 scratch root）：
    {scratch_root}/{project}-{kind}-{fingerprint}/
        ... 预备好的产物（例如已安装的依赖）
        .prepbuild-complete   # 完成标记（JSON），最后写入、随整个目录一次 rename 发布

没有完成标记的目录（例如崩溃留下的）绝不会被报告为命中。
"""
import json
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from prepbuild.pipeline.core.atomic import atomic_publish_dir, remove_path
from prepbuild.pipeline.core.errors import CacheCorrupt
from prepbuild.pipeline.core.fingerprints import path_size
from prepbuild.utils.logger import debug, info, warning

COMPLETE_MARKER = ".prepbuild-complete"


def now_iso() -> str:
    """返回当前时间的 ISO 格式字符串。"""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CacheEntry:
    path: Path
    kind: str
    fingerprint: str
    created_at: str
    size_bytes: int = 0


class CacheStore:
    """缓存存储。"""

    def __init__(self, scratch_root: Path, project: str):
        self.scratch_root = Path(scratch_root)
        self.project = project

    def entry_path(self, kind: str, fingerprint: str) -> Path:
        return self.scratch_root / f"{self.project}-{kind}-{fingerprint}"

    def _read_marker(self, path: Path, kind: str, fingerprint: str) -> dict:
        """
        校验条目结构，返回完成标记内容。

        Raises:
            CacheCorrupt: 目录存在但标记缺失 / 无法解析 / 与 key 不符
        """
        marker = path / COMPLETE_MARKER
        if not marker.is_file():
            raise CacheCorrupt(path, "completion marker missing")
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheCorrupt(path, f"completion marker unreadable: {e}") from e
        if data.get("kind") != kind or data.get("fingerprint") != fingerprint:
            raise CacheCorrupt(path, "completion marker does not match key")
        return data

    def lookup(self, kind: str, fingerprint: str) -> Optional[Path]:
        """
        查找缓存条目。

        Returns:
            条目目录路径；未命中（或条目损坏）时返回 None
        """
        path = self.entry_path(kind, fingerprint)
        if not path.is_dir():
            debug(f"Cache miss: {path.name}")
            return None
        try:
            self._read_marker(path, kind, fingerprint)
        except CacheCorrupt as e:
            warning(f"{e}; treating as cache miss")
            return None
        debug(f"Cache hit: {path.name}")
        return path

    def commit(self, kind: str, fingerprint: str, source_dir: Path) -> Path:
        """
        原子发布 source_dir 作为 (kind, fingerprint) 的缓存条目。

        先复制到临时兄弟目录并写入完成标记，再一次 rename 到最终位置。
        同一 key 的并发提交只由 rename 串行化：槽位中已有完整条目时保留它
        （条目一经写入即不可变，读者手里的条目不会被删掉），
        槽位中是损坏的残留时由本次提交替换。任何时刻都不会出现半成品。
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise FileNotFoundError(f"Cannot cache {source_dir}: not a directory")

        marker = {
            "kind": kind,
            "fingerprint": fingerprint,
            "project": self.project,
            "created_at": now_iso(),
        }

        def _build(tmp: Path) -> None:
            shutil.copytree(source_dir, tmp, symlinks=True)
            (tmp / COMPLETE_MARKER).write_text(json.dumps(marker, indent=2), encoding="utf-8")

        def _replace(existing: Path) -> bool:
            return not self._is_valid(existing, kind, fingerprint)

        target = atomic_publish_dir(self.entry_path(kind, fingerprint), _build, should_replace=_replace)
        info(f"Cached {kind} entry {fingerprint[:12]} -> {target}")
        return target

    def _is_valid(self, path: Path, kind: str, fingerprint: str) -> bool:
        try:
            self._read_marker(path, kind, fingerprint)
        except CacheCorrupt:
            return False
        return True

    def entries(self, kind: Optional[str] = None) -> List[CacheEntry]:
        """列出本项目所有有效条目（按创建时间排序）。"""
        prefix = f"{self.project}-"
        found: List[CacheEntry] = []
        if not self.scratch_root.is_dir():
            return found
        for path in self.scratch_root.iterdir():
            if not path.name.startswith(prefix) or not path.is_dir():
                continue
            marker = path / COMPLETE_MARKER
            if not marker.is_file():
                continue
            try:
                data = json.loads(marker.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if kind is not None and data.get("kind") != kind:
                continue
            if path.name != f"{prefix}{data.get('kind')}-{data.get('fingerprint')}":
                continue
            found.append(
                CacheEntry(
                    path=path,
                    kind=data["kind"],
                    fingerprint=data["fingerprint"],
                    created_at=data.get("created_at", ""),
                    size_bytes=path_size(path),
                )
            )
        return sorted(found, key=lambda e: e.created_at)

    def evict(self, kind: str, older_than: timedelta) -> List[Path]:
        """
        删除早于 older_than 的条目（仅用于控制磁盘占用，与正确性无关）。

        同时清理本项目遗留的 .tmp- / .stale- 兄弟目录。
        """
        cutoff = datetime.now(timezone.utc) - older_than
        removed: List[Path] = []
        for entry in self.entries(kind):
            try:
                created = datetime.fromisoformat(entry.created_at)
            except ValueError:
                created = datetime.fromtimestamp(entry.path.stat().st_mtime, timezone.utc)
            if created < cutoff:
                remove_path(entry.path)
                removed.append(entry.path)

        leftover_prefix = f".{self.project}-{kind}-"
        if self.scratch_root.is_dir():
            for path in self.scratch_root.iterdir():
                if not path.name.startswith(leftover_prefix):
                    continue
                if ".tmp-" not in path.name and ".stale-" not in path.name:
                    continue
                if time.time() - path.stat().st_mtime > older_than.total_seconds():
                    remove_path(path)
                    removed.append(path)

        if removed:
            info(f"Evicted {len(removed)} cache path(s) older than {older_than}")
        return removed
