"""
Build Workspace：每次构建独占的临时目录 + 项目级互斥锁。

- 工作区：{scratch_root}/{project}-{workspace_id}/，无论成功 / 失败 / 中断都会删除
- 项目锁：{scratch_root}/{project}.lock（fcntl.flock），同一项目同一时刻只跑一个 pipeline
"""
import fcntl
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

from prepbuild.utils.logger import debug, warning

# 进程内线程之间同样互斥（每个锁文件一把 threading.Lock）
_thread_locks: Dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _thread_lock_for(lock_path: Path) -> threading.Lock:
    key = str(lock_path.resolve())
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = _thread_locks[key] = threading.Lock()
        return lock


@contextmanager
def project_lock(scratch_root: Path, project: str) -> Iterator[Path]:
    """
    获取项目级排他锁（阻塞直到拿到）。

    第二个并发触发会在这里等待，而不是在同一项目上并行跑两个 pipeline。
    """
    scratch_root.mkdir(parents=True, exist_ok=True)
    lock_path = scratch_root / f"{project}.lock"
    thread_lock = _thread_lock_for(lock_path)
    with thread_lock:
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            debug(f"Acquired project lock {lock_path}")
            try:
                yield lock_path
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def new_workspace_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def build_workspace(scratch_root: Path, project: str) -> Iterator[Path]:
    """
    创建本次构建的工作区，退出时无条件删除。

    Yields:
        工作区目录（已创建、为空）
    """
    scratch_root.mkdir(parents=True, exist_ok=True)
    workspace = scratch_root / f"{project}-{new_workspace_id()}"
    workspace.mkdir()
    debug(f"Created workspace {workspace}")
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
        if workspace.exists():
            warning(f"Workspace {workspace} could not be fully removed")
        else:
            debug(f"Removed workspace {workspace}")
