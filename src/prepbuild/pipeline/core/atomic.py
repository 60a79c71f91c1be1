"""
原子写入工具：避免中途中断留下半文件 / 半目录
"""
import os
import shutil
import uuid
from pathlib import Path
from typing import Callable, Optional


def _temp_sibling(target_path: Path, tag: str) -> Path:
    # 同一目录下的临时路径，保证 rename 是原子操作
    return target_path.parent / f".{target_path.name}.{tag}-{uuid.uuid4().hex[:8]}"


def remove_path(path: Path) -> None:
    """删除文件或目录（不存在时忽略）。"""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()


def atomic_write(
    content: bytes | str,
    target_path: Path,
    *,
    encoding: Optional[str] = "utf-8",
) -> None:
    """
    原子写入文件（先写临时文件，再 rename）。

    Args:
        content: 文件内容（bytes 或 str）
        target_path: 目标路径
        encoding: 文本编码（仅当 content 是 str 时使用）
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_sibling(target_path, "tmp")

    try:
        if isinstance(content, str):
            temp_path.write_text(content, encoding=encoding)
        else:
            temp_path.write_bytes(content)
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_copy(
    source_path: Path,
    target_path: Path,
) -> None:
    """
    原子复制文件或目录（先复制到临时兄弟路径，再 rename 到目标）。

    目标已存在时旧内容会被替换，读者只会看到旧的或新的完整内容。
    """
    if source_path.is_dir():
        atomic_publish_dir(target_path, lambda tmp: shutil.copytree(source_path, tmp, symlinks=True))
        return

    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_sibling(target_path, "tmp")
    try:
        shutil.copy2(source_path, temp_path)
        if target_path.is_dir() and not target_path.is_symlink():
            # 目录 → 文件：先把旧目录移开
            stale = _temp_sibling(target_path, "stale")
            target_path.rename(stale)
            temp_path.replace(target_path)
            remove_path(stale)
        else:
            temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_publish_dir(
    target_path: Path,
    build: Callable[[Path], object],
    *,
    should_replace: Optional[Callable[[Path], bool]] = None,
    attempts: int = 5,
) -> Path:
    """
    在临时兄弟目录中构建内容，然后一次 rename 发布到 target_path。

    build(tmp) 必须创建 tmp 目录（例如 shutil.copytree）。
    若 target_path 已被占用（并发提交者 / 残留条目）：
    - should_replace(target) 返回 False 时保留现有内容，丢弃本次构建结果
    - 否则先将旧内容 rename 到 .stale- 兄弟路径，再把新内容 rename 进去，最后删除旧内容
    任何时刻 target_path 下都不会出现半成品。

    Returns:
        target_path
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_sibling(target_path, "tmp")
    try:
        build(temp_path)
        if not temp_path.is_dir():
            raise FileNotFoundError(f"Publish build step did not create {temp_path}")

        for _ in range(attempts):
            try:
                os.rename(temp_path, target_path)
                return target_path
            except OSError:
                if not (target_path.exists() or target_path.is_symlink()):
                    raise
            if should_replace is not None and not should_replace(target_path):
                return target_path
            # 目标被占用：移开旧条目后重试
            stale = _temp_sibling(target_path, "stale")
            try:
                os.rename(target_path, stale)
            except FileNotFoundError:
                # 另一个提交者刚刚移走了它
                continue
            try:
                os.rename(temp_path, target_path)
                return target_path
            except OSError:
                continue
            finally:
                remove_path(stale)
        raise OSError(f"Could not publish {target_path}: slot kept changing under concurrent writers")
    finally:
        if temp_path.exists():
            remove_path(temp_path)
