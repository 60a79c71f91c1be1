"""
Fingerprint 计算：确定性 hash
"""
import hashlib
from pathlib import Path
from typing import Iterable, Sequence

from prepbuild.pipeline.core.errors import ManifestNotFound

_CHUNK = 1024 * 1024


def _update_from_file(h, path: Path) -> None:
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)


def hash_manifests(paths: Sequence[Path]) -> str:
    """
    计算 manifest 集合的 fingerprint（缓存 key）。

    只 hash 文件内容（按声明顺序），不 hash 路径 / mtime / 权限，
    因此移动项目目录不会让缓存失效。每个文件内容前写入其字节长度，
    保证文件边界不产生歧义。

    Args:
        paths: manifest 文件路径（顺序有意义）

    Returns:
        64 位十六进制 SHA256（不带前缀，可直接用于目录名）

    Raises:
        ManifestNotFound: 任一 manifest 文件不存在
    """
    h = hashlib.sha256()
    for raw in paths:
        path = Path(raw)
        if not path.is_file():
            raise ManifestNotFound(path)
        h.update(f"{path.stat().st_size}\n".encode("ascii"))
        _update_from_file(h, path)
    return h.hexdigest()


def iter_files(root: Path) -> Iterable[Path]:
    """按相对路径排序遍历目录下所有文件（递归）。"""
    return (p for p in sorted(root.rglob("*")) if p.is_file())


def path_size(path: Path) -> int:
    """文件或目录的总字节数（目录递归求和）。"""
    if path.is_dir():
        return sum(p.stat().st_size for p in iter_files(path))
    if path.exists():
        return path.stat().st_size
    return 0
