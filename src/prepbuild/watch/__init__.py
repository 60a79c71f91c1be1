"""
Watch 模式：文件监听 + 防抖重建。
"""
from .watcher import DEFAULT_IGNORE_PATTERNS, RebuildScheduler, SourceWatcher

__all__ = ["DEFAULT_IGNORE_PATTERNS", "RebuildScheduler", "SourceWatcher"]
