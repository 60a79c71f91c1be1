"""
统一的日志工具模块

提供统一的日志接口，替代直接使用 print。
watch 模式下构建线程与监听线程会同时输出，因此写入时加锁，避免行交错。
进程内阶段可以用 capture_output() 把本线程的日志同时收集到列表中（写入阶段日志）。
"""
import os
import sys
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

_LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}
_write_lock = threading.Lock()
_capture = threading.local()


def _threshold() -> int:
    """从 PREPBUILD_LOG_LEVEL 读取最低输出级别（默认 info）。"""
    name = (os.getenv("PREPBUILD_LOG_LEVEL") or "info").strip().lower()
    if name == "warning":
        name = "warn"
    return _LEVELS.get(name, _LEVELS["info"])


@contextmanager
def capture_output(sink: List[str]) -> Iterator[List[str]]:
    """
    在当前线程内，把所有级别的日志行追加到 sink（不受 PREPBUILD_LOG_LEVEL 影响）。

    终端输出照常进行。
    """
    previous = getattr(_capture, "sink", None)
    _capture.sink = sink
    try:
        yield sink
    finally:
        _capture.sink = previous


class Logger:
    """简单的日志记录器，不依赖 logging 模块"""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def _format(self, level: str, message: str) -> str:
        """格式化日志消息"""
        if self.prefix:
            return f"[{level}] {self.prefix}: {message}"
        return f"[{level}] {message}"

    def _emit(self, level: str, rank: int, message: str, stream=None) -> None:
        line = self._format(level, message)
        sink = getattr(_capture, "sink", None)
        if sink is not None:
            sink.append(line)
        if rank < _threshold():
            return
        target = stream if stream is not None else sys.stdout
        with _write_lock:
            print(line, file=target, flush=True)

    def info(self, message: str):
        """信息级别日志"""
        self._emit("INFO", _LEVELS["info"], message)

    def success(self, message: str):
        """成功级别日志"""
        self._emit("SUCCESS", _LEVELS["info"], message)

    def warning(self, message: str):
        """警告级别日志"""
        self._emit("WARN", _LEVELS["warn"], message, sys.stderr)

    def error(self, message: str):
        """错误级别日志"""
        self._emit("ERROR", _LEVELS["error"], message, sys.stderr)

    def debug(self, message: str):
        """调试级别日志（PREPBUILD_LOG_LEVEL=debug 时输出）"""
        self._emit("DEBUG", _LEVELS["debug"], message)


# 全局默认日志记录器
_default_logger = Logger()


def info(message: str):
    _default_logger.info(message)


def success(message: str):
    _default_logger.success(message)


def warning(message: str):
    _default_logger.warning(message)


def error(message: str):
    _default_logger.error(message)


def debug(message: str):
    _default_logger.debug(message)


def get_logger(prefix: Optional[str] = "") -> Logger:
    """获取带前缀的日志记录器"""
    return Logger(prefix=prefix or "")
