"""
Watcher：监听源码目录，防抖后触发重建

- RebuildScheduler：防抖 + 单槽位待重建标记（与文件系统无关，便于测试）
- SourceWatcher：watchdog Observer（递归）→ RebuildScheduler.notify()

同一时刻最多一个构建在跑；构建期间的新事件只记一次“待重建”，
当前构建结束后恰好再跑一次。停止监听不会中断正在进行的构建。
"""
import fnmatch
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from prepbuild.utils.logger import get_logger

log = get_logger("watch")

DEFAULT_IGNORE_PATTERNS = [
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    "node_modules",
    ".DS_Store",
    "*.swp",
    "*.swo",
    "*.swx",
    "*~",
    ".#*",
    "*.tmp",
    "4913",  # vim 写入探测文件
]


class RebuildScheduler:
    """防抖调度器。"""

    def __init__(self, build: Callable[[], Any], debounce: float = 0.3):
        self._build = build
        self.debounce = debounce
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._pending = False
        self._stopped = False
        self._idle = threading.Event()
        self._idle.set()
        self.runs = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending

    def notify(self) -> None:
        """收到一个文件事件：重置防抖计时器。"""
        with self._lock:
            if self._stopped:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def trigger(self) -> None:
        """立即请求一次构建（不经过防抖）。"""
        self._fire()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._stopped:
                return
            if self._running:
                # 队列深度上限为 1
                if not self._pending:
                    log.debug("Build in progress, queued one rebuild")
                self._pending = True
                return
            self._running = True
            self._idle.clear()
        worker = threading.Thread(target=self._loop, name="prepbuild-rebuild", daemon=True)
        worker.start()

    def _loop(self) -> None:
        while True:
            try:
                self.runs += 1
                self._build()
            except Exception as e:
                # 一次失败的保存不能终止 watch 模式
                log.error(f"Rebuild failed: {type(e).__name__}: {e}")
            with self._lock:
                if self._pending and not self._stopped:
                    self._pending = False
                    continue
                self._pending = False
                self._running = False
                self._idle.set()
                return

    def stop(self) -> None:
        """停止调度新的构建；正在进行的构建会继续完成。"""
        with self._lock:
            self._stopped = True
            self._pending = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """等待当前构建（以及已排队的一次重建）完成。"""
        return self._idle.wait(timeout)


class _ChangeHandler(FileSystemEventHandler):
    """过滤 watchdog 事件并转发给调度器。"""

    def __init__(self, root: Path, scheduler: RebuildScheduler, ignore_patterns: List[str]):
        super().__init__()
        self.root = root
        self.scheduler = scheduler
        self.ignore_patterns = ignore_patterns

    def _should_ignore(self, path: str) -> bool:
        try:
            rel = Path(path).resolve().relative_to(self.root)
        except ValueError:
            rel = Path(path)
        rel_str = rel.as_posix()
        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(rel_str, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in rel.parts):
                return True
        return False

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        # 目录自身的 modified 事件只是子项变化的副产品
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.append(dest)
        if all(self._should_ignore(str(p)) for p in paths):
            return
        log.debug(f"{event.event_type}: {event.src_path}")
        self.scheduler.notify()


class SourceWatcher:
    """
    递归监听 watch_dir。

    ignore_patterns 相对 match_root 匹配（默认 watch_dir），
    也会逐段匹配路径中的每一级名称。
    """

    def __init__(
        self,
        watch_dir: Path,
        scheduler: RebuildScheduler,
        ignore_patterns: Optional[Iterable[str]] = None,
        match_root: Optional[Path] = None,
    ):
        self.watch_dir = Path(watch_dir).resolve()
        self.scheduler = scheduler
        patterns = list(DEFAULT_IGNORE_PATTERNS)
        if ignore_patterns:
            patterns.extend(ignore_patterns)
        root = Path(match_root).resolve() if match_root is not None else self.watch_dir
        self._handler = _ChangeHandler(root, scheduler, patterns)
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        if not self.watch_dir.is_dir():
            raise FileNotFoundError(f"Watch directory not found: {self.watch_dir}")
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.watch_dir), recursive=True)
        self._observer.start()
        log.info(f"Watching {self.watch_dir} for changes")

    def stop(self, timeout: float = 5.0) -> None:
        """停止监听并停止调度；不会中断正在进行的构建。"""
        self.scheduler.stop()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            if self._observer.is_alive():
                log.warning("File observer did not stop in time")
            self._observer = None

    def __enter__(self) -> "SourceWatcher":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
