"""
构建错误分类。

所有错误都继承 BuildError，并携带 CLI 退出码：
- 1: 阶段失败（StageFailure / StageTimeout / PrecedingArtifactMissing / NoPortAvailable）
- 2: 调用无效（ManifestNotFound / ConfigError）
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class BuildError(Exception):
    """构建错误基类。"""

    exit_code = 1


class ManifestNotFound(BuildError):
    """声明的 manifest 文件不存在。"""

    exit_code = 2

    def __init__(self, path: Path | str):
        self.path = Path(path)
        super().__init__(f"Manifest file not found: {self.path}")


class ConfigError(BuildError):
    """配置无效（prepbuild.json 或环境变量）。"""

    exit_code = 2


class StageFailure(BuildError):
    """
    阶段失败：外部进程非零退出，或进程内函数抛出异常。

    Attributes:
        stage: 失败的阶段名
        exit_info: 退出信息（如 "exit code 3"）
        log: 截断后的输出（用于报告）
        log_path: 完整输出日志路径
        output: 未截断的完整输出（写入日志文件）
    """

    def __init__(
        self,
        stage: str,
        exit_info: str,
        log: str = "",
        log_path: Optional[Path] = None,
        output: Optional[str] = None,
    ):
        self.stage = stage
        self.exit_info = exit_info
        self.log = log
        self.log_path = log_path
        self.output = log if output is None else output
        super().__init__(f"Stage '{stage}' failed: {exit_info}")


class StageTimeout(StageFailure):
    """阶段超过声明的超时时间（进程已被终止，不会自动重试）。"""

    def __init__(
        self,
        stage: str,
        timeout: float,
        log: str = "",
        log_path: Optional[Path] = None,
        output: Optional[str] = None,
    ):
        self.timeout = timeout
        super().__init__(stage, f"timed out after {timeout:g}s", log, log_path, output)


class PrecedingArtifactMissing(BuildError):
    """跳过上游阶段时，上游产物不存在。"""

    def __init__(self, stage: str, artifact: str):
        self.stage = stage
        self.artifact = artifact
        super().__init__(
            f"Stage '{stage}' requires '{artifact}' from a previous build, but it does not exist"
        )


class NoPortAvailable(BuildError):
    """扫描范围内没有可用端口。"""

    def __init__(self, start: int, count: int, direction: str):
        self.start = start
        self.count = count
        self.direction = direction
        super().__init__(
            f"No free port in {count} port(s) scanning {direction} from {start}"
        )


class CacheCorrupt(BuildError):
    """缓存条目存在但缺少完成标记（只在 CacheStore 内部使用，按未命中处理）。"""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cache entry {path} is not usable: {reason}")
