"""
Pipeline core types: StageSpec, StageResult, RunContext, RunSummary, etc.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Union

Status = Literal["pending", "running", "succeeded", "failed", "skipped"]

PipelineState = Literal[
    "IDLE",
    "WORKSPACE_READY",
    "INSTALLING",
    "DEPENDENCIES_READY",
    "COMPILED",
    "PACKED",
    "EXPORTED",
    "DONE",
    "FAILED",
]

# 阶段名按执行顺序排列（线性链）
PREPARE = "prepare-workspace"
RESOLVE = "resolve-dependencies"
COMPILE = "compile"
PACK = "pack"
EXPORT = "export"
STAGE_ORDER: tuple[str, ...] = (PREPARE, RESOLVE, COMPILE, PACK, EXPORT)

StageCallable = Callable[["RunContext"], None]


@dataclass(frozen=True)
class StageSpec:
    """
    阶段定义（纯数据，orchestrator 不关心具体编译的是什么方言）。

    注意：
    - command 为 argv 模板列表（外部进程）或进程内函数
    - inputs / outputs 始终是 workspace-relative 路径
    - 上一个阶段的 outputs 即下一个阶段的 inputs
    """

    name: str
    command: Union[List[str], StageCallable, None]
    timeout: float = 300.0
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    dev_args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Stage name cannot be empty")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Stage {self.name} timeout must be positive (got {self.timeout})")
        for rel in list(self.inputs) + list(self.outputs):
            if Path(rel).is_absolute() or ".." in Path(rel).parts:
                raise ValueError(
                    f"Stage {self.name} paths must be workspace-relative (got {rel!r})"
                )

    @property
    def is_external(self) -> bool:
        return isinstance(self.command, (list, tuple))


@dataclass
class ErrorInfo:
    """错误信息（写入 last-run.json）。"""
    type: str
    message: str
    traceback: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, tb: Optional[str] = None) -> "ErrorInfo":
        return cls(type=type(exc).__name__, message=str(exc), traceback=tb)


@dataclass
class RunContext:
    """运行上下文（传给每个阶段）。"""
    run_id: str
    project: str
    project_root: Path
    workspace: Path
    dev: bool = False
    runtime_payload: Optional[Path] = None
    export_dest: Optional[Path] = None
    # 阶段间共享的额外信息（例如 pack 阶段记录的 bundle 文件数）
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageResult:
    """
    单个阶段的执行记录。

    - status: succeeded / failed / skipped
    - output: 截断后的合并输出（完整输出在 log_path）
    """

    name: str
    status: Status
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: float = 0.0
    exit_code: Optional[int] = None
    output: str = ""
    log_path: Optional[str] = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("succeeded", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
            "log_path": self.log_path,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = ErrorInfo.from_exception(self.error).__dict__
        return data


@dataclass
class RunSummary:
    """
    一次 pipeline 运行的整体摘要。

    这是 orchestrator 的公共返回值，供 CLI / watch 模式消费。
    """

    run_id: str
    status: Literal["succeeded", "failed"]
    # 状态机经过的状态（含 IDLE 与终态）
    transitions: List[PipelineState] = field(default_factory=list)
    # 按执行顺序记录所有阶段（包括 skipped）
    stages: List[StageResult] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[BaseException] = None
    fingerprint: Optional[str] = None
    cache_hit: Optional[bool] = None
    artifact_bytes: int = 0
    duration_seconds: float = 0.0
    dev: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return 0
        return int(getattr(self.error, "exit_code", 1))

    def stage(self, name: str) -> Optional[StageResult]:
        for record in self.stages:
            if record.name == name:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status,
            "dev": self.dev,
            "transitions": list(self.transitions),
            "stages": [s.to_dict() for s in self.stages],
            "fingerprint": self.fingerprint,
            "cache_hit": self.cache_hit,
            "artifact_bytes": self.artifact_bytes,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.failed_stage:
            data["failed_stage"] = self.failed_stage
        if self.error is not None:
            data["error"] = ErrorInfo.from_exception(self.error).__dict__
        return data
