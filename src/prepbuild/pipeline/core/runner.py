"""
PipelineOrchestrator: 阶段编排 + 缓存命中 / 未命中决策

状态机（线性，仅在依赖解析处分叉）：

    IDLE → WORKSPACE_READY → [命中]   DEPENDENCIES_READY → COMPILED → PACKED → EXPORTED → DONE
                            → [未命中] INSTALLING → DEPENDENCIES_READY → ...
    任一阶段失败 → FAILED（终态）
"""
import shutil
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from prepbuild.config.settings import BuildConfig
from prepbuild.pipeline.core.cache import COMPLETE_MARKER, CacheStore
from prepbuild.pipeline.core.errors import BuildError, ConfigError, StageFailure
from prepbuild.pipeline.core.fingerprints import hash_manifests, path_size
from prepbuild.pipeline.core.report import RunReport, format_summary
from prepbuild.pipeline.core.stage import StageRunner, now_iso
from prepbuild.pipeline.core.types import (
    COMPILE,
    EXPORT,
    PACK,
    PREPARE,
    RESOLVE,
    STAGE_ORDER,
    PipelineState,
    RunContext,
    RunSummary,
    StageResult,
    StageSpec,
)
from prepbuild.pipeline.core.workspace import build_workspace, project_lock
from prepbuild.pipeline.stages import build_stage_specs, seed_artifacts
from prepbuild.utils.logger import debug, error, info, success, warning

VENDOR_KIND = "vendor"

# 阶段成功后进入的状态
_STATE_AFTER: Dict[str, PipelineState] = {
    PREPARE: "WORKSPACE_READY",
    RESOLVE: "DEPENDENCIES_READY",
    COMPILE: "COMPILED",
    PACK: "PACKED",
    EXPORT: "EXPORTED",
}

# 允许的入口（跳过上游阶段）
ENTRY_POINTS = (PACK, EXPORT)


class PipelineOrchestrator:
    """Pipeline 编排器。"""

    def __init__(
        self,
        config: BuildConfig,
        *,
        cache: Optional[CacheStore] = None,
        stage_runner: Optional[StageRunner] = None,
        stages: Optional[Dict[str, StageSpec]] = None,
    ):
        self.config = config
        self.cache = cache or CacheStore(config.scratch_root, config.project)
        self.stage_runner = stage_runner or StageRunner(config.log_dir)
        self.stages = stages or build_stage_specs(config)
        self.report = RunReport(config.state_path)

    def plan(self, start_at: Optional[str] = None) -> List[str]:
        """
        计算本次要执行的阶段。

        start_at 为 pack / export 时跳过依赖解析与上游阶段（prepare-workspace 始终执行）。
        """
        if start_at is None:
            return list(STAGE_ORDER)
        if start_at not in ENTRY_POINTS:
            raise ConfigError(
                f"Unsupported entry point {start_at!r} (expected one of: {', '.join(ENTRY_POINTS)})"
            )
        start_idx = STAGE_ORDER.index(start_at)
        return [PREPARE, *STAGE_ORDER[start_idx:]]

    def run(
        self,
        *,
        dev: bool = False,
        start_at: Optional[str] = None,
        export_dest: Optional[Path] = None,
    ) -> RunSummary:
        """
        运行一次 pipeline。

        阶段失败不会抛出：记录到 RunSummary（status="failed"、failed_stage、error）后返回。
        工作区在任何退出路径上都会被删除，项目锁随之释放。
        """
        summary = RunSummary(
            run_id=uuid.uuid4().hex[:12],
            status="failed",
            transitions=["IDLE"],
            dev=dev,
        )
        started = time.monotonic()
        current: Optional[str] = None
        try:
            plan = self.plan(start_at)
            skipped = [name for name in STAGE_ORDER if name not in plan]
            info(f"Build {summary.run_id} for '{self.config.project}'" + (" (dev)" if dev else ""))

            with project_lock(self.config.scratch_root, self.config.project):
                with build_workspace(self.config.scratch_root, self.config.project) as workspace:
                    ctx = RunContext(
                        run_id=summary.run_id,
                        project=self.config.project,
                        project_root=self.config.project_root,
                        workspace=workspace,
                        dev=dev,
                        runtime_payload=self.config.runtime_path,
                        export_dest=Path(export_dest).resolve() if export_dest else None,
                    )
                    for name in STAGE_ORDER:
                        current = name
                        if name in skipped:
                            summary.stages.append(
                                StageResult(name=name, status="skipped", reason=f"entry point '{start_at}'")
                            )
                            continue
                        if name == RESOLVE:
                            self._resolve_dependencies(ctx, summary)
                        else:
                            self._run_stage(self.stages[name], ctx, summary)
                        if name == PREPARE and start_at is not None:
                            # 入口阶段的输入来自上一次导出的产物
                            seed_artifacts(start_at, self.stages[start_at].inputs, self.config.export_path, workspace)
                    # 按 export 阶段声明的输入计量，内置或外部 export 命令都适用
                    summary.artifact_bytes = sum(
                        path_size(workspace / rel) for rel in self.stages[EXPORT].inputs
                    )

            summary.status = "succeeded"
            self._transition(summary, "DONE")
        except BuildError as e:
            summary.error = e
            summary.failed_stage = getattr(e, "stage", None) or current
            self._transition(summary, "FAILED")
        finally:
            summary.duration_seconds = time.monotonic() - started
            self._save_report(summary)

        if summary.succeeded:
            success(f"Build {summary.run_id} done")
            info(format_summary(summary))
        else:
            error(f"Build {summary.run_id} failed")
            error(format_summary(summary))
        return summary

    def _transition(self, summary: RunSummary, state: PipelineState) -> None:
        debug(f"  {summary.transitions[-1]} -> {state}")
        summary.transitions.append(state)

    def _record(self, result: StageResult, summary: RunSummary) -> None:
        summary.stages.append(result)
        if not result.succeeded:
            raise result.error or StageFailure(result.name, "unknown error")

    def _run_stage(self, spec: StageSpec, ctx: RunContext, summary: RunSummary) -> None:
        result = self.stage_runner.run(spec, ctx)
        self._record(result, summary)
        self._transition(summary, _STATE_AFTER[spec.name])

    def _resolve_dependencies(self, ctx: RunContext, summary: RunSummary) -> None:
        """
        依赖解析：fingerprint → 缓存命中则复制，未命中则安装并提交缓存。

        安装失败直接中止，不会写入缓存。
        """
        fingerprint = hash_manifests(self.config.manifest_paths)
        summary.fingerprint = fingerprint
        dest = ctx.workspace / self.config.dependency_dir

        hit = self.cache.lookup(VENDOR_KIND, fingerprint)
        if hit is not None:
            started_at = now_iso()
            t0 = time.monotonic()
            try:
                # 复制而不是移动：条目保持可被后续构建复用
                shutil.copytree(
                    hit,
                    dest,
                    symlinks=True,
                    dirs_exist_ok=True,
                    ignore=lambda d, names: [COMPLETE_MARKER] if Path(d) == hit else [],
                )
            except OSError as e:
                raise StageFailure(RESOLVE, f"could not copy cached dependencies: {e}") from e
            summary.cache_hit = True
            info(f"Dependencies restored from cache ({fingerprint[:12]})")
            self._record(
                StageResult(
                    name=RESOLVE,
                    status="succeeded",
                    started_at=started_at,
                    finished_at=now_iso(),
                    duration_seconds=time.monotonic() - t0,
                    reason="cache hit",
                ),
                summary,
            )
            self._transition(summary, "DEPENDENCIES_READY")
            return

        summary.cache_hit = False
        info(f"No cached dependencies for {fingerprint[:12]}, installing")
        self._transition(summary, "INSTALLING")
        result = self.stage_runner.run(self.stages[RESOLVE], ctx)
        result.reason = "cache miss"
        self._record(result, summary)

        dest.mkdir(parents=True, exist_ok=True)
        try:
            self.cache.commit(VENDOR_KIND, fingerprint, dest)
        except OSError as e:
            # 缓存只是优化：提交失败不影响本次构建
            warning(f"Could not cache dependencies for {fingerprint[:12]}: {e}")
        self._transition(summary, "DEPENDENCIES_READY")

    def _save_report(self, summary: RunSummary) -> None:
        try:
            self.report.save(summary, project=self.config.project)
        except OSError as e:
            warning(f"Could not write run report {self.report.path}: {e}")
