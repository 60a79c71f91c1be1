"""
StageRunner: 执行单个阶段（外部进程或进程内函数），负责超时、输出捕获与结果判定
"""
import os
import subprocess
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from prepbuild.pipeline.core.atomic import atomic_write
from prepbuild.pipeline.core.errors import ConfigError, StageFailure, StageTimeout
from prepbuild.pipeline.core.types import RunContext, StageResult, StageSpec
from prepbuild.utils.logger import capture_output, debug, error, info

DEFAULT_MAX_OUTPUT_CHARS = 4000


def now_iso() -> str:
    """返回当前时间的 ISO 格式字符串。"""
    return datetime.now(timezone.utc).isoformat()


def truncate_output(text: str, limit: int) -> str:
    """保留输出末尾 limit 个字符（失败原因通常在最后）。"""
    if limit <= 0 or len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"... [{dropped} chars truncated] ...\n{text[-limit:]}"


def render_command(spec: StageSpec, ctx: RunContext) -> List[str]:
    """
    把 argv 模板渲染为实际命令。

    支持的占位符：{workspace} {project_root} {project} {runtime} {dev}
    dev 模式下追加 spec.dev_args。
    """
    values = {
        "workspace": str(ctx.workspace),
        "project_root": str(ctx.project_root),
        "project": ctx.project,
        "runtime": str(ctx.runtime_payload) if ctx.runtime_payload else "",
        "dev": "1" if ctx.dev else "0",
    }
    argv = list(spec.command or [])
    if ctx.dev:
        argv.extend(spec.dev_args)
    try:
        return [str(part).format(**values) for part in argv]
    except (KeyError, IndexError) as e:
        raise ConfigError(f"Stage '{spec.name}' command has an unknown placeholder: {e}") from e


class StageRunner:
    """阶段执行器。"""

    def __init__(self, log_dir: Path, max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS):
        self.log_dir = Path(log_dir)
        self.max_output_chars = max_output_chars

    def log_path_for(self, stage_name: str) -> Path:
        return self.log_dir / f"{stage_name}.log"

    def run(self, spec: StageSpec, ctx: RunContext) -> StageResult:
        """
        运行阶段。

        Returns:
            StageResult；失败时 status="failed"，error 为 StageFailure / StageTimeout。
            退出码是唯一判定依据，不解析输出内容。
        """
        result = StageResult(name=spec.name, status="running", started_at=now_iso())
        log_path = self.log_path_for(spec.name)
        result.log_path = str(log_path)
        start = time.monotonic()

        output = ""
        try:
            info(f"Running stage '{spec.name}'...")
            if spec.is_external:
                output, result.exit_code = self._run_process(spec, ctx)
            elif callable(spec.command):
                output = self._run_callable(spec, ctx)
                result.exit_code = 0
            else:
                raise ConfigError(f"Stage '{spec.name}' has no command configured")

            if result.exit_code != 0:
                raise StageFailure(
                    spec.name,
                    f"exit code {result.exit_code}",
                    truncate_output(output, self.max_output_chars),
                    log_path,
                    output,
                )
            self._check_outputs(spec, ctx)
            result.status = "succeeded"
        except StageFailure as e:
            # StageTimeout 同样携带被终止前的完整输出
            output = output or e.output
            result.status = "failed"
            result.error = e
        except ConfigError as e:
            result.status = "failed"
            result.error = e
            output = str(e)
        finally:
            result.duration_seconds = time.monotonic() - start
            result.finished_at = now_iso()
            self._write_log(log_path, spec, output)
            result.output = truncate_output(output, self.max_output_chars)

        if result.status == "succeeded":
            info(f"Stage '{spec.name}' succeeded ({result.duration_seconds:.2f}s)")
        else:
            error(f"Stage '{spec.name}' failed: {result.error}")
            if result.output:
                for line in result.output.rstrip().splitlines()[-20:]:
                    error(f"  {line}")
        return result

    def _run_process(self, spec: StageSpec, ctx: RunContext) -> tuple[str, int]:
        cmd = render_command(spec, ctx)
        if not cmd:
            raise ConfigError(f"Stage '{spec.name}' command is empty")
        debug(f"  Command: {' '.join(cmd)}")

        env: Dict[str, str] = dict(os.environ)
        env.update(spec.env)
        env["PREPBUILD_DEV"] = "1" if ctx.dev else "0"
        env["PREPBUILD_WORKSPACE"] = str(ctx.workspace)

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(ctx.workspace),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except OSError as e:
            raise StageFailure(spec.name, f"could not start {cmd[0]!r}: {e}", str(e)) from e

        try:
            raw, _ = proc.communicate(timeout=spec.timeout)
        except subprocess.TimeoutExpired:
            # 尽力终止外部进程，不做重试
            proc.kill()
            try:
                raw, _ = proc.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                raw = b""
            partial = (raw or b"").decode("utf-8", errors="replace")
            raise StageTimeout(
                spec.name,
                spec.timeout,
                truncate_output(partial, self.max_output_chars),
                self.log_path_for(spec.name),
                partial,
            )
        return (raw or b"").decode("utf-8", errors="replace"), proc.returncode

    def _run_callable(self, spec: StageSpec, ctx: RunContext) -> str:
        """
        在工作线程中运行进程内阶段，以便同样受超时约束（超时后线程无法强制终止）。

        阶段执行期间该线程输出的日志行即为阶段输出。
        """
        lines: List[str] = []

        def _invoke() -> None:
            with capture_output(lines):
                spec.command(ctx)

        log_path = self.log_path_for(spec.name)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{spec.name}")
        future = executor.submit(_invoke)
        try:
            future.result(timeout=spec.timeout)
        except FutureTimeout:
            captured = "\n".join(lines)
            raise StageTimeout(
                spec.name,
                spec.timeout,
                truncate_output(captured, self.max_output_chars),
                log_path,
                captured,
            )
        except StageFailure as e:
            if not e.output:
                e.output = "\n".join(lines)
            raise
        except ConfigError:
            raise
        except Exception as e:
            full = "\n".join([*lines, traceback.format_exc()])
            raise StageFailure(
                spec.name,
                f"{type(e).__name__}: {e}",
                truncate_output(full, self.max_output_chars),
                log_path,
                full,
            ) from e
        finally:
            executor.shutdown(wait=False)
        return "\n".join(lines) + ("\n" if lines else "")

    def _check_outputs(self, spec: StageSpec, ctx: RunContext) -> None:
        """验证所有声明的 outputs 都已写入工作区。"""
        missing = [rel for rel in spec.outputs if not (ctx.workspace / rel).exists()]
        if missing:
            raise StageFailure(
                spec.name,
                f"declared output missing: {', '.join(missing)}",
                log_path=self.log_path_for(spec.name),
            )

    def _write_log(self, log_path: Path, spec: StageSpec, output: str) -> None:
        header = f"# stage: {spec.name}\n# finished: {now_iso()}\n\n"
        try:
            atomic_write(header + output, log_path)
        except OSError as e:
            error(f"Could not write stage log {log_path}: {e}")
