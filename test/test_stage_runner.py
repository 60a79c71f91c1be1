import sys
import time

import pytest

from prepbuild.pipeline.core.errors import ConfigError, StageFailure, StageTimeout
from prepbuild.pipeline.core.stage import StageRunner, render_command, truncate_output
from prepbuild.pipeline.core.types import RunContext, StageSpec
from prepbuild.utils.logger import debug, info


@pytest.fixture
def ctx(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return RunContext(
        run_id="r1",
        project="myapp",
        project_root=tmp_path / "proj",
        workspace=workspace,
    )


@pytest.fixture
def runner(tmp_path):
    return StageRunner(tmp_path / "logs", max_output_chars=200)


def _py(code: str):
    return [sys.executable, "-c", code]


def test_zero_exit_succeeds_and_captures_output(runner, ctx):
    spec = StageSpec(name="compile", command=_py("print('hello from stage')"))
    result = runner.run(spec, ctx)

    assert result.status == "succeeded"
    assert result.exit_code == 0
    assert "hello from stage" in result.output
    log = runner.log_path_for("compile").read_text(encoding="utf-8")
    assert "hello from stage" in log


def test_process_runs_inside_workspace(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("open('out.txt', 'w').write('x')"),
        outputs=["out.txt"],
    )
    result = runner.run(spec, ctx)
    assert result.succeeded
    assert (ctx.workspace / "out.txt").read_text() == "x"


def test_non_zero_exit_is_stage_failure_with_log(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("import sys; print('Unexpected token at line 3'); sys.exit(3)"),
    )
    result = runner.run(spec, ctx)

    assert result.status == "failed"
    assert result.exit_code == 3
    assert isinstance(result.error, StageFailure)
    assert not isinstance(result.error, StageTimeout)
    assert result.error.stage == "compile"
    assert "exit code 3" in str(result.error)
    assert "Unexpected token" in result.error.log


def test_stderr_is_merged_into_output(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("import sys; sys.stderr.write('boom on stderr\\n'); sys.exit(1)"),
    )
    result = runner.run(spec, ctx)
    assert "boom on stderr" in result.output


def test_timeout_kills_process_and_reports_timeout(runner, ctx):
    spec = StageSpec(
        name="resolve-dependencies",
        command=_py("import time; print('starting', flush=True); time.sleep(30)"),
        timeout=0.5,
    )
    t0 = time.monotonic()
    result = runner.run(spec, ctx)

    assert time.monotonic() - t0 < 15
    assert result.status == "failed"
    assert isinstance(result.error, StageTimeout)
    assert result.error.timeout == 0.5
    assert "timed out" in str(result.error)


def test_timeout_log_keeps_full_output(tmp_path, ctx):
    runner = StageRunner(tmp_path / "logs", max_output_chars=100)
    spec = StageSpec(
        name="compile",
        command=_py("import sys, time; sys.stdout.write('x' * 5000); sys.stdout.flush(); time.sleep(30)"),
        timeout=1,
    )
    result = runner.run(spec, ctx)

    assert isinstance(result.error, StageTimeout)
    assert len(result.output) < 200
    assert result.error.output.count("x") == 5000
    log = runner.log_path_for("compile").read_text(encoding="utf-8")
    assert log.count("x") == 5000


def test_long_output_is_truncated_but_log_keeps_everything(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("print('HEAD'); print('x' * 5000); print('TAIL')"),
    )
    result = runner.run(spec, ctx)

    assert result.succeeded
    assert "chars truncated" in result.output
    assert "TAIL" in result.output
    assert "HEAD" not in result.output
    log = runner.log_path_for("compile").read_text(encoding="utf-8")
    assert "HEAD" in log and "TAIL" in log


def test_missing_declared_output_fails_even_on_zero_exit(runner, ctx):
    spec = StageSpec(name="compile", command=_py("pass"), outputs=["build"])
    result = runner.run(spec, ctx)

    assert result.status == "failed"
    assert result.exit_code == 0
    assert "declared output missing: build" in str(result.error)


def test_missing_executable_is_stage_failure(runner, ctx):
    spec = StageSpec(name="compile", command=["definitely-not-a-real-binary-xyz"])
    result = runner.run(spec, ctx)
    assert isinstance(result.error, StageFailure)
    assert "could not start" in str(result.error)


def test_dev_args_appended_only_in_dev_mode(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("import sys; print('ARGS=' + ' '.join(sys.argv[1:]))"),
        dev_args=["--source-maps"],
    )
    assert "ARGS=" in runner.run(spec, ctx).output
    assert "--source-maps" not in runner.run(spec, ctx).output

    ctx.dev = True
    assert "ARGS=--source-maps" in runner.run(spec, ctx).output


def test_environment_marks_dev_mode_and_stage_env(runner, ctx):
    spec = StageSpec(
        name="compile",
        command=_py("import os; print(os.environ['PREPBUILD_DEV'], os.environ['NODE_ENV'])"),
        env={"NODE_ENV": "production"},
    )
    assert "0 production" in runner.run(spec, ctx).output


def test_render_command_placeholders(ctx):
    ctx.runtime_payload = ctx.project_root / "runtime"
    spec = StageSpec(name="pack", command=["packer", "--in={workspace}", "{project}", "{runtime}"])
    argv = render_command(spec, ctx)
    assert argv == ["packer", f"--in={ctx.workspace}", "myapp", str(ctx.project_root / "runtime")]


def test_unknown_placeholder_is_config_error(runner, ctx):
    spec = StageSpec(name="compile", command=["tool", "{nope}"])
    with pytest.raises(ConfigError):
        render_command(spec, ctx)
    result = runner.run(spec, ctx)
    assert isinstance(result.error, ConfigError)


def test_callable_stage_success(runner, ctx):
    def write(c: RunContext) -> None:
        (c.workspace / "done").write_text("ok")

    result = runner.run(StageSpec(name="pack", command=write, outputs=["done"]), ctx)
    assert result.succeeded
    assert result.exit_code == 0


def test_callable_stage_exception_becomes_stage_failure(runner, ctx):
    def broken(c: RunContext) -> None:
        raise RuntimeError("disk on fire")

    result = runner.run(StageSpec(name="pack", command=broken), ctx)
    assert isinstance(result.error, StageFailure)
    assert "RuntimeError: disk on fire" in str(result.error)
    assert "Traceback" in runner.log_path_for("pack").read_text(encoding="utf-8")


def test_callable_stage_failure_is_passed_through(runner, ctx):
    def missing(c: RunContext) -> None:
        raise StageFailure("export", "export input missing: build")

    result = runner.run(StageSpec(name="export", command=missing), ctx)
    assert str(result.error) == "Stage 'export' failed: export input missing: build"


def test_callable_stage_timeout(runner, ctx):
    def slow(c: RunContext) -> None:
        time.sleep(2)

    t0 = time.monotonic()
    result = runner.run(StageSpec(name="pack", command=slow, timeout=0.2), ctx)
    assert time.monotonic() - t0 < 1.5
    assert isinstance(result.error, StageTimeout)


def test_stage_without_command_is_config_error(runner, ctx):
    result = runner.run(StageSpec(name="compile", command=None), ctx)
    assert isinstance(result.error, ConfigError)


def test_stage_spec_rejects_paths_outside_workspace():
    with pytest.raises(ValueError):
        StageSpec(name="compile", command=None, outputs=["../escape"])
    with pytest.raises(ValueError):
        StageSpec(name="compile", command=None, inputs=["/etc/passwd"])
    with pytest.raises(ValueError):
        StageSpec(name="compile", command=None, timeout=0)


def test_truncate_output_keeps_tail():
    assert truncate_output("abc", 10) == "abc"
    out = truncate_output("0123456789", 4)
    assert out.endswith("6789")
    assert "[6 chars truncated]" in out


def test_callable_stage_log_records_its_logger_output(runner, ctx):
    def pack(c: RunContext) -> None:
        debug("collecting 3 files")
        info("Packed 3 file(s), 42 bytes -> bundle.dat")

    result = runner.run(StageSpec(name="pack", command=pack), ctx)

    assert result.succeeded
    assert "[INFO] Packed 3 file(s)" in result.output
    log = runner.log_path_for("pack").read_text(encoding="utf-8")
    assert "[DEBUG] collecting 3 files" in log
    assert "[INFO] Packed 3 file(s), 42 bytes -> bundle.dat" in log
    assert "Running stage" not in log


def test_callable_stage_failure_log_keeps_output_before_traceback(runner, ctx):
    def broken(c: RunContext) -> None:
        info("copied 2 of 3 artifacts")
        raise OSError("disk full")

    result = runner.run(StageSpec(name="export", command=broken), ctx)

    log = runner.log_path_for("export").read_text(encoding="utf-8")
    assert log.index("copied 2 of 3 artifacts") < log.index("Traceback")
    assert "OSError: disk full" in result.output
