"""
CLI entry point for prepbuild

Exit codes: 0 success, 1 stage failure, 2 invalid invocation (missing manifest, bad config)
"""
import argparse
import subprocess
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

from prepbuild.config.settings import BuildConfig, load_config
from prepbuild.net.ports import select_port
from prepbuild.pipeline.core.cache import CacheStore
from prepbuild.pipeline.core.errors import BuildError, ConfigError
from prepbuild.pipeline.core.runner import VENDOR_KIND, PipelineOrchestrator
from prepbuild.pipeline.core.types import EXPORT, PACK
from prepbuild.pipeline.stages.prepare import excluded_patterns
from prepbuild.utils.logger import error, info, success, warning
from prepbuild.watch.watcher import RebuildScheduler, SourceWatcher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prepbuild",
        description="Incremental build cache and pipeline orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Stages: prepare-workspace -> resolve-dependencies -> compile -> pack -> export

Examples:
  prepbuild build               # Full build (dependencies restored from cache when possible)
  prepbuild build --dev         # Development build (stage dev_args appended)
  prepbuild watch --dev --serve # Rebuild on change and run the dev server
  prepbuild pack                # Re-pack the last exported compile output
  prepbuild export --dest out/  # Re-export the last bundle somewhere else
        """,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--project", default=".", help="Project directory (default: current directory)")
    common.add_argument("--config", help="Path to config file (default: <project>/prepbuild.json)")

    sub = parser.add_subparsers(dest="command")

    build = sub.add_parser("build", parents=[common], help="Run the full pipeline")
    build.add_argument("--dev", action="store_true", help="Development mode")

    watch = sub.add_parser("watch", parents=[common], help="Build, then rebuild on source changes")
    watch.add_argument("--dev", action="store_true", help="Development mode")
    watch.add_argument("--serve", action="store_true", help="Start the configured dev server")

    pack = sub.add_parser("pack", parents=[common], help="Run pack + export only")
    pack.add_argument("--dev", action="store_true", help="Development mode")

    export = sub.add_parser("export", parents=[common], help="Run export only")
    export.add_argument("--dest", help="Export destination (default: <project>/<export_dir>)")

    port = sub.add_parser("port", parents=[common], help="Print the first free dev server port")
    port.add_argument("--start", type=int, help="Starting port (default: dev_server.port)")
    port.add_argument("--count", type=int, help="Number of ports to scan")
    port.add_argument("--up", action="store_true", help="Scan upwards instead of downwards")

    sub.add_parser("stages", parents=[common], help="List configured stages")

    cache = sub.add_parser("cache", help="Inspect or prune the dependency cache")
    cache_sub = cache.add_subparsers(dest="cache_command")
    cache_sub.add_parser("list", parents=[common], help="List cache entries")
    evict = cache_sub.add_parser("evict", parents=[common], help="Remove old cache entries")
    evict.add_argument("--older-than-days", type=float, required=True, help="Age threshold in days")

    return parser


def _cmd_stages(config: BuildConfig) -> int:
    orchestrator = PipelineOrchestrator(config)
    info("Stages:")
    for name, spec in orchestrator.stages.items():
        if spec.is_external:
            how = " ".join(spec.command)
        elif callable(spec.command):
            how = "(built-in)"
        else:
            how = "(not configured)"
        info(f"  - {name}: {how} timeout={spec.timeout:g}s inputs={spec.inputs} outputs={spec.outputs}")
    return 0


def _cmd_cache(config: BuildConfig, args: argparse.Namespace) -> int:
    store = CacheStore(config.scratch_root, config.project)
    if args.cache_command == "list":
        entries = store.entries()
        if not entries:
            info(f"No cache entries for '{config.project}' in {config.scratch_root}")
        for entry in entries:
            info(f"  {entry.kind} {entry.fingerprint[:16]}  {entry.size_bytes} bytes  {entry.created_at}")
        return 0
    if args.cache_command == "evict":
        removed = store.evict(VENDOR_KIND, timedelta(days=args.older_than_days))
        success(f"Removed {len(removed)} cache path(s)")
        return 0
    raise ConfigError("cache: expected 'list' or 'evict'")


def _cmd_port(config: BuildConfig, args: argparse.Namespace) -> int:
    dev = config.dev_server
    direction = "up" if args.up else dev.direction
    port = select_port(
        args.start if args.start is not None else dev.port,
        args.count if args.count is not None else dev.count,
        direction,
        dev.host,
    )
    print(port)
    return 0


def _start_dev_server(config: BuildConfig) -> subprocess.Popen:
    dev = config.dev_server
    if not dev.command:
        raise ConfigError("dev_server.command is not configured")
    port = select_port(dev.port, dev.count, dev.direction, dev.host)
    values = {
        "port": str(port),
        "host": dev.host,
        "export_dir": str(config.export_path),
        "project_root": str(config.project_root),
    }
    try:
        cmd = [part.format(**values) for part in dev.command]
    except (KeyError, IndexError) as e:
        raise ConfigError(f"dev_server.command has an unknown placeholder: {e}") from e
    info(f"Starting dev server on http://{dev.host}:{port}/")
    return subprocess.Popen(cmd, cwd=str(config.project_root))


def _build_watcher(config: BuildConfig, scheduler: RebuildScheduler) -> SourceWatcher:
    """监听 watch_dir；不复制进工作区的路径（依赖、产物、状态目录等）同样不触发重建。"""
    if not config.watch_path.is_dir():
        raise ConfigError(f"watch_dir: directory not found: {config.watch_path}")
    return SourceWatcher(
        config.watch_path,
        scheduler,
        ignore_patterns=excluded_patterns(config),
        match_root=config.project_root,
    )


def _cmd_watch(config: BuildConfig, args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator(config)
    scheduler = RebuildScheduler(lambda: orchestrator.run(dev=args.dev), debounce=config.debounce_seconds)
    watcher = _build_watcher(config, scheduler)

    orchestrator.run(dev=args.dev)
    server: Optional[subprocess.Popen] = _start_dev_server(config) if args.serve else None
    try:
        watcher.start()
        while True:
            if server is not None and server.poll() is not None:
                warning(f"Dev server exited with code {server.returncode}")
                server = None
            time.sleep(0.5)
    except KeyboardInterrupt:
        info("Stopping watch mode")
    finally:
        watcher.stop()
        # 不中断正在进行的构建
        scheduler.wait_idle()
        if server is not None:
            server.terminate()
            try:
                server.wait(timeout=5)
            except subprocess.TimeoutExpired:
                server.kill()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if not args.command or (args.command == "cache" and not args.cache_command):
        parser.print_help()
        return 2

    try:
        config = load_config(Path(args.project), args.config)

        if args.command == "stages":
            return _cmd_stages(config)
        if args.command == "cache":
            return _cmd_cache(config, args)
        if args.command == "port":
            return _cmd_port(config, args)
        if args.command == "watch":
            return _cmd_watch(config, args)

        orchestrator = PipelineOrchestrator(config)
        if args.command == "build":
            summary = orchestrator.run(dev=args.dev)
        elif args.command == "pack":
            summary = orchestrator.run(dev=args.dev, start_at=PACK)
        elif args.command == "export":
            dest = Path(args.dest) if args.dest else None
            summary = orchestrator.run(start_at=EXPORT, export_dest=dest)
        else:
            raise AssertionError(f"Unhandled command: {args.command}")
        return summary.exit_code
    except BuildError as e:
        error(str(e))
        return e.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
