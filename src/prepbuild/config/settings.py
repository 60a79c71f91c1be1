import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from prepbuild.pipeline.core.errors import ConfigError
from prepbuild.pipeline.core.types import COMPILE, EXPORT, PACK, PREPARE, RESOLVE, STAGE_ORDER

CONFIG_FILENAME = "prepbuild.json"

# 全局变量：存储 .env 文件所在目录（用于解析相对路径）
_env_file_dir: Path | None = None


def load_env_file(env_path: str | Path | None = None) -> None:
    """
    加载项目级 .env 文件（override=False：不覆盖已存在的环境变量）。

    如果 env_path 为 None，从当前工作目录向上查找 .env。
    """
    global _env_file_dir

    if env_path is None:
        current = Path.cwd().resolve()
        for parent in [current, *current.parents]:
            env_file = parent / ".env"
            if env_file.is_file():
                load_dotenv(env_file, override=False)
                _env_file_dir = env_file.parent
                return
    else:
        env_path = Path(env_path)
        if env_path.is_file():
            load_dotenv(env_path, override=False)
            _env_file_dir = env_path.parent


def resolve_relative_path(path: str | Path, base: Path | None = None) -> Path:
    """
    解析相对路径：相对于 base（默认 .env 所在目录，其次当前工作目录）。
    绝对路径直接返回。
    """
    path = Path(path).expanduser()
    if path.is_absolute():
        return path
    anchor = base or _env_file_dir
    if anchor:
        return (anchor / path).resolve()
    return path.resolve()


def get_scratch_root() -> Path:
    """
    缓存与工作区所在的共享 scratch 目录。
    环境变量：PREPBUILD_SCRATCH_ROOT（默认系统临时目录）
    """
    raw = os.getenv("PREPBUILD_SCRATCH_ROOT")
    if raw and raw.strip():
        return resolve_relative_path(raw.strip())
    return Path(tempfile.gettempdir())


def get_dev_port() -> int | None:
    """
    dev server 起始端口。
    环境变量：PREPBUILD_DEV_PORT
    """
    raw = os.getenv("PREPBUILD_DEV_PORT")
    if raw is None or not raw.strip():
        return None
    return parse_int(raw, "PREPBUILD_DEV_PORT")


def parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid config value for {path}: must be an int") from exc
    raise ConfigError(f"Invalid config value for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid config value for {path}: must be a float") from exc
    raise ConfigError(f"Invalid config value for {path}: {value!r}")


def parse_str_list(value: Any, path: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"Invalid config value for {path}: expected a list of strings")


def sanitize_project_name(name: str) -> str:
    """项目标识只保留 [A-Za-z0-9._-]，用于拼接 scratch 目录名。"""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", name.strip()).strip("-.")
    return cleaned or "project"


@dataclass
class StageConfig:
    # None = 使用内置实现（pack / export），或未配置（compile 必须配置）
    command: Optional[List[str]] = None
    timeout: float = 300.0
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    dev_args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class DevServerConfig:
    command: Optional[List[str]] = None  # 支持 {port} {export_dir} {project_root} 占位符
    host: str = "127.0.0.1"
    port: int = 9999
    count: int = 20
    direction: str = "down"  # down: 9999, 9998, ...；up: 9999, 10000, ...


def default_stage_configs() -> Dict[str, StageConfig]:
    return {
        PREPARE: StageConfig(timeout=300.0),
        RESOLVE: StageConfig(command=["npm", "ci"], timeout=600.0),
        COMPILE: StageConfig(command=None, timeout=300.0, outputs=["build"]),
        PACK: StageConfig(command=None, timeout=300.0, outputs=["bundle.dat", "bundle.json"]),
        # 未声明 inputs 时：pack 读取 compile 的 outputs，export 发布 compile + pack 的 outputs
        EXPORT: StageConfig(timeout=120.0),
    }


@dataclass
class BuildConfig:
    project_root: Path
    project: str
    manifests: List[str] = field(default_factory=lambda: ["package.json", "package-lock.json"])
    dependency_dir: str = "node_modules"
    watch_dir: str = "src"
    export_dir: str = "dist"
    state_dir: str = ".prepbuild"
    runtime_payload: Optional[str] = None
    exclude: List[str] = field(default_factory=list)
    debounce_seconds: float = 0.3
    scratch_root: Path = field(default_factory=get_scratch_root)
    dev_server: DevServerConfig = field(default_factory=DevServerConfig)
    stages: Dict[str, StageConfig] = field(default_factory=default_stage_configs)

    def __post_init__(self):
        self.project_root = Path(self.project_root).resolve()
        self.project = sanitize_project_name(self.project)
        if not self.manifests:
            raise ConfigError("manifests: at least one manifest file is required")
        for name, value in (("dependency_dir", self.dependency_dir), ("export_dir", self.export_dir), ("state_dir", self.state_dir)):
            if not value or Path(value).is_absolute() or ".." in Path(value).parts:
                raise ConfigError(f"{name}: must be a relative path inside the project (got {value!r})")
        if self.debounce_seconds < 0:
            raise ConfigError("debounce_seconds: must be >= 0")
        if self.dev_server.direction not in ("up", "down"):
            raise ConfigError(f"dev_server.direction: must be 'up' or 'down' (got {self.dev_server.direction!r})")

    @property
    def manifest_paths(self) -> List[Path]:
        return [self.project_root / m for m in self.manifests]

    @property
    def export_path(self) -> Path:
        return self.project_root / self.export_dir

    @property
    def state_path(self) -> Path:
        return self.project_root / self.state_dir

    @property
    def log_dir(self) -> Path:
        return self.state_path / "logs"

    @property
    def watch_path(self) -> Path:
        return self.project_root / self.watch_dir

    @property
    def runtime_path(self) -> Optional[Path]:
        if not self.runtime_payload:
            return None
        return resolve_relative_path(self.runtime_payload, self.project_root)


def _parse_stage(name: str, raw: Any, base: StageConfig) -> StageConfig:
    path = f"stages.{name}"
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config value for {path}: expected an object")
    unknown = set(raw) - {"command", "timeout", "inputs", "outputs", "dev_args", "env"}
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {sorted(unknown)}")

    stage = StageConfig(
        command=base.command,
        timeout=base.timeout,
        inputs=list(base.inputs),
        outputs=list(base.outputs),
        dev_args=list(base.dev_args),
        env=dict(base.env),
    )
    if "command" in raw:
        stage.command = None if raw["command"] is None else parse_str_list(raw["command"], f"{path}.command")
    if "timeout" in raw:
        stage.timeout = parse_float(raw["timeout"], f"{path}.timeout")
        if stage.timeout <= 0:
            raise ConfigError(f"Invalid config value for {path}.timeout: must be positive")
    for key in ("inputs", "outputs", "dev_args"):
        if key in raw:
            setattr(stage, key, parse_str_list(raw[key], f"{path}.{key}"))
    if "env" in raw:
        if not isinstance(raw["env"], dict):
            raise ConfigError(f"Invalid config value for {path}.env: expected an object")
        stage.env = {str(k): str(v) for k, v in raw["env"].items()}
    return stage


_TOP_LEVEL_KEYS = {
    "project",
    "manifests",
    "dependency_dir",
    "watch_dir",
    "export_dir",
    "state_dir",
    "runtime_payload",
    "exclude",
    "debounce_seconds",
    "dev_server",
    "stages",
}


def load_config(project_root: str | Path = ".", config_path: str | Path | None = None) -> BuildConfig:
    """
    读取项目配置（prepbuild.json，可选）+ 环境变量。

    Args:
        project_root: 项目根目录
        config_path: 配置文件路径（None = {project_root}/prepbuild.json，不存在则全用默认值）

    Raises:
        ConfigError: 配置文件无法解析或字段非法
    """
    root = Path(project_root).resolve()
    if not root.is_dir():
        raise ConfigError(f"Project directory not found: {root}")
    load_env_file(root / ".env")

    if config_path is None:
        candidate = root / CONFIG_FILENAME
        raw: Dict[str, Any] = {}
        if candidate.is_file():
            raw = _read_json(candidate)
    else:
        candidate = resolve_relative_path(config_path, Path.cwd())
        if not candidate.is_file():
            raise ConfigError(f"Config file not found: {candidate}")
        raw = _read_json(candidate)

    unknown = set(raw) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown config keys: {sorted(unknown)}")

    stages = default_stage_configs()
    raw_stages = raw.get("stages", {})
    if not isinstance(raw_stages, dict):
        raise ConfigError("Invalid config value for stages: expected an object")
    for name, stage_raw in raw_stages.items():
        if name not in STAGE_ORDER:
            raise ConfigError(f"Unknown stage in config: {name!r} (known: {', '.join(STAGE_ORDER)})")
        stages[name] = _parse_stage(name, stage_raw, stages[name])

    dev_server = DevServerConfig()
    raw_dev = raw.get("dev_server", {})
    if not isinstance(raw_dev, dict):
        raise ConfigError("Invalid config value for dev_server: expected an object")
    if raw_dev.get("command") is not None:
        dev_server.command = parse_str_list(raw_dev["command"], "dev_server.command")
    if "host" in raw_dev:
        dev_server.host = str(raw_dev["host"])
    if "port" in raw_dev:
        dev_server.port = parse_int(raw_dev["port"], "dev_server.port")
    if "count" in raw_dev:
        dev_server.count = parse_int(raw_dev["count"], "dev_server.count")
    if "direction" in raw_dev:
        dev_server.direction = str(raw_dev["direction"])
    env_port = get_dev_port()
    if env_port is not None:
        dev_server.port = env_port

    kwargs: Dict[str, Any] = {
        "project_root": root,
        "project": str(raw.get("project") or root.name),
        "stages": stages,
        "dev_server": dev_server,
        "scratch_root": get_scratch_root(),
    }
    if "manifests" in raw:
        kwargs["manifests"] = parse_str_list(raw["manifests"], "manifests")
    for key in ("dependency_dir", "watch_dir", "export_dir", "state_dir"):
        if key in raw:
            if not isinstance(raw[key], str):
                raise ConfigError(f"Invalid config value for {key}: expected a string")
            kwargs[key] = raw[key]
    if raw.get("runtime_payload") is not None:
        kwargs["runtime_payload"] = str(raw["runtime_payload"])
    if "exclude" in raw:
        kwargs["exclude"] = parse_str_list(raw["exclude"], "exclude")
    if "debounce_seconds" in raw:
        kwargs["debounce_seconds"] = parse_float(raw["debounce_seconds"], "debounce_seconds")

    return BuildConfig(**kwargs)


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data
