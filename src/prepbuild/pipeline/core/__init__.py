"""
Pipeline core framework.

PipelineOrchestrator 依赖配置层，需从 prepbuild.pipeline.core.runner 直接导入。
"""
from .types import ErrorInfo, RunContext, RunSummary, StageResult, StageSpec, Status, PipelineState
from .errors import (
    BuildError,
    CacheCorrupt,
    ConfigError,
    ManifestNotFound,
    NoPortAvailable,
    PrecedingArtifactMissing,
    StageFailure,
    StageTimeout,
)
from .fingerprints import hash_manifests, iter_files, path_size
from .atomic import atomic_copy, atomic_publish_dir, atomic_write
from .cache import CacheEntry, CacheStore
from .stage import StageRunner
from .workspace import build_workspace, project_lock

__all__ = [
    "ErrorInfo",
    "RunContext",
    "RunSummary",
    "StageResult",
    "StageSpec",
    "Status",
    "PipelineState",
    "BuildError",
    "CacheCorrupt",
    "ConfigError",
    "ManifestNotFound",
    "NoPortAvailable",
    "PrecedingArtifactMissing",
    "StageFailure",
    "StageTimeout",
    "hash_manifests",
    "iter_files",
    "path_size",
    "atomic_copy",
    "atomic_publish_dir",
    "atomic_write",
    "CacheEntry",
    "CacheStore",
    "StageRunner",
    "build_workspace",
    "project_lock",
]
