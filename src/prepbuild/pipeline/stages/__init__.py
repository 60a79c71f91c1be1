"""
Pipeline stages registration.

阶段是数据（StageSpec）：名称、命令、超时、输入 / 输出路径。
外部阶段（install / compile / 可选 pack）来自 prepbuild.json，
其余使用内置的进程内实现。
"""
from typing import Dict

from prepbuild.config.settings import BuildConfig
from prepbuild.pipeline.core.errors import ConfigError
from prepbuild.pipeline.core.types import COMPILE, EXPORT, PACK, PREPARE, RESOLVE, STAGE_ORDER, StageSpec
from .export import export_artifacts, seed_artifacts
from .pack import pack_bundle
from .prepare import prepare_workspace


def build_stage_specs(config: BuildConfig) -> Dict[str, StageSpec]:
    """
    根据配置生成全部阶段定义（顺序即依赖顺序）。

    Raises:
        ConfigError: 阶段路径非法，或内置打包器的 outputs 不符合约定
    """
    cfg = config.stages
    compile_outputs = list(cfg[COMPILE].outputs)
    pack_inputs = list(cfg[PACK].inputs) or compile_outputs
    pack_outputs = list(cfg[PACK].outputs)
    export_inputs = list(cfg[EXPORT].inputs) or [*compile_outputs, *pack_outputs]

    pack_command = cfg[PACK].command
    if pack_command is None:
        pack_command = pack_bundle(pack_inputs, pack_outputs)

    export_command = cfg[EXPORT].command
    if export_command is None:
        export_command = export_artifacts(export_inputs, config.export_path)

    try:
        specs = {
            PREPARE: StageSpec(
                name=PREPARE,
                command=prepare_workspace(config),
                timeout=cfg[PREPARE].timeout,
            ),
            RESOLVE: StageSpec(
                name=RESOLVE,
                command=cfg[RESOLVE].command,
                timeout=cfg[RESOLVE].timeout,
                inputs=list(cfg[RESOLVE].inputs) or list(config.manifests),
                outputs=list(cfg[RESOLVE].outputs),
                dev_args=list(cfg[RESOLVE].dev_args),
                env=dict(cfg[RESOLVE].env),
            ),
            COMPILE: StageSpec(
                name=COMPILE,
                command=cfg[COMPILE].command,
                timeout=cfg[COMPILE].timeout,
                inputs=list(cfg[COMPILE].inputs),
                outputs=compile_outputs,
                dev_args=list(cfg[COMPILE].dev_args),
                env=dict(cfg[COMPILE].env),
            ),
            PACK: StageSpec(
                name=PACK,
                command=pack_command,
                timeout=cfg[PACK].timeout,
                inputs=pack_inputs,
                outputs=pack_outputs,
                dev_args=list(cfg[PACK].dev_args),
                env=dict(cfg[PACK].env),
            ),
            EXPORT: StageSpec(
                name=EXPORT,
                command=export_command,
                timeout=cfg[EXPORT].timeout,
                inputs=export_inputs,
                dev_args=list(cfg[EXPORT].dev_args),
                env=dict(cfg[EXPORT].env),
            ),
        }
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return {name: specs[name] for name in STAGE_ORDER}


__all__ = ["build_stage_specs", "seed_artifacts"]
