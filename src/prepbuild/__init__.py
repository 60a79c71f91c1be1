"""
prepbuild: 增量构建缓存 + 流水线编排。

Pipeline:
    project tree
      ↓
    prepare-workspace（复制到临时工作区）
      ↓
    resolve-dependencies（manifest fingerprint → 缓存命中则复制，否则安装并提交缓存）
      ↓
    compile（外部编译器）
      ↓
    pack（外部打包器或内置 bundle 打包）
      ↓
    export（原子发布到 dist/）
"""

from .config.settings import load_env_file

__version__ = "0.1.0"

__all__ = ["load_env_file", "__version__"]
