"""
Run report IO：每次运行的摘要写入 {state_dir}/last-run.json（原子写入）
"""
import json
from pathlib import Path
from typing import Any, Dict, Optional

from prepbuild.pipeline.core.atomic import atomic_write
from prepbuild.pipeline.core.types import RunSummary

SCHEMA_VERSION = "1.0"
REPORT_FILENAME = "last-run.json"


class RunReport:
    """运行报告读写。"""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / REPORT_FILENAME

    def save(self, summary: RunSummary, *, project: str) -> None:
        data: Dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "project": project,
            **summary.to_dict(),
        }
        atomic_write(json.dumps(data, indent=2, ensure_ascii=False), self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        """读取上一次运行的报告；不存在时返回 None。"""
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)


def format_summary(summary: RunSummary) -> str:
    """把运行摘要格式化为多行文本（CLI / watch 模式输出用）。"""
    lines = []
    for record in summary.stages:
        note = f" ({record.reason})" if record.reason else ""
        lines.append(f"  {record.name:<22} {record.status:<10} {record.duration_seconds:7.2f}s{note}")
    if summary.succeeded:
        lines.append(
            f"  total {summary.duration_seconds:.2f}s, artifact size {summary.artifact_bytes} bytes"
        )
    else:
        lines.append(f"  failed at '{summary.failed_stage}': {summary.error}")
    return "\n".join(lines)
