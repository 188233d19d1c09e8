"""报告生成工具。"""

from __future__ import annotations

import csv
import json
from pathlib import Path

from upload_pipeline.core.models import BatchReport, ProcessingResult

HEADER = [
    "index",
    "filename",
    "status",
    "deliverable",
    "byte_size",
    "width",
    "height",
    "error_kind",
    "detail",
    "ssim",
]


def write_csv_report(report: BatchReport, output_dir: Path, filename: str) -> Path:
    """将批处理结果按输入顺序写入 CSV 报告。"""

    report_path = output_dir / filename
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for result in report:
            writer.writerow(_row(result))
    return report_path


def write_json_report(report: BatchReport, destination: Path) -> Path:
    """写入与对外接口一致的 JSON 报告。"""

    destination.write_text(
        json.dumps(report.to_dicts(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    return destination


def _row(result: ProcessingResult) -> list[str]:
    derived = result.derived
    deliverable = result.deliverable
    if derived is not None:
        byte_size = str(derived.size)
    elif deliverable is not None and result.staged is not None:
        byte_size = str(result.staged.size)
    else:
        byte_size = ""

    detail = result.error_detail or result.fallback_reason or result.cleanup_warning or ""
    return [
        str(result.index),
        result.filename,
        result.status.value,
        deliverable.name if deliverable else "",
        byte_size,
        str(derived.width) if derived else "",
        str(derived.height) if derived else "",
        result.error_kind.value if result.error_kind else "",
        detail,
        _format_ssim(derived.ssim if derived else None),
    ]


def _format_ssim(value: float | None) -> str:
    if value is None:
        return ""
    return f"{value:.6f}"
