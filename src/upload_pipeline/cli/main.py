"""命令行入口。"""

from __future__ import annotations

import json
import logging
import mimetypes
from pathlib import Path
from typing import List, Optional

import typer
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from upload_pipeline.core.config import BatchConfig, PipelineConfig, TransformSpec, ValidationPolicy
from upload_pipeline.core.exceptions import InvalidConfigurationError, ProcessingAborted
from upload_pipeline.core.models import UploadItem
from upload_pipeline.core.progress import ProgressUpdate
from upload_pipeline.core.remote import LocalDirectoryAssetStore, publish_report
from upload_pipeline.core.report import write_csv_report
from upload_pipeline.processing.pipeline import process_batch
from upload_pipeline.utils.logging import setup_logging

app = typer.Typer(help="批量上传文件的校验、缩放转码与清理工具。")


@app.callback()
def main() -> None:
    """批量上传文件的校验、缩放转码与清理工具。"""


def _split_types(value: str) -> frozenset[str]:
    return frozenset(part.strip().lower().lstrip(".") for part in value.split(",") if part.strip())


def _read_upload(path: Path) -> UploadItem:
    content_type, _ = mimetypes.guess_type(path.name)
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise typer.BadParameter(f"无法读取文件: {path}") from exc
    return UploadItem(
        filename=path.name,
        content_type=content_type or "application/octet-stream",
        content=content,
    )


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("处理上传", total=update.total)
        progress.update(task_id, completed=update.completed)
        if update.message and update.index is not None:
            progress.log(update.message)

    return callback


@app.command("process")
def process_cli(  # noqa: PLR0913
    files: List[Path] = typer.Argument(..., help="待上传的文件，可指定多个"),
    root: Path = typer.Option(..., "--root", "-r", help="暂存与派生文件所在目录"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="JSON 配置文件，覆盖下方选项"),
    types: str = typer.Option("jpg,jpeg,png,gif", "--types", help="允许的扩展名，逗号分隔"),
    max_size: int = typer.Option(5 * 1024 * 1024, "--max-size", help="单个文件最大字节数"),
    max_width: int = typer.Option(800, "--max-width", help="输出最大宽度"),
    max_height: int = typer.Option(800, "--max-height", help="输出最大高度"),
    encoding: str = typer.Option("jpeg", "--encoding", help="输出编码 jpeg/png/webp"),
    quality: int = typer.Option(80, "--quality", help="输出质量 0~100"),
    metrics: bool = typer.Option(False, "--metrics", help="在报告中记录派生图与原图的 SSIM"),
    min_ssim: Optional[float] = typer.Option(None, "--min-ssim", help="SSIM 下限，低于该值时交付原始文件"),
    max_in_flight: int = typer.Option(4, "--workers", "-w", help="同时处理的条目数量"),
    transform_processes: int = typer.Option(0, "--transform-processes", help="转换进程数量，0 表示不使用进程池"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="批处理超时秒数"),
    publish_dir: Optional[Path] = typer.Option(None, "--publish-dir", help="将交付文件复制到该目录"),
    as_json: bool = typer.Option(False, "--json", help="以 JSON 输出结果"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """处理一批本地文件，模拟一次多文件上传请求。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    root_dir = root.expanduser().resolve()

    try:
        if config_file is not None:
            options = json.loads(config_file.read_text(encoding="utf-8"))
            config = PipelineConfig.from_mapping(root_dir, options)
        else:
            config = PipelineConfig(
                root_dir=root_dir,
                policy=ValidationPolicy(allowed_extensions=_split_types(types), max_size=max_size),
                transform=TransformSpec(
                    max_width=max_width,
                    max_height=max_height,
                    encoding=encoding,
                    quality=quality,
                    compute_metrics=metrics,
                    min_ssim=min_ssim,
                ),
                batch=BatchConfig(
                    max_in_flight=max_in_flight,
                    transform_processes=transform_processes,
                    timeout_seconds=timeout,
                ),
            )
        config.validate()
    except (InvalidConfigurationError, OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc

    items = [_read_upload(path.expanduser()) for path in files]

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        disable=as_json,
    )

    try:
        with progress:
            report = process_batch(items, config, progress_callback=_build_progress_callback(progress))
    except ProcessingAborted as exc:
        typer.echo(f"处理中止：{exc}", err=True)
        raise typer.Exit(code=2) from exc

    report_path = write_csv_report(report, config.root_dir, config.report_filename)

    records = report.to_dicts()
    if publish_dir is not None:
        locations = publish_report(report, LocalDirectoryAssetStore(publish_dir.expanduser()))
        for index, location in locations.items():
            records[index]["location"] = location

    if as_json:
        typer.echo(json.dumps(records, ensure_ascii=False, indent=2))
        return

    typer.echo(
        f"处理完成：成功 {len(report.succeeded)} 个，回退 {len(report.fallbacks)} 个，"
        f"拒绝 {len(report.rejected)} 个，失败 {len(report.failed)} 个。"
    )
    typer.echo(f"报告文件：{report_path}")


if __name__ == "__main__":
    app()
