"""批处理入口：并发执行各条目的流水线并按输入顺序汇总结果。"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from contextlib import ExitStack
from typing import Callable, Optional, Sequence

from upload_pipeline.core.cleanup import CleanupCoordinator
from upload_pipeline.core.config import PipelineConfig
from upload_pipeline.core.exceptions import ProcessingAborted
from upload_pipeline.core.models import BatchReport, ProcessingResult, UploadItem
from upload_pipeline.core.progress import ProgressUpdate
from upload_pipeline.core.staging import StagingStore
from upload_pipeline.processing.transformer import Transformer
from upload_pipeline.processing.validation import AssetValidator
from upload_pipeline.processing.worker import ItemContext, failed_result, run_item

LOGGER = logging.getLogger(__name__)


ProgressCallback = Optional[Callable[[ProgressUpdate], None]]


def process_batch(
    items: Sequence[UploadItem],
    config: PipelineConfig,
    *,
    progress_callback: ProgressCallback = None,
    cancel_event: Optional[threading.Event] = None,
    staging: Optional[StagingStore] = None,
    transformer: Optional[Transformer] = None,
    cleanup: Optional[CleanupCoordinator] = None,
) -> BatchReport:
    """并发处理一批上传，返回与输入逐一对应的报告。

    单个条目的拒绝或失败不会影响其他条目；批处理本身只在被取消
    （``cancel_event`` 被设置或超过 ``timeout_seconds``）时抛出 ``ProcessingAborted``，
    此时已完成条目的结果随请求一起丢弃。
    """

    config.validate()
    total = len(items)
    LOGGER.info("开始处理 %d 个上传文件", total)
    if total == 0:
        _emit_progress(progress_callback, 0, 0, "没有需要处理的文件", status="done")
        return BatchReport()

    if cancel_event is None:
        cancel_event = threading.Event()
    deadline = None
    if config.batch.timeout_seconds is not None:
        deadline = time.monotonic() + config.batch.timeout_seconds

    results: list[Optional[ProcessingResult]] = [None] * total
    completed = 0

    with ExitStack() as stack:
        if transformer is None:
            transform_executor: Optional[Executor] = None
            if config.batch.transform_processes > 0:
                transform_executor = stack.enter_context(
                    ProcessPoolExecutor(max_workers=config.batch.transform_processes)
                )
            transformer = Transformer(transform_executor)

        context = ItemContext(
            policy=config.policy,
            spec=config.transform,
            validator=AssetValidator(config.policy),
            staging=staging or StagingStore(config.root_dir),
            transformer=transformer,
            cleanup=cleanup or CleanupCoordinator(config.root_dir),
            cancel_event=cancel_event,
        )

        executor = stack.enter_context(
            ThreadPoolExecutor(max_workers=config.batch.max_in_flight, thread_name_prefix="upload-item")
        )
        future_map: dict[Future[ProcessingResult], int] = {
            executor.submit(run_item, index, item, context): index for index, item in enumerate(items)
        }
        pending = set(future_map)

        while pending:
            if deadline is not None and time.monotonic() >= deadline:
                LOGGER.warning("批处理超时，取消剩余 %d 个条目", len(pending))
                cancel_event.set()
            if cancel_event.is_set():
                _abort(pending)
                raise ProcessingAborted(f"批处理已取消：{completed}/{total} 个条目已完成")

            done, pending = wait(pending, timeout=config.batch.poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                index = future_map[future]
                result = _collect(future, index, items[index])
                if result is None:
                    continue
                results[index] = result
                completed += 1
                _emit_progress(
                    progress_callback,
                    completed,
                    total,
                    f"{result.status.value} {items[index].filename}",
                    index=index,
                )

        if cancel_event.is_set() or any(result is None for result in results):
            raise ProcessingAborted(f"批处理已取消：{completed}/{total} 个条目已完成")

    report = BatchReport(results=[result for result in results if result is not None])
    LOGGER.info(
        "处理完成：成功 %d，回退 %d，拒绝 %d，失败 %d",
        len(report.succeeded),
        len(report.fallbacks),
        len(report.rejected),
        len(report.failed),
    )
    _emit_progress(progress_callback, total, total, "处理完成", status="done")
    return report


def _collect(future: Future[ProcessingResult], index: int, item: UploadItem) -> Optional[ProcessingResult]:
    try:
        return future.result()
    except ProcessingAborted:
        return None
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("条目 #%d 执行异常：%s", index, exc)
        return failed_result(index, item, exc)


def _abort(pending: set[Future[ProcessingResult]]) -> None:
    """取消尚未开始的条目，并等待进行中的条目完成清理。"""

    for future in pending:
        future.cancel()
    wait(pending)


def _emit_progress(
    callback: ProgressCallback,
    completed: int,
    total: int,
    message: Optional[str] = None,
    *,
    index: Optional[int] = None,
    status: str = "running",
) -> None:
    if not callback:
        return
    try:
        callback(ProgressUpdate(total=total, completed=completed, message=message, index=index, status=status))
    except Exception:  # noqa: BLE001
        LOGGER.exception("进度回调执行失败 (%d/%d)", completed, total)
