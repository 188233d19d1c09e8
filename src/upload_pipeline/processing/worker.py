"""单个上传条目的处理单元：校验 → 暂存 → 转换 → 清理。"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from upload_pipeline.core.cleanup import CleanupCoordinator
from upload_pipeline.core.config import TransformSpec, ValidationPolicy
from upload_pipeline.core.exceptions import (
    AssetValidationError,
    ErrorKind,
    ProcessingAborted,
    StorageError,
    UploadPipelineError,
)
from upload_pipeline.core.models import (
    ItemState,
    ProcessingResult,
    ResultStatus,
    StagedFile,
    TransformOutcome,
    UploadItem,
)
from upload_pipeline.core.staging import StagingStore
from upload_pipeline.processing.transformer import Transformer
from upload_pipeline.processing.validation import AssetValidator

LOGGER = logging.getLogger(__name__)

_TRANSITIONS: dict[ItemState, frozenset[ItemState]] = {
    ItemState.RECEIVED: frozenset({ItemState.VALIDATING}),
    ItemState.VALIDATING: frozenset({ItemState.REJECTED, ItemState.STAGED, ItemState.FAILED}),
    ItemState.STAGED: frozenset({ItemState.TRANSFORMING}),
    ItemState.TRANSFORMING: frozenset({ItemState.DERIVED, ItemState.FALLEN_BACK, ItemState.FAILED}),
    ItemState.DERIVED: frozenset({ItemState.FINALIZED}),
    ItemState.FALLEN_BACK: frozenset({ItemState.FINALIZED}),
    ItemState.REJECTED: frozenset(),
    ItemState.FAILED: frozenset(),
    ItemState.FINALIZED: frozenset(),
}


class InvalidStateTransition(UploadPipelineError):
    """条目状态机出现非法跳转。"""


class ItemTracker:
    """记录单个条目的状态轨迹。"""

    def __init__(self) -> None:
        self.history: list[ItemState] = [ItemState.RECEIVED]

    @property
    def state(self) -> ItemState:
        return self.history[-1]

    def advance(self, new_state: ItemState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"{self.state.value} -> {new_state.value}")
        self.history.append(new_state)


@dataclass(slots=True)
class ItemContext:
    """单次批处理中所有条目共享的只读协作者。"""

    policy: ValidationPolicy
    spec: TransformSpec
    validator: AssetValidator
    staging: StagingStore
    transformer: Transformer
    cleanup: CleanupCoordinator
    cancel_event: threading.Event


def run_item(index: int, item: UploadItem, context: ItemContext) -> ProcessingResult:
    """执行单个条目的完整流程并返回其结果。

    条目自身的任何错误都转换为结果记录；只有批处理被取消时才抛出 ``ProcessingAborted``。
    """

    tracker = ItemTracker()
    staged: Optional[StagedFile] = None
    outcome: Optional[TransformOutcome] = None

    def result(status: ResultStatus, **kwargs: object) -> ProcessingResult:
        return ProcessingResult(
            index=index,
            filename=item.filename,
            status=status,
            states=tuple(tracker.history),
            **kwargs,
        )

    _check_cancelled(context, index)
    tracker.advance(ItemState.VALIDATING)
    try:
        context.validator.validate(item, context.policy)
    except AssetValidationError as exc:
        tracker.advance(ItemState.REJECTED)
        LOGGER.info("拒绝上传 #%d %s: %s", index, item.filename, exc)
        return result(ResultStatus.REJECTED, error_kind=exc.kind, error_detail=exc.detail)

    try:
        staged = context.staging.stage(item)
    except StorageError as exc:
        tracker.advance(ItemState.FAILED)
        LOGGER.error("暂存失败 #%d %s: %s", index, item.filename, exc)
        return result(ResultStatus.FAILED, error_kind=exc.kind, error_detail=exc.detail)
    tracker.advance(ItemState.STAGED)

    try:
        _check_cancelled(context, index)
        tracker.advance(ItemState.TRANSFORMING)
        try:
            outcome = context.transformer.transform(staged, context.spec)
        except StorageError as exc:
            tracker.advance(ItemState.FAILED)
            LOGGER.error("读取暂存文件失败 #%d %s: %s", index, item.filename, exc)
            _discard(context, staged.path)
            return result(ResultStatus.FAILED, staged=staged, error_kind=exc.kind, error_detail=exc.detail)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("转换阶段异常，回退原始文件 #%d %s: %s", index, item.filename, exc)
            outcome = TransformOutcome.fallback(f"{type(exc).__name__}: {exc}")

        tracker.advance(ItemState.FALLEN_BACK if outcome.is_fallback else ItemState.DERIVED)
        _check_cancelled(context, index)

        cleanup_warning: Optional[str] = None
        try:
            context.cleanup.finalize(staged, outcome)
        except StorageError as exc:
            cleanup_warning = exc.detail
            LOGGER.warning("清理原始文件失败 #%d %s: %s", index, staged.name, exc)
        tracker.advance(ItemState.FINALIZED)
    except ProcessingAborted:
        _discard_outputs(context, staged, outcome)
        raise
    except Exception:
        # 条目将记为失败，暂存与派生文件都不再交付
        LOGGER.error("条目 #%d %s 处理异常，删除已写入的文件", index, item.filename)
        _discard_outputs(context, staged, outcome)
        raise

    if outcome.derived is not None:
        return result(
            ResultStatus.SUCCEEDED,
            staged=staged,
            derived=outcome.derived,
            cleanup_warning=cleanup_warning,
        )
    return result(
        ResultStatus.SUCCEEDED_WITH_FALLBACK,
        staged=staged,
        fallback_reason=outcome.fallback_reason,
        cleanup_warning=cleanup_warning,
    )


def failed_result(index: int, item: UploadItem, exc: BaseException) -> ProcessingResult:
    """条目任务以意外异常结束时使用的结果。"""

    return ProcessingResult(
        index=index,
        filename=item.filename,
        status=ResultStatus.FAILED,
        error_kind=ErrorKind.INTERNAL,
        error_detail=f"{type(exc).__name__}: {exc}",
        states=(ItemState.RECEIVED, ItemState.VALIDATING, ItemState.FAILED),
    )


def _check_cancelled(context: ItemContext, index: int) -> None:
    if context.cancel_event.is_set():
        raise ProcessingAborted(f"条目 #{index} 已取消")


def _discard_outputs(context: ItemContext, staged: StagedFile, outcome: Optional[TransformOutcome]) -> None:
    _discard(context, staged.path)
    if outcome is not None and outcome.derived is not None:
        _discard(context, outcome.derived.path)


def _discard(context: ItemContext, path: Path) -> None:
    try:
        context.cleanup.discard(path)
    except StorageError as exc:
        LOGGER.warning("删除遗留文件失败: %s", exc)
