"""核心数据模型定义。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath
from typing import Any, Iterator, Optional

from upload_pipeline.core.exceptions import ErrorKind


@dataclass(slots=True)
class UploadItem:
    """客户端提交的单个上传文件。

    ``content`` 在处理期间归流水线独占，不与其他条目共享。
    """

    filename: str
    content_type: str
    content: bytes
    declared_size: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.content) if self.content else 0

    @property
    def extension(self) -> str:
        """小写且不带点的扩展名，没有扩展名时为空字符串。"""

        return PurePath(self.filename).suffix.lower().lstrip(".")


@dataclass(slots=True, frozen=True)
class StagedFile:
    """已持久化、未经修改的原始上传文件。"""

    identifier: str
    name: str
    path: Path
    extension: str
    size: int
    original_filename: str


@dataclass(slots=True, frozen=True)
class DerivedFile:
    """转换成功后生成的派生文件。"""

    name: str
    path: Path
    size: int
    width: int
    height: int
    source_width: int
    source_height: int
    encoding: str
    quality: int
    ssim: Optional[float] = None


@dataclass(slots=True, frozen=True)
class TransformOutcome:
    """转换阶段的结果：派生文件或回退原因，二者必居其一。"""

    derived: Optional[DerivedFile] = None
    fallback_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.derived is None) == (self.fallback_reason is None):
            raise ValueError("TransformOutcome 需要且仅需要 derived 或 fallback_reason 之一")

    @classmethod
    def success(cls, derived: DerivedFile) -> "TransformOutcome":
        return cls(derived=derived)

    @classmethod
    def fallback(cls, reason: str) -> "TransformOutcome":
        return cls(fallback_reason=reason)

    @property
    def is_fallback(self) -> bool:
        return self.derived is None


class ItemState(str, Enum):
    """单个条目在流水线中的状态。"""

    RECEIVED = "received"
    VALIDATING = "validating"
    REJECTED = "rejected"
    STAGED = "staged"
    TRANSFORMING = "transforming"
    DERIVED = "derived"
    FALLEN_BACK = "fallen_back"
    FAILED = "failed"
    FINALIZED = "finalized"


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_FALLBACK = "succeeded_with_fallback"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ProcessingResult:
    """单个上传条目的最终结果，生成后不可变。"""

    index: int
    filename: str
    status: ResultStatus
    staged: Optional[StagedFile] = None
    derived: Optional[DerivedFile] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    fallback_reason: Optional[str] = None
    cleanup_warning: Optional[str] = None
    states: tuple[ItemState, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.status in {ResultStatus.SUCCEEDED, ResultStatus.SUCCEEDED_WITH_FALLBACK}

    @property
    def deliverable(self) -> Optional[Path]:
        """交付给调用方的文件路径：派生文件，或回退时的原始文件。"""

        if self.derived is not None:
            return self.derived.path
        if self.status is ResultStatus.SUCCEEDED_WITH_FALLBACK and self.staged is not None:
            return self.staged.path
        return None

    def to_dict(self) -> dict[str, Any]:
        """生成对外输出的记录。"""

        if self.accepted:
            status = "accepted"
        elif self.status is ResultStatus.REJECTED:
            status = "rejected"
        else:
            status = "failed"

        record: dict[str, Any] = {"status": status, "filename": self.filename}
        if self.derived is not None:
            record["derivedName"] = self.derived.name
            record["byteSize"] = self.derived.size
            record["width"] = self.derived.width
            record["height"] = self.derived.height
        elif self.accepted and self.staged is not None:
            record["derivedName"] = self.staged.name
            record["byteSize"] = self.staged.size
        if self.accepted:
            record["fallback"] = self.status is ResultStatus.SUCCEEDED_WITH_FALLBACK
        if self.fallback_reason:
            record["fallbackReason"] = self.fallback_reason
        if self.error_kind is not None:
            record["errorKind"] = self.error_kind.value
            record["errorDetail"] = self.error_detail or ""
        if self.cleanup_warning:
            record["cleanupWarning"] = self.cleanup_warning
        return record


@dataclass(slots=True)
class BatchReport:
    """按输入顺序排列的批处理结果。"""

    results: list[ProcessingResult] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[ProcessingResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> ProcessingResult:
        return self.results[index]

    def _with_status(self, status: ResultStatus) -> list[ProcessingResult]:
        return [result for result in self.results if result.status is status]

    @property
    def succeeded(self) -> list[ProcessingResult]:
        return self._with_status(ResultStatus.SUCCEEDED)

    @property
    def fallbacks(self) -> list[ProcessingResult]:
        return self._with_status(ResultStatus.SUCCEEDED_WITH_FALLBACK)

    @property
    def rejected(self) -> list[ProcessingResult]:
        return self._with_status(ResultStatus.REJECTED)

    @property
    def failed(self) -> list[ProcessingResult]:
        return self._with_status(ResultStatus.FAILED)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [result.to_dict() for result in self.results]
