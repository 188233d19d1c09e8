"""项目内使用的自定义异常定义。"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """单个上传项可能出现的错误类别。"""

    UNSUPPORTED_TYPE = "unsupported_type"
    TOO_LARGE = "too_large"
    EMPTY = "empty"
    SIZE_MISMATCH = "size_mismatch"
    WRITE_FAILED = "write_failed"
    READ_FAILED = "read_failed"
    DELETE_FAILED = "delete_failed"
    INTERNAL = "internal"


class UploadPipelineError(Exception):
    """基础异常类型。"""


class InvalidConfigurationError(UploadPipelineError):
    """配置不合法时抛出。"""


class ProcessingAborted(UploadPipelineError):
    """批处理被取消或超时时抛出。"""


class AssetValidationError(UploadPipelineError):
    """上传项未通过格式/大小校验。"""

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(kind, detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class StorageError(UploadPipelineError):
    """暂存目录读写或删除失败。"""

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(kind, detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class TransformError(UploadPipelineError):
    """解码、缩放或编码失败，调用方应回退到原始文件。"""


class QualityCheckError(TransformError):
    """派生图与原图的相似度低于配置的下限。"""
