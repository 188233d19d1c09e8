"""上传项的格式与大小校验。"""

from __future__ import annotations

import logging

from upload_pipeline.core.config import ValidationPolicy
from upload_pipeline.core.exceptions import AssetValidationError, ErrorKind
from upload_pipeline.core.models import UploadItem

LOGGER = logging.getLogger(__name__)


def validate_item(item: UploadItem, policy: ValidationPolicy) -> None:
    """纯函数式校验，不产生任何 I/O。未通过时抛出 ``AssetValidationError``。

    检查顺序：空内容、声明大小不一致、类型不在允许列表、超出最大字节数。
    """

    if not item.content:
        raise AssetValidationError(ErrorKind.EMPTY, f"文件内容为空: {item.filename}")

    if item.declared_size is not None and item.declared_size != item.size:
        raise AssetValidationError(
            ErrorKind.SIZE_MISMATCH,
            f"声明大小 {item.declared_size} 与实际大小 {item.size} 不一致",
        )

    extension = item.extension
    if extension not in policy.allowed_extensions:
        allowed = ", ".join(sorted(policy.allowed_extensions))
        raise AssetValidationError(
            ErrorKind.UNSUPPORTED_TYPE,
            f"不支持的文件类型: .{extension or '?'}（允许: {allowed}）",
        )

    content_type = (item.content_type or "").strip().lower()
    if policy.allowed_content_types and content_type and content_type not in policy.allowed_content_types:
        raise AssetValidationError(ErrorKind.UNSUPPORTED_TYPE, f"不支持的内容类型: {content_type}")

    if item.size > policy.max_size:
        raise AssetValidationError(
            ErrorKind.TOO_LARGE,
            f"文件过大: {item.size} 字节（上限 {policy.max_size} 字节）",
        )


class AssetValidator:
    """绑定校验策略的校验器。"""

    def __init__(self, policy: ValidationPolicy) -> None:
        self.policy = policy

    def validate(self, item: UploadItem, policy: ValidationPolicy | None = None) -> UploadItem:
        validate_item(item, policy or self.policy)
        LOGGER.debug("校验通过: %s", item.filename)
        return item
