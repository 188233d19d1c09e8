"""暂存目录：为通过校验的上传生成唯一文件名并原子写入。"""

from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Callable, Set

from upload_pipeline.core.exceptions import ErrorKind, StorageError
from upload_pipeline.core.models import StagedFile, UploadItem

LOGGER = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"
DERIVED_MARKER = "-processed"


def default_identifier() -> str:
    """毫秒时间戳加随机后缀，例如 ``1700000000000-123456789``。"""

    return f"{time.time_ns() // 1_000_000}-{secrets.randbelow(10**9)}"


class StagingStore:
    """负责原始上传文件的落盘与命名。

    命名空间是批内唯一的共享可变资源，标识符的分配在锁内完成，
    已分配的标识符在进程生命周期内不会被再次使用。
    """

    def __init__(self, root_dir: Path, id_factory: Callable[[], str] = default_identifier) -> None:
        self.root_dir = root_dir.resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._reserved: Set[str] = set()

    def allocate_identifier(self, extension: str = "") -> str:
        """分配一个标识符，保证对应的暂存文件名在本目录内未被占用。"""

        with self._lock:
            while True:
                candidate = self._id_factory()
                if candidate in self._reserved:
                    continue
                if (self.root_dir / self.staged_name(candidate, extension)).exists():
                    continue
                self._reserved.add(candidate)
                return candidate

    def staged_name(self, identifier: str, extension: str) -> str:
        return f"{identifier}.{extension}" if extension else identifier

    def stage(self, item: UploadItem) -> StagedFile:
        """写入原始字节并返回暂存文件句柄。

        写入失败时抛出 ``StorageError(WRITE_FAILED)``，不在同一次尝试内重试。
        """

        extension = item.extension
        identifier = self.allocate_identifier(extension)
        name = self.staged_name(identifier, extension)
        destination = self.root_dir / name

        write_atomic(destination, item.content)
        LOGGER.debug("已暂存 %s -> %s (%d 字节)", item.filename, destination, item.size)
        return StagedFile(
            identifier=identifier,
            name=name,
            path=destination,
            extension=extension,
            size=item.size,
            original_filename=item.filename,
        )


def write_atomic(destination: Path, payload: bytes) -> None:
    """先写入隐藏的临时文件并 fsync，再重命名到目标位置。

    读取方永远不会看到写了一半的文件。
    """

    partial = destination.with_name(f".{destination.name}{PARTIAL_SUFFIX}")
    try:
        with partial.open("wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(partial, destination)
    except OSError as exc:
        try:
            partial.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("无法删除临时文件 %s", partial)
        raise StorageError(ErrorKind.WRITE_FAILED, f"写入文件失败: {destination.name} ({exc})") from exc
