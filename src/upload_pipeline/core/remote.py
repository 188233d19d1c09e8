"""远端资源存储接口，以及按目录实现的本地版本。

流水线只负责把收尾后的交付文件交给存储方；具体的对象存储服务由调用方提供。
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol, runtime_checkable

from upload_pipeline.core.exceptions import ErrorKind, StorageError
from upload_pipeline.core.models import BatchReport

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class RemoteAssetStore(Protocol):
    """按标识符上传、列出、删除资源的存储能力。"""

    def upload(self, path: Path, identifier: str) -> str:
        """上传文件并返回可访问的位置。"""
        ...

    def list(self) -> list[str]:
        ...

    def delete(self, identifier: str) -> bool:
        ...


class LocalDirectoryAssetStore:
    """以目录模拟的资源存储，文件名即标识符。"""

    def __init__(self, directory: Path) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)

    def upload(self, path: Path, identifier: str) -> str:
        destination = self._resolve(identifier)
        try:
            shutil.copyfile(path, destination)
        except OSError as exc:
            raise StorageError(ErrorKind.WRITE_FAILED, f"上传失败: {identifier} ({exc})") from exc
        return destination.as_uri()

    def list(self) -> list[str]:
        return sorted(child.name for child in self.directory.iterdir() if child.is_file())

    def delete(self, identifier: str) -> bool:
        target = self._resolve(identifier)
        if not target.exists():
            return False
        try:
            target.unlink()
        except OSError as exc:
            raise StorageError(ErrorKind.DELETE_FAILED, f"删除失败: {identifier} ({exc})") from exc
        return True

    def _resolve(self, identifier: str) -> Path:
        name = Path(identifier).name
        if not name or name != identifier:
            raise StorageError(ErrorKind.WRITE_FAILED, f"非法的资源标识符: {identifier!r}")
        return self.directory / name


def publish_report(report: BatchReport, store: RemoteAssetStore) -> dict[int, str]:
    """把每个已接收条目的交付文件推送到存储，返回 {输入序号: 远端位置}。

    单个文件推送失败只记录日志，不影响其他文件。
    """

    locations: dict[int, str] = {}
    for result in report:
        deliverable = result.deliverable
        if deliverable is None:
            continue
        try:
            locations[result.index] = store.upload(deliverable, deliverable.name)
        except StorageError as exc:
            LOGGER.error("推送 #%d %s 失败: %s", result.index, deliverable.name, exc)
    return locations
