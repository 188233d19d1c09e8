"""原始暂存文件的清理。"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Set

from upload_pipeline.core.exceptions import ErrorKind, StorageError
from upload_pipeline.core.models import StagedFile, TransformOutcome

LOGGER = logging.getLogger(__name__)


class CleanupCoordinator:
    """在派生文件生成后删除原始文件；回退时保留原始文件作为交付物。

    每个路径至多尝试删除一次，重复调用为空操作。
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.resolve()
        self._lock = threading.Lock()
        self._attempted: Set[Path] = set()

    def finalize(self, staged: StagedFile, outcome: TransformOutcome) -> bool:
        """根据转换结果收尾，返回是否确实删除了原始文件。

        删除失败时抛出 ``StorageError(DELETE_FAILED)``；调用方只记录该错误，
        已生成的派生文件仍然有效。
        """

        if outcome.is_fallback:
            LOGGER.debug("回退结果保留原始文件: %s", staged.path)
            return False
        return self._delete_once(staged.path)

    def discard(self, path: Path) -> bool:
        """删除被取消条目遗留的暂存或派生文件。"""

        return self._delete_once(path)

    def was_attempted(self, path: Path) -> bool:
        with self._lock:
            return path in self._attempted

    def _delete_once(self, path: Path) -> bool:
        with self._lock:
            if path in self._attempted:
                return False
            self._attempted.add(path)

        try:
            existed = path.exists()
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(ErrorKind.DELETE_FAILED, f"删除文件失败: {path.name} ({exc})") from exc
        if existed:
            LOGGER.debug("已删除 %s", path)
        return existed
