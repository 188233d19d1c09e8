"""进度更新的数据模型。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True)
class ProgressUpdate:
    """批处理过程中每完成一个条目发出的进度信息。"""

    total: int
    completed: int
    message: Optional[str] = None
    index: Optional[int] = None
    status: str = "running"
