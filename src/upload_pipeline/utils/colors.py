"""颜色工具函数。"""

from __future__ import annotations

from typing import Tuple

from PIL import ImageColor

from upload_pipeline.core.exceptions import InvalidConfigurationError


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """将 HEX 字符串（或 Pillow 支持的颜色名）解析为 RGB 三元组。

    不带 ``#`` 的十六进制写法（如 ``ffffff``）同样接受，alpha 分量会被丢弃。
    """

    if not value or not value.strip():
        raise InvalidConfigurationError("颜色值不能为空")

    candidate = value.strip()
    if len(candidate) in {3, 6} and all(ch in "0123456789abcdefABCDEF" for ch in candidate):
        candidate = f"#{candidate}"

    try:
        rgb = ImageColor.getrgb(candidate)
    except ValueError as exc:
        raise InvalidConfigurationError(f"无法解析颜色值: {value}") from exc
    return rgb[0], rgb[1], rgb[2]
