"""从暂存字节解码图片并做基础归一化。"""

from __future__ import annotations

import io
import logging
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from upload_pipeline.core.exceptions import TransformError

LOGGER = logging.getLogger(__name__)

_ALPHA_MODES = {"RGBA", "LA", "PA"}


def decode_image(payload: bytes, *, label: str = "") -> Image.Image:
    """解码图片字节并执行 EXIF 旋转。

    返回值为新的 Image 对象，调用者负责关闭。无法识别或已损坏时抛出 ``TransformError``。
    """

    try:
        with Image.open(io.BytesIO(payload)) as img:
            img.load()
            transposed = ImageOps.exif_transpose(img)
            return transposed.copy() if transposed is img else transposed
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        LOGGER.debug("无法识别图像 %s: %s", label, exc)
        raise TransformError(f"无法解码图像: {label or '<bytes>'} ({exc})") from exc


def prepare_for_encoding(image: Image.Image, image_format: str, background: Tuple[int, int, int]) -> Image.Image:
    """将图像转换为目标编码可写入的模式。

    JPEG 不支持透明度，带 alpha 的图像会合成到背景色上。
    """

    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")

    if image_format == "JPEG":
        if image.mode in _ALPHA_MODES:
            return _flatten(image, background)
        if image.mode != "RGB":
            return image.convert("RGB")
        return image

    if image.mode in {"RGB", "RGBA"}:
        return image
    if image.mode in _ALPHA_MODES:
        return image.convert("RGBA")
    return image.convert("RGB")


def _flatten(image: Image.Image, background: Tuple[int, int, int]) -> Image.Image:
    canvas = Image.new("RGB", image.size, background)
    rgba = image.convert("RGBA")
    canvas.paste(rgba, mask=rgba.split()[-1])
    return canvas
