"""派生文件生成：等比缩放、重新编码、质量控制，失败时回退原始文件。"""

from __future__ import annotations

import io
import logging
from concurrent.futures import Executor
from pathlib import Path
from typing import Optional

from PIL import Image

from upload_pipeline.core.config import TransformSpec
from upload_pipeline.core.exceptions import ErrorKind, QualityCheckError, StorageError, TransformError
from upload_pipeline.core.models import DerivedFile, StagedFile, TransformOutcome
from upload_pipeline.core.staging import DERIVED_MARKER, write_atomic
from upload_pipeline.processing.image_loader import decode_image, prepare_for_encoding
from upload_pipeline.processing.metrics import compute_ssim
from upload_pipeline.utils.colors import parse_hex_color

LOGGER = logging.getLogger(__name__)

_RESAMPLING = Image.Resampling


def compute_target_size(size: tuple[int, int], max_width: int, max_height: int) -> tuple[int, int]:
    """计算落在 ``max_width × max_height`` 内、保持宽高比且不放大的目标尺寸。"""

    width, height = size
    if width <= 0 or height <= 0:
        raise TransformError(f"无效的图像尺寸: {width}x{height}")

    scale = min(max_width / width, max_height / height, 1.0)
    if scale >= 1.0:
        return width, height
    target_w = min(max_width, max(1, round(width * scale)))
    target_h = min(max_height, max(1, round(height * scale)))
    return target_w, target_h


def derived_path_for(staged: StagedFile, spec: TransformSpec) -> Path:
    """派生文件与暂存文件同目录，命名为 ``{id}-processed.{ext}``。"""

    return staged.path.with_name(f"{staged.identifier}{DERIVED_MARKER}.{spec.extension}")


def read_staged(staged: StagedFile) -> bytes:
    try:
        return staged.path.read_bytes()
    except OSError as exc:
        raise StorageError(ErrorKind.READ_FAILED, f"读取暂存文件失败: {staged.name} ({exc})") from exc


QUALITY_FALLBACK = "quality_below_threshold"


def render_derivative(payload: bytes, spec: TransformSpec, *, label: str = "") -> tuple[bytes, tuple[int, int], tuple[int, int], Optional[float]]:
    """在内存中完成解码、缩放与编码。

    返回 (编码后字节, 输出尺寸, 原始尺寸, ssim)。任一步骤失败抛出 ``TransformError``；
    设置了 ``min_ssim`` 而派生图达不到时抛出 ``QualityCheckError``。
    """

    source = decode_image(payload, label=label)
    resized: Optional[Image.Image] = None
    prepared: Optional[Image.Image] = None
    try:
        try:
            target = compute_target_size(source.size, spec.max_width, spec.max_height)
            if target == source.size:
                resized = source.copy()
            else:
                resized = source.resize(target, _RESAMPLING.LANCZOS)

            prepared = prepare_for_encoding(resized, spec.image_format, parse_hex_color(spec.background_color))
            buffer = io.BytesIO()
            save_params: dict[str, object] = {"optimize": True}
            if spec.image_format in {"JPEG", "WEBP"}:
                save_params["quality"] = spec.quality
            prepared.save(buffer, format=spec.image_format, **save_params)
        except TransformError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransformError(f"图像处理失败: {label} ({exc})") from exc

        encoded = buffer.getvalue()
        ssim = None
        if spec.measures_quality:
            ssim = _measure(source, encoded, label)
            if spec.min_ssim is not None and (ssim is None or ssim < spec.min_ssim):
                measured = "n/a" if ssim is None else f"{ssim:.4f}"
                raise QualityCheckError(f"{QUALITY_FALLBACK}: ssim={measured} < {spec.min_ssim}")

        return encoded, prepared.size, source.size, ssim
    finally:
        _close_if_needed(source, resized, prepared)


def run_transform(staged: StagedFile, spec: TransformSpec) -> TransformOutcome:
    """对暂存文件执行转换。

    读取暂存文件失败属于环境错误，抛出 ``StorageError(READ_FAILED)``；
    其余任何失败（包括质量不达标）都降级为回退结果，且不留下任何派生文件。
    该函数可被提交到进程池执行。
    """

    payload = read_staged(staged)
    destination = derived_path_for(staged, spec)

    try:
        encoded, size, source_size, ssim = render_derivative(payload, spec, label=staged.name)
    except TransformError as exc:
        LOGGER.warning("转换失败，回退原始文件 %s: %s", staged.name, exc)
        return TransformOutcome.fallback(str(exc))

    try:
        write_atomic(destination, encoded)
    except StorageError as exc:
        destination.unlink(missing_ok=True)
        LOGGER.warning("派生文件写入失败，回退原始文件 %s: %s", staged.name, exc)
        return TransformOutcome.fallback(exc.detail)

    derived = DerivedFile(
        name=destination.name,
        path=destination,
        size=len(encoded),
        width=size[0],
        height=size[1],
        source_width=source_size[0],
        source_height=source_size[1],
        encoding=spec.encoding,
        quality=spec.quality,
        ssim=ssim,
    )
    LOGGER.debug(
        "已生成派生文件 %s (%dx%d -> %dx%d, %d 字节)",
        derived.name,
        source_size[0],
        source_size[1],
        size[0],
        size[1],
        derived.size,
    )
    return TransformOutcome.success(derived)


class Transformer:
    """转换阶段的入口，可选择把 CPU 密集的工作交给独立的执行器。"""

    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._executor = executor

    def transform(self, staged: StagedFile, spec: TransformSpec) -> TransformOutcome:
        if self._executor is None:
            return run_transform(staged, spec)
        return self._executor.submit(run_transform, staged, spec).result()


def _measure(source: Image.Image, encoded: bytes, label: str) -> Optional[float]:
    try:
        with Image.open(io.BytesIO(encoded)) as derived:
            derived.load()
            return compute_ssim(source, derived)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("质量度量失败 %s: %s", label, exc)
        return None


def _close_if_needed(*images: Optional[Image.Image]) -> None:
    for img in images:
        if img is not None:
            img.close()
