"""派生图像的质量度量。"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np
from PIL import Image

_RESAMPLING = Image.Resampling

_WINDOW = (11, 11)
_SIGMA = 1.5
_C1 = (0.01 * 255) ** 2
_C2 = (0.03 * 255) ** 2


def compute_ssim(source: Image.Image, derived: Image.Image) -> float:
    """以高斯窗口计算平均 SSIM。

    原图先缩放到派生图尺寸再比较，因此结果只反映重新编码带来的损失。
    """

    a, b = _gray_pair(source, derived)

    mu_a = cv2.GaussianBlur(a, _WINDOW, _SIGMA)
    mu_b = cv2.GaussianBlur(b, _WINDOW, _SIGMA)
    mu_a_sq = mu_a * mu_a
    mu_b_sq = mu_b * mu_b
    mu_ab = mu_a * mu_b

    sigma_a_sq = cv2.GaussianBlur(a * a, _WINDOW, _SIGMA) - mu_a_sq
    sigma_b_sq = cv2.GaussianBlur(b * b, _WINDOW, _SIGMA) - mu_b_sq
    sigma_ab = cv2.GaussianBlur(a * b, _WINDOW, _SIGMA) - mu_ab

    ssim_map = ((2 * mu_ab + _C1) * (2 * sigma_ab + _C2)) / (
        (mu_a_sq + mu_b_sq + _C1) * (sigma_a_sq + sigma_b_sq + _C2)
    )
    return float(np.clip(ssim_map.mean(), -1.0, 1.0))


def _gray_pair(source: Image.Image, derived: Image.Image) -> Tuple[np.ndarray, np.ndarray]:
    reference = source if source.size == derived.size else source.resize(derived.size, _RESAMPLING.LANCZOS)
    return (
        np.asarray(reference.convert("L"), dtype=np.float64),
        np.asarray(derived.convert("L"), dtype=np.float64),
    )
