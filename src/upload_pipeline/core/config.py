"""流水线的配置模型。"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from upload_pipeline.core.exceptions import InvalidConfigurationError
from upload_pipeline.utils.colors import parse_hex_color

DEFAULT_MAX_SIZE = 5 * 1024 * 1024

# 输出编码 -> (Pillow 格式名, 扩展名)
ENCODINGS = {
    "jpeg": ("JPEG", "jpg"),
    "png": ("PNG", "png"),
    "webp": ("WEBP", "webp"),
}
ENCODING_ALIASES = {"jpg": "jpeg"}


def _normalize_extension(value: str) -> str:
    return value.strip().lower().lstrip(".")


@dataclass(slots=True)
class ValidationPolicy:
    """上传校验策略：允许的类型与最大字节数。"""

    allowed_extensions: frozenset[str] = frozenset({"jpg", "jpeg", "png", "gif"})
    allowed_content_types: frozenset[str] = frozenset()
    max_size: int = DEFAULT_MAX_SIZE

    def __post_init__(self) -> None:
        self.allowed_extensions = frozenset(_normalize_extension(ext) for ext in self.allowed_extensions)
        self.allowed_content_types = frozenset(ct.strip().lower() for ct in self.allowed_content_types)

    def validate(self) -> None:
        if not self.allowed_extensions:
            raise InvalidConfigurationError("allowed_extensions 不能为空")
        if self.max_size <= 0:
            raise InvalidConfigurationError("max_size 必须大于 0")


@dataclass(slots=True)
class TransformSpec:
    """派生文件的尺寸、编码与质量配置。"""

    max_width: int = 800
    max_height: int = 800
    encoding: str = "jpeg"
    quality: int = 80
    background_color: str = "#FFFFFF"
    compute_metrics: bool = False
    min_ssim: Optional[float] = None  # 设置后派生图 SSIM 低于该值即回退原始文件

    def __post_init__(self) -> None:
        encoding = self.encoding.strip().lower()
        self.encoding = ENCODING_ALIASES.get(encoding, encoding)

    def validate(self) -> None:
        if self.max_width <= 0 or self.max_height <= 0:
            raise InvalidConfigurationError("max_width/max_height 必须大于 0")
        if self.encoding not in ENCODINGS:
            raise InvalidConfigurationError(f"未知的输出编码: {self.encoding}")
        if not 0 <= self.quality <= 100:
            raise InvalidConfigurationError("quality 必须位于 0~100")
        if self.min_ssim is not None and not 0.0 <= self.min_ssim <= 1.0:
            raise InvalidConfigurationError("min_ssim 必须位于 0~1")
        parse_hex_color(self.background_color)

    @property
    def measures_quality(self) -> bool:
        return self.compute_metrics or self.min_ssim is not None

    @property
    def image_format(self) -> str:
        return ENCODINGS[self.encoding][0]

    @property
    def extension(self) -> str:
        return ENCODINGS[self.encoding][1]


@dataclass(slots=True)
class BatchConfig:
    """并发与取消相关配置。"""

    max_in_flight: int = 4
    transform_processes: int = 0  # 0 表示在条目线程内直接转换
    timeout_seconds: Optional[float] = None
    poll_interval: float = 0.05

    def validate(self) -> None:
        if self.max_in_flight < 1:
            raise InvalidConfigurationError("max_in_flight 至少为 1")
        if self.transform_processes < 0:
            raise InvalidConfigurationError("transform_processes 不能为负数")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidConfigurationError("timeout_seconds 必须大于 0")
        if self.poll_interval <= 0:
            raise InvalidConfigurationError("poll_interval 必须大于 0")


@dataclass(slots=True)
class PipelineConfig:
    """单次批处理的配置集合。"""

    root_dir: Path
    policy: ValidationPolicy = field(default_factory=ValidationPolicy)
    transform: TransformSpec = field(default_factory=TransformSpec)
    batch: BatchConfig = field(default_factory=BatchConfig)
    report_filename: str = "report.csv"

    def validate(self) -> None:
        self.policy.validate()
        self.transform.validate()
        self.batch.validate()

    @classmethod
    def from_mapping(cls, root_dir: Path, options: Mapping[str, Any]) -> "PipelineConfig":
        """从外部传入的选项字典（如 JSON 配置）构建配置。"""

        unknown = set(options) - set(_OPTION_TARGETS)
        if unknown:
            raise InvalidConfigurationError(f"未知的配置项: {', '.join(sorted(unknown))}")

        config = cls(root_dir=root_dir)
        for key, value in options.items():
            section, attribute, convert = _OPTION_TARGETS[key]
            target = getattr(config, section)
            try:
                setattr(target, attribute, convert(value))
            except (TypeError, ValueError) as exc:
                raise InvalidConfigurationError(f"配置项 {key} 的值无效: {value!r}") from exc

        # 重新执行归一化
        config.policy.__post_init__()
        config.transform.__post_init__()
        config.validate()
        return config


def _as_extensions(value: Any) -> frozenset[str]:
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(_normalize_extension(item) for item in value if str(item).strip())


def _as_strings(value: Any) -> frozenset[str]:
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(str(item).strip() for item in value if str(item).strip())


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
        raise ValueError(value)
    return bool(value)


def _as_optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


_OPTION_TARGETS = {
    "allowedTypes": ("policy", "allowed_extensions", _as_extensions),
    "allowed_extensions": ("policy", "allowed_extensions", _as_extensions),
    "allowedContentTypes": ("policy", "allowed_content_types", _as_strings),
    "allowed_content_types": ("policy", "allowed_content_types", _as_strings),
    "maxSize": ("policy", "max_size", int),
    "max_size": ("policy", "max_size", int),
    "maxWidth": ("transform", "max_width", int),
    "max_width": ("transform", "max_width", int),
    "maxHeight": ("transform", "max_height", int),
    "max_height": ("transform", "max_height", int),
    "encoding": ("transform", "encoding", str),
    "quality": ("transform", "quality", int),
    "backgroundColor": ("transform", "background_color", str),
    "background_color": ("transform", "background_color", str),
    "computeMetrics": ("transform", "compute_metrics", _as_bool),
    "compute_metrics": ("transform", "compute_metrics", _as_bool),
    "minSsim": ("transform", "min_ssim", _as_optional_float),
    "min_ssim": ("transform", "min_ssim", _as_optional_float),
    "maxInFlight": ("batch", "max_in_flight", int),
    "max_in_flight": ("batch", "max_in_flight", int),
    "transformProcesses": ("batch", "transform_processes", int),
    "transform_processes": ("batch", "transform_processes", int),
    "timeoutSeconds": ("batch", "timeout_seconds", _as_optional_float),
    "timeout_seconds": ("batch", "timeout_seconds", _as_optional_float),
}
