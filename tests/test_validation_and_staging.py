"""上传校验、暂存命名与清理逻辑的单元测试。"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from upload_pipeline.core.cleanup import CleanupCoordinator
from upload_pipeline.core.config import ValidationPolicy
from upload_pipeline.core.exceptions import AssetValidationError, ErrorKind, StorageError
from upload_pipeline.core.models import DerivedFile, TransformOutcome, UploadItem
from upload_pipeline.core.staging import StagingStore
from upload_pipeline.processing.validation import AssetValidator, validate_item


def make_item(filename: str = "photo.jpg", content: bytes = b"abc", **kwargs) -> UploadItem:
    return UploadItem(filename=filename, content_type=kwargs.pop("content_type", "image/jpeg"), content=content, **kwargs)


def test_validator_accepts_allowed_extension_case_insensitively() -> None:
    item = make_item("HOLIDAY.JPG")
    assert AssetValidator(ValidationPolicy()).validate(item) is item


@pytest.mark.parametrize(
    ("item", "kind"),
    [
        (make_item(content=b""), ErrorKind.EMPTY),
        (make_item("notes.txt"), ErrorKind.UNSUPPORTED_TYPE),
        (make_item("no_extension"), ErrorKind.UNSUPPORTED_TYPE),
        (make_item(content=b"x" * 11), ErrorKind.TOO_LARGE),
        (make_item(content=b"abcd", declared_size=10), ErrorKind.SIZE_MISMATCH),
    ],
)
def test_validator_rejections(item: UploadItem, kind: ErrorKind) -> None:
    policy = ValidationPolicy(max_size=10)

    with pytest.raises(AssetValidationError) as excinfo:
        validate_item(item, policy)

    assert excinfo.value.kind is kind


def test_validator_checks_content_type_when_policy_lists_them() -> None:
    policy = ValidationPolicy(allowed_content_types=frozenset({"image/png"}))

    with pytest.raises(AssetValidationError) as excinfo:
        validate_item(make_item("a.png", content_type="text/html"), policy)
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_TYPE

    validate_item(make_item("a.png", content_type="IMAGE/PNG"), policy)


def test_validator_runs_before_any_write(tmp_path: Path) -> None:
    policy = ValidationPolicy(max_size=2)
    with pytest.raises(AssetValidationError):
        validate_item(make_item(content=b"too big"), policy)

    assert list(tmp_path.iterdir()) == []


def test_stage_writes_bytes_under_unique_name(tmp_path: Path) -> None:
    store = StagingStore(tmp_path)

    staged = store.stage(make_item("Cat.PNG", b"payload"))

    assert staged.path.read_bytes() == b"payload"
    assert staged.name.endswith(".png")
    assert staged.name == f"{staged.identifier}.png"
    assert staged.original_filename == "Cat.PNG"
    assert staged.size == 7
    # 没有残留的临时文件
    assert [p.name for p in tmp_path.iterdir()] == [staged.name]


def test_concurrent_staging_never_collides(tmp_path: Path) -> None:
    # 固定时间戳与随机数，迫使分配器依赖锁和保留集合去重
    counter = iter(range(10_000))
    lock = threading.Lock()

    def clashing_ids() -> str:
        with lock:
            return f"1700000000000-{next(counter) // 3}"

    store = StagingStore(tmp_path, id_factory=clashing_ids)

    with ThreadPoolExecutor(max_workers=8) as executor:
        staged = list(executor.map(lambda i: store.stage(make_item(f"{i}.jpg", b"x")), range(40)))

    names = {item.name for item in staged}
    assert len(names) == 40
    assert len(list(tmp_path.iterdir())) == 40


def test_allocator_skips_existing_file_with_same_name(tmp_path: Path) -> None:
    (tmp_path / "dup.jpg").write_bytes(b"old")
    ids = iter(["dup", "fresh"])
    store = StagingStore(tmp_path, id_factory=lambda: next(ids))

    staged = store.stage(make_item("new.jpg", b"new"))

    assert staged.name == "fresh.jpg"
    assert (tmp_path / "dup.jpg").read_bytes() == b"old"


def test_allocator_ignores_names_that_only_share_a_prefix(tmp_path: Path) -> None:
    (tmp_path / "dup1.jpg").write_bytes(b"old")
    (tmp_path / "dup-processed.jpg").write_bytes(b"old")
    store = StagingStore(tmp_path, id_factory=lambda: "dup")

    assert store.allocate_identifier("jpg") == "dup"


def test_stage_write_failure_raises_write_failed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = StagingStore(tmp_path)

    def disk_full(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("upload_pipeline.core.staging.os.replace", disk_full)

    with pytest.raises(StorageError) as excinfo:
        store.stage(make_item("x.jpg", b"data"))

    assert excinfo.value.kind is ErrorKind.WRITE_FAILED
    assert list(tmp_path.iterdir()) == []


def _derived(path: Path) -> DerivedFile:
    return DerivedFile(
        name=path.name,
        path=path,
        size=1,
        width=1,
        height=1,
        source_width=1,
        source_height=1,
        encoding="jpeg",
        quality=80,
    )


def test_finalize_deletes_original_once(tmp_path: Path) -> None:
    store = StagingStore(tmp_path)
    staged = store.stage(make_item("a.jpg", b"data"))
    derived_path = tmp_path / f"{staged.identifier}-processed.jpg"
    derived_path.write_bytes(b"out")
    outcome = TransformOutcome.success(_derived(derived_path))
    cleanup = CleanupCoordinator(tmp_path)

    assert cleanup.finalize(staged, outcome) is True
    assert not staged.path.exists()
    assert derived_path.exists()

    # 第二次调用为空操作，不报错
    assert cleanup.finalize(staged, outcome) is False
    assert cleanup.was_attempted(staged.path)


def test_finalize_keeps_original_on_fallback(tmp_path: Path) -> None:
    staged = StagingStore(tmp_path).stage(make_item("a.jpg", b"data"))

    removed = CleanupCoordinator(tmp_path).finalize(staged, TransformOutcome.fallback("corrupt"))

    assert removed is False
    assert staged.path.read_bytes() == b"data"


def test_finalize_tolerates_already_missing_original(tmp_path: Path) -> None:
    staged = StagingStore(tmp_path).stage(make_item("a.jpg", b"data"))
    staged.path.unlink()

    outcome = TransformOutcome.success(_derived(tmp_path / "x-processed.jpg"))
    assert CleanupCoordinator(tmp_path).finalize(staged, outcome) is False


def test_transform_outcome_requires_exactly_one_branch() -> None:
    with pytest.raises(ValueError):
        TransformOutcome()
