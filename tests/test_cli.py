"""命令行入口测试。"""

from __future__ import annotations

import csv
import json
from pathlib import Path

import numpy as np
from PIL import Image
from typer.testing import CliRunner

from upload_pipeline.cli.main import app

runner = CliRunner()


def test_cli_processes_files_and_writes_report(tmp_path: Path) -> None:
    source = tmp_path / "input"
    root = tmp_path / "uploads"
    published = tmp_path / "published"
    source.mkdir()

    Image.new("RGB", (1200, 600), "green").save(source / "wide.jpg")
    (source / "notes.txt").write_text("hello")

    result = runner.invoke(
        app,
        [
            "process",
            str(source / "wide.jpg"),
            str(source / "notes.txt"),
            "--root",
            str(root),
            "--max-width",
            "300",
            "--publish-dir",
            str(published),
        ],
    )

    assert result.exit_code == 0, result.output
    with (root / "report.csv").open("r", encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["status"] for row in rows] == ["succeeded", "rejected"]
    assert rows[0]["width"] == "300"
    assert rows[0]["height"] == "150"
    assert [p.name for p in published.iterdir()] == [rows[0]["deliverable"]]


def test_cli_accepts_json_config(tmp_path: Path) -> None:
    source = tmp_path / "photo.png"
    Image.new("RGB", (50, 50), "red").save(source)
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"allowedTypes": ["png"], "encoding": "png"}), encoding="utf-8")

    result = runner.invoke(app, ["process", str(source), "--root", str(tmp_path / "out"), "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    derived = [p for p in (tmp_path / "out").iterdir() if p.name.endswith("-processed.png")]
    assert len(derived) == 1


def test_cli_rejects_invalid_configuration(tmp_path: Path) -> None:
    source = tmp_path / "photo.jpg"
    Image.new("RGB", (10, 10)).save(source)

    result = runner.invoke(app, ["process", str(source), "--root", str(tmp_path / "out"), "--quality", "500"])

    assert result.exit_code == 2


def test_cli_min_ssim_falls_back_to_original(tmp_path: Path) -> None:
    rng = np.random.default_rng(3)
    source = tmp_path / "noise.png"
    Image.fromarray(rng.integers(0, 256, size=(120, 120, 3), dtype=np.uint8), "RGB").save(source)

    result = runner.invoke(
        app,
        [
            "process",
            str(source),
            "--root",
            str(tmp_path / "out"),
            "--quality",
            "5",
            "--min-ssim",
            "0.99",
        ],
    )

    assert result.exit_code == 0, result.output
    with (tmp_path / "out" / "report.csv").open("r", encoding="utf-8", newline="") as handle:
        row = next(csv.DictReader(handle))
    assert row["status"] == "succeeded_with_fallback"
    assert row["deliverable"].endswith(".png")
    assert row["detail"].startswith("quality_below_threshold")


def test_cli_lists_process_command() -> None:
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "process" in result.output
