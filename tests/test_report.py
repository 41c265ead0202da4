"""
Tests for the report module.

Tests cover:
- JSON report content
- Markdown report sections
"""

import json

import pytest

from stellarstack.config import AlignmentMode, StackConfig
from stellarstack.pipeline import StackingPipeline
from stellarstack.report import write_all_reports


@pytest.fixture
def stacked(shifted_frames):
    frames, _ = shifted_frames
    config = StackConfig(alignment_mode=AlignmentMode.TRANSLATION, enable_quality=True, workers=1)
    return StackingPipeline(config).run(frames), config


class TestReports:
    """Tests for report writing."""

    def test_writes_both_files(self, stacked, tmp_path):
        result, config = stacked
        paths = write_all_reports(result, tmp_path / "out", config, {"stack": tmp_path / "out" / "stack.npy"})
        assert set(paths) == {"json", "markdown"}
        assert paths["json"].exists()
        assert paths["markdown"].exists()

    def test_json_content(self, stacked, tmp_path):
        result, config = stacked
        paths = write_all_reports(result, tmp_path, config)
        report = json.loads(paths["json"].read_text())

        summary = report["summary"]
        assert summary["frame_count"] == 5
        assert summary["reference_frame"] == "light_00.fits"
        assert summary["alignment_failures"] == 0
        assert report["config"]["method"]["name"] == "average"
        assert report["config"]["alignment_mode"] == "translation"

        frames = report["frames"]
        assert [row["filename"] for row in frames] == result.filenames
        assert frames[1]["dx"] == pytest.approx(2.0, abs=0.05)
        assert frames[0]["matched_stars"] == -1
        assert "quality_score" in frames[0]
        assert report["statistics"]["n_frames"] == 5

    def test_markdown_sections(self, stacked, tmp_path):
        result, config = stacked
        text = write_all_reports(result, tmp_path, config)["markdown"].read_text()
        for heading in ("# Stacking Report", "## Summary", "## Configuration", "## Registration", "## Quality Scores"):
            assert heading in text
        assert "reference" in text

    def test_without_config(self, stacked, tmp_path):
        result, _ = stacked
        report = json.loads(write_all_reports(result, tmp_path)["json"].read_text())
        assert report["config"] == {}
