"""
Tests for the command-line interface.

Tests cover:
- Argument parsing
- The stack command on FITS files
- The detect command
- Error exit codes
"""

import json

import numpy as np
import pytest

from stellarstack.cli import create_parser, main
from stellarstack.cli_output import summary_box


@pytest.fixture
def light_files(write_fits, star_field):
    shifts = [(0, 0), (2, 1), (-1, 2)]
    return [
        str(write_fits(f"light_{i}.fits", star_field(shift), exptime=20.0))
        for i, shift in enumerate(shifts)
    ]


class TestParser:
    """Tests for argument parsing."""

    def test_stack_defaults(self):
        args = create_parser().parse_args(["stack", "a.fits", "b.fits"])
        assert args.command == "stack"
        assert args.lights == ["a.fits", "b.fits"]
        assert args.method == "average"
        assert args.sigma == 2.5
        assert args.align == "translation"
        assert args.quality is False
        assert args.dark == []

    def test_stack_options(self):
        args = create_parser().parse_args([
            "stack", "a.fits", "b.fits", "--method", "sigma", "--sigma", "3",
            "--align", "full", "--dark", "d1.fits", "d2.fits", "--quality", "--workers", "2",
        ])
        assert args.method == "sigma"
        assert args.sigma == 3.0
        assert args.align == "full"
        assert args.dark == ["d1.fits", "d2.fits"]
        assert args.quality is True
        assert args.workers == 2

    def test_invalid_method(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["stack", "a.fits", "--method", "kappa"])

    def test_no_command(self, capsys):
        assert main([]) == 1


class TestStackCommand:
    """Tests for the stack command."""

    def test_stack_writes_outputs(self, light_files, tmp_path):
        out = tmp_path / "result"
        code = main(["stack", *light_files, "--out", str(out), "--quiet", "--workers", "1", "--save-transforms"])
        assert code == 0

        stack = np.load(out / "stack.npy")
        coverage = np.load(out / "coverage.npy")
        assert stack.shape == (200, 200)
        assert coverage.max() == 3

        report = json.loads((out / "report.json").read_text())
        assert report["summary"]["frame_count"] == 3
        assert report["statistics"]["total_exposure_s"] == 60.0
        assert (out / "report.md").exists()

        transforms = json.loads((out / "transforms.json").read_text())
        assert transforms["n_transforms"] == 3
        assert transforms["reference_filename"] == "light_0.fits"

    def test_stack_with_summary(self, light_files, tmp_path, capsys):
        code = main(["stack", *light_files, "--out", str(tmp_path / "o"), "--method", "median", "--workers", "1"])
        assert code == 0
        assert "Stack complete" in capsys.readouterr().out

    def test_single_light_fails(self, light_files, tmp_path, capsys):
        code = main(["stack", light_files[0], "--out", str(tmp_path / "o"), "--quiet"])
        assert code == 1
        assert "At least 2 frames" in capsys.readouterr().err

    def test_missing_file_fails(self, light_files, tmp_path, capsys):
        code = main(["stack", light_files[0], str(tmp_path / "missing.fits"), "--out", str(tmp_path / "o"), "--quiet"])
        assert code == 1
        assert "missing.fits" in capsys.readouterr().err


class TestDetectCommand:
    def test_detect(self, light_files, capsys):
        assert main(["detect", light_files[0], "--top", "3"]) == 0
        out = capsys.readouterr().out
        assert "Sources" in out
        assert "20" in out

    def test_detect_options(self, light_files, capsys):
        assert main(["detect", light_files[0], "--max-stars", "5", "--sigma-threshold", "8"]) == 0
        assert "5" in capsys.readouterr().out


class TestConsoleOutput:
    def test_summary_box_aligned(self):
        box = summary_box(["Frames: 3", "Method: sigma-clipped mean"], "Stack complete").splitlines()
        assert len(box) == 6
        assert len({len(line) for line in box}) == 1
        assert "Stack complete" in box[1]
