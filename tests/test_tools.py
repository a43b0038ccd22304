"""Tests for the ffmpeg collaborators (no ffmpeg binary required)."""

from __future__ import annotations

from pathlib import Path

import pytest

from mediaseal.tools import ffmpeg
from mediaseal.tools.base import ToolError, ToolResult, list_frames
from mediaseal.tools.ffmpeg import FfmpegFrameExtractor, FfmpegTagTool, parse_ffmetadata, run_tool


class RecordingRunner:
    """Stands in for run_tool and records argument lists."""

    def __init__(self, result: ToolResult, create_output: bool = True) -> None:
        self.result = result
        self.create_output = create_output
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str], timeout: float) -> ToolResult:
        self.calls.append(args)
        if self.create_output and self.result.ok and not args[-1] == "-":
            Path(args[-1]).write_bytes(b"out")
        return self.result


class TestParseFfmetadata:
    """Test the ffmetadata reader."""

    def test_global_tags(self):
        text = ";FFMETADATA1\nTitle=Clip\ncomment=1700000000000\n"
        assert parse_ffmetadata(text) == {"title": "Clip", "comment": "1700000000000"}

    def test_escaped_characters(self):
        text = ";FFMETADATA1\ndescription={\"a\"\\=1\\;b\\#c\\\\d}\n"
        assert parse_ffmetadata(text)["description"] == '{"a"=1;b#c\\d}'

    def test_continued_value(self):
        text = ";FFMETADATA1\ndescription=first\\\nsecond\ntitle=x\n"
        tags = parse_ffmetadata(text)
        assert tags["description"] == "first\nsecond"
        assert tags["title"] == "x"

    def test_stops_at_first_section(self):
        text = ";FFMETADATA1\ncomment=global\n[STREAM]\ncomment=stream\n"
        assert parse_ffmetadata(text) == {"comment": "global"}

    def test_ignores_comments_and_blank_lines(self):
        assert parse_ffmetadata(";FFMETADATA1\n\n# note\nkey=value\r\n") == {"key": "value"}


class TestRunTool:
    """Test subprocess handling."""

    def test_missing_binary(self):
        with pytest.raises(ToolError, match="not found"):
            run_tool(["definitely-not-a-real-binary-xyz"], timeout=5)


class TestFfmpegTagTool:
    """Test tag rewrite argument construction."""

    def test_canonical_rewrite_args(self, monkeypatch, tmp_path: Path):
        runner = RecordingRunner(ToolResult(0))
        monkeypatch.setattr(ffmpeg, "run_tool", runner)

        FfmpegTagTool("ffmpeg").write_tags(tmp_path / "in.mp4", tmp_path / "out.mp4",
                                           {"comment": "1700000000000"}, clear_existing=True)

        args = runner.calls[0]
        assert args[args.index("-map_metadata") + 1] == "-1"
        assert args[args.index("-metadata") + 1] == "comment=1700000000000"
        assert args[args.index("-c") + 1] == "copy"
        assert "+bitexact" in args
        assert args[args.index("-movflags") + 1] == "use_metadata_tags"

    def test_keep_existing_tags(self, monkeypatch, tmp_path: Path):
        runner = RecordingRunner(ToolResult(0))
        monkeypatch.setattr(ffmpeg, "run_tool", runner)

        FfmpegTagTool().write_tags(tmp_path / "in.mkv", tmp_path / "out.mkv", {"description": "{}"},
                                   clear_existing=False)

        args = runner.calls[0]
        assert args[args.index("-map_metadata") + 1] == "0"
        assert "-movflags" not in args

    def test_write_failure(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr(ffmpeg, "run_tool", RecordingRunner(ToolResult(1, stderr="boom")))
        with pytest.raises(ToolError, match="boom"):
            FfmpegTagTool().write_tags(tmp_path / "in.mp4", tmp_path / "out.mp4", {}, clear_existing=True)

    def test_no_output(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr(ffmpeg, "run_tool", RecordingRunner(ToolResult(0), create_output=False))
        with pytest.raises(ToolError):
            FfmpegTagTool().write_tags(tmp_path / "in.mp4", tmp_path / "out.mp4", {}, clear_existing=True)

    def test_read_tags(self, monkeypatch, tmp_path: Path):
        runner = RecordingRunner(ToolResult(0, stdout=";FFMETADATA1\nDescription=hello\n"))
        monkeypatch.setattr(ffmpeg, "run_tool", runner)

        assert FfmpegTagTool().read_tags(tmp_path / "in.mp4") == {"description": "hello"}
        assert runner.calls[0][-3:] == ["-f", "ffmetadata", "-"]


class TestFfmpegFrameExtractor:
    """Test extraction argument construction."""

    def test_passthrough_extraction(self, monkeypatch, tmp_path: Path):
        runner = RecordingRunner(ToolResult(0), create_output=False)
        monkeypatch.setattr(ffmpeg, "run_tool", runner)

        FfmpegFrameExtractor(frame_pattern="frame_%06d.png").extract(tmp_path / "in.mp4", tmp_path)

        args = runner.calls[0]
        assert args[args.index("-fps_mode") + 1] == "passthrough"
        assert args[-1] == str(tmp_path / "frame_%06d.png")

    def test_failure(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr(ffmpeg, "run_tool", RecordingRunner(ToolResult(1, stderr="bad input")))
        with pytest.raises(ToolError, match="bad input"):
            FfmpegFrameExtractor().extract(tmp_path / "in.mp4", tmp_path)


class TestListFrames:
    """Test frame listing."""

    def test_sorted_and_filtered(self, tmp_path: Path):
        for name in ["frame_000010.png", "frame_000002.png", "notes.txt", "frame_000001.PNG"]:
            (tmp_path / name).write_bytes(b"x")
        (tmp_path / "sub.png").mkdir()
        assert list_frames(tmp_path, ".png") == ["frame_000001.PNG", "frame_000002.png", "frame_000010.png"]
