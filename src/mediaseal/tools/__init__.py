"""External media tools (frame extraction, tag rewriting)."""

from __future__ import annotations

from mediaseal.tools.base import FrameExtractor, TagTool, ToolError, ToolResult, list_frames
from mediaseal.tools.ffmpeg import FfmpegFrameExtractor, FfmpegTagTool, parse_ffmetadata, run_tool

__all__ = [
    "FrameExtractor",
    "TagTool",
    "ToolError",
    "ToolResult",
    "list_frames",
    "FfmpegFrameExtractor",
    "FfmpegTagTool",
    "parse_ffmetadata",
    "run_tool",
]
