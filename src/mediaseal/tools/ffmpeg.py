"""ffmpeg-backed frame extraction and tag rewriting."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from mediaseal.tools.base import FrameExtractor, TagTool, ToolError, ToolResult

logger = logging.getLogger(__name__)

# Containers whose muxer accepts -movflags
MOV_FAMILY = {".mp4", ".m4v", ".m4a", ".mov", ".3gp"}


def run_tool(args: list[str], timeout: float) -> ToolResult:
    """Run an external tool to completion, blocking the calling thread.

    Raises:
        ToolError: If the binary is missing or the hard timeout expires
    """
    logger.debug("Running %s", " ".join(args))
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ToolError(f"Tool not found: {args[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"{Path(args[0]).name} timed out after {timeout}s") from e
    return ToolResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")


def _unescape(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            out.append(next(chars, ""))
        else:
            out.append(ch)
    return "".join(out)


def _ends_with_escape(line: str) -> bool:
    trailing = len(line) - len(line.rstrip("\\"))
    return trailing % 2 == 1


def parse_ffmetadata(text: str) -> dict[str, str]:
    """Parse the global section of an ffmetadata document.

    Special characters (``=;#\\`` and newline) are backslash-escaped in
    values; an escaped newline continues the value on the next line.
    """
    tags: dict[str, str] = {}
    lines = text.split("\n")
    i = 0
    while i < len(lines):
        line = lines[i].rstrip("\r")
        i += 1
        while _ends_with_escape(line) and i < len(lines):
            line = line + "\n" + lines[i].rstrip("\r")
            i += 1
        if line.startswith("["):
            # Stream and chapter sections follow the global tags
            break
        if not line or line.startswith(";") or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        tags[_unescape(key).lower()] = _unescape(value)
    return tags


class FfmpegFrameExtractor(FrameExtractor):
    """Extracts every decoded frame as a numbered PNG."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", frame_pattern: str = "frame_%06d.png",
                 timeout: float = 600) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.frame_pattern = frame_pattern
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "ffmpeg"

    def extract(self, input_path: Path, output_dir: Path) -> None:
        args = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(input_path),
            # Keep every source frame, no duplication or dropping
            "-fps_mode", "passthrough",
            str(output_dir / self.frame_pattern),
        ]
        result = run_tool(args, self.timeout)
        if not result.ok:
            raise ToolError(f"ffmpeg exited with code {result.returncode}: {result.stderr.strip()}", result)


class FfmpegTagTool(TagTool):
    """Reads tags via ffmetadata and rewrites them with ``-c copy``."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 600) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "ffmpeg"

    def read_tags(self, path: Path) -> dict[str, str]:
        args = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(path),
            "-f", "ffmetadata",
            "-",
        ]
        result = run_tool(args, self.timeout)
        if not result.ok:
            raise ToolError(f"ffmpeg (read metadata) exited {result.returncode}: {result.stderr.strip()}", result)
        return parse_ffmetadata(result.stdout)

    def write_tags(
        self,
        input_path: Path,
        output_path: Path,
        tags: dict[str, str],
        clear_existing: bool,
    ) -> None:
        args = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(input_path),
            "-map_metadata", "-1" if clear_existing else "0",
        ]
        for key, value in tags.items():
            args.extend(["-metadata", f"{key}={value}"])
        # bitexact keeps the muxer from stamping its own version tags
        args.extend(["-c", "copy", "-fflags", "+bitexact"])
        if output_path.suffix.lower() in MOV_FAMILY:
            args.extend(["-movflags", "use_metadata_tags"])
        args.append(str(output_path))

        result = run_tool(args, self.timeout)
        if not result.ok:
            raise ToolError(f"ffmpeg (write metadata) exited {result.returncode}: {result.stderr.strip()}", result)
        if not output_path.is_file():
            raise ToolError(f"ffmpeg produced no output at {output_path}", result)
