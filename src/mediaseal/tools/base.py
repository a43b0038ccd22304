"""Interfaces for the external media tools the pipelines depend on.

The signing core never decodes media itself. It consumes two
collaborators: one that splits a video into an ordered set of image files,
and one that rewrites container tags while copying the encoded streams
unchanged.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass
class ToolResult:
    """Exit status and captured output of one tool invocation.

    Attributes:
        returncode: Process exit status (non-zero means failure)
        stdout: Captured standard output
        stderr: Captured standard error
    """
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ToolError(Exception):
    """External tool could not be run, timed out, or exited non-zero."""

    def __init__(self, message: str, result: ToolResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class FrameExtractor(ABC):
    """Decodes a video into numbered image files."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return extractor name."""
        pass

    @abstractmethod
    def extract(self, input_path: Path, output_dir: Path) -> None:
        """Write every frame of ``input_path`` into ``output_dir``.

        The lexicographically sorted listing of ``output_dir`` afterwards is
        the frame order.

        Raises:
            ToolError: If extraction fails
        """
        pass


class TagTool(ABC):
    """Reads and rewrites container metadata tags with stream copy."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return tool name."""
        pass

    @abstractmethod
    def read_tags(self, path: Path) -> dict[str, str]:
        """Return the container-level tags, keys lowercased.

        Raises:
            ToolError: If the container cannot be read
        """
        pass

    @abstractmethod
    def write_tags(
        self,
        input_path: Path,
        output_path: Path,
        tags: dict[str, str],
        clear_existing: bool,
    ) -> None:
        """Copy ``input_path`` to ``output_path`` with rewritten tags.

        Args:
            input_path: Source container
            output_path: Destination container (overwritten)
            tags: Tags to set
            clear_existing: Drop every existing tag before setting ``tags``

        Raises:
            ToolError: If the streams could not be copied unchanged
        """
        pass


def list_frames(directory: Path, extension: str) -> list[str]:
    """List frame filenames in ``directory``, sorted lexicographically."""
    suffix = extension.lower()
    return sorted(
        p.name for p in directory.iterdir()
        if p.is_file() and p.name.lower().endswith(suffix)
    )
