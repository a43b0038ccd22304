"""Limits for reading untrusted manifests and embedded payloads.

Manifests and container tags come from disk and may have been tampered
with; they are size- and depth-checked before any field is trusted.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

DEFAULT_MAX_MANIFEST_SIZE = 256 * 1024 * 1024  # 256 MB, ~1M frames
DEFAULT_MAX_PAYLOAD_SIZE = 64 * 1024  # one tag value
DEFAULT_MAX_JSON_DEPTH = 16


class SecurityLimits:
    """Configurable limits for persisted records."""

    def __init__(
        self,
        max_manifest_size: int = DEFAULT_MAX_MANIFEST_SIZE,
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
        max_json_depth: int = DEFAULT_MAX_JSON_DEPTH,
    ) -> None:
        self.max_manifest_size = max_manifest_size
        self.max_payload_size = max_payload_size
        self.max_json_depth = max_json_depth


class SecurityError(Exception):
    """Persisted record exceeds a limit or escapes its directory."""
    pass


def check_path_safety(path: Path, base_dir: Path | None = None) -> Path:
    """Resolve a path and verify it stays inside ``base_dir``.

    Raises:
        SecurityError: If path traversal detected
    """
    resolved = path.resolve()

    if base_dir is not None:
        try:
            resolved.relative_to(base_dir.resolve())
        except ValueError:
            raise SecurityError(f"Path traversal detected: {path} is outside {base_dir}")

    return resolved


def safe_read_text(path: Path, max_size: int) -> str:
    """Read a UTF-8 file after checking its size.

    Raises:
        FileNotFoundError: If the file does not exist
        SecurityError: If the file is larger than ``max_size``
    """
    size = path.stat().st_size
    if size > max_size:
        raise SecurityError(f"File too large: {path} ({size} bytes > {max_size})")
    return path.read_text(encoding="utf-8")


def check_json_depth(obj: Any, current_depth: int = 0, max_depth: int = DEFAULT_MAX_JSON_DEPTH) -> int:
    """Check nesting depth of a parsed JSON value.

    Raises:
        SecurityError: If depth exceeds max_depth
    """
    if current_depth > max_depth:
        raise SecurityError(f"JSON depth exceeds maximum: {max_depth}")

    children: list[Any] = []
    if isinstance(obj, dict):
        children = list(obj.values())
    elif isinstance(obj, list):
        children = obj

    depth = current_depth
    for child in children:
        depth = max(depth, check_json_depth(child, current_depth + 1, max_depth))
    return depth


def safe_load_json(text: str, max_size: int, max_depth: int = DEFAULT_MAX_JSON_DEPTH) -> Any:
    """Parse JSON text with size and depth limits.

    Raises:
        SecurityError: If limits are exceeded or the text is not JSON
    """
    if len(text.encode("utf-8")) > max_size:
        raise SecurityError(f"JSON data too large: {len(text)} chars exceeds {max_size} bytes")

    try:
        obj = json.loads(text)
    except ValueError as e:
        # JSONDecodeError, or an integer literal past the int conversion limit
        raise SecurityError(f"Invalid JSON: {e}")

    check_json_depth(obj, max_depth=max_depth)
    return obj
