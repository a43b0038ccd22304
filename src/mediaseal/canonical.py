"""Canonical messages and content digests.

Design decisions:
- Hash algorithm: SHA-256, lowercase hex, no algorithm agility
- Messages: JSON objects with a fixed key order, no whitespace
- Numbers: integers only, so formatting never depends on locale or floats
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any

CHUNK_SIZE = 8192

# Matched with fullmatch; ASCII only so other Unicode digits are rejected
DIGEST_SHAPE = re.compile(r"[0-9a-fA-F]{64}", re.ASCII)
TIMESTAMP_SHAPE = re.compile(r"[0-9]{10,19}", re.ASCII)


def current_timestamp_ms() -> int:
    """Milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


def sha256_hex(data: bytes) -> str:
    """Compute the SHA-256 digest of raw bytes as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Compute the SHA-256 digest of a file, streamed in chunks.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def is_digest(value: Any) -> bool:
    """Check that a value looks like a SHA-256 hex digest."""
    return isinstance(value, str) and DIGEST_SHAPE.fullmatch(value) is not None


def _require_int(name: str, value: Any) -> int:
    # bool is a subclass of int and would serialize as true/false
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def ordered_json(pairs: list[tuple[str, Any]]) -> str:
    """Serialize key/value pairs as a compact JSON object in the given order."""
    return json.dumps(dict(pairs), separators=(",", ":"), ensure_ascii=False)


def build_message(start_timestamp_ms: int, frame_number: int, frame_hash: str) -> str:
    """Build the signed message for one frame.

    Args:
        start_timestamp_ms: Run start timestamp shared by every frame
        frame_number: 1-based position of the frame
        frame_hash: SHA-256 hex digest of the frame bytes

    Returns:
        ``{"startTimestampMs":..,"frameNumber":..,"frameHashSha256":".."}``
    """
    return ordered_json([
        ("startTimestampMs", _require_int("start_timestamp_ms", start_timestamp_ms)),
        ("frameNumber", _require_int("frame_number", frame_number)),
        ("frameHashSha256", str(frame_hash)),
    ])


def build_file_message(timestamp_ms: int, file_hash: str) -> str:
    """Build the signed message for a whole file (or a manifest)."""
    return ordered_json([
        ("timestampMs", _require_int("timestamp_ms", timestamp_ms)),
        ("fileHashSha256", str(file_hash)),
    ])
