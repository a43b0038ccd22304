"""Shared fixtures: a fixed signing key and in-process media tools."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mediaseal.provenance.signing import Signer
from mediaseal.tools.base import FrameExtractor, TagTool, ToolError

# Well-known test key, never used for anything real
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"

FAKE_MAGIC = b"FAKEMEDIA\n"


def read_fake_container(path: Path) -> tuple[dict[str, str], bytes]:
    """Split a fake container into (tags, stream bytes).

    Files without the magic header are treated as untagged streams.
    """
    data = path.read_bytes()
    if not data.startswith(FAKE_MAGIC):
        return {}, data
    header, _, streams = data[len(FAKE_MAGIC):].partition(b"\n")
    return json.loads(header.decode("utf-8")), streams


def write_fake_container(path: Path, tags: dict[str, str], streams: bytes) -> None:
    header = json.dumps(tags, sort_keys=True, separators=(",", ":")).encode("utf-8")
    path.write_bytes(FAKE_MAGIC + header + b"\n" + streams)


class FakeTagTool(TagTool):
    """Deterministic tag rewriter: streams are copied byte-for-byte."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.writes: list[dict[str, str]] = []

    @property
    def name(self) -> str:
        return "fake-tags"

    def read_tags(self, path: Path) -> dict[str, str]:
        if not path.is_file():
            raise ToolError(f"No such container: {path}")
        tags, _ = read_fake_container(path)
        return {k.lower(): v for k, v in tags.items()}

    def write_tags(self, input_path: Path, output_path: Path, tags: dict[str, str],
                   clear_existing: bool) -> None:
        if self.fail:
            raise ToolError("fake tag tool failure")
        existing, streams = read_fake_container(input_path)
        merged = {} if clear_existing else dict(existing)
        merged.update({k.lower(): v for k, v in tags.items()})
        self.writes.append(dict(tags))
        write_fake_container(output_path, merged, streams)


class FakeFrameExtractor(FrameExtractor):
    """Splits the input on ``|`` and writes each part as one frame file."""

    def __init__(self, fail: bool = False, extension: str = ".png") -> None:
        self.fail = fail
        self.extension = extension

    @property
    def name(self) -> str:
        return "fake-frames"

    def extract(self, input_path: Path, output_dir: Path) -> None:
        if self.fail:
            raise ToolError("fake extractor failure")
        _, streams = read_fake_container(input_path)
        for number, chunk in enumerate(c for c in streams.split(b"|") if c):
            (output_dir / f"frame_{number + 1:06d}{self.extension}").write_bytes(chunk)


@pytest.fixture
def signer() -> Signer:
    return Signer.from_hex(TEST_PRIVATE_KEY)


@pytest.fixture
def tag_tool() -> FakeTagTool:
    return FakeTagTool()


@pytest.fixture
def extractor() -> FakeFrameExtractor:
    return FakeFrameExtractor()


@pytest.fixture
def frames_dir(tmp_path: Path) -> Path:
    """Directory with three small frame files."""
    directory = tmp_path / "frames"
    directory.mkdir()
    for number, content in enumerate([b"frame-one", b"frame-two", b"frame-three"], start=1):
        (directory / f"frame_{number:06d}.png").write_bytes(content)
    return directory


@pytest.fixture
def video_file(tmp_path: Path) -> Path:
    """Raw input 'video' with three frames for the fake extractor."""
    path = tmp_path / "input.mp4"
    path.write_bytes(b"frame-one|frame-two|frame-three")
    return path


@pytest.fixture
def private_key_hex() -> str:
    return TEST_PRIVATE_KEY


@pytest.fixture
def signer_address() -> str:
    return TEST_ADDRESS


@pytest.fixture
def failing_extractor() -> FakeFrameExtractor:
    return FakeFrameExtractor(fail=True)


@pytest.fixture
def failing_tag_tool() -> FakeTagTool:
    return FakeTagTool(fail=True)
