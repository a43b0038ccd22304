"""
Configuration for signing and verification runs.

Sources, later ones override earlier ones:
- Built-in defaults
- YAML file (``--config`` or MEDIASEAL_CONFIG)
- Environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from mediaseal.errors import SigningError
from mediaseal.provenance.signing import Signer
from mediaseal.security import SecurityLimits


def _default_workers() -> int:
    return min(8, os.cpu_count() or 1)


@dataclass
class Settings:
    """
    Runtime settings.

    The private key is optional here; only signing commands require it.
    """

    # Signing key (hex), or a file holding hex text or a PEM key
    private_key: str | None = None
    private_key_file: str | None = None

    # External tools
    ffmpeg_path: str = "ffmpeg"
    tool_timeout: float = 600.0

    # Frame pipeline
    workers: int = 0
    frame_pattern: str = "frame_%06d.png"
    frame_extension: str = ".png"
    output_dir: str = "output"

    # Whole-file pipeline
    timestamp_tag: str = "comment"
    payload_tag: str = "description"

    # Limits for persisted records
    max_manifest_size: int = SecurityLimits().max_manifest_size
    max_payload_size: int = SecurityLimits().max_payload_size

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.workers == 0:
            self.workers = _default_workers()
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.tool_timeout <= 0:
            raise ValueError(f"tool_timeout must be > 0, got {self.tool_timeout}")
        if not self.frame_extension.startswith("."):
            raise ValueError(f"frame_extension must start with '.', got {self.frame_extension!r}")
        if not self.frame_pattern.endswith(self.frame_extension):
            raise ValueError(
                f"frame_pattern {self.frame_pattern!r} does not produce {self.frame_extension} files"
            )
        if not self.timestamp_tag or not self.payload_tag:
            raise ValueError("timestamp_tag and payload_tag must be non-empty")

    @property
    def limits(self) -> SecurityLimits:
        return SecurityLimits(
            max_manifest_size=self.max_manifest_size,
            max_payload_size=self.max_payload_size,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Create from dictionary (e.g., YAML); unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Path) -> Settings:
        """Load settings from a YAML file."""
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Invalid settings format in {path}")
        return cls.from_dict(data)

    def with_env(self, environ: dict[str, str] | None = None) -> Settings:
        """
        Return a copy with environment overrides applied.

        Environment variables:
            MEDIASEAL_PRIVATE_KEY: Hex private key
            MEDIASEAL_PRIVATE_KEY_FILE: Path to hex or PEM key file
            MEDIASEAL_FFMPEG: ffmpeg binary
            MEDIASEAL_TOOL_TIMEOUT: Hard timeout for tool calls (seconds)
            MEDIASEAL_WORKERS: Frame worker pool size
            MEDIASEAL_OUTPUT_DIR: Default output directory
        """
        env = os.environ if environ is None else environ
        data = {f.name: getattr(self, f.name) for f in fields(self)}

        overrides = {
            "MEDIASEAL_PRIVATE_KEY": ("private_key", str),
            "MEDIASEAL_PRIVATE_KEY_FILE": ("private_key_file", str),
            "MEDIASEAL_FFMPEG": ("ffmpeg_path", str),
            "MEDIASEAL_TOOL_TIMEOUT": ("tool_timeout", float),
            "MEDIASEAL_WORKERS": ("workers", int),
            "MEDIASEAL_OUTPUT_DIR": ("output_dir", str),
        }
        for var, (name, convert) in overrides.items():
            raw = env.get(var)
            if raw:
                try:
                    data[name] = convert(raw)
                except ValueError:
                    raise ValueError(f"Invalid value for {var}: {raw!r}")
        return Settings(**data)

    @classmethod
    def load(cls, config_path: Path | None = None, environ: dict[str, str] | None = None) -> Settings:
        """Load defaults, then the YAML file, then environment overrides."""
        env = os.environ if environ is None else environ
        if config_path is None and env.get("MEDIASEAL_CONFIG"):
            config_path = Path(env["MEDIASEAL_CONFIG"])
        base = cls.from_yaml(config_path) if config_path else cls()
        return base.with_env(env)

    def load_signer(self) -> Signer:
        """Build the signer for this run.

        Raises:
            SigningError: If no key is configured or the key is invalid
        """
        if self.private_key:
            return Signer.from_hex(self.private_key)
        if self.private_key_file:
            return Signer.from_file(Path(self.private_key_file))
        raise SigningError(
            "No signing key configured. Set MEDIASEAL_PRIVATE_KEY or MEDIASEAL_PRIVATE_KEY_FILE."
        )
