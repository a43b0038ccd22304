"""Tamper-evident provenance for video frames and media containers."""

from __future__ import annotations

__version__ = "0.1.0"
