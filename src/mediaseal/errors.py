"""Error kinds for signing and verification runs.

Every kind is fatal to the run that detects it. Orchestrators surface the
first failure and stop; there is no local recovery or retry.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable, machine-readable failure kinds."""

    INPUT_MISSING = "INPUT_MISSING"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    EMPTY_FRAME_SET = "EMPTY_FRAME_SET"
    FRAME_SET_MISMATCH = "FRAME_SET_MISMATCH"
    DIGEST_MISMATCH = "DIGEST_MISMATCH"
    MESSAGE_MISMATCH = "MESSAGE_MISMATCH"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    CANONICALIZATION_FAILED = "CANONICALIZATION_FAILED"
    TIMESTAMP_NOT_COMMITTED = "TIMESTAMP_NOT_COMMITTED"
    SIGNING_KEY_INVALID = "SIGNING_KEY_INVALID"


class ProvenanceError(Exception):
    """Base error carrying a kind, a message and audit details."""

    kind: ErrorKind = ErrorKind.INPUT_MISSING

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class InputMissingError(ProvenanceError):
    """Input media, manifest or frame file does not exist."""

    kind = ErrorKind.INPUT_MISSING


class ExtractionFailedError(ProvenanceError):
    """Frame extraction tool exited non-zero or timed out."""

    kind = ErrorKind.EXTRACTION_FAILED


class EmptyFrameSetError(ProvenanceError):
    """No frames to sign or verify."""

    kind = ErrorKind.EMPTY_FRAME_SET


class FrameSetMismatchError(ProvenanceError):
    """Frame count, name or order differs from the manifest."""

    kind = ErrorKind.FRAME_SET_MISMATCH


class DigestMismatchError(ProvenanceError):
    """Recomputed content digest differs from the stored one."""

    kind = ErrorKind.DIGEST_MISMATCH


class MessageMismatchError(ProvenanceError):
    """Rebuilt message differs from the stored one."""

    kind = ErrorKind.MESSAGE_MISMATCH


class SignatureInvalidError(ProvenanceError):
    """Recovered address and/or public key does not match the signer."""

    kind = ErrorKind.SIGNATURE_INVALID


class MalformedPayloadError(ProvenanceError):
    """Persisted record is missing, unparseable or badly shaped."""

    kind = ErrorKind.MALFORMED_PAYLOAD


class CanonicalizationFailedError(ProvenanceError):
    """Tag tool could not produce a stream-preserving canonical container."""

    kind = ErrorKind.CANONICALIZATION_FAILED


class TimestampNotCommittedError(ProvenanceError):
    """A signature still verified after the timestamp was perturbed."""

    kind = ErrorKind.TIMESTAMP_NOT_COMMITTED


class SigningError(ProvenanceError):
    """Signing key missing or unusable."""

    kind = ErrorKind.SIGNING_KEY_INVALID
