"""Persisted provenance records: frame manifest, certificate, file payload."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mediaseal.canonical import TIMESTAMP_SHAPE, build_file_message, ordered_json, sha256_file
from mediaseal.errors import (
    DigestMismatchError,
    InputMissingError,
    MalformedPayloadError,
    SignatureInvalidError,
)
from mediaseal.provenance.signing import MessageSignature, SignerIdentity, verify_message
from mediaseal.security import SecurityError, SecurityLimits, safe_load_json, safe_read_text

MANIFEST_SCHEMA = "crypto-video-frames-manifest@1"
PAYLOAD_FIELDS = ("timestampMs", "fileHashSha256", "signerAddress", "signature")


def atomic_write_text(path: Path, text: str) -> None:
    """Write a file so readers see either the old content or all of the new.

    The text goes to a temporary file in the same directory which then
    replaces ``path``; on failure the temporary file is removed and ``path``
    is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _require(data: dict[str, Any], key: str, kind: type | tuple[type, ...], where: str) -> Any:
    value = data.get(key)
    if value is None or not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise MalformedPayloadError(
            f"{where}: missing or invalid field '{key}'",
            details={"field": key, "where": where},
        )
    return value


@dataclass(frozen=True)
class FrameRecord:
    """Signed record for a single frame."""

    frame_number: int
    filename: str
    frame_hash: str
    message: str
    message_digest: str
    signature: str
    r: str
    s: str
    v: int

    @classmethod
    def create(
        cls,
        frame_number: int,
        filename: str,
        frame_hash: str,
        message: str,
        signed: MessageSignature,
    ) -> FrameRecord:
        return cls(
            frame_number=frame_number,
            filename=filename,
            frame_hash=frame_hash,
            message=message,
            message_digest=signed.message_digest,
            signature=signed.signature,
            r=signed.r,
            s=signed.s,
            v=signed.v,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "frameNumber": self.frame_number,
            "filename": self.filename,
            "frameHashSha256": self.frame_hash,
            "message": self.message,
            "messageKeccak256": self.message_digest,
            "signature": self.signature,
            "r": self.r,
            "s": self.s,
            "v": self.v,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FrameRecord:
        """Create from dictionary.

        Raises:
            MalformedPayloadError: If a required field is missing or mistyped
        """
        if not isinstance(data, dict):
            raise MalformedPayloadError("Frame record must be an object")
        where = f"frame {data.get('frameNumber', '?')}"
        return cls(
            frame_number=_require(data, "frameNumber", int, where),
            filename=_require(data, "filename", str, where),
            frame_hash=_require(data, "frameHashSha256", str, where),
            message=_require(data, "message", str, where),
            message_digest=data.get("messageKeccak256", ""),
            signature=_require(data, "signature", str, where),
            r=data.get("r", ""),
            s=data.get("s", ""),
            v=data.get("v", 0),
        )


@dataclass
class FrameManifest:
    """Ordered record of every signed frame of one run."""

    input_video: str
    start_timestamp_ms: int
    signer: SignerIdentity
    frames: list[FrameRecord] = field(default_factory=list)
    input_dir: str = "frames"
    output_dir: str = "."
    schema: str = MANIFEST_SCHEMA

    @property
    def filenames(self) -> list[str]:
        return [f.filename for f in self.frames]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "schema": self.schema,
            "inputVideo": self.input_video,
            "inputDir": self.input_dir,
            "outputDir": self.output_dir,
            "startTimestampMs": self.start_timestamp_ms,
            "signer": self.signer.to_dict(),
            "frames": [f.to_dict() for f in self.frames],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def write_json(self, path: Path) -> None:
        """Commit the manifest to disk atomically."""
        atomic_write_text(path, self.to_json())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FrameManifest:
        """Create from dictionary.

        Raises:
            MalformedPayloadError: If the structure or schema is wrong
        """
        if not isinstance(data, dict):
            raise MalformedPayloadError("Manifest must be a JSON object")
        schema = data.get("schema")
        if schema != MANIFEST_SCHEMA:
            raise MalformedPayloadError(
                f"Unsupported manifest schema: {schema!r}",
                details={"schema": schema, "supported": MANIFEST_SCHEMA},
            )
        signer = _require(data, "signer", dict, "manifest")
        _require(signer, "address", str, "manifest signer")
        frames = _require(data, "frames", list, "manifest")
        return cls(
            input_video=data.get("inputVideo", ""),
            start_timestamp_ms=_require(data, "startTimestampMs", int, "manifest"),
            signer=SignerIdentity.from_dict(signer),
            frames=[FrameRecord.from_dict(f) for f in frames],
            input_dir=data.get("inputDir", "frames"),
            output_dir=data.get("outputDir", "."),
            schema=schema,
        )

    @classmethod
    def from_json(cls, path: Path, limits: SecurityLimits | None = None) -> FrameManifest:
        """Load a manifest from disk.

        Raises:
            InputMissingError: If the file does not exist
            MalformedPayloadError: If it is not a valid manifest
        """
        limits = limits or SecurityLimits()
        try:
            text = safe_read_text(path, limits.max_manifest_size)
            data = safe_load_json(text, limits.max_manifest_size, limits.max_json_depth)
        except FileNotFoundError:
            raise InputMissingError(f"Manifest not found: {path}", details={"path": str(path)})
        except (SecurityError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"Unreadable manifest {path}: {e}", details={"path": str(path)})
        return cls.from_dict(data)


@dataclass(frozen=True)
class HashCertificate:
    """Detached plain-text certificate: name, timestamp, digest, signature."""

    input_name: str
    timestamp_ms: int
    digest: str
    signature: str | None = None

    def to_text(self) -> str:
        lines = [self.input_name, str(self.timestamp_ms), self.digest]
        if self.signature:
            lines.append(self.signature)
        return "\n".join(lines) + "\n"

    def write(self, path: Path) -> None:
        atomic_write_text(path, self.to_text())

    @classmethod
    def from_text(cls, text: str) -> HashCertificate:
        """Parse certificate lines.

        Raises:
            MalformedPayloadError: If lines are missing or the timestamp is malformed
        """
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if len(lines) not in (3, 4):
            raise MalformedPayloadError(f"Certificate must have 3 or 4 lines, got {len(lines)}")
        if not TIMESTAMP_SHAPE.fullmatch(lines[1]):
            raise MalformedPayloadError(f"Certificate timestamp is not numeric: {lines[1]!r}")
        return cls(
            input_name=lines[0],
            timestamp_ms=int(lines[1]),
            digest=lines[2].lower(),
            signature=lines[3] if len(lines) == 4 else None,
        )

    @classmethod
    def read(cls, path: Path) -> HashCertificate:
        try:
            return cls.from_text(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise InputMissingError(f"Certificate not found: {path}", details={"path": str(path)})

    def verify(self, target_path: Path, address: str, public_key: str | None = None) -> bool:
        """Check the certificate against the raw bytes of ``target_path``.

        Returns:
            True if a signature was checked, False for a digest-only certificate

        Raises:
            InputMissingError: If the target does not exist
            DigestMismatchError: If the target bytes changed
            SignatureInvalidError: If the signature is not ``address``'s
        """
        try:
            actual = sha256_file(target_path)
        except OSError:
            raise InputMissingError(f"File not found: {target_path}", details={"path": str(target_path)})
        if actual != self.digest:
            raise DigestMismatchError(
                f"Hash mismatch for {target_path.name}",
                details={"expected": self.digest, "actual": actual},
            )
        if not self.signature:
            return False
        message = build_file_message(self.timestamp_ms, self.digest)
        sig = verify_message(address, message, self.signature, public_key)
        if not sig.valid:
            raise SignatureInvalidError(
                "Certificate signature does not match signer",
                details={"recovered_address": sig.recovered_address},
            )
        return True


@dataclass(frozen=True)
class WholeFilePayload:
    """Verification payload embedded in a container tag."""

    timestamp_ms: int
    file_hash: str
    signer_address: str
    signature: str

    def to_json(self) -> str:
        return ordered_json([
            ("timestampMs", self.timestamp_ms),
            ("fileHashSha256", self.file_hash),
            ("signerAddress", self.signer_address),
            ("signature", self.signature),
        ])


def load_payload_fields(text: str | None, limits: SecurityLimits | None = None) -> dict[str, Any]:
    """Parse an embedded payload and check required fields are present.

    Field shapes are deliberately not checked here.

    Raises:
        MalformedPayloadError: If the payload is absent, not JSON, or incomplete
    """
    limits = limits or SecurityLimits()
    if text is None or not text.strip():
        raise MalformedPayloadError("Missing embedded payload")
    try:
        data = safe_load_json(text.strip(), limits.max_payload_size, limits.max_json_depth)
    except SecurityError as e:
        raise MalformedPayloadError(f"Invalid embedded payload: {e}")
    if not isinstance(data, dict):
        raise MalformedPayloadError("Embedded payload must be a JSON object")
    missing = [k for k in PAYLOAD_FIELDS if data.get(k) in (None, "")]
    if missing:
        raise MalformedPayloadError(
            f"Embedded payload missing fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    return data
