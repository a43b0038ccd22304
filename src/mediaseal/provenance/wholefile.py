"""Whole-file pipeline: embed a signed payload in the container's own tags.

The payload contains the container's hash, so the hash cannot cover the
final file. It covers a canonical intermediate instead: the same streams
with every tag stripped and only the timestamp tag set. Verification
rebuilds that intermediate from the delivered file and compares digests.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mediaseal.canonical import (
    TIMESTAMP_SHAPE,
    build_file_message,
    current_timestamp_ms,
    is_digest,
    sha256_file,
)
from mediaseal.errors import (
    CanonicalizationFailedError,
    DigestMismatchError,
    InputMissingError,
    MalformedPayloadError,
    MessageMismatchError,
    ProvenanceError,
    SignatureInvalidError,
)
from mediaseal.provenance.manifest import HashCertificate, WholeFilePayload, load_payload_fields
from mediaseal.provenance.signing import Signer, recover_address
from mediaseal.security import SecurityLimits
from mediaseal.tools.base import TagTool, ToolError

logger = logging.getLogger(__name__)

ADDRESS_SHAPE = re.compile(r"0x[0-9a-fA-F]{40}", re.ASCII)
SIGNATURE_SHAPE = re.compile(r"0x[0-9a-fA-F]{130}", re.ASCII)


class Canonicalizer:
    """Reduces a container to the exact bytes that get hashed."""

    def __init__(self, tag_tool: TagTool, timestamp_tag: str = "comment") -> None:
        self.tag_tool = tag_tool
        self.timestamp_tag = timestamp_tag

    def canonicalize(self, input_path: Path, output_path: Path, timestamp_ms: int) -> str:
        """Write the canonical form of ``input_path`` and return its digest.

        Raises:
            CanonicalizationFailedError: If the tag tool fails
        """
        try:
            self.tag_tool.write_tags(
                input_path,
                output_path,
                {self.timestamp_tag: str(timestamp_ms)},
                clear_existing=True,
            )
        except ToolError as e:
            raise CanonicalizationFailedError(
                f"Could not canonicalize {input_path.name}: {e}",
                details={"input": str(input_path), "tool": self.tag_tool.name},
            ) from e
        return sha256_file(output_path)


def _work_dir(near: Path) -> tempfile.TemporaryDirectory:
    # Same filesystem as the target so os.replace stays atomic
    return tempfile.TemporaryDirectory(prefix=".mediaseal-", dir=near.parent)


@dataclass
class SignedFile:
    """Outcome of signing one container."""

    output_path: Path
    payload: WholeFilePayload
    message: str

    def certificate(self, input_name: str) -> HashCertificate:
        return HashCertificate(
            input_name=input_name,
            timestamp_ms=self.payload.timestamp_ms,
            digest=self.payload.file_hash,
            signature=self.payload.signature,
        )


class WholeFileSigner:
    """Canonicalizes, hashes, signs and tags one container."""

    def __init__(
        self,
        signer: Signer,
        tag_tool: TagTool,
        timestamp_tag: str = "comment",
        payload_tag: str = "description",
    ) -> None:
        self.signer = signer
        self.tag_tool = tag_tool
        self.payload_tag = payload_tag
        self.canonicalizer = Canonicalizer(tag_tool, timestamp_tag)

    def sign_file(self, input_path: Path, output_path: Path, timestamp_ms: int | None = None) -> SignedFile:
        """Produce ``output_path``: the canonical container plus the payload tag.

        Args:
            input_path: Source container
            output_path: Delivered container (replaced atomically)
            timestamp_ms: Capture timestamp; defaults to now

        Raises:
            InputMissingError: If the input does not exist
            CanonicalizationFailedError: If either tag rewrite fails
        """
        if not input_path.is_file():
            raise InputMissingError(f"Input not found: {input_path}", details={"path": str(input_path)})
        if timestamp_ms is None:
            timestamp_ms = current_timestamp_ms()

        output_path.parent.mkdir(parents=True, exist_ok=True)
        suffix = input_path.suffix
        with _work_dir(output_path) as work:
            canonical = Path(work) / f"canonical{suffix}"
            file_hash = self.canonicalizer.canonicalize(input_path, canonical, timestamp_ms)
            logger.info("Canonical %s sha256=%s", input_path.name, file_hash)

            message = build_file_message(timestamp_ms, file_hash)
            signed = self.signer.sign(message)
            payload = WholeFilePayload(
                timestamp_ms=timestamp_ms,
                file_hash=file_hash,
                signer_address=self.signer.address,
                signature=signed.signature,
            )

            tagged = Path(work) / f"signed{suffix}"
            try:
                self.tag_tool.write_tags(canonical, tagged, {self.payload_tag: payload.to_json()},
                                         clear_existing=False)
            except ToolError as e:
                raise CanonicalizationFailedError(
                    f"Could not embed payload into {output_path.name}: {e}",
                    details={"output": str(output_path)},
                ) from e
            os.replace(tagged, output_path)

        logger.info("Wrote verifiable container %s", output_path)
        return SignedFile(output_path=output_path, payload=payload, message=message)


@dataclass
class FileVerificationResult:
    """Result of verifying one container."""

    valid: bool = False
    steps: list[str] = field(default_factory=list)
    payload: WholeFilePayload | None = None
    actual_hash: str | None = None
    error: ProvenanceError | None = None

    def reject(self, error: ProvenanceError) -> FileVerificationResult:
        self.valid = False
        self.error = error
        return self

    def raise_for_failure(self) -> None:
        """Raise the recorded failure, if any."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "valid": self.valid,
            "steps": self.steps,
            "payload": {
                "timestampMs": self.payload.timestamp_ms,
                "fileHashSha256": self.payload.file_hash,
                "signerAddress": self.payload.signer_address,
                "signature": self.payload.signature,
            } if self.payload else None,
            "actual_hash": self.actual_hash,
            "error": self.error.to_dict() if self.error else None,
        }


def check_payload_shape(data: dict[str, Any]) -> WholeFilePayload:
    """Validate payload field shapes without touching any cryptography.

    Raises:
        MalformedPayloadError: On a malformed timestamp, digest, address or signature
    """
    raw_ts = data["timestampMs"]
    ts_text = "" if isinstance(raw_ts, bool) else str(raw_ts)
    if not TIMESTAMP_SHAPE.fullmatch(ts_text):
        raise MalformedPayloadError("Malformed timestamp", details={"timestampMs": raw_ts})

    file_hash = str(data["fileHashSha256"])
    if not is_digest(file_hash):
        raise MalformedPayloadError("Malformed file hash", details={"fileHashSha256": file_hash})

    address = str(data["signerAddress"])
    if not ADDRESS_SHAPE.fullmatch(address):
        raise MalformedPayloadError("Malformed signer address", details={"signerAddress": address})

    signature = str(data["signature"])
    if not SIGNATURE_SHAPE.fullmatch(signature):
        raise MalformedPayloadError("Malformed signature", details={"signature": signature})

    return WholeFilePayload(
        timestamp_ms=int(ts_text),
        file_hash=file_hash,
        signer_address=address,
        signature=signature,
    )


class WholeFileVerifier:
    """Checks a delivered container against its embedded payload."""

    def __init__(
        self,
        tag_tool: TagTool,
        timestamp_tag: str = "comment",
        payload_tag: str = "description",
        limits: SecurityLimits | None = None,
    ) -> None:
        self.tag_tool = tag_tool
        self.payload_tag = payload_tag.lower()
        self.limits = limits or SecurityLimits()
        self.canonicalizer = Canonicalizer(tag_tool, timestamp_tag)

    def read_payload(self, container_path: Path) -> dict[str, Any]:
        """Read the payload tag and check the required fields are present."""
        try:
            tags = self.tag_tool.read_tags(container_path)
        except ToolError as e:
            raise MalformedPayloadError(f"Could not read tags of {container_path.name}: {e}") from e
        return load_payload_fields(tags.get(self.payload_tag), self.limits)

    def verify(self, container_path: Path, expected_timestamp: int | str | None = None) -> FileVerificationResult:
        """Verify a container.

        Steps, in order: read payload, check shapes, compare the expected
        timestamp (if given), recompute the canonical hash, recover the
        signer. The first failure rejects the container.

        Args:
            container_path: Delivered container
            expected_timestamp: Timestamp the caller expects the payload to carry

        Returns:
            FileVerificationResult
        """
        result = FileVerificationResult()
        if not container_path.is_file():
            return result.reject(InputMissingError(
                f"Container not found: {container_path}", details={"path": str(container_path)}
            ))

        try:
            fields = self.read_payload(container_path)
            result.steps.append("read_payload")

            payload = check_payload_shape(fields)
            result.payload = payload
            result.steps.append("check_shape")

            if expected_timestamp is not None:
                if str(expected_timestamp).strip() != str(payload.timestamp_ms):
                    raise MessageMismatchError(
                        f"Payload timestamp {payload.timestamp_ms} differs from expected {expected_timestamp}",
                        details={"expected": str(expected_timestamp), "actual": payload.timestamp_ms},
                    )
                result.steps.append("check_expected_timestamp")

            with tempfile.TemporaryDirectory(prefix="mediaseal-") as work:
                canonical = Path(work) / f"canonical{container_path.suffix}"
                actual = self.canonicalizer.canonicalize(container_path, canonical, payload.timestamp_ms)
            result.actual_hash = actual
            logger.info("Expected hash: %s", payload.file_hash)
            logger.info("Actual   hash: %s", actual)
            if actual != payload.file_hash.lower():
                raise DigestMismatchError(
                    "Hash mismatch - file was modified",
                    details={"expected": payload.file_hash, "actual": actual},
                )
            result.steps.append("recompute_hash")

            message = build_file_message(payload.timestamp_ms, payload.file_hash)
            try:
                recovered = recover_address(message, payload.signature)
            except ValueError as e:
                raise SignatureInvalidError(f"Signature could not be recovered: {e}") from e
            if recovered.lower() != payload.signer_address.lower():
                raise SignatureInvalidError(
                    "Signature does not match signer address",
                    details={"expected": payload.signer_address, "recovered": recovered},
                )
            result.steps.append("verify_signature")
        except ProvenanceError as e:
            return result.reject(e)

        result.valid = True
        return result
