"""Frame pipeline: sign every extracted frame, then re-verify the manifest.

Signing binds each frame's SHA-256 digest and 1-based position to one run
start timestamp. Verification walks a fixed state machine and stops at the
first failure:

    LOAD_MANIFEST -> CHECK_FRAME_SET -> CHECK_FRAMES
        -> CHECK_TIMESTAMP_COMMITMENT -> CHECK_CERTIFICATE -> ACCEPTED

Any failure moves the run to REJECTED.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from mediaseal.canonical import build_file_message, build_message, sha256_file
from mediaseal.errors import (
    DigestMismatchError,
    EmptyFrameSetError,
    ExtractionFailedError,
    FrameSetMismatchError,
    InputMissingError,
    MalformedPayloadError,
    MessageMismatchError,
    ProvenanceError,
    SignatureInvalidError,
    TimestampNotCommittedError,
)
from mediaseal.provenance.manifest import FrameManifest, FrameRecord, HashCertificate
from mediaseal.provenance.signing import Signer, verify_message
from mediaseal.security import SecurityError, SecurityLimits, check_path_safety
from mediaseal.tools.base import FrameExtractor, ToolError, list_frames

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_ordered(func: Callable[[T], R], items: Sequence[T], workers: int) -> list[R]:
    """Apply ``func`` to every item on a bounded pool, results in input order.

    The first exception (in input order) cancels the pending work and is
    re-raised.
    """
    if workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(func, item) for item in items]
        results: list[R] = []
        try:
            for future in futures:
                results.append(future.result())
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return results


def _frame_path(frames_dir: Path, filename: str) -> Path:
    try:
        return check_path_safety(frames_dir / filename, frames_dir)
    except SecurityError as e:
        raise FrameSetMismatchError(str(e), details={"filename": filename})


def _digest_frame(frames_dir: Path, filename: str) -> str:
    path = _frame_path(frames_dir, filename)
    try:
        return sha256_file(path)
    except OSError as e:
        raise InputMissingError(f"Frame not readable: {filename} ({e})", details={"filename": filename})


def extract_frames(extractor: FrameExtractor, input_path: Path, frames_dir: Path,
                   extension: str = ".png") -> list[str]:
    """Extract ``input_path`` into a fresh ``frames_dir`` and list the result.

    Raises:
        InputMissingError: If the video does not exist
        ExtractionFailedError: If the directory already holds frames or the tool fails
        EmptyFrameSetError: If extraction produced no frames
    """
    if not input_path.is_file():
        raise InputMissingError(f"Input video not found: {input_path}", details={"path": str(input_path)})
    frames_dir.mkdir(parents=True, exist_ok=True)
    if list_frames(frames_dir, extension):
        raise ExtractionFailedError(
            f"Frame directory is not empty: {frames_dir}",
            details={"dir": str(frames_dir)},
        )

    logger.info("Extracting frames from %s with %s", input_path.name, extractor.name)
    try:
        extractor.extract(input_path, frames_dir)
    except ToolError as e:
        raise ExtractionFailedError(
            f"Frame extraction failed for {input_path.name}: {e}",
            details={"input": str(input_path), "tool": extractor.name},
        ) from e

    filenames = list_frames(frames_dir, extension)
    if not filenames:
        raise EmptyFrameSetError(f"No frames extracted from {input_path.name}", details={"dir": str(frames_dir)})
    logger.info("Extracted %d frames", len(filenames))
    return filenames


class FrameSigner:
    """Signs an ordered frame set with one shared start timestamp."""

    def __init__(self, signer: Signer, workers: int = 1) -> None:
        self.signer = signer
        self.workers = workers

    def sign_frame(self, frames_dir: Path, frame_number: int, filename: str,
                   start_timestamp_ms: int) -> FrameRecord:
        """Digest, build the message for, and sign one frame."""
        frame_hash = _digest_frame(frames_dir, filename)
        message = build_message(start_timestamp_ms, frame_number, frame_hash)
        signed = self.signer.sign(message)
        logger.debug("Signed frame %d (%s): %s", frame_number, filename, frame_hash)
        return FrameRecord.create(frame_number, filename, frame_hash, message, signed)

    def sign_frames(
        self,
        frames_dir: Path,
        start_timestamp_ms: int,
        input_video: str,
        filenames: list[str] | None = None,
        extension: str = ".png",
        output_dir: str = ".",
    ) -> FrameManifest:
        """Sign every frame in ``frames_dir`` and build the manifest.

        Args:
            frames_dir: Directory holding the extracted frames
            start_timestamp_ms: Run start, fixed before the first frame
            input_video: Name of the source video recorded in the manifest
            filenames: Frames to sign; defaults to the sorted listing
            extension: Frame file extension used for the listing
            output_dir: Output directory name recorded in the manifest

        Returns:
            FrameManifest with contiguous frame numbers from 1

        Raises:
            EmptyFrameSetError: If there are no frames
            ProvenanceError: If any frame fails; no manifest is produced
        """
        if filenames is None:
            filenames = list_frames(frames_dir, extension)
        if not filenames:
            raise EmptyFrameSetError(f"No frames found in {frames_dir}", details={"dir": str(frames_dir)})

        logger.info("Signing %d frames as %s (start %d)", len(filenames), self.signer.address,
                    start_timestamp_ms)
        jobs = list(enumerate(filenames, start=1))
        records = run_ordered(
            lambda job: self.sign_frame(frames_dir, job[0], job[1], start_timestamp_ms),
            jobs,
            self.workers,
        )

        return FrameManifest(
            input_video=input_video,
            start_timestamp_ms=start_timestamp_ms,
            signer=self.signer.identity,
            frames=records,
            input_dir=frames_dir.name,
            output_dir=output_dir,
        )

    def certify(self, manifest_path: Path, manifest: FrameManifest) -> HashCertificate:
        """Hash the written manifest file and sign ``{timestamp, digest}``."""
        manifest_hash = sha256_file(manifest_path)
        message = build_file_message(manifest.start_timestamp_ms, manifest_hash)
        signed = self.signer.sign(message)
        logger.info("Manifest %s sha256=%s", manifest_path.name, manifest_hash)
        return HashCertificate(
            input_name=manifest.input_video,
            timestamp_ms=manifest.start_timestamp_ms,
            digest=manifest_hash,
            signature=signed.signature,
        )


class VerificationState(str, Enum):
    """States of the frame verification run."""

    LOAD_MANIFEST = "LOAD_MANIFEST"
    CHECK_FRAME_SET = "CHECK_FRAME_SET"
    CHECK_FRAMES = "CHECK_FRAMES"
    CHECK_TIMESTAMP_COMMITMENT = "CHECK_TIMESTAMP_COMMITMENT"
    CHECK_CERTIFICATE = "CHECK_CERTIFICATE"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class FrameCheck:
    """Outcome of re-deriving one frame record."""

    index: int
    filename: str
    error: ProvenanceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TimestampCommitmentResult:
    """Outcome of verifying every frame under a perturbed timestamp.

    ``spurious`` lists frames whose signature still verified, which means
    the timestamp was not actually committed.
    """

    offset_ms: int
    frames_checked: int = 0
    spurious: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.frames_checked > 0 and not self.spurious

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "offset_ms": self.offset_ms,
            "frames_checked": self.frames_checked,
            "spurious": self.spurious,
            "committed": self.committed,
        }


@dataclass
class FrameVerificationResult:
    """Result of a frame verification run."""

    valid: bool = False
    state: VerificationState = VerificationState.LOAD_MANIFEST
    failed_state: VerificationState | None = None
    manifest: FrameManifest | None = None
    frames_checked: int = 0
    frames_valid: int = 0
    frame_failures: list[FrameCheck] = field(default_factory=list)
    commitment: TimestampCommitmentResult | None = None
    certificate_checked: bool = False
    error: ProvenanceError | None = None

    def reject(self, error: ProvenanceError) -> FrameVerificationResult:
        self.failed_state = self.state
        self.state = VerificationState.REJECTED
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
            "state": self.state.value,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "frames_checked": self.frames_checked,
            "frames_valid": self.frames_valid,
            "frame_failures": [
                {"index": c.index, "filename": c.filename, "error": c.error.to_dict() if c.error else None}
                for c in self.frame_failures
            ],
            "commitment": self.commitment.to_dict() if self.commitment else None,
            "certificate_checked": self.certificate_checked,
            "error": self.error.to_dict() if self.error else None,
        }


class FrameVerifier:
    """Re-derives every frame record of a manifest from the frames on disk."""

    def __init__(
        self,
        workers: int = 1,
        limits: SecurityLimits | None = None,
        extension: str = ".png",
        negative_offset_ms: int = 1,
    ) -> None:
        self.workers = workers
        self.limits = limits or SecurityLimits()
        self.extension = extension
        self.negative_offset_ms = negative_offset_ms

    def verify(
        self,
        manifest_path: Path,
        frames_dir: Path | None = None,
        certificate_path: Path | None = None,
    ) -> FrameVerificationResult:
        """Verify a manifest file against its frames.

        Args:
            manifest_path: Path to the manifest JSON
            frames_dir: Frame directory (default: the manifest's ``inputDir``
                next to the manifest)
            certificate_path: Detached certificate to check as a final step

        Returns:
            FrameVerificationResult; ``valid`` only if every step passed
        """
        result = FrameVerificationResult()
        try:
            manifest = FrameManifest.from_json(manifest_path, self.limits)
        except ProvenanceError as e:
            return result.reject(e)
        result.manifest = manifest

        if frames_dir is None:
            try:
                frames_dir = check_path_safety(manifest_path.parent / manifest.input_dir, manifest_path.parent)
            except SecurityError as e:
                return result.reject(MalformedPayloadError(
                    f"Manifest inputDir escapes the manifest directory: {manifest.input_dir}",
                    details={"inputDir": manifest.input_dir, "reason": str(e)},
                ))
        self.verify_manifest(manifest, frames_dir, result)
        if not result.valid or certificate_path is None:
            return result

        result.state = VerificationState.CHECK_CERTIFICATE
        result.valid = False
        try:
            self.verify_certificate(HashCertificate.read(certificate_path), manifest_path, manifest)
        except ProvenanceError as e:
            return result.reject(e)
        result.certificate_checked = True
        result.state = VerificationState.ACCEPTED
        result.valid = True
        return result

    def verify_manifest(
        self,
        manifest: FrameManifest,
        frames_dir: Path,
        result: FrameVerificationResult | None = None,
    ) -> FrameVerificationResult:
        """Run frame-set, per-frame and timestamp-commitment checks."""
        result = result or FrameVerificationResult(manifest=manifest)
        result.manifest = manifest

        result.state = VerificationState.CHECK_FRAME_SET
        try:
            self.check_frame_set(manifest, frames_dir)
        except ProvenanceError as e:
            return result.reject(e)

        result.state = VerificationState.CHECK_FRAMES
        checks = run_ordered(
            lambda job: self.check_frame(manifest, frames_dir, job[0], job[1]),
            list(enumerate(manifest.frames)),
            self.workers,
        )
        result.frames_checked = len(checks)
        result.frames_valid = sum(1 for c in checks if c.ok)
        result.frame_failures = [c for c in checks if not c.ok]
        if result.frame_failures:
            first = result.frame_failures[0]
            logger.warning("Frame %d (%s) rejected: %s", first.index + 1, first.filename, first.error)
            return result.reject(first.error)
        logger.info("All %d frames verified", result.frames_valid)

        result.state = VerificationState.CHECK_TIMESTAMP_COMMITMENT
        try:
            commitment = self.check_timestamp_commitment(manifest, frames_dir, self.negative_offset_ms)
        except ProvenanceError as e:
            return result.reject(e)
        result.commitment = commitment
        if not commitment.committed:
            return result.reject(TimestampNotCommittedError(
                f"{len(commitment.spurious)} frame(s) still verified with start timestamp "
                f"+{commitment.offset_ms}ms",
                details=commitment.to_dict(),
            ))
        logger.info("Negative verification: all frames rejected at +%dms", commitment.offset_ms)

        result.state = VerificationState.ACCEPTED
        result.valid = True
        return result

    def check_frame_set(self, manifest: FrameManifest, frames_dir: Path) -> None:
        """Compare manifest filenames with a fresh sorted listing.

        Raises:
            InputMissingError: If the frame directory is missing
            EmptyFrameSetError: If the manifest lists no frames
            FrameSetMismatchError: On any count, name or numbering difference
        """
        if not frames_dir.is_dir():
            raise InputMissingError(f"Frame directory not found: {frames_dir}", details={"dir": str(frames_dir)})
        if not manifest.frames:
            raise EmptyFrameSetError("Manifest lists no frames")

        on_disk = list_frames(frames_dir, self.extension)
        expected = manifest.filenames
        if len(on_disk) != len(expected):
            raise FrameSetMismatchError(
                f"Frame count mismatch: manifest has {len(expected)}, directory has {len(on_disk)}",
                details={"manifest": len(expected), "directory": len(on_disk)},
            )
        for index, (listed, record) in enumerate(zip(on_disk, manifest.frames)):
            if record.filename != listed:
                raise FrameSetMismatchError(
                    f"Frame filename mismatch at index {index}: {record.filename} != {listed}",
                    details={"index": index, "manifest": record.filename, "directory": listed},
                )
            if record.frame_number != index + 1:
                raise FrameSetMismatchError(
                    f"Frame number out of order at index {index}: {record.frame_number} != {index + 1}",
                    details={"index": index, "frame_number": record.frame_number},
                )

    def check_frame(
        self,
        manifest: FrameManifest,
        frames_dir: Path,
        index: int,
        record: FrameRecord,
    ) -> FrameCheck:
        """Recompute one frame record using the manifest's own timestamp."""
        check = FrameCheck(index=index, filename=record.filename)
        try:
            frame_hash = _digest_frame(frames_dir, record.filename)
            if frame_hash != record.frame_hash.lower():
                raise DigestMismatchError(
                    f"Hash mismatch for {record.filename}",
                    details={"index": index, "expected": record.frame_hash, "actual": frame_hash},
                )

            message = build_message(manifest.start_timestamp_ms, record.frame_number, frame_hash)
            if message != record.message:
                raise MessageMismatchError(
                    f"Message mismatch for {record.filename}",
                    details={"index": index, "expected": record.message, "actual": message},
                )

            sig = verify_message(manifest.signer.address, message, record.signature,
                                 manifest.signer.public_key or None)
            if not sig.valid:
                raise SignatureInvalidError(
                    f"Signature verification failed for {record.filename}. "
                    f"Recovered addr={sig.recovered_address}, pubKey={sig.recovered_public_key}",
                    details={
                        "index": index,
                        "address_matches": sig.address_matches,
                        "public_key_matches": sig.public_key_matches,
                    },
                )
        except ProvenanceError as e:
            check.error = e
        return check

    def check_timestamp_commitment(
        self,
        manifest: FrameManifest,
        frames_dir: Path,
        offset_ms: int = 1,
    ) -> TimestampCommitmentResult:
        """Verify every frame against ``startTimestampMs + offset_ms``.

        Every frame is expected to fail; frames that still verify are
        returned in ``spurious``.
        """
        perturbed = manifest.start_timestamp_ms + offset_ms
        outcome = TimestampCommitmentResult(offset_ms=offset_ms)

        def still_verifies(record: FrameRecord) -> bool:
            frame_hash = _digest_frame(frames_dir, record.filename)
            message = build_message(perturbed, record.frame_number, frame_hash)
            if message == record.message:
                return True
            sig = verify_message(manifest.signer.address, message, record.signature,
                                 manifest.signer.public_key or None)
            return sig.valid

        verdicts = run_ordered(still_verifies, manifest.frames, self.workers)
        outcome.frames_checked = len(verdicts)
        outcome.spurious = [r.filename for r, ok in zip(manifest.frames, verdicts) if ok]
        return outcome

    def verify_certificate(
        self,
        certificate: HashCertificate,
        manifest_path: Path,
        manifest: FrameManifest,
    ) -> None:
        """Check a detached certificate against the manifest file.

        Raises:
            MessageMismatchError: If the certificate timestamp differs
            DigestMismatchError: If the manifest bytes changed
            SignatureInvalidError: If the certificate signature is not the manifest signer's
        """
        if certificate.timestamp_ms != manifest.start_timestamp_ms:
            raise MessageMismatchError(
                "Certificate timestamp differs from manifest start timestamp",
                details={"certificate": certificate.timestamp_ms,
                         "manifest": manifest.start_timestamp_ms},
            )
        if not certificate.verify(manifest_path, manifest.signer.address, manifest.signer.public_key or None):
            logger.warning("Certificate carries no signature; checked digest only")
