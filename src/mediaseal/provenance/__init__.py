"""Frame and whole-file provenance (sign, embed, verify).

Binds a capture timestamp and content digests to a secp256k1 signer so that
any later change to frames, manifest or container is detectable.
"""

from __future__ import annotations

from mediaseal.provenance.frames import (
    FrameSigner,
    extract_frames,
    FrameVerificationResult,
    FrameVerifier,
    TimestampCommitmentResult,
    VerificationState,
)
from mediaseal.provenance.manifest import FrameManifest, FrameRecord, HashCertificate, WholeFilePayload
from mediaseal.provenance.signing import Signer, SignerIdentity, recover_address, verify_message
from mediaseal.provenance.wholefile import (
    Canonicalizer,
    FileVerificationResult,
    WholeFileSigner,
    WholeFileVerifier,
)

__all__ = [
    "FrameSigner",
    "extract_frames",
    "FrameVerificationResult",
    "FrameVerifier",
    "TimestampCommitmentResult",
    "VerificationState",
    "FrameManifest",
    "FrameRecord",
    "HashCertificate",
    "WholeFilePayload",
    "Signer",
    "SignerIdentity",
    "recover_address",
    "verify_message",
    "Canonicalizer",
    "FileVerificationResult",
    "WholeFileSigner",
    "WholeFileVerifier",
]
