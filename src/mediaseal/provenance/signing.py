"""Recoverable message signatures for provenance records.

Scheme (fixed, no agility):
- ECDSA over secp256k1, signatures carry a recovery id
- EIP-191 personal-message prefix for domain separation:
  keccak256("\\x19Ethereum Signed Message:\\n" + len(message) + message)
- Signer address: last 20 bytes of keccak256(uncompressed public key),
  rendered with the EIP-55 mixed-case checksum

Signatures are 65 bytes ``r || s || v`` with ``v`` in {27, 28}, hex-encoded
with a ``0x`` prefix, so records interoperate with standard wallet tooling.

Keys can be supplied as hex (``MEDIASEAL_PRIVATE_KEY``) or as a file holding
either hex text or a PEM-encoded secp256k1 key.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from coincurve import PrivateKey, PublicKey
from Crypto.Hash import keccak
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from mediaseal.errors import SigningError

MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"
SIGNATURE_LENGTH = 65


def keccak256(data: bytes) -> bytes:
    """Compute the keccak256 digest (pre-standard SHA-3 padding)."""
    hasher = keccak.new(digest_bits=256)
    hasher.update(data)
    return hasher.digest()


def _to_bytes(message: str | bytes) -> bytes:
    if isinstance(message, bytes):
        return message
    return message.encode("utf-8")


def _strip_0x(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def prefixed_digest(message: str | bytes) -> bytes:
    """Digest that actually gets signed for a message (EIP-191)."""
    data = _to_bytes(message)
    return keccak256(MESSAGE_PREFIX + str(len(data)).encode("ascii") + data)


def hash_message(message: str | bytes) -> str:
    """Prefixed message digest as ``0x`` hex."""
    return "0x" + prefixed_digest(message).hex()


def to_checksum_address(address: str | bytes) -> str:
    """Render a 20-byte address with the EIP-55 checksum."""
    if isinstance(address, bytes):
        hex_addr = address.hex()
    else:
        hex_addr = _strip_0x(address).lower()
    addr_hash = keccak256(hex_addr.encode("ascii")).hex()
    out = []
    for char, nibble in zip(hex_addr, addr_hash):
        out.append(char.upper() if int(nibble, 16) >= 8 else char)
    return "0x" + "".join(out)


def address_from_public_key(public_key: bytes) -> str:
    """Derive the checksummed address from an uncompressed public key."""
    if len(public_key) == 65 and public_key[0] == 4:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError(f"Expected 64-byte public key, got {len(public_key)} bytes")
    return to_checksum_address(keccak256(public_key)[-20:])


def split_signature(signature: str) -> tuple[bytes, bytes, int]:
    """Split a hex signature into (r, s, v) with v normalized to 27/28.

    Raises:
        ValueError: If the signature is not 65 bytes of hex or v is invalid
    """
    raw = bytes.fromhex(_strip_0x(signature))
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    v = raw[64]
    if v in (0, 1):
        v += 27
    if v not in (27, 28):
        raise ValueError(f"Invalid signature recovery byte: {v}")
    return raw[:32], raw[32:64], v


def _recoverable_bytes(signature: str) -> bytes:
    r, s, v = split_signature(signature)
    return r + s + bytes([v - 27])


@dataclass(frozen=True)
class MessageSignature:
    """Signature over one message plus its components."""

    signature: str
    r: str
    s: str
    v: int
    message_digest: str


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of checking one signature against an expected signer."""

    address_matches: bool
    public_key_matches: bool
    recovered_address: str | None = None
    recovered_public_key: str | None = None

    @property
    def valid(self) -> bool:
        return self.address_matches and self.public_key_matches


@dataclass(frozen=True)
class SignerIdentity:
    """Public identity of a signer, shared read-only by a whole run."""

    address: str
    public_key: str
    algo: str = "secp256k1"
    message_prefix: str = "Ethereum Signed Message"
    hash: str = "keccak256"
    eip: str = "191"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "address": self.address,
            "publicKey": self.public_key,
            "algo": self.algo,
            "messagePrefix": self.message_prefix,
            "hash": self.hash,
            "eip": self.eip,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignerIdentity:
        """Create from dictionary."""
        return cls(
            address=data["address"],
            public_key=data.get("publicKey", ""),
            algo=data.get("algo", "secp256k1"),
            message_prefix=data.get("messagePrefix", "Ethereum Signed Message"),
            hash=data.get("hash", "keccak256"),
            eip=data.get("eip", "191"),
        )


class Signer:
    """Holds a private key and signs provenance messages."""

    def __init__(self, private_key: bytes) -> None:
        """Initialize signer.

        Args:
            private_key: 32-byte secp256k1 secret

        Raises:
            SigningError: If the key is not a valid secp256k1 secret
        """
        if len(private_key) != 32:
            raise SigningError(f"Private key must be 32 bytes, got {len(private_key)}")
        try:
            self._key = PrivateKey(private_key)
        except Exception as e:
            raise SigningError(f"Invalid secp256k1 private key: {e}") from e

        public_key = self._key.public_key.format(compressed=False)
        self.identity = SignerIdentity(
            address=address_from_public_key(public_key),
            public_key="0x" + public_key.hex(),
        )

    @property
    def address(self) -> str:
        return self.identity.address

    @classmethod
    def from_hex(cls, value: str) -> Signer:
        """Create a signer from a hex secret (``0x`` prefix optional)."""
        try:
            secret = bytes.fromhex(_strip_0x(value.strip()))
        except ValueError as e:
            raise SigningError("Private key is not valid hex") from e
        return cls(secret)

    @classmethod
    def from_file(cls, path: Path) -> Signer:
        """Load a signer from a file holding hex text or a PEM key."""
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise SigningError(f"Private key file not found: {path}") from e

        if b"BEGIN" not in data:
            return cls.from_hex(data.decode("ascii", errors="replace"))

        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Invalid PEM private key ({e})") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256K1):
            raise SigningError("PEM private key must be a secp256k1 EC key")
        return cls(key.private_numbers().private_value.to_bytes(32, "big"))

    @classmethod
    def generate(cls) -> Signer:
        """Create a signer with a fresh random key."""
        return cls(PrivateKey().secret)

    def private_key_hex(self) -> str:
        """Private key in environment variable format."""
        return "0x" + self._key.secret.hex()

    def sign(self, message: str | bytes) -> MessageSignature:
        """Sign a message under the EIP-191 prefix.

        Args:
            message: Text (UTF-8 encoded) or raw bytes

        Returns:
            MessageSignature with ``v`` in {27, 28}
        """
        digest = prefixed_digest(message)
        raw = self._key.sign_recoverable(digest, hasher=None)
        r, s, v = raw[:32], raw[32:64], raw[64] + 27
        return MessageSignature(
            signature="0x" + (r + s + bytes([v])).hex(),
            r="0x" + r.hex(),
            s="0x" + s.hex(),
            v=v,
            message_digest="0x" + digest.hex(),
        )


def recover_public_key(message_digest: str, signature: str) -> str:
    """Recover the uncompressed public key (``0x04..``) from a prefixed digest.

    Raises:
        ValueError: If the digest or signature is malformed or unrecoverable
    """
    digest = bytes.fromhex(_strip_0x(message_digest))
    if len(digest) != 32:
        raise ValueError(f"Message digest must be 32 bytes, got {len(digest)}")
    recovered = PublicKey.from_signature_and_message(
        _recoverable_bytes(signature), digest, hasher=None
    )
    return "0x" + recovered.format(compressed=False).hex()


def recover_address(message: str | bytes, signature: str) -> str:
    """Recover the checksummed signer address of a message.

    Raises:
        ValueError: If the signature is malformed or unrecoverable
    """
    public_key = recover_public_key(hash_message(message), signature)
    return address_from_public_key(bytes.fromhex(_strip_0x(public_key)))


def verify_message(
    expected_address: str,
    message: str | bytes,
    signature: str,
    expected_public_key: str | None = None,
) -> SignatureCheck:
    """Check that a signature over ``message`` comes from the expected signer.

    The public-key comparison is skipped (treated as matching) when no
    expected key is given. Malformed signatures produce a failed check
    rather than an exception.
    """
    try:
        public_key = recover_public_key(hash_message(message), signature)
        address = address_from_public_key(bytes.fromhex(_strip_0x(public_key)))
    except Exception:
        # coincurve raises ValueError or its own errors on unrecoverable input
        return SignatureCheck(address_matches=False, public_key_matches=False)

    address_ok = address.lower() == str(expected_address).lower()
    if expected_public_key:
        public_key_ok = public_key.lower() == expected_public_key.lower()
    else:
        public_key_ok = True

    return SignatureCheck(
        address_matches=address_ok,
        public_key_matches=public_key_ok,
        recovered_address=address,
        recovered_public_key=public_key,
    )
