"""Tests for the whole-file pipeline (canonicalize, embed, verify)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import read_fake_container, write_fake_container
from mediaseal.canonical import sha256_file
from mediaseal.errors import (
    CanonicalizationFailedError,
    DigestMismatchError,
    InputMissingError,
    MalformedPayloadError,
    MessageMismatchError,
    SignatureInvalidError,
)
from mediaseal.provenance import wholefile
from mediaseal.provenance.signing import Signer
from mediaseal.provenance.wholefile import (
    Canonicalizer,
    WholeFileSigner,
    WholeFileVerifier,
    check_payload_shape,
)

TIMESTAMP = 1700000000000


@pytest.fixture
def container(tmp_path: Path) -> Path:
    """Container with some pre-existing tags."""
    path = tmp_path / "clip.mp4"
    write_fake_container(path, {"title": "Holiday", "encoder": "x264"}, b"\x00\x01streams\x02")
    return path


@pytest.fixture
def signed_path(signer: Signer, tag_tool, container: Path, tmp_path: Path) -> Path:
    out = tmp_path / "out" / "clip_verifiable.mp4"
    WholeFileSigner(signer, tag_tool).sign_file(container, out, TIMESTAMP)
    return out


def rewrite_payload(path: Path, **changes) -> None:
    tags, streams = read_fake_container(path)
    payload = json.loads(tags["description"])
    payload.update(changes)
    tags["description"] = json.dumps(payload)
    write_fake_container(path, tags, streams)


def replace_payload_text(path: Path, text: str) -> None:
    tags, streams = read_fake_container(path)
    tags["description"] = text
    write_fake_container(path, tags, streams)


class TestCanonicalizer:
    """Test canonical form construction."""

    def test_only_timestamp_tag_survives(self, tag_tool, container: Path, tmp_path: Path):
        out = tmp_path / "canonical.mp4"
        Canonicalizer(tag_tool).canonicalize(container, out, TIMESTAMP)
        tags, streams = read_fake_container(out)
        assert tags == {"comment": str(TIMESTAMP)}
        assert streams == b"\x00\x01streams\x02"

    def test_idempotent(self, tag_tool, container: Path, tmp_path: Path):
        canonicalizer = Canonicalizer(tag_tool)
        first = canonicalizer.canonicalize(container, tmp_path / "a.mp4", TIMESTAMP)
        second = canonicalizer.canonicalize(tmp_path / "a.mp4", tmp_path / "b.mp4", TIMESTAMP)
        assert first == second
        assert first == sha256_file(tmp_path / "b.mp4")

    def test_existing_tags_do_not_matter(self, tag_tool, container: Path, tmp_path: Path):
        other = tmp_path / "other.mp4"
        write_fake_container(other, {"artist": "someone"}, b"\x00\x01streams\x02")
        canonicalizer = Canonicalizer(tag_tool)
        assert (canonicalizer.canonicalize(container, tmp_path / "a.mp4", TIMESTAMP)
                == canonicalizer.canonicalize(other, tmp_path / "b.mp4", TIMESTAMP))

    def test_timestamp_changes_digest(self, tag_tool, container: Path, tmp_path: Path):
        canonicalizer = Canonicalizer(tag_tool)
        assert (canonicalizer.canonicalize(container, tmp_path / "a.mp4", TIMESTAMP)
                != canonicalizer.canonicalize(container, tmp_path / "b.mp4", TIMESTAMP + 1))

    def test_tool_failure(self, failing_tag_tool, container: Path, tmp_path: Path):
        with pytest.raises(CanonicalizationFailedError):
            Canonicalizer(failing_tag_tool).canonicalize(container, tmp_path / "a.mp4", TIMESTAMP)


class TestWholeFileSigner:
    """Test the WholeFileSigner class."""

    def test_sign_file(self, signer: Signer, tag_tool, container: Path, tmp_path: Path):
        out = tmp_path / "signed.mp4"
        signed = WholeFileSigner(signer, tag_tool).sign_file(container, out, TIMESTAMP)

        tags, streams = read_fake_container(out)
        assert streams == b"\x00\x01streams\x02"
        assert tags["comment"] == str(TIMESTAMP)
        assert "title" not in tags
        payload = json.loads(tags["description"])
        assert payload == {
            "timestampMs": TIMESTAMP,
            "fileHashSha256": signed.payload.file_hash,
            "signerAddress": signer.address,
            "signature": signed.payload.signature,
        }
        assert signed.message == f'{{"timestampMs":{TIMESTAMP},"fileHashSha256":"{signed.payload.file_hash}"}}'

    def test_no_temporary_files_left(self, signer: Signer, tag_tool, container: Path, tmp_path: Path):
        out_dir = tmp_path / "out"
        WholeFileSigner(signer, tag_tool).sign_file(container, out_dir / "signed.mp4", TIMESTAMP)
        assert [p.name for p in out_dir.iterdir()] == ["signed.mp4"]

    def test_default_timestamp(self, signer: Signer, tag_tool, container: Path, tmp_path: Path):
        signed = WholeFileSigner(signer, tag_tool).sign_file(container, tmp_path / "signed.mp4")
        assert len(str(signed.payload.timestamp_ms)) >= 13

    def test_missing_input(self, signer: Signer, tag_tool, tmp_path: Path):
        with pytest.raises(InputMissingError):
            WholeFileSigner(signer, tag_tool).sign_file(tmp_path / "none.mp4", tmp_path / "out.mp4")

    def test_tool_failure_leaves_nothing(self, signer: Signer, failing_tag_tool, container: Path,
                                         tmp_path: Path):
        out_dir = tmp_path / "out"
        with pytest.raises(CanonicalizationFailedError):
            WholeFileSigner(signer, failing_tag_tool).sign_file(container, out_dir / "signed.mp4", TIMESTAMP)
        assert list(out_dir.iterdir()) == []

    def test_certificate(self, signer: Signer, tag_tool, container: Path, tmp_path: Path):
        signed = WholeFileSigner(signer, tag_tool).sign_file(container, tmp_path / "signed.mp4", TIMESTAMP)
        certificate = signed.certificate("clip.mp4")
        assert certificate.timestamp_ms == TIMESTAMP
        assert certificate.digest == signed.payload.file_hash
        assert certificate.signature == signed.payload.signature


class TestWholeFileVerifier:
    """Test verification order and outcomes."""

    def test_round_trip(self, tag_tool, signed_path: Path, signer: Signer):
        result = WholeFileVerifier(tag_tool).verify(signed_path)

        assert result.valid
        assert result.error is None
        assert result.steps == ["read_payload", "check_shape", "recompute_hash", "verify_signature"]
        assert result.payload.signer_address == signer.address
        assert result.actual_hash == result.payload.file_hash

    def test_expected_timestamp(self, tag_tool, signed_path: Path):
        result = WholeFileVerifier(tag_tool).verify(signed_path, str(TIMESTAMP))
        assert result.valid
        assert "check_expected_timestamp" in result.steps

    def test_expected_timestamp_mismatch(self, tag_tool, signed_path: Path):
        result = WholeFileVerifier(tag_tool).verify(signed_path, TIMESTAMP + 1)
        assert not result.valid
        assert isinstance(result.error, MessageMismatchError)

    def test_added_tags_are_ignored(self, tag_tool, signed_path: Path):
        """Tags other than the payload are outside the signed canonical form."""
        tags, streams = read_fake_container(signed_path)
        tags["title"] = "Renamed"
        write_fake_container(signed_path, tags, streams)
        assert WholeFileVerifier(tag_tool).verify(signed_path).valid

    def test_tampered_streams(self, tag_tool, signed_path: Path):
        tags, streams = read_fake_container(signed_path)
        write_fake_container(signed_path, tags, streams + b"\xff")

        result = WholeFileVerifier(tag_tool).verify(signed_path)

        assert not result.valid
        assert isinstance(result.error, DigestMismatchError)
        assert result.actual_hash != result.payload.file_hash

    def test_changed_timestamp(self, tag_tool, signed_path: Path):
        rewrite_payload(signed_path, timestampMs=TIMESTAMP + 1)
        result = WholeFileVerifier(tag_tool).verify(signed_path)
        assert isinstance(result.error, DigestMismatchError)

    def test_substituted_signer(self, tag_tool, signed_path: Path):
        rewrite_payload(signed_path, signerAddress=Signer.generate().address)
        result = WholeFileVerifier(tag_tool).verify(signed_path)
        assert isinstance(result.error, SignatureInvalidError)
        assert result.steps[-1] == "recompute_hash"

    def test_unrecoverable_signature(self, tag_tool, signed_path: Path):
        rewrite_payload(signed_path, signature="0x" + "00" * 64 + "1b")
        result = WholeFileVerifier(tag_tool).verify(signed_path)
        assert isinstance(result.error, SignatureInvalidError)

    def test_bad_address_rejected_before_crypto(self, tag_tool, signed_path: Path, monkeypatch):
        def no_recovery(*args, **kwargs):
            raise AssertionError("signature recovery must not run")

        monkeypatch.setattr(wholefile, "recover_address", no_recovery)
        rewrite_payload(signed_path, signerAddress="not-an-address")
        tag_tool.writes.clear()

        result = WholeFileVerifier(tag_tool).verify(signed_path)

        assert isinstance(result.error, MalformedPayloadError)
        assert result.steps == ["read_payload"]
        assert tag_tool.writes == []

    @pytest.mark.parametrize("changes", [
        {"timestampMs": 123},
        {"timestampMs": "17000000000x0"},
        {"timestampMs": "\u0661\u0667" + "\u0660" * 11},
        {"timestampMs": "1700000000000\n"},
        {"timestampMs": "1" * 5000},
        {"fileHashSha256": "abc"},
        {"fileHashSha256": "\u0661" * 64},
        {"signerAddress": "0x" + "12" * 20 + "\n"},
        {"signature": "0x1234"},
        {"signature": "0x" + "34" * 65 + "\n"},
    ])
    def test_malformed_fields(self, tag_tool, signed_path: Path, changes):
        rewrite_payload(signed_path, **changes)
        result = WholeFileVerifier(tag_tool).verify(signed_path)
        assert isinstance(result.error, MalformedPayloadError)

    @pytest.mark.parametrize("text", [
        "1" * 5000,
        '{"timestampMs": ' + "1" * 5000 + ', "fileHashSha256": "' + "a" * 64 + '", '
        '"signerAddress": "0x' + "1" * 40 + '", "signature": "0x' + "2" * 130 + '"}',
    ])
    def test_oversized_integer_payload(self, tag_tool, signed_path: Path, text: str):
        replace_payload_text(signed_path, text)
        result = WholeFileVerifier(tag_tool).verify(signed_path)
        assert not result.valid
        assert isinstance(result.error, MalformedPayloadError)
        assert result.steps == []

    def test_missing_payload(self, tag_tool, container: Path):
        result = WholeFileVerifier(tag_tool).verify(container)
        assert isinstance(result.error, MalformedPayloadError)
        assert result.steps == []

    def test_missing_container(self, tag_tool, tmp_path: Path):
        result = WholeFileVerifier(tag_tool).verify(tmp_path / "none.mp4")
        assert isinstance(result.error, InputMissingError)

    def test_custom_tags(self, signer: Signer, tag_tool, container: Path, tmp_path: Path):
        out = tmp_path / "signed.mkv"
        WholeFileSigner(signer, tag_tool, timestamp_tag="date", payload_tag="provenance").sign_file(
            container, out, TIMESTAMP)
        assert WholeFileVerifier(tag_tool, timestamp_tag="date", payload_tag="provenance").verify(out).valid
        assert not WholeFileVerifier(tag_tool).verify(out).valid

    def test_to_dict(self, tag_tool, signed_path: Path):
        data = WholeFileVerifier(tag_tool).verify(signed_path).to_dict()
        assert data["valid"] is True
        assert data["payload"]["timestampMs"] == TIMESTAMP


class TestPayloadShape:
    """Test shape checks directly."""

    def test_bool_timestamp(self):
        with pytest.raises(MalformedPayloadError):
            check_payload_shape({
                "timestampMs": True,
                "fileHashSha256": "a" * 64,
                "signerAddress": "0x" + "1" * 40,
                "signature": "0x" + "2" * 130,
            })

    def test_string_timestamp_accepted(self):
        payload = check_payload_shape({
            "timestampMs": "1700000000000",
            "fileHashSha256": "a" * 64,
            "signerAddress": "0x" + "1" * 40,
            "signature": "0x" + "2" * 130,
        })
        assert payload.timestamp_ms == 1700000000000
