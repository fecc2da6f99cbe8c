"""
End-to-end tests for packaging, sealing, opening and verifying envelopes.
"""

import asyncio
import hashlib
import json
import os
import shutil
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))

from jmix import (
    AuthenticationFailed,
    EnvelopePipeline,
    EnvelopeState,
    EnvelopeStateError,
    FileSystemError,
    IntegrityViolation,
    InvalidKey,
    MissingEncryptionMetadata,
    generate_keypair,
    hash_tree,
    pack_directory,
    seal,
)
from jmix.cipher import decode_key
from jmix.classifier import iter_payload_files

EMPTY_DIGEST = "sha256:" + hashlib.sha256(b"").hexdigest()

TEST_CONFIG = {
    "version": "1.0",
    "sender": {"name": "Radiology Clinic A", "id": "org:au.gov.health.123456", "contact": "imaging@clinica.org"},
    "requester": {"name": "Dr Referrer", "id": "org:au.gov.health.55555", "contact": "referrer@clinic.org"},
    "receivers": [
        {"name": "Receiver Hospital", "id": "org:au.gov.health.987654", "contact": "pacs@receiver.org"},
    ],
    "patient": {"name": "Jane Doe", "id": "PAT-0001", "dob": "1970-01-01", "sex": "F"},
    "security": {"classification": "confidential"},
    "custom_tags": ["teaching"],
}

E2E_BYTES = bytes(range(100))


def _source_tree(root: Path) -> Path:
    """One 100-byte imaging file a/b.dcm plus a non-imaging notes.txt."""
    (root / "a").mkdir(parents=True)
    (root / "a" / "b.dcm").write_bytes(E2E_BYTES)
    (root / "notes.txt").write_text("not imaging")
    return root


def _pipeline(tmp: Path) -> EnvelopePipeline:
    return EnvelopePipeline(work_dir=tmp / "work")


def _staging_is_empty(tmp: Path) -> bool:
    work = tmp / "work"
    return not work.exists() or not any(work.iterdir())


def test_package_plain_envelope():
    """A plain envelope keeps payload/dicom and hashes only the imaging tree."""
    print("Testing plain packaging (end to end)...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            assert envelope.state is EnvelopeState.ASSEMBLED
            return envelope, await pipeline.package_plain_envelope(envelope, tmp / "out")

        envelope, package = asyncio.run(run())

        assert package.name == f"{envelope.envelope_id}.JMIX"
        assert envelope.state is EnvelopeState.OPEN
        assert envelope.persisted
        assert not envelope.encrypted
        payload = package / "payload"
        assert (payload / "dicom" / "a" / "b.dcm").read_bytes() == E2E_BYTES
        assert not (payload / "dicom" / "notes.txt").exists()
        assert not (package / "payload.encrypted").exists()
        assert (payload / "metadata.json").is_file()

        manifest = json.loads((package / "manifest.json").read_text())
        expected = "sha256:" + hashlib.sha256(b"a/b.dcm\n" + E2E_BYTES).hexdigest()
        assert manifest["security"]["payload_hash"] == expected
        assert manifest["security"]["classification"] == "confidential"
        assert "encryption" not in manifest["security"]
        assert manifest["envelope_id"] == envelope.envelope_id
        assert manifest["requester"]["name"] == "Dr Referrer"
        assert manifest["custom_tags"] == ["teaching"]

        audit = json.loads((package / "audit.json").read_text())
        assert audit["audit"][0]["event"] == "envelope_created"
        assert audit["audit"][0]["to"]["id"] == "org:au.gov.health.987654"
        assert _staging_is_empty(tmp)
    print("PASS")


def test_seal_and_open_round_trip():
    print("Testing seal + open round trip...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        (source / "series2").mkdir()
        (source / "series2" / "IM0001.dcm").write_bytes(os.urandom(4096))
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            digest = str(envelope.payload_digest)
            package = await pipeline.seal_envelope(envelope, tmp / "out", public_b64)
            return envelope, digest, package

        envelope, digest, package = asyncio.run(run())

        assert envelope.encrypted
        assert envelope.state is EnvelopeState.SEALED
        assert envelope.payload_dir is None
        assert (package / "payload.encrypted").is_file()
        assert not (package / "payload").exists()
        assert _staging_is_empty(tmp)

        manifest = json.loads((package / "manifest.json").read_text())
        encryption = manifest["security"]["encryption"]
        assert encryption["algorithm"] == "AES-256-GCM"
        assert manifest["security"]["payload_hash"] == digest

        payload = asyncio.run(pipeline.open_envelope(package, private_b64))
        assert payload == package / "payload"
        assert str(hash_tree(payload / "dicom")) == digest
        assert (payload / "dicom" / "a" / "b.dcm").read_bytes() == E2E_BYTES
        assert (payload / "dicom" / "series2" / "IM0001.dcm").is_file()
        metadata = json.loads((payload / "metadata.json").read_text())
        assert metadata["patient"]["id"] == "PAT-0001"
        # No scratch directories left behind
        assert sorted(p.name for p in package.iterdir()) == [
            "audit.json", "manifest.json", "payload", "payload.encrypted",
        ]
    print("PASS")


def test_open_with_wrong_key():
    print("Testing open with unrelated private key...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        _private_b64, public_b64 = generate_keypair()
        other_private_b64, _ = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            return await pipeline.seal_envelope(envelope, tmp / "out", public_b64)

        package = asyncio.run(run())
        try:
            asyncio.run(pipeline.open_envelope(package, other_private_b64))
            raise AssertionError("should have raised AuthenticationFailed")
        except AuthenticationFailed as e:
            assert e.path == package
        assert not (package / "payload").exists()
    print("PASS")


def test_tampered_ciphertext_detected():
    print("Testing one flipped bit in payload.encrypted...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            return await pipeline.seal_envelope(envelope, tmp / "out", public_b64)

        package = asyncio.run(run())
        encrypted = package / "payload.encrypted"
        data = bytearray(encrypted.read_bytes())
        data[len(data) // 2] ^= 0x04
        encrypted.write_bytes(bytes(data))

        try:
            asyncio.run(pipeline.open_envelope(package, private_b64))
            raise AssertionError("should have raised AuthenticationFailed")
        except AuthenticationFailed:
            pass
        assert not (package / "payload").exists()

        try:
            asyncio.run(pipeline.verify_payload_hash(package, private_b64))
            raise AssertionError("verify should have raised AuthenticationFailed")
        except AuthenticationFailed:
            pass
    print("PASS")


def test_substituted_archive_is_integrity_violation():
    """A correctly encrypted but different payload fails the hash check."""
    print("Testing substituted archive detection...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            return await pipeline.seal_envelope(envelope, tmp / "out", public_b64)

        package = asyncio.run(run())

        # Re-seal a different payload to the same recipient
        other = tmp / "other" / "payload" / "dicom"
        other.mkdir(parents=True)
        (other / "x.dcm").write_bytes(b"substituted")
        ciphertext, material = seal(pack_directory(other.parent, "payload"), decode_key(public_b64))
        (package / "payload.encrypted").write_bytes(ciphertext)
        manifest = json.loads((package / "manifest.json").read_text())
        manifest["security"]["encryption"] = material.to_dict()
        (package / "manifest.json").write_text(json.dumps(manifest))

        try:
            asyncio.run(pipeline.open_envelope(package, private_b64))
            raise AssertionError("should have raised IntegrityViolation")
        except IntegrityViolation as e:
            assert e.expected == manifest["security"]["payload_hash"]
            assert e.computed != e.expected
        assert not (package / "payload").exists()
        assert not any(p.name.endswith(".tmp") for p in package.iterdir())

        result = asyncio.run(pipeline.verify_payload_hash(package, private_b64))
        assert result.mode == "encrypted"
        assert not result.ok
    print("PASS")


def test_fresh_material_same_hash():
    print("Testing two seals of the same tree...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        _private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            first = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            second = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            return await asyncio.gather(
                pipeline.seal_envelope(first, tmp / "out", public_b64),
                pipeline.seal_envelope(second, tmp / "out", public_b64),
            )

        p1, p2 = asyncio.run(run())
        assert p1 != p2
        m1 = json.loads((p1 / "manifest.json").read_text())["security"]
        m2 = json.loads((p2 / "manifest.json").read_text())["security"]
        assert m1["payload_hash"] == m2["payload_hash"]
        for field in ("ephemeral_public_key", "iv", "auth_tag"):
            assert m1["encryption"][field] != m2["encryption"][field]
        assert (p1 / "payload.encrypted").read_bytes() != (p2 / "payload.encrypted").read_bytes()
    print("PASS")


def test_empty_payload():
    print("Testing empty payload seal/open...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = tmp / "study"
        source.mkdir()
        (source / "readme.txt").write_text("nothing to send")
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            envelope = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            assert str(envelope.payload_digest) == EMPTY_DIGEST
            package = await pipeline.seal_envelope(envelope, tmp / "out", public_b64)
            return package, await pipeline.open_envelope(package, private_b64)

        package, payload = asyncio.run(run())
        assert (payload / "dicom").is_dir()
        assert list((payload / "dicom").iterdir()) == []
        assert str(hash_tree(payload / "dicom")) == EMPTY_DIGEST
        metadata = json.loads((payload / "metadata.json").read_text())
        assert metadata["dicom"]["instance_count"] == 0
    print("PASS")


def test_verify_payload_hash_modes():
    print("Testing verify (plain + encrypted)...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        async def run():
            plain = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            sealed = await pipeline.build_assembled_envelope(source, TEST_CONFIG)
            return (
                await pipeline.package_plain_envelope(plain, tmp / "out"),
                await pipeline.seal_envelope(sealed, tmp / "out", public_b64),
            )

        plain_dir, sealed_dir = asyncio.run(run())

        result = asyncio.run(pipeline.verify_payload_hash(plain_dir))
        assert result.ok and result.mode == "plain"
        assert result.expected == result.computed

        result = asyncio.run(pipeline.verify_payload_hash(sealed_dir, private_b64))
        assert result.ok and result.mode == "encrypted"
        assert not (sealed_dir / "payload").exists()
        assert _staging_is_empty(tmp)

        try:
            asyncio.run(pipeline.verify_payload_hash(sealed_dir))
            raise AssertionError("encrypted verify without a key should raise")
        except InvalidKey:
            pass

        # Modify a plain payload file: reported, not raised
        (plain_dir / "payload" / "dicom" / "a" / "b.dcm").write_bytes(b"changed")
        result = asyncio.run(pipeline.verify_payload_hash(plain_dir))
        assert not result.ok
        assert result.computed != result.expected
    print("PASS")


def test_failed_seal_keeps_plaintext():
    """A seal that fails while writing leaves no envelope and keeps the staged payload."""
    print("Testing failed seal is atomic...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        _private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        envelope = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        staged = envelope.payload_dir

        with patch("jmix.pipeline.write_bytes", side_effect=OSError("disk full")):
            try:
                asyncio.run(pipeline.seal_envelope(envelope, tmp / "out", public_b64))
                raise AssertionError("seal should have failed")
            except FileSystemError:
                pass

        assert envelope.state is EnvelopeState.ASSEMBLED
        assert (staged / "dicom" / "a" / "b.dcm").read_bytes() == E2E_BYTES
        assert not (tmp / "out" / envelope.dirname).exists()

        # Bad key: rejected before anything is written
        try:
            asyncio.run(pipeline.seal_envelope(envelope, tmp / "out", "c2hvcnQ="))
            raise AssertionError("short key should be rejected")
        except InvalidKey:
            pass
        assert staged.exists()

        # The envelope can still be sealed afterwards
        package = asyncio.run(pipeline.seal_envelope(envelope, tmp / "out", public_b64))
        assert (package / "payload.encrypted").exists()
        assert not staged.exists()
    print("PASS")


def test_state_transitions_enforced():
    print("Testing lifecycle state checks...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        _private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        envelope = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        asyncio.run(pipeline.package_plain_envelope(envelope, tmp / "out"))
        for call in (
            pipeline.seal_envelope(envelope, tmp / "out", public_b64),
            pipeline.package_plain_envelope(envelope, tmp / "out"),
        ):
            try:
                asyncio.run(call)
                raise AssertionError("persisted envelope was re-packaged")
            except EnvelopeStateError:
                pass

        other = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        pipeline.discard(other)
        assert other.state is EnvelopeState.BUILT
        assert _staging_is_empty(tmp)
    print("PASS")


def test_open_error_cases():
    print("Testing open error cases...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        private_b64, public_b64 = generate_keypair()
        pipeline = _pipeline(tmp)

        envelope = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        plain_dir = asyncio.run(pipeline.package_plain_envelope(envelope, tmp / "out"))

        # Plain envelope: payload/ exists and there is no encryption block
        shutil.move(str(plain_dir / "payload"), str(tmp / "moved-payload"))
        try:
            asyncio.run(pipeline.open_envelope(plain_dir, private_b64))
            raise AssertionError("plain envelope should not open")
        except MissingEncryptionMetadata as e:
            assert e.path == plain_dir

        try:
            asyncio.run(pipeline.open_envelope(tmp / "nowhere.JMIX", private_b64))
            raise AssertionError("missing envelope should not open")
        except FileSystemError:
            pass

        try:
            asyncio.run(pipeline.open_envelope(plain_dir, "not-a-key"))
            raise AssertionError("bad key should be rejected")
        except InvalidKey:
            pass

        sealed = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        sealed_dir = asyncio.run(pipeline.seal_envelope(sealed, tmp / "out", public_b64))
        asyncio.run(pipeline.open_envelope(sealed_dir, private_b64))
        try:
            asyncio.run(pipeline.open_envelope(sealed_dir, private_b64))
            raise AssertionError("existing payload/ should not be overwritten")
        except FileSystemError:
            pass
    print("PASS")


def test_missing_source_directory():
    print("Testing missing source directory...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        try:
            asyncio.run(_pipeline(tmp).build_assembled_envelope(tmp / "missing", TEST_CONFIG))
            raise AssertionError("should have raised FileSystemError")
        except FileSystemError:
            pass
        assert _staging_is_empty(tmp)
    print("PASS")


def test_save_to_files():
    print("Testing flat document export...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = _source_tree(tmp / "study")
        pipeline = _pipeline(tmp)
        envelope = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))
        out = pipeline.save_to_files(envelope, tmp / "docs")
        assert sorted(p.name for p in out.iterdir()) == [
            "audit.json", "files.json", "manifest.json", "metadata.json",
        ]

        listing = json.loads((out / "files.json").read_text())
        assert listing["payload_directory"] == "payload"
        assert listing["file_count"] == 1
        assert listing["total_size"] == len(E2E_BYTES)
        entry = listing["files"][0]
        assert entry["path"] == "dicom/a/b.dcm"
        assert entry["size"] == len(E2E_BYTES)
        assert entry["hash"] == "sha256:" + hashlib.sha256(E2E_BYTES).hexdigest()
        assert entry["mime_type"] == "application/dicom"
        assert envelope.to_dict()["files"] == listing
        pipeline.discard(envelope)
    print("PASS")


def test_vanished_file_is_skipped():
    """A file removed between classification and copy does not abort packaging."""
    print("Testing file vanishing during packaging...", end=" ")
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        source = tmp / "study"
        source.mkdir()
        good = os.urandom(300)
        (source / "good.dcm").write_bytes(good)
        (source / "gone.dcm").write_bytes(b"about to disappear")

        def classify_then_delete(source_dir):
            found = list(iter_payload_files(source_dir))
            (source / "gone.dcm").unlink()
            return iter(found)

        pipeline = _pipeline(tmp)
        with patch("jmix.pipeline.iter_payload_files", side_effect=classify_then_delete):
            envelope = asyncio.run(pipeline.build_assembled_envelope(source, TEST_CONFIG))

        assert envelope.state is EnvelopeState.ASSEMBLED
        imaging = envelope.payload_dir / "dicom"
        assert sorted(p.name for p in imaging.iterdir()) == ["good.dcm"]
        expected = "sha256:" + hashlib.sha256(b"good.dcm\n" + good).hexdigest()
        assert str(envelope.payload_digest) == expected
        assert envelope.files["file_count"] == 1
        assert envelope.files["files"][0]["path"] == "dicom/good.dcm"

        package = asyncio.run(pipeline.package_plain_envelope(envelope, tmp / "out"))
        result = asyncio.run(pipeline.verify_payload_hash(package))
        assert result.ok
    print("PASS")


def main():
    print("=" * 50)
    print("  JMIX: Pipeline Tests")
    print("=" * 50)
    print()

    tests = [
        test_package_plain_envelope,
        test_seal_and_open_round_trip,
        test_open_with_wrong_key,
        test_tampered_ciphertext_detected,
        test_substituted_archive_is_integrity_violation,
        test_fresh_material_same_hash,
        test_empty_payload,
        test_verify_payload_hash_modes,
        test_failed_seal_keeps_plaintext,
        test_state_transitions_enforced,
        test_open_error_cases,
        test_missing_source_directory,
        test_save_to_files,
        test_vanished_file_is_skipped,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print()
    print(f"Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
