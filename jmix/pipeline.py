"""
Envelope Pipeline
Sequences classification, hashing, archiving and encryption into a
<envelope_id>.JMIX directory, and the inverse path back to a verified
plaintext payload.

Packaging:
1. Classify and copy imaging files into a staged payload/dicom tree,
   skipping any that can no longer be read
2. Build manifest, metadata, audit and file listing from the configuration
   and the copied files
3. Hash payload/dicom and record the digest in manifest.security
4. Either move payload/ into place (plain) or
   tar payload/, seal it for the recipient, and delete the plaintext (sealed)

Opening:
1. Read encryption material from the manifest
2. Decrypt payload.encrypted (authenticity)
3. Unpack into a scratch directory and re-hash (integrity)
4. Only a verified payload is moved to payload/

Filesystem work runs in worker threads via asyncio.to_thread, so every
await is a filesystem suspension point; the cryptography runs inline.
Different envelope directories can be processed concurrently. The same
directory must not be targeted by two operations at once.
"""

import asyncio
import hashlib
import json
import logging
import os
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path

from jmix.archive import pack_directory, unpack_archive
from jmix.cipher import EncryptionMaterial, decode_key, open_sealed, seal
from jmix.classifier import iter_payload_files
from jmix.config import EnvelopeConfig
from jmix.dicom import DicomTagReader
from jmix.envelope import (
    AUDIT_FILE,
    ENCRYPTED_PAYLOAD_FILE,
    IMAGING_DIR,
    MANIFEST_FILE,
    METADATA_FILE,
    PAYLOAD_DIR,
    Envelope,
    EnvelopeState,
    VerificationResult,
    build_audit,
    build_files,
    build_manifest,
    build_metadata,
    utc_timestamp,
)
from jmix.errors import (
    ArchiveCorrupt,
    FileSystemError,
    IntegrityViolation,
    InvalidKey,
    JmixError,
    MissingEncryptionMetadata,
)
from jmix.hasher import PayloadDigest, hash_tree
from jmix.validation import SchemaValidator

logger = logging.getLogger(__name__)


@contextmanager
def _located(path: Path):
    """Attach the envelope path to any JmixError raised without one."""
    try:
        yield
    except JmixError as e:
        if e.path is None:
            e.path = Path(path)
        raise


def write_json(path: Path, data: dict) -> None:
    """Write JSON via a temp file in the same directory, then rename."""
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def write_bytes(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def read_manifest(envelope_dir: Path) -> dict:
    try:
        return json.loads((envelope_dir / MANIFEST_FILE).read_text(encoding="utf-8"))
    except OSError as e:
        raise FileSystemError(f"Failed to read manifest: {e}", envelope_dir) from e
    except ValueError as e:
        raise MissingEncryptionMetadata(f"Manifest is not valid JSON: {e}", envelope_dir) from e


def expected_payload_hash(manifest: dict) -> str:
    expected = (manifest.get("security") or {}).get("payload_hash")
    if not expected:
        raise MissingEncryptionMetadata("Manifest has no security.payload_hash")
    return expected


def hash_imaging_tree(payload_dir: Path) -> PayloadDigest:
    """Digest of payload/dicom; an archive without that directory hashes as empty."""
    imaging = payload_dir / IMAGING_DIR
    if not imaging.exists():
        return PayloadDigest(hashlib.sha256().hexdigest())
    return hash_tree(imaging)


class EnvelopePipeline:
    """
    Builds, seals, opens and verifies JMIX envelopes.

    Args:
        validator: Schema validator for the envelope documents.
            Defaults to one with no schemas, which skips validation.
        tag_reader: DICOM tag reader used to enrich metadata.json.
        work_dir: Where payloads are staged before persisting.
            Defaults to the system temp directory.
    """

    def __init__(
        self,
        validator: SchemaValidator = None,
        tag_reader: DicomTagReader = None,
        work_dir: str | Path = None,
    ):
        self.validator = validator or SchemaValidator()
        self.tag_reader = tag_reader or DicomTagReader()
        self.work_dir = Path(work_dir) if work_dir else None

    # =========================================================================
    # Packaging
    # =========================================================================

    def _mkdtemp(self, prefix: str) -> Path:
        if self.work_dir:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.work_dir))

    async def build_assembled_envelope(self, source_dir: str | Path, config: EnvelopeConfig | dict) -> Envelope:
        """
        Build an envelope and stage its payload.

        Args:
            source_dir: Directory of imaging files (searched recursively).
            config: Envelope configuration.

        Returns:
            An ASSEMBLED envelope whose manifest carries payload_hash.

        Raises:
            FileSystemError: If source_dir is missing or copying fails.
            ValidationError: If a document violates its schema.
        """
        source_dir = Path(source_dir)
        if isinstance(config, dict):
            config = EnvelopeConfig.from_dict(config)

        files = await asyncio.to_thread(lambda: list(iter_payload_files(source_dir)))

        timestamp = utc_timestamp()
        envelope = Envelope(
            manifest=build_manifest(config, timestamp),
            metadata={},
            audit=build_audit(config, timestamp),
        )

        payload_dir, staged = await asyncio.to_thread(self._stage_payload, envelope, source_dir, files)
        try:
            # Metadata describes what was actually copied, not what was classified
            dicom_metadata = await asyncio.to_thread(self.tag_reader.summarize, staged, config.patient)
            envelope.metadata = build_metadata(config, dicom_metadata)
            envelope.files = await asyncio.to_thread(build_files, payload_dir)
            self.validator.validate_envelope(
                envelope.manifest, envelope.metadata, envelope.audit, envelope.files
            )
            await asyncio.to_thread(self._write_metadata, payload_dir, envelope.metadata)
            digest = await asyncio.to_thread(hash_tree, payload_dir / IMAGING_DIR)
        except BaseException:
            shutil.rmtree(payload_dir.parent, ignore_errors=True)
            raise

        envelope.payload_dir = payload_dir
        envelope.payload_digest = digest
        envelope.manifest["security"]["payload_hash"] = str(digest)
        envelope.state = EnvelopeState.ASSEMBLED
        logger.info("Assembled envelope %s: %d payload files, %s",
                    envelope.envelope_id, len(staged), digest)
        return envelope

    def _stage_payload(self, envelope: Envelope, source_dir: Path, files: list[Path]) -> tuple[Path, list[Path]]:
        """
        Copy classified files into <staging>/payload/dicom.

        A source file that can no longer be read is skipped. Failures
        writing into the staging directory abort the build.
        """
        staging = self._mkdtemp(f"jmix-{envelope.envelope_id}-")
        payload_dir = staging / PAYLOAD_DIR
        imaging_dir = payload_dir / IMAGING_DIR
        staged = []
        try:
            imaging_dir.mkdir(parents=True)
            for src in files:
                try:
                    fsrc = src.open("rb")
                except OSError as e:
                    logger.warning("Skipping payload file %s: %s", src, e)
                    continue
                dest = imaging_dir / src.relative_to(source_dir)
                dest.parent.mkdir(parents=True, exist_ok=True)
                with fsrc, dest.open("wb") as fdst:
                    shutil.copyfileobj(fsrc, fdst)
                try:
                    shutil.copystat(src, dest)
                except OSError as e:
                    logger.debug("Timestamps not copied for %s: %s", src, e)
                staged.append(dest)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise FileSystemError(f"Failed to stage payload: {e}", staging) from e
        return payload_dir, staged

    def _write_metadata(self, payload_dir: Path, metadata: dict) -> None:
        try:
            write_json(payload_dir / METADATA_FILE, metadata)
        except OSError as e:
            raise FileSystemError(f"Failed to write metadata: {e}", payload_dir) from e

    def _create_package_root(self, envelope: Envelope, output_root: str | Path) -> Path:
        package_root = Path(output_root).resolve() / envelope.dirname
        try:
            package_root.parent.mkdir(parents=True, exist_ok=True)
            package_root.mkdir()
        except OSError as e:
            raise FileSystemError(f"Failed to create envelope directory: {e}", package_root) from e
        return package_root

    async def package_plain_envelope(self, envelope: Envelope, output_root: str | Path) -> Path:
        """
        Persist an assembled envelope with a plaintext payload/ directory.

        Returns:
            Path to <output_root>/<envelope_id>.JMIX.
        """
        envelope.require(EnvelopeState.ASSEMBLED)
        package_root = await asyncio.to_thread(self._persist_plain, envelope, output_root)

        envelope.encrypted = False
        envelope.payload_dir = package_root / PAYLOAD_DIR
        envelope.path = package_root
        envelope.state = EnvelopeState.OPEN
        logger.info("Packaged plain envelope %s at %s", envelope.envelope_id, package_root)
        return package_root

    def _persist_plain(self, envelope: Envelope, output_root: str | Path) -> Path:
        package_root = self._create_package_root(envelope, output_root)
        staged = envelope.payload_dir
        final = package_root / PAYLOAD_DIR
        moved = False
        try:
            shutil.move(str(staged), str(final))
            moved = True
            write_json(package_root / MANIFEST_FILE, envelope.manifest)
            write_json(package_root / AUDIT_FILE, envelope.audit)
        except OSError as e:
            if moved:
                shutil.move(str(final), str(staged))
            shutil.rmtree(package_root, ignore_errors=True)
            raise FileSystemError(f"Failed to write envelope: {e}", package_root) from e

        shutil.rmtree(staged.parent, ignore_errors=True)
        return package_root

    async def seal_envelope(
        self,
        envelope: Envelope,
        output_root: str | Path,
        recipient_public_key_b64: str,
    ) -> Path:
        """
        Persist an assembled envelope with its payload sealed for one recipient.

        On success the staged plaintext payload no longer exists. On failure
        nothing is left under output_root and the staged payload is untouched.

        Args:
            envelope: An ASSEMBLED envelope.
            output_root: Directory to create <envelope_id>.JMIX in.
            recipient_public_key_b64: Base64 32-byte Curve25519 public key.

        Returns:
            Path to <output_root>/<envelope_id>.JMIX.
        """
        envelope.require(EnvelopeState.ASSEMBLED)
        recipient_public_key = decode_key(recipient_public_key_b64, "recipient public key")

        blob = await asyncio.to_thread(pack_directory, envelope.payload_dir, PAYLOAD_DIR)
        ciphertext, material = seal(blob, recipient_public_key)
        del blob

        manifest = dict(envelope.manifest)
        manifest["security"] = {**envelope.manifest["security"], "encryption": material.to_dict()}
        package_root = await asyncio.to_thread(
            self._persist_sealed, envelope, output_root, manifest, ciphertext
        )

        envelope.manifest = manifest
        envelope.encrypted = True
        envelope.payload_dir = None
        envelope.path = package_root
        envelope.state = EnvelopeState.SEALED
        logger.info("Sealed envelope %s at %s", envelope.envelope_id, package_root)
        return package_root

    def _persist_sealed(self, envelope: Envelope, output_root, manifest: dict, ciphertext: bytes) -> Path:
        package_root = self._create_package_root(envelope, output_root)
        try:
            write_bytes(package_root / ENCRYPTED_PAYLOAD_FILE, ciphertext)
            write_json(package_root / MANIFEST_FILE, manifest)
            write_json(package_root / AUDIT_FILE, envelope.audit)
        except OSError as e:
            shutil.rmtree(package_root, ignore_errors=True)
            raise FileSystemError(f"Failed to write envelope: {e}", package_root) from e

        try:
            shutil.rmtree(envelope.payload_dir.parent)
        except OSError as e:
            raise FileSystemError(
                f"Envelope sealed but plaintext payload could not be removed: {e}",
                envelope.payload_dir,
            ) from e
        return package_root

    def discard(self, envelope: Envelope) -> None:
        """Delete the staged payload of an envelope that will not be persisted."""
        envelope.require(EnvelopeState.ASSEMBLED)
        shutil.rmtree(envelope.payload_dir.parent, ignore_errors=True)
        envelope.payload_dir = None
        envelope.state = EnvelopeState.BUILT

    def save_to_files(self, envelope: Envelope, output_dir: str | Path) -> Path:
        """Export the envelope documents as flat JSON files (no payload)."""
        output_dir = Path(output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            write_json(output_dir / MANIFEST_FILE, envelope.manifest)
            write_json(output_dir / METADATA_FILE, envelope.metadata)
            write_json(output_dir / AUDIT_FILE, envelope.audit)
            if envelope.files is not None:
                write_json(output_dir / "files.json", envelope.files)
        except OSError as e:
            raise FileSystemError(f"Failed to save envelope documents: {e}", output_dir) from e
        return output_dir

    # =========================================================================
    # Opening and verification
    # =========================================================================

    def _decrypt(self, envelope_dir: Path, manifest: dict, private_key: bytes) -> bytes:
        material = EncryptionMaterial.from_dict((manifest.get("security") or {}).get("encryption"))
        try:
            ciphertext = (envelope_dir / ENCRYPTED_PAYLOAD_FILE).read_bytes()
        except OSError as e:
            raise FileSystemError(f"Failed to read encrypted payload: {e}", envelope_dir) from e
        return open_sealed(ciphertext, material, private_key)

    def _unpack_and_hash(self, blob: bytes, scratch: Path) -> tuple[Path, PayloadDigest]:
        unpack_archive(blob, scratch)
        extracted = scratch / PAYLOAD_DIR
        if not extracted.is_dir():
            raise ArchiveCorrupt("Archive does not contain a payload directory")
        return extracted, hash_imaging_tree(extracted)

    async def open_envelope(self, envelope_dir: str | Path, recipient_private_key_b64: str) -> Path:
        """
        Decrypt a sealed envelope and restore a verified payload/ directory.

        Returns:
            Path to the restored payload directory.

        Raises:
            InvalidKey: Malformed private key or encryption material.
            MissingEncryptionMetadata: Envelope is not sealed.
            AuthenticationFailed: Wrong key or tampered ciphertext.
            IntegrityViolation: Decrypted payload does not match payload_hash.
            ArchiveCorrupt: Decrypted archive is unreadable or unsafe.
        """
        envelope_dir = Path(envelope_dir)
        payload_dir = envelope_dir / PAYLOAD_DIR
        scratch = envelope_dir / f".{PAYLOAD_DIR}.{uuid.uuid4().hex[:8]}.tmp"

        with _located(envelope_dir):
            private_key = decode_key(recipient_private_key_b64, "recipient private key")
            manifest = await asyncio.to_thread(read_manifest, envelope_dir)
            expected = expected_payload_hash(manifest)
            if payload_dir.exists():
                raise FileSystemError("Payload directory already exists; refusing to overwrite")

            blob = await asyncio.to_thread(self._decrypt, envelope_dir, manifest, private_key)
            try:
                extracted, computed = await asyncio.to_thread(self._unpack_and_hash, blob, scratch)
                if str(computed) != expected:
                    raise IntegrityViolation(expected, str(computed))
                os.replace(extracted, payload_dir)
                (payload_dir / IMAGING_DIR).mkdir(exist_ok=True)
            finally:
                await asyncio.to_thread(shutil.rmtree, scratch, ignore_errors=True)

        logger.info("Opened envelope %s, payload verified", envelope_dir)
        return payload_dir

    async def verify_payload_hash(
        self,
        envelope_dir: str | Path,
        recipient_private_key_b64: str = None,
    ) -> VerificationResult:
        """
        Re-hash an envelope's payload and compare with the manifest.

        A plaintext envelope is hashed in place. A sealed one needs the
        recipient private key; it is opened into a temporary directory that
        is always removed afterwards.

        Returns:
            VerificationResult; a mismatch gives ok=False rather than raising.
        """
        envelope_dir = Path(envelope_dir)
        payload_dir = envelope_dir / PAYLOAD_DIR

        with _located(envelope_dir):
            manifest = await asyncio.to_thread(read_manifest, envelope_dir)
            expected = expected_payload_hash(manifest)

            if payload_dir.is_dir():
                mode = "plain"
                computed = await asyncio.to_thread(hash_imaging_tree, payload_dir)
            else:
                mode = "encrypted"
                if not recipient_private_key_b64:
                    raise InvalidKey("A recipient private key is required to verify an encrypted envelope")
                private_key = decode_key(recipient_private_key_b64, "recipient private key")
                blob = await asyncio.to_thread(self._decrypt, envelope_dir, manifest, private_key)
                scratch = await asyncio.to_thread(self._mkdtemp, "jmix-verify-")
                try:
                    _extracted, computed = await asyncio.to_thread(self._unpack_and_hash, blob, scratch)
                finally:
                    await asyncio.to_thread(shutil.rmtree, scratch, ignore_errors=True)

        result = VerificationResult(
            ok=str(computed) == expected,
            expected=expected,
            computed=str(computed),
            mode=mode,
        )
        if not result.ok:
            logger.warning("Payload hash mismatch for %s: expected %s, computed %s",
                           envelope_dir, expected, computed)
        return result
