"""
JMIX: Secure Imaging Envelopes
Package a directory of DICOM files into a portable, tamper-evident
<envelope_id>.JMIX directory.

An envelope has two layers:
1. Manifest + audit: plaintext routing and security header
2. Payload: imaging files + metadata.json, kept plaintext or sealed

Sealing uses an ephemeral X25519 key per envelope, HKDF-SHA256 and
AES-256-GCM. A payload digest recorded in the manifest is re-checked
whenever the payload is opened, so a correctly decrypted but substituted
archive is still rejected.

Usage:
    from jmix import EnvelopePipeline, load_config
    pipeline = EnvelopePipeline()
    envelope = await pipeline.build_assembled_envelope("study/", load_config("config.json"))
    path = await pipeline.seal_envelope(envelope, "out/", recipient_public_key_b64)
"""

from jmix.archive import pack_directory, unpack_archive
from jmix.cipher import EncryptionMaterial, generate_keypair, seal, open_sealed
from jmix.classifier import is_payload_file, iter_payload_files
from jmix.config import EnvelopeConfig, load_config
from jmix.dicom import DicomTagReader
from jmix.envelope import Envelope, EnvelopeState, VerificationResult
from jmix.errors import (
    JmixError,
    InvalidKey,
    InvalidMaterial,
    AuthenticationFailed,
    IntegrityViolation,
    MissingEncryptionMetadata,
    FileSystemError,
    ArchiveCorrupt,
    ValidationError,
    ConfigError,
    EnvelopeStateError,
)
from jmix.hasher import PayloadDigest, hash_tree
from jmix.pipeline import EnvelopePipeline
from jmix.validation import SchemaValidator

__version__ = "0.1.0"
__all__ = [
    "EnvelopePipeline",
    "Envelope",
    "EnvelopeState",
    "EnvelopeConfig",
    "VerificationResult",
    "load_config",
    "SchemaValidator",
    "DicomTagReader",
    "PayloadDigest",
    "hash_tree",
    "is_payload_file",
    "iter_payload_files",
    "pack_directory",
    "unpack_archive",
    "EncryptionMaterial",
    "generate_keypair",
    "seal",
    "open_sealed",
    "JmixError",
    "InvalidKey",
    "InvalidMaterial",
    "AuthenticationFailed",
    "IntegrityViolation",
    "MissingEncryptionMetadata",
    "FileSystemError",
    "ArchiveCorrupt",
    "ValidationError",
    "ConfigError",
    "EnvelopeStateError",
]
