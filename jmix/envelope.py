"""
Envelope
The packaged unit: manifest + clinical metadata + audit trail + payload.

Lifecycle:
  BUILT      documents assembled, no payload yet
  ASSEMBLED  payload files classified and staged, digest computed
  OPEN       persisted with the payload kept as plaintext
  SEALED     persisted with the payload archived and encrypted,
             plaintext removed

OPEN and SEALED are only reached together with the write to
<output_root>/<envelope_id>.JMIX, so both imply `persisted`.

An envelope is owned by one packaging operation until persisted; after
that it is read-only state on disk.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from jmix.config import EnvelopeConfig
from jmix.errors import EnvelopeStateError, FileSystemError
from jmix.hasher import PayloadDigest, hash_file, list_tree

ENVELOPE_SUFFIX = ".JMIX"
MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"
AUDIT_FILE = "audit.json"
PAYLOAD_DIR = "payload"
IMAGING_DIR = "dicom"
ENCRYPTED_PAYLOAD_FILE = "payload.encrypted"

DICOM_MIME_TYPE = "application/dicom"

_OPTIONAL_MANIFEST_FIELDS = ("requester", "consent", "custom_tags", "report", "deid_keys")


class EnvelopeState(Enum):
    """Where an envelope is in its lifecycle."""
    BUILT = "built"
    ASSEMBLED = "assembled"
    OPEN = "open"
    SEALED = "sealed"


@dataclass
class Envelope:
    """
    One envelope being packaged.

    payload_dir is the staging directory holding `metadata.json` and
    `dicom/` until the envelope is persisted.
    """
    manifest: dict
    metadata: dict
    audit: dict
    state: EnvelopeState = EnvelopeState.BUILT
    payload_dir: Path | None = None
    payload_digest: PayloadDigest | None = None
    encrypted: bool = False
    path: Path | None = None
    files: dict | None = None

    @property
    def envelope_id(self) -> str:
        return self.manifest["envelope_id"]

    @property
    def dirname(self) -> str:
        return f"{self.envelope_id}{ENVELOPE_SUFFIX}"

    @property
    def persisted(self) -> bool:
        return self.path is not None

    def require(self, *states: EnvelopeState) -> None:
        """Raise EnvelopeStateError unless the envelope is in one of states."""
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise EnvelopeStateError(
                f"Envelope {self.envelope_id} is {self.state.value}, expected {expected}"
            )

    def to_dict(self) -> dict:
        data = {
            "manifest": self.manifest,
            "metadata": self.metadata,
            "audit": self.audit,
        }
        if self.files is not None:
            data["files"] = self.files
        return data


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_manifest(config: EnvelopeConfig, timestamp: str) -> dict:
    """Routing and security header; payload_hash is added once assembled."""
    manifest = {
        "jmix_version": config.version,
        "envelope_id": str(uuid.uuid4()),
        "created_at": timestamp,
        "sender": config.sender,
        "receivers": config.receivers,
        "patient": config.patient,
        "security": dict(config.security),
    }
    for name in _OPTIONAL_MANIFEST_FIELDS:
        value = getattr(config, name)
        if value:
            manifest[name] = value
    return manifest


def build_metadata(config: EnvelopeConfig, dicom_metadata: dict) -> dict:
    """Clinical metadata stored inside the payload as metadata.json."""
    return {
        "patient": config.patient,
        "study": {
            "description": dicom_metadata.get("study_description"),
            "uid": dicom_metadata.get("study_uid"),
            "date": dicom_metadata.get("study_date"),
        },
        "dicom": dicom_metadata,
        "custom_metadata": {},
    }


def build_audit(config: EnvelopeConfig, timestamp: str) -> dict:
    """Audit trail with the initial envelope_created entry."""
    entry = {
        "event": "envelope_created",
        "timestamp": timestamp,
        "by": {"id": config.sender.get("id"), "name": config.sender.get("name")},
    }
    if config.receivers:
        first = config.receivers[0]
        entry["to"] = {"id": first.get("id"), "name": first.get("name")}
    return {"audit": [entry]}


def build_files(payload_dir: Path) -> dict:
    """
    Listing of the staged imaging files (files.json).

    Paths are relative to payload_dir; each entry carries its own
    sha256 digest so a single file can be checked without the others.
    """
    entries = []
    for rel, full in list_tree(payload_dir / IMAGING_DIR):
        try:
            size = full.stat().st_size
        except OSError as e:
            raise FileSystemError(f"Failed to stat payload file: {e}", full) from e
        entries.append({
            "path": f"{IMAGING_DIR}/{rel}",
            "size": size,
            "hash": str(hash_file(full)),
            "mime_type": DICOM_MIME_TYPE,
        })
    return {
        "payload_directory": PAYLOAD_DIR,
        "files": entries,
        "total_size": sum(entry["size"] for entry in entries),
        "file_count": len(entries),
    }


@dataclass
class VerificationResult:
    """Outcome of re-hashing an envelope's payload."""
    ok: bool
    expected: str
    computed: str
    mode: str  # "plain" or "encrypted"

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "expected": self.expected,
            "computed": self.computed,
            "mode": self.mode,
        }
