"""
Errors
Every failure the packager reports is one of these kinds.

Cryptographic and integrity failures are distinct types so a caller can
tell tampering (AuthenticationFailed) from a stale or substituted archive
(IntegrityViolation) from user error (InvalidKey, ConfigError).
"""

from pathlib import Path


class JmixError(Exception):
    """Base class for all envelope errors."""

    def __init__(self, message: str, path: str | Path = None):
        super().__init__(message)
        self.message = message
        # Callers higher up may fill this in once the envelope is known
        self.path = Path(path) if path is not None else None

    def __str__(self) -> str:
        if self.path is not None:
            return f"{self.message} [{self.path}]"
        return self.message


class InvalidKey(JmixError):
    """A key has the wrong length or is not valid base64."""


class InvalidMaterial(InvalidKey):
    """Stored encryption material (ephemeral key, IV, tag) is malformed."""


class AuthenticationFailed(JmixError):
    """AES-GCM tag check failed: wrong key, wrong recipient, or tampered data."""


class IntegrityViolation(JmixError):
    """Decryption succeeded but the payload does not match its recorded hash."""

    def __init__(self, expected: str, computed: str, path: str | Path = None):
        self.expected = expected
        self.computed = computed
        super().__init__(
            f"Payload hash mismatch: expected {expected} but got {computed}", path
        )


class MissingEncryptionMetadata(JmixError):
    """The manifest lacks the security fields needed to open or verify."""


class FileSystemError(JmixError):
    """An I/O failure while reading or writing an envelope."""


class ArchiveCorrupt(JmixError):
    """The decrypted archive could not be parsed or contains unsafe members."""


class ValidationError(JmixError):
    """A document failed schema validation."""

    def __init__(self, message: str, errors: list[str] = None, path: str | Path = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message, path)


class ConfigError(JmixError):
    """The envelope configuration is missing or malformed."""


class EnvelopeStateError(JmixError):
    """An operation was attempted in the wrong lifecycle state."""
