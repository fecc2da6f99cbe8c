"""
Secure Envelope Cipher
Ephemeral X25519 key agreement + HKDF-SHA256 + AES-256-GCM.

Sealing:
  fresh ephemeral key pair  → X25519 with the recipient public key
  shared secret             → HKDF-SHA256 (empty salt, fixed info) → AES key
  AES key + fresh 12-byte IV → AES-256-GCM, no associated data

Opening recomputes the same shared secret from the recipient private key
and the stored ephemeral public key; X25519 is commutative, so both sides
derive the same AES key. The ephemeral private key never leaves seal().

Each call is independent. There is no shared state between seal and open.
"""

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from jmix.errors import (
    AuthenticationFailed,
    InvalidKey,
    InvalidMaterial,
    MissingEncryptionMetadata,
)


ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32   # X25519 keys and the derived AES-256 key
IV_SIZE = 12    # AES-GCM standard nonce
TAG_SIZE = 16

# Protocol constant; binds the derived key to payload encryption
HKDF_INFO = b"JMIX-Payload-Encryption"
# salt=None is HashLen zero bytes, which HMAC treats identically to an empty salt
HKDF_SALT = None

_RAW = serialization.Encoding.Raw


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _unb64(text, what: str, error=InvalidKey) -> bytes:
    if not isinstance(text, str):
        raise error(f"{what} must be a base64 string")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise error(f"{what} is not valid base64") from e


def decode_key(key_b64: str, what: str = "key") -> bytes:
    """Decode a base64 Curve25519 key and check it is 32 bytes."""
    raw = _unb64(key_b64, what)
    if len(raw) != KEY_SIZE:
        raise InvalidKey(f"Invalid {what} length: expected {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def generate_keypair() -> tuple[str, str]:
    """
    Generate a recipient Curve25519 key pair.

    Returns:
        (private_key_b64, public_key_b64), each 32 raw bytes.
    """
    private = X25519PrivateKey.generate()
    private_raw = private.private_bytes(_RAW, serialization.PrivateFormat.Raw,
                                        serialization.NoEncryption())
    public_raw = private.public_key().public_bytes(_RAW, serialization.PublicFormat.Raw)
    return _b64(private_raw), _b64(public_raw)


@dataclass(frozen=True)
class EncryptionMaterial:
    """
    Per-envelope encryption parameters, stored in the manifest as base64.
    Generated once per seal; never modified.
    """
    ephemeral_public_key: bytes
    iv: bytes
    auth_tag: bytes
    algorithm: str = ALGORITHM

    def __post_init__(self):
        if self.algorithm != ALGORITHM:
            raise InvalidMaterial(f"Unsupported encryption algorithm: {self.algorithm!r}")
        if len(self.ephemeral_public_key) != KEY_SIZE:
            raise InvalidMaterial("Invalid ephemeral public key: expected 32 bytes")
        if len(self.iv) != IV_SIZE:
            raise InvalidMaterial(f"Invalid IV length (expected {IV_SIZE})")
        if len(self.auth_tag) != TAG_SIZE:
            raise InvalidMaterial(f"Invalid auth tag length (expected {TAG_SIZE})")

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "ephemeral_public_key": _b64(self.ephemeral_public_key),
            "iv": _b64(self.iv),
            "auth_tag": _b64(self.auth_tag),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptionMaterial":
        """
        Read material from a manifest's security.encryption block.

        Raises:
            MissingEncryptionMetadata: If the block or a field is absent.
            InvalidMaterial: If a field is not base64 or has the wrong length.
        """
        if not isinstance(data, dict):
            raise MissingEncryptionMetadata("Envelope is not encrypted or missing encryption metadata")
        missing = [k for k in ("ephemeral_public_key", "iv", "auth_tag") if not data.get(k)]
        if missing:
            raise MissingEncryptionMetadata(
                f"Envelope is missing encryption metadata: {', '.join(missing)}"
            )
        return cls(
            ephemeral_public_key=_unb64(data["ephemeral_public_key"], "ephemeral public key", InvalidMaterial),
            iv=_unb64(data["iv"], "IV", InvalidMaterial),
            auth_tag=_unb64(data["auth_tag"], "auth tag", InvalidMaterial),
            algorithm=data.get("algorithm", ALGORITHM),
        )


def derive_payload_key(shared_secret: bytes) -> bytes:
    """Expand an X25519 shared secret into the 32-byte AES key."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=HKDF_SALT,
        info=HKDF_INFO,
    )
    return hkdf.derive(shared_secret)


def _exchange(private: X25519PrivateKey, public_raw: bytes) -> bytes:
    try:
        return private.exchange(X25519PublicKey.from_public_bytes(public_raw))
    except ValueError as e:
        # Low-order points produce an all-zero shared secret
        raise InvalidKey(f"Key agreement failed: {e}") from e


def seal(plaintext: bytes, recipient_public_key: bytes) -> tuple[bytes, EncryptionMaterial]:
    """
    Encrypt a payload archive for one recipient.

    Args:
        plaintext: The archive bytes.
        recipient_public_key: 32-byte raw Curve25519 public key.

    Returns:
        (ciphertext, material). The ciphertext does not include the tag;
        the tag is carried in the material.

    Raises:
        InvalidKey: If the recipient key is not 32 bytes.
    """
    if not isinstance(recipient_public_key, bytes) or len(recipient_public_key) != KEY_SIZE:
        raise InvalidKey("Invalid recipient public key length: expected 32 bytes")

    # New ephemeral key for every envelope (forward secrecy)
    ephemeral = X25519PrivateKey.generate()
    shared = _exchange(ephemeral, recipient_public_key)
    key = derive_payload_key(shared)

    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

    material = EncryptionMaterial(
        ephemeral_public_key=ephemeral.public_key().public_bytes(_RAW, serialization.PublicFormat.Raw),
        iv=iv,
        auth_tag=tag,
    )
    return ciphertext, material


def open_sealed(ciphertext: bytes, material: EncryptionMaterial, recipient_private_key: bytes) -> bytes:
    """
    Decrypt a sealed payload archive.

    All-or-nothing: either the full plaintext is returned or
    AuthenticationFailed is raised.

    Args:
        ciphertext: Bytes from payload.encrypted.
        material: The envelope's encryption material.
        recipient_private_key: 32-byte raw Curve25519 private key.

    Raises:
        InvalidKey: If the private key is not 32 bytes.
        AuthenticationFailed: If the tag does not verify.
    """
    if not isinstance(recipient_private_key, bytes) or len(recipient_private_key) != KEY_SIZE:
        raise InvalidKey("Invalid recipient private key length: expected 32 bytes")

    private = X25519PrivateKey.from_private_bytes(recipient_private_key)
    shared = _exchange(private, material.ephemeral_public_key)
    key = derive_payload_key(shared)

    try:
        return AESGCM(key).decrypt(material.iv, ciphertext + material.auth_tag, None)
    except InvalidTag as e:
        raise AuthenticationFailed(
            "Payload authentication failed: wrong key or tampered ciphertext"
        ) from e
