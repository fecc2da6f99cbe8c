"""
Deterministic Hasher
Content-addressed digest over a directory tree.

Every regular file under the root contributes its POSIX relative path,
a newline, and its raw bytes to one streaming SHA-256 context. Entries
are sorted by the UTF-8 bytes of their relative path, so the digest does
not depend on directory-scan order or platform.

Relative paths are encoded as strict UTF-8 with no Unicode normalization.
A file name that cannot be encoded that way is rejected.
"""

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path

from jmix.errors import FileSystemError

CHUNK_SIZE = 64 * 1024
_DIGEST_RE = re.compile(r"^sha256:([0-9a-f]{64})$")


@dataclass(frozen=True)
class PayloadDigest:
    """A `sha256:<hex>` digest of a payload tree."""
    hexdigest: str

    def __str__(self) -> str:
        return f"sha256:{self.hexdigest}"

    @classmethod
    def parse(cls, text: str) -> "PayloadDigest":
        """Parse a `sha256:<64 lowercase hex>` string."""
        match = _DIGEST_RE.match(text or "")
        if not match:
            raise ValueError(f"Not a payload digest: {text!r}")
        return cls(match.group(1))


def list_tree(root: str | Path) -> list[tuple[str, Path]]:
    """
    List (relative_path, absolute_path) for every regular file under root,
    sorted by the UTF-8 bytes of the relative path.

    Symlinks are not followed and not listed.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileSystemError("Payload directory not found", root)

    entries = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_symlink() or not full.is_file():
                continue
            rel = full.relative_to(root).as_posix()
            try:
                key = rel.encode("utf-8")
            except UnicodeEncodeError as e:
                raise FileSystemError(f"File name is not valid UTF-8: {rel!r}", full) from e
            entries.append((key, rel, full))

    entries.sort(key=lambda entry: entry[0])
    return [(rel, full) for _key, rel, full in entries]


def hash_tree(root: str | Path) -> PayloadDigest:
    """
    Compute the payload digest of a directory tree.

    Args:
        root: Directory to hash. May be empty.

    Returns:
        The digest. An empty tree hashes the empty byte stream.

    Raises:
        FileSystemError: If root is missing or a file cannot be read.
    """
    h = hashlib.sha256()
    for rel, full in list_tree(root):
        h.update((rel + "\n").encode("utf-8"))
        _feed(h, full)
    return PayloadDigest(h.hexdigest())


def hash_file(path: str | Path) -> PayloadDigest:
    """Digest of a single file's bytes, used for the files.json listing."""
    h = hashlib.sha256()
    _feed(h, Path(path))
    return PayloadDigest(h.hexdigest())


def _feed(h, path: Path) -> None:
    try:
        with path.open("rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                h.update(chunk)
    except OSError as e:
        raise FileSystemError(f"Failed to read payload file: {e}", path) from e
