"""
Payload Classifier
Decides which files in a source directory belong in the payload.

A file qualifies if it carries a known imaging extension, or if the
4 bytes at offset 128 read "DICM" (the DICOM Part 10 preamble marker).
Classification is best-effort: a file that cannot be opened is simply
not payload.
"""

import logging
import os
from pathlib import Path

from jmix.errors import FileSystemError

logger = logging.getLogger(__name__)

PAYLOAD_EXTENSIONS = frozenset({".dcm", ".dicom"})
MAGIC_OFFSET = 128
MAGIC_SIGNATURE = b"DICM"


def is_payload_file(path: str | Path) -> bool:
    """
    Check whether a file belongs in the payload.

    Args:
        path: File to classify.

    Returns:
        True if the extension or the magic signature matches.
        False for anything else, including unreadable files.
    """
    path = Path(path)
    if path.suffix.lower() in PAYLOAD_EXTENSIONS:
        return True

    try:
        with path.open("rb") as f:
            f.seek(MAGIC_OFFSET)
            return f.read(len(MAGIC_SIGNATURE)) == MAGIC_SIGNATURE
    except OSError as e:
        logger.debug("Excluding unreadable file %s: %s", path, e)
        return False


def iter_payload_files(source_dir: str | Path):
    """
    Walk a source directory and yield every qualifying regular file.

    Order is whatever the filesystem returns; callers that need a
    stable order must sort.

    Raises:
        FileSystemError: If source_dir is missing or not a directory.
    """
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise FileSystemError("Source directory not found", source_dir)

    def _on_error(err: OSError):
        # Only the root is fatal; unreadable subdirectories are skipped
        if Path(err.filename) == source_dir:
            raise FileSystemError(f"Failed to read directory: {err}", source_dir) from err
        logger.warning("Skipping unreadable directory %s: %s", err.filename, err)

    for dirpath, _dirnames, filenames in os.walk(source_dir, onerror=_on_error):
        for name in filenames:
            candidate = Path(dirpath) / name
            if candidate.is_symlink() or not candidate.is_file():
                continue
            if is_payload_file(candidate):
                yield candidate
            else:
                logger.debug("Skipping non-payload file %s", candidate)
