"""
Archiver
Serialize a directory tree into a single tar byte stream and back.

Archives are uncompressed POSIX (PAX) tar. Member order follows the
filesystem walk; only the hasher imposes a sorted order. Directories are
stored as members so that empty directories survive a round trip.
"""

import io
import os
import tarfile
from pathlib import Path, PurePosixPath

from jmix.errors import ArchiveCorrupt, FileSystemError


def _portable(info: tarfile.TarInfo) -> tarfile.TarInfo:
    """Drop the packing host's owner so archives carry no local account names."""
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def pack_directory(root: str | Path, prefix: str = "") -> bytes:
    """
    Pack a directory into tar bytes.

    Args:
        root: Directory whose contents are archived.
        prefix: Optional top-level name for every member (e.g. "payload").

    Returns:
        The archive as bytes.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileSystemError("Directory to archive not found", root)

    def arcname(path: Path) -> str:
        rel = path.relative_to(root).as_posix()
        if rel == ".":
            return prefix
        return f"{prefix}/{rel}" if prefix else rel

    buf = io.BytesIO()
    try:
        with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
            if prefix:
                tar.add(root, arcname=prefix, recursive=False, filter=_portable)
            for dirpath, dirnames, filenames in os.walk(root):
                current = Path(dirpath)
                for name in dirnames:
                    sub = current / name
                    if not sub.is_symlink():
                        tar.add(sub, arcname=arcname(sub), recursive=False, filter=_portable)
                for name in filenames:
                    full = current / name
                    if full.is_symlink() or not full.is_file():
                        continue
                    tar.add(full, arcname=arcname(full), recursive=False, filter=_portable)
    except OSError as e:
        raise FileSystemError(f"Failed to archive directory: {e}", root) from e
    return buf.getvalue()


def _safe_member_path(name: str) -> PurePosixPath:
    """Reject absolute names, parent references, and empty names."""
    member = PurePosixPath(name)
    if not name or member.is_absolute() or ".." in member.parts:
        raise ArchiveCorrupt(f"Unsafe archive member name: {name!r}")
    return member


def unpack_archive(blob: bytes, dest_root: str | Path) -> list[str]:
    """
    Unpack tar bytes into dest_root.

    Only directories and regular files are accepted. Links, devices and
    names that escape dest_root make the whole archive corrupt.

    Returns:
        Relative names of the regular files written.

    Raises:
        ArchiveCorrupt: If the archive cannot be parsed or is unsafe.
    """
    dest_root = Path(dest_root)
    dest_root.mkdir(parents=True, exist_ok=True)
    written = []

    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:") as tar:
            for member in tar:
                rel = _safe_member_path(member.name)
                target = dest_root.joinpath(*rel.parts)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    source = tar.extractfile(member)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with source, target.open("wb") as out:
                        data = source.read()
                        if len(data) != member.size:
                            raise ArchiveCorrupt(f"Truncated archive member: {member.name}")
                        out.write(data)
                    os.chmod(target, member.mode & 0o777)
                    os.utime(target, (member.mtime, member.mtime))
                    written.append(rel.as_posix())
                else:
                    raise ArchiveCorrupt(f"Unsupported archive member type: {member.name}")
    except (tarfile.TarError, EOFError) as e:
        raise ArchiveCorrupt(f"Failed to read archive: {e}") from e
    except OSError as e:
        raise FileSystemError(f"Failed to unpack archive: {e}", dest_root) from e

    return written
