"""Bounded extraction of ZIP archives downloaded from the platform."""

import io
import zipfile
from dataclasses import dataclass

from .errors import UnsafeArchive

MAX_ARCHIVE_SIZE = 10 * 1024 * 1024  # 10MB compressed
MAX_UNCOMPRESSED_SIZE = 50 * 1024 * 1024  # 50MB across all members
MAX_COMPRESSION_RATIO = 50


@dataclass
class ArchiveMember:
    """One extracted archive member."""

    name: str
    data: bytes


def extract_members(
    payload: bytes,
    suffixes: tuple[str, ...] | None = None,
    max_members: int = 1000,
    max_archive_size: int = MAX_ARCHIVE_SIZE,
    max_uncompressed_size: int = MAX_UNCOMPRESSED_SIZE,
    max_ratio: int = MAX_COMPRESSION_RATIO,
) -> list[ArchiveMember]:
    """Extract members from a ZIP payload, rejecting archive bombs.

    Every member is checked, including those filtered out by suffix, so a
    hostile entry anywhere in the archive rejects the whole payload.

    Args:
        payload: Raw archive bytes
        suffixes: Lower-case file suffixes to return (None returns all files)
        max_members: Maximum number of entries in the archive
        max_archive_size: Maximum compressed payload size in bytes
        max_uncompressed_size: Maximum total uncompressed size in bytes
        max_ratio: Maximum per-member compression ratio

    Returns:
        Members in archive order

    Raises:
        UnsafeArchive: If the payload is not a ZIP or breaks a limit
    """
    if len(payload) > max_archive_size:
        raise UnsafeArchive(f"Archive too large: {len(payload)} bytes (max {max_archive_size})")

    try:
        archive = zipfile.ZipFile(io.BytesIO(payload))
    except zipfile.BadZipFile as e:
        raise UnsafeArchive(f"Not a ZIP archive: {e}") from e

    with archive:
        infos = archive.infolist()
        if len(infos) > max_members:
            raise UnsafeArchive(f"Archive has too many members: {len(infos)} (max {max_members})")

        total = 0
        selected: list[zipfile.ZipInfo] = []
        for info in infos:
            name = info.filename
            if ".." in name.split("/") or name.startswith("/") or "\\" in name:
                raise UnsafeArchive(f"Suspicious member path: {name}")

            total += info.file_size
            if total > max_uncompressed_size:
                raise UnsafeArchive(
                    f"Uncompressed size exceeds limit: {total} bytes (max {max_uncompressed_size})"
                )
            if info.compress_size > 0 and info.file_size // info.compress_size > max_ratio:
                raise UnsafeArchive(f"Suspicious compression ratio for member: {name}")

            if info.is_dir():
                continue
            if suffixes is None or name.lower().endswith(suffixes):
                selected.append(info)

        return [ArchiveMember(name=info.filename, data=archive.read(info)) for info in selected]
