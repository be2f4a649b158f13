"""Archivist: copy and verify a session transcript before rotation."""

import shutil
from pathlib import Path

from loguru import logger

from rotaguard.rotation.transcript import count_records, parse_record, read_lines

ARCHIVE_DIRNAME = "archive"


class ArchiveError(OSError):
    """The transcript could not be copied to its archive location."""


def get_archive_path(archive_dir: Path, session_id: str) -> Path:
    return archive_dir / f"{session_id}.jsonl"


def archive(session_file: Path, archive_dir: Path, session_id: str) -> Path:
    """
    Copy *session_file* byte-for-byte into *archive_dir*.

    Returns:
        Path of the archive copy.

    Raises:
        ArchiveError: If the source is missing or the copy fails.
    """
    archive_path = get_archive_path(archive_dir, session_id)
    try:
        archive_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(session_file, archive_path)
    except OSError as e:
        raise ArchiveError(f"Failed to archive {session_file} → {archive_path}: {e}") from e
    return archive_path


def validate_archive(archive_path: Path, original_path: Path) -> bool:
    """
    Check an archive copy is complete.

    Valid means: the file exists and is non-empty, its first and last
    records parse as JSON objects, and it has as many records as the
    original.
    """
    if not archive_path.is_file():
        return False

    lines = read_lines(archive_path)
    if not lines:
        return False

    if parse_record(lines[0]) is None or parse_record(lines[-1]) is None:
        return False

    return len(lines) == count_records(original_path)


def remove_archive(archive_path: Path | None) -> None:
    """Delete a partial archive; already-missing files are fine."""
    if archive_path is None:
        return
    try:
        archive_path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial archive {archive_path}: {e}")
