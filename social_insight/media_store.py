"""
Partitioned on-disk storage for decrypted media.

Layout::

    <root>/<YYYY>/<MM>/<sanitized conversation id>/<YYYYMMDD_HHMMSS>[_<hex6>]-<NNNN>.<ext>

Sequence numbers are local to a directory. A number is reserved by
creating the file exclusively, so two writers targeting the same
directory never share a filename.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from social_insight.timestamps import compact_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

UNKNOWN_CONVERSATION_DIR = "unknown"
MAX_RESERVATION_ATTEMPTS = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_SEQUENCE_SUFFIX = re.compile(r"-(\d{4,})\.[A-Za-z0-9]+$")
_NON_HEX = re.compile(r"[^0-9a-fA-F]")


def sanitize_conversation_id(conversation_id: Optional[str]) -> str:
    """Replace anything outside [A-Za-z0-9_-] with '_' and trim underscores."""
    sanitized = _UNSAFE_CHARS.sub("_", conversation_id or "").strip("_")
    return sanitized or UNKNOWN_CONVERSATION_DIR


def partition_dir(root: Path, conversation_id: Optional[str], sent_at: str) -> Path:
    moment = parse_timestamp(sent_at) or utc_now()
    return root / f"{moment.year:04d}" / f"{moment.month:02d}" / sanitize_conversation_id(conversation_id)


def next_sequence(directory: Path) -> int:
    """Highest ``-NNNN.ext`` suffix found in the directory plus one."""
    highest = 0
    if directory.is_dir():
        for entry in directory.iterdir():
            match = _SEQUENCE_SUFFIX.search(entry.name)
            if match:
                highest = max(highest, int(match.group(1)))
    return highest + 1


def message_id_prefix(message_id: Optional[str]) -> str:
    """First six hex characters of the provider message id, lowercased."""
    if not message_id:
        return ""
    return _NON_HEX.sub("", message_id)[:6].lower()


def build_filename(sent_at: str, message_id: Optional[str], sequence: int, extension: str) -> str:
    stem = compact_timestamp(sent_at)
    prefix = message_id_prefix(message_id)
    if prefix:
        stem = f"{stem}_{prefix}"
    return f"{stem}-{sequence:04d}.{extension}"


class MediaStore:
    """Writes media bytes under a storage root and hands back relative paths."""

    def __init__(self, root: str):
        self.root = Path(root)

    def write(
        self,
        data: bytes,
        conversation_id: Optional[str],
        sent_at: str,
        message_id: Optional[str],
        extension: str,
    ) -> Path:
        """
        Store bytes and return the absolute path of the new file.

        Raises:
            OSError: directory creation or write failure
        """
        directory = partition_dir(self.root, conversation_id, sent_at)
        directory.mkdir(parents=True, exist_ok=True)

        sequence = next_sequence(directory)
        for _ in range(MAX_RESERVATION_ATTEMPTS):
            target = directory / build_filename(sent_at, message_id, sequence, extension)
            try:
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                logger.debug(f"Sequence {sequence} taken in {directory}, trying next")
                sequence += 1
                continue

            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
            except OSError:
                target.unlink(missing_ok=True)
                raise

            logger.info(f"Stored media file {target} ({len(data)} bytes)")
            return target

        raise FileExistsError(f"Unable to reserve a media filename in {directory}")

    def relative_path(self, absolute: Path) -> str:
        return absolute.relative_to(self.root).as_posix()

    def resolve(self, relative: str) -> Optional[Path]:
        """
        Canonicalize a relative path and confine it to the storage root.

        Returns None when the path escapes the root.
        """
        root = self.root.resolve()
        candidate = (root / relative).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            return None
        return candidate
