"""
Media attachment extraction.

Builds a transient MediaAttachment descriptor from whichever provider
sub-object carries the attachment. The descriptor is consumed once by the
media pipeline and never persisted itself.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urljoin

from social_insight.payload import first_match, first_text, path

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = "bin"

# Recognized attachment kinds; video is not enumerated
ATTACHMENT_KINDS = ("image", "audio", "sticker", "document")

# Levels of message/msgContent indirection searched for a container
MAX_SEARCH_DEPTH = 2

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "audio/wav": "wav",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/quicktime": "mov",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/zip": "zip",
    "text/plain": "txt",
    "text/csv": "csv",
}

URL_FIELDS = (path("url"), path("link"), path("mediaUrl"), path("media_url"))
MIME_FIELDS = (path("mimetype"), path("mimeType"), path("mime_type"))
CAPTION_FIELDS = (path("caption"), path("title"))
FILENAME_FIELDS = (path("fileName"), path("filename"), path("file_name"))
LENGTH_FIELDS = (path("fileLength"), path("file_length"), path("fileSize"), path("size"))
DURATION_FIELDS = (path("seconds"), path("duration"))


@dataclass
class MediaAttachment:
    kind: str
    url: Optional[str] = None
    mime_type: str = DEFAULT_MIME_TYPE
    caption: Optional[str] = None
    filename: Optional[str] = None
    file_length: Optional[int] = None
    duration: Optional[int] = None
    media_key: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    direct_path: Optional[str] = None

    @property
    def is_decryptable(self) -> bool:
        return bool(self.url) and bool(self.media_key)


def extension_for(mime_type: Optional[str]) -> str:
    """File extension for a MIME type, ignoring parameters such as codecs."""
    if not mime_type:
        return DEFAULT_EXTENSION
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(base, DEFAULT_EXTENSION)


def decode_key_blob(value: Any) -> Optional[bytes]:
    """
    Decode key material serialized in any of the shapes gateways use.

    Accepts a base64 string, a list of byte values, a Node Buffer dump
    ``{"type": "Buffer", "data": [...]}`` or an index-keyed object.
    """
    if value is None:
        return None

    try:
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            padded = text + "=" * (-len(text) % 4)
            if "-" in text or "_" in text:
                return base64.urlsafe_b64decode(padded)
            return base64.b64decode(padded, validate=True)

        if isinstance(value, list):
            return bytes(value)

        if isinstance(value, dict):
            if isinstance(value.get("data"), list):
                return bytes(value["data"])
            if value and all(str(key).isdigit() for key in value):
                return bytes(value[key] for key in sorted(value, key=lambda k: int(k)))
    except (ValueError, TypeError, binascii.Error) as e:
        logger.warning(f"Undecodable media key material: {e}")
        return None

    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict) and "low" in value:
        # protobuf Long serialized as {"low": ..., "high": ..., "unsigned": ...}
        return _as_int(value.get("low"))
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def resolve_url(container: dict, cdn_base_url: str) -> Optional[str]:
    """Prefer an absolute http(s) URL; otherwise join the CDN base with directPath."""
    url = first_text(URL_FIELDS, container)
    if url and url.lower().startswith(("http://", "https://")):
        return url

    direct_path = first_text((path("directPath"), path("direct_path")), container)
    if direct_path and cdn_base_url:
        return urljoin(cdn_base_url.rstrip("/") + "/", direct_path.lstrip("/"))

    return None


def build_attachment(kind: str, container: dict, cdn_base_url: str) -> MediaAttachment:
    return MediaAttachment(
        kind=kind,
        url=resolve_url(container, cdn_base_url),
        mime_type=first_text(MIME_FIELDS, container) or DEFAULT_MIME_TYPE,
        caption=first_text(CAPTION_FIELDS, container),
        filename=first_text(FILENAME_FIELDS, container),
        file_length=_as_int(first_match(LENGTH_FIELDS, container)),
        duration=_as_int(first_match(DURATION_FIELDS, container)),
        media_key=decode_key_blob(first_match((path("mediaKey"), path("media_key")), container)),
        file_sha256=decode_key_blob(first_match((path("fileSha256"), path("file_sha256"), path("sha256")), container)),
        file_enc_sha256=decode_key_blob(first_match((path("fileEncSha256"), path("file_enc_sha256")), container)),
        direct_path=first_text((path("directPath"), path("direct_path")), container),
    )


def _find_container(node: dict, depth: int) -> Optional[tuple]:
    for kind in ATTACHMENT_KINDS:
        for key in (kind, f"{kind}Message"):
            container = node.get(key)
            if isinstance(container, dict) and container:
                return kind, container

    if depth >= MAX_SEARCH_DEPTH:
        return None

    for key in ("message", "msgContent"):
        child = node.get(key)
        if isinstance(child, dict):
            found = _find_container(child, depth + 1)
            if found is not None:
                return found

    return None


def extract_attachment(message: dict, cdn_base_url: str = "") -> Optional[MediaAttachment]:
    """
    Locate an attachment container on a raw message.

    Searches the message itself, then one or two levels of
    ``message``/``msgContent`` indirection.
    """
    if not isinstance(message, dict):
        return None

    found = _find_container(message, 0)
    if found is None:
        return None

    kind, container = found
    attachment = build_attachment(kind, container, cdn_base_url)
    logger.debug(
        f"Attachment found: kind={kind}, mime={attachment.mime_type}, "
        f"has_url={bool(attachment.url)}, has_key={bool(attachment.media_key)}"
    )
    return attachment
