"""
Media decryption pipeline: download, authenticate, decrypt, store.

Failures are isolated to the attachment. The owning message is stored
either way; process() returns None instead of raising.
"""

import logging
from typing import Optional

import httpx

from social_insight.config import Settings
from social_insight.crypto import MediaDecryptionError, decrypt_media, sha256
from social_insight.media import MediaAttachment, extension_for
from social_insight.media_store import MediaStore
from social_insight.metrics import media_download_seconds, record_media_outcome
from social_insight.schemas import StoredMedia

logger = logging.getLogger(__name__)

SHA256_LENGTH = 32


class MediaDownloadError(Exception):
    """Raised when the encrypted blob cannot be fetched."""


class MediaPipeline:
    """
    Turns a MediaAttachment into a decrypted file under the media root.

    The HTTP client is created from settings unless one is injected.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.store = MediaStore(settings.MEDIA_STORAGE_PATH)
        self.client = client or httpx.Client(
            timeout=settings.MEDIA_DOWNLOAD_TIMEOUT,
            verify=settings.MEDIA_VERIFY_TLS,
            follow_redirects=True,
        )

    def close(self) -> None:
        self.client.close()

    def download(self, url: str) -> bytes:
        """
        Fetch the encrypted blob.

        Raises:
            MediaDownloadError: unusable URL, transport error or HTTP status >= 400
        """
        logger.debug(f"Downloading media from {url}")
        try:
            with media_download_seconds.time():
                response = self.client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MediaDownloadError(f"Media download failed: {e}") from e

        if response.status_code >= 400:
            raise MediaDownloadError(f"Media host responded with HTTP {response.status_code}")

        return response.content

    def decrypt(self, attachment: MediaAttachment, blob: bytes) -> bytes:
        expected = attachment.file_enc_sha256
        if expected is not None and len(expected) == SHA256_LENGTH and sha256(blob) != expected:
            raise MediaDecryptionError("Encrypted blob does not match fileEncSha256")

        return decrypt_media(
            blob,
            attachment.media_key,
            attachment.kind,
            accept_wire_order=self.settings.MEDIA_ACCEPT_WIRE_ORDER_MAC,
        )

    def process(
        self,
        attachment: Optional[MediaAttachment],
        conversation_id: str,
        sent_at: str,
        message_id: Optional[str] = None,
    ) -> Optional[StoredMedia]:
        """
        Run the full pipeline for one attachment.

        Returns:
            StoredMedia on success, None when nothing was persisted
        """
        if attachment is None:
            return None

        if not attachment.is_decryptable:
            logger.info(
                f"Skipping media for message {message_id}: "
                f"url={'present' if attachment.url else 'missing'}, "
                f"key={'present' if attachment.media_key else 'missing'}"
            )
            record_media_outcome("skipped")
            return None

        try:
            blob = self.download(attachment.url)
        except MediaDownloadError as e:
            logger.error(f"Media download failed for message {message_id}: {e}")
            record_media_outcome("download_failed")
            return None

        try:
            plaintext = self.decrypt(attachment, blob)
        except MediaDecryptionError as e:
            logger.error(f"Media decryption failed for message {message_id}: {e}")
            record_media_outcome("decrypt_failed")
            return None

        try:
            target = self.store.write(
                plaintext,
                conversation_id=conversation_id,
                sent_at=sent_at,
                message_id=message_id,
                extension=extension_for(attachment.mime_type),
            )
            size = target.stat().st_size
        except OSError as e:
            logger.error(f"Media write failed for message {message_id}: {e}")
            record_media_outcome("write_failed")
            return None

        record_media_outcome("stored", size=size)
        return StoredMedia(
            path=self.store.relative_path(target),
            mime_type=attachment.mime_type,
            size=size,
            duration=attachment.duration,
            caption=attachment.caption,
            filename=attachment.filename,
        )
