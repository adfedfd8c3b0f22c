"""
Webhook processing: one request, one transaction.

Envelope -> flattened messages -> conversation resolution + message
normalization (+ media pipeline) -> persistence gateway.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from social_insight.config import Settings
from social_insight.flattener import ChangeContext, flatten_envelope, message_timestamp
from social_insight.media import extract_attachment
from social_insight.media_pipeline import MediaPipeline
from social_insight.metrics import record_message_ingested
from social_insight.normalizer import is_from_me, message_id, normalize_message
from social_insight.resolver import resolve_conversation, resolve_conversation_id
from social_insight.storage import append_message, upsert_conversation
from social_insight.timestamps import normalize_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    messages: int = 0
    media: int = 0
    skipped: int = 0


class WebhookProcessor:
    """
    Applies a decoded webhook body to the store.

    All writes of one call share a single transaction: it is committed
    when every message was processed and rolled back on any error, which
    is then re-raised to the caller.
    """

    def __init__(self, settings: Settings, media_pipeline: MediaPipeline):
        self.settings = settings
        self.media_pipeline = media_pipeline

    def process(self, db: Session, body: Any) -> ProcessingResult:
        result = ProcessingResult()
        try:
            for message, context in flatten_envelope(body):
                self._process_message(db, message, context, result)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Webhook processing failed, transaction rolled back")
            raise

        logger.info(
            f"Webhook processed: messages={result.messages}, media={result.media}, skipped={result.skipped}"
        )
        return result

    def _process_message(
        self,
        db: Session,
        message: dict,
        context: ChangeContext,
        result: ProcessingResult,
    ) -> Optional[int]:
        wa_id = resolve_conversation_id(message, context)
        if not wa_id:
            logger.warning(f"Skipping message without conversation identifier: id={message_id(message)}")
            result.skipped += 1
            return None

        sent_at = normalize_timestamp(message_timestamp(message, context))
        from_me = is_from_me(message)
        conversation = resolve_conversation(message, context, wa_id, is_from_me=from_me)

        conversation_id = upsert_conversation(
            db,
            external_id=wa_id,
            name=conversation.name,
            channel=context.channel,
            avatar_url=conversation.avatar_url,
            last_activity_at=sent_at,
            preserve_existing_name=True,
        )

        attachment = extract_attachment(message, self.settings.MEDIA_CDN_BASE_URL)
        media = self.media_pipeline.process(
            attachment,
            conversation_id=wa_id,
            sent_at=sent_at,
            message_id=message_id(message),
        )

        normalized = normalize_message(message, context, sent_at, attachment=attachment, media=media)
        row_id = append_message(db, conversation_id, normalized)

        result.messages += 1
        if media is not None:
            result.media += 1
        record_message_ingested(normalized.is_from_me)

        logger.debug(
            f"Message ingested: conversation={wa_id} ({conversation.kind}), "
            f"type={normalized.message_type}, row={row_id}"
        )
        return row_id
