"""
Message normalization: kind, body, sender, direction.
"""

import logging
from typing import Any, Optional

from social_insight.flattener import ChangeContext
from social_insight.media import MediaAttachment
from social_insight.payload import dig, first_text, path
from social_insight.resolver import contact_name
from social_insight.schemas import NormalizedMessage, StoredMedia

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "Unknown"
CIPHERTEXT_STUB = "CIPHERTEXT"

TYPE_FIELDS = (path("type"), path("messageType"))

MESSAGE_ID_FIELDS = (
    path("id"),
    path("wa_message_id"),
    path("messageId"),
    path("key", "id"),
)

BODY_FIELDS = (
    path("text", "body"),
    path("conversation"),
    path("extendedTextMessage", "text"),
    path("reactionMessage", "text"),
    path("text"),
    path("message"),
    path("body"),
    path("caption"),
    path("interactive", "body", "text"),
)

SENDER_PHONE_FIELDS = (
    path("from"),
    path("author"),
    path("chatId"),
    path("sender", "id"),
)

MESSAGE_NAME_FIELDS = (
    path("sender_name"),
    path("senderName"),
    path("pushName"),
    path("notifyName"),
)

SENDER_OBJECT_NAME_FIELDS = (
    path("sender", "pushName"),
    path("sender", "name"),
    path("sender", "verifiedBizName"),
)

DIRECTION_FIELDS = ("fromMe", "from_me", "isFromMe", "is_from_me")

# Sub-objects that may wrap the actual message content
NESTED_CONTENT_KEYS = ("msgContent", "message")


def message_kind(message: dict) -> str:
    return first_text(TYPE_FIELDS, message) or "text"


def message_id(message: dict) -> Optional[str]:
    return first_text(MESSAGE_ID_FIELDS, message)


def extract_body(message: dict) -> Optional[str]:
    """
    Textual body of a message, searching the message and then one level of
    ``msgContent``/``message`` nesting.
    """
    body = first_text(BODY_FIELDS, message)
    if body is not None:
        return body

    for key in NESTED_CONTENT_KEYS:
        nested = message.get(key)
        if isinstance(nested, dict):
            body = first_text(BODY_FIELDS, nested)
            if body is not None:
                return body

    return None


def synthetic_label(kind: str, message: dict) -> str:
    """
    Placeholder body such as ``[IMAGE]`` or ``[DOCUMENT · report.pdf]``.

    Undecryptable ``CIPHERTEXT`` stubs carry their first stub parameter on
    an extra line.
    """
    parts = [kind.upper()]
    caption = first_text((path("media", "caption"),), message)
    if caption:
        parts.append(caption)
    label = "[" + " · ".join(parts) + "]"

    if message.get("messageStubType") == CIPHERTEXT_STUB:
        parameters = message.get("messageStubParameters")
        if isinstance(parameters, list) and parameters and parameters[0] is not None:
            label += "\n" + str(parameters[0]).strip()

    return label


def resolve_body(message: dict, kind: str, attachment: Optional[MediaAttachment] = None) -> str:
    body = extract_body(message)
    if body is None and attachment is not None and attachment.caption:
        body = attachment.caption
    if body is None:
        body = synthetic_label(kind, message)
    return body.strip()


def sender_phone(message: dict) -> Optional[str]:
    return first_text(SENDER_PHONE_FIELDS, message)


def sender_name(message: dict, contacts: dict, phone: Optional[str]) -> str:
    return (
        first_text(MESSAGE_NAME_FIELDS, message)
        or first_text(SENDER_OBJECT_NAME_FIELDS, message)
        or contact_name(contacts, phone)
        or UNKNOWN_SENDER
    )


def _as_flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str) and value.strip():
        return value.strip().lower() in ("true", "1", "yes")
    return None


def is_from_me(message: dict) -> bool:
    """Explicit direction flag, else ``status == "sent"``, else inbound."""
    for key in DIRECTION_FIELDS:
        flag = _as_flag(message.get(key))
        if flag is not None:
            return flag
    flag = _as_flag(dig(message, "key", "fromMe"))
    if flag is not None:
        return flag
    return message.get("status") == "sent"


def normalize_message(
    message: dict,
    context: ChangeContext,
    sent_at: str,
    attachment: Optional[MediaAttachment] = None,
    media: Optional[StoredMedia] = None,
) -> NormalizedMessage:
    kind = message_kind(message)
    phone = sender_phone(message)
    logger.debug(f"Normalizing message: type={kind}, sender={phone}, has_media={media is not None}")

    return NormalizedMessage(
        wa_message_id=message_id(message),
        sender_name=sender_name(message, context.contacts, phone).strip(),
        sender_phone=phone,
        message_type=kind,
        message_body=resolve_body(message, kind, attachment),
        is_from_me=is_from_me(message),
        sent_at=sent_at,
        media=media,
        raw_payload=message,
    )
