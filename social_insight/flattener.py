"""
Payload flattening.

Gateways deliver three envelope shapes:

- Meta Cloud API style: ``{"entry": [{"changes": [{"value": {"messages": [...]}}]}]}``
- W-API style events carrying a single ``msgContent`` object plus chat/sender context
- a flat single-message event

All of them are reduced to a flat, ordered sequence of ``(message, context)``
pairs, where each message has had the shared event context back-filled.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from social_insight.payload import as_dict, as_list, dig, is_empty
from social_insight.utils import normalize_digits

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "whatsapp"

# Keys whose presence marks a value as a terminal single-message event
MESSAGE_MARKERS = (
    "event",
    "messageId",
    "from",
    "author",
    "text",
    "type",
    "messageType",
    "conversation",
    "message",
)


@dataclass
class ChangeContext:
    """Context shared by every message of one change."""

    value: dict
    metadata: dict = field(default_factory=dict)
    contacts: dict = field(default_factory=dict)
    channel: str = DEFAULT_CHANNEL


def build_contacts(value: dict) -> dict:
    """Index the change's contact list by wa_id."""
    contacts = {}
    for contact in as_list(value.get("contacts")):
        if not isinstance(contact, dict) or is_empty(contact.get("wa_id")):
            continue
        contacts[str(contact["wa_id"])] = contact
    return contacts


def resolve_channel(value: dict, metadata: dict) -> str:
    """
    Determine which connected account owns the change.

    Phone-like candidates are reduced to digits; when none is present the
    messaging product name is used.
    """
    candidates = (
        value.get("connectedPhone"),
        value.get("connected_phone"),
        metadata.get("phone_number_id"),
        metadata.get("display_phone_number"),
    )
    for candidate in candidates:
        digits = normalize_digits(candidate)
        if digits is not None:
            return digits

    product = value.get("messaging_product") or value.get("product")
    return str(product) if isinstance(product, str) and product else DEFAULT_CHANNEL


def build_context(value: dict) -> ChangeContext:
    metadata = as_dict(value.get("metadata"))
    return ChangeContext(
        value=value,
        metadata=metadata,
        contacts=build_contacts(value),
        channel=resolve_channel(value, metadata),
    )


def merge_context(message: dict, value: dict) -> dict:
    """
    Back-fill fields a message omits from its enclosing value.

    Keys already present on the message are never overwritten. Nested
    ``chat`` and ``sender`` objects are merged key by key with the
    message-level keys taking precedence.
    """
    merged = dict(message)

    backfill = (
        ("id", "messageId"),
        ("wa_message_id", "messageId"),
        ("fromMe", "fromMe"),
        ("from_me", "from_me"),
        ("timestamp", "moment"),
    )
    for target, source in backfill:
        if target not in merged and source in value:
            merged[target] = value[source]

    chat = value.get("chat")
    if isinstance(chat, dict):
        merged["chat"] = {**chat, **as_dict(message.get("chat"))}

    chat_id = dig(value, "chat", "id")
    if chat_id is not None:
        merged.setdefault("chat_id", chat_id)
        merged.setdefault("group_id", chat_id)

    sender = value.get("sender")
    if isinstance(sender, dict):
        merged["sender"] = {**sender, **as_dict(message.get("sender"))}

    sender_id = dig(value, "sender", "id")
    if sender_id is not None:
        merged.setdefault("from", sender_id)

    push_name = dig(value, "sender", "pushName")
    if push_name is not None:
        merged.setdefault("pushName", push_name)

    return merged


def looks_like_message(value: dict) -> bool:
    return any(not is_empty(value.get(marker)) for marker in MESSAGE_MARKERS)


def extract_messages(value: dict) -> list:
    """
    Produce the message list of one change value.

    Priority: an explicit ``messages`` list, then a nested ``msgContent``
    object, then the value itself when it is a single-message event.
    """
    messages = [
        merge_context(message, value)
        for message in as_list(value.get("messages"))
        if isinstance(message, dict)
    ]
    if messages:
        return messages

    msg_content = value.get("msgContent")
    if isinstance(msg_content, dict) and msg_content:
        return [merge_context(msg_content, value)]

    if looks_like_message(value):
        return [merge_context(value, value)]

    return []


def _entries(body: Any) -> list:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        entries = body.get("entry")
        if isinstance(entries, list):
            return entries
        return [body]
    return []


def flatten_envelope(body: Any) -> Iterator[tuple]:
    """
    Walk an envelope and yield ``(message, ChangeContext)`` pairs in order.

    Entries default to the body itself, changes to the entry itself and
    the value to the change itself.
    """
    for entry in _entries(body):
        if not isinstance(entry, dict):
            continue

        changes = entry.get("changes")
        if not isinstance(changes, list):
            changes = [entry]

        for change in changes:
            if not isinstance(change, dict):
                continue

            value = change.get("value")
            if not isinstance(value, dict):
                value = change

            context = build_context(value)
            messages = extract_messages(value)
            logger.debug(f"Change yielded {len(messages)} message(s), channel={context.channel}")

            for message in messages:
                yield message, context


def message_timestamp(message: dict, context: Optional[ChangeContext]) -> Any:
    """Raw timestamp candidate of a message, falling back to the event time."""
    value = context.value if context is not None else {}
    for candidate in (
        message.get("timestamp"),
        message.get("sent_at"),
        value.get("moment"),
        value.get("timestamp"),
    ):
        if not is_empty(candidate):
            return candidate
    return None
