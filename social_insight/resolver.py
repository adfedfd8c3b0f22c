"""
Conversation identity resolution: stable id, kind, display name and avatar.
"""

import re
from dataclasses import dataclass
from typing import Optional

from social_insight.flattener import ChangeContext
from social_insight.payload import first_text, path
from social_insight.utils import normalize_digits

GROUP_KIND = "group"
CONTACT_KIND = "contact"

GROUP_SUFFIXES = ("@g.us", "@broadcast")

UNNAMED_CONVERSATION = "Unnamed conversation"

_PHONE_LIKE = re.compile(r"^\+?\d{6,15}$")

CONVERSATION_ID_FIELDS = (
    path("group_id"),
    path("groupId"),
    path("chat_id"),
    path("chatId"),
    path("chat", "id"),
    path("chat", "jid"),
    path("from"),
    path("author"),
    path("sender", "id"),
)

CONTEXT_ID_FIELDS = (
    path("chat", "id"),
    path("chatId"),
    path("metadata", "phone_number_id"),
)

CHAT_NAME_FIELDS = (
    path("group_name"),
    path("groupName"),
    path("chat_name"),
    path("chatName"),
    path("chat", "name"),
    path("chat", "subject"),
)

PUSH_NAME_FIELDS = (
    path("sender", "pushName"),
    path("pushName"),
    path("notifyName"),
    path("senderName"),
    path("sender_name"),
)

CHAT_AVATAR_FIELDS = (
    path("chat", "profilePicture"),
    path("chat", "profilePictureUrl"),
    path("chat", "profile_picture"),
    path("chat", "profilePicUrl"),
    path("chat", "imgUrl"),
)

CONTACT_AVATAR_FIELDS = (
    path("profile", "picture"),
    path("profile", "profilePicture"),
    path("profile", "profile_picture"),
    path("profilePicture"),
    path("profile_picture"),
)

SENDER_AVATAR_FIELDS = (
    path("sender", "profilePicture"),
    path("sender", "profilePictureUrl"),
    path("sender", "profile_picture"),
    path("sender", "profilePicUrl"),
    path("sender", "imgUrl"),
)


@dataclass
class ResolvedConversation:
    wa_id: str
    kind: str
    name: str
    avatar_url: Optional[str] = None


def resolve_conversation_id(message: dict, context: ChangeContext) -> Optional[str]:
    """First non-empty identifier candidate from the message, then the change."""
    return first_text(CONVERSATION_ID_FIELDS, message) or first_text(CONTEXT_ID_FIELDS, context.value)


def conversation_kind(wa_id: str) -> str:
    return GROUP_KIND if wa_id.lower().endswith(GROUP_SUFFIXES) else CONTACT_KIND


def strip_protocol_suffix(wa_id: str) -> str:
    """Drop the ``@server`` part and any ``:device`` qualifier."""
    return wa_id.split("@", 1)[0].split(":", 1)[0]


def fallback_name(wa_id: str) -> str:
    """Last resort display name derived from the raw identifier."""
    bare = strip_protocol_suffix(wa_id).strip()
    if _PHONE_LIKE.match(bare):
        return "+" + bare.lstrip("+")
    return UNNAMED_CONVERSATION


def find_contact(contacts: dict, identifier: Optional[str]) -> Optional[dict]:
    """Look up a contact by raw id, suffix-stripped id or bare digits."""
    if not identifier:
        return None
    for key in (identifier, strip_protocol_suffix(identifier), normalize_digits(identifier)):
        if key and key in contacts:
            return contacts[key]
    return None


def contact_name(contacts: dict, identifier: Optional[str]) -> Optional[str]:
    return first_text((path("profile", "name"),), find_contact(contacts, identifier))


def resolve_display_name(
    message: dict,
    context: ChangeContext,
    wa_id: str,
    kind: str,
    is_from_me: bool = False,
) -> str:
    """
    Best-effort human readable name for a conversation.

    Order: chat name fields on the message, then on the change value, then
    (contacts only) the contact list profile name, then (inbound contacts
    only) the sender's push name, then a name derived from the identifier.
    """
    name = first_text(CHAT_NAME_FIELDS, message) or first_text(CHAT_NAME_FIELDS, context.value)
    if name:
        return name.strip()

    if kind != GROUP_KIND:
        profile_name = contact_name(context.contacts, wa_id)
        if profile_name:
            return profile_name.strip()

        if not is_from_me:
            push_name = first_text(PUSH_NAME_FIELDS, message)
            if push_name:
                return push_name.strip()

    return fallback_name(wa_id)


def resolve_avatar(message: dict, context: ChangeContext, wa_id: str, kind: str) -> Optional[str]:
    avatar = first_text(CHAT_AVATAR_FIELDS, message) or first_text(CHAT_AVATAR_FIELDS, context.value)
    if avatar:
        return avatar

    avatar = first_text(CONTACT_AVATAR_FIELDS, find_contact(context.contacts, wa_id))
    if avatar:
        return avatar

    if kind != GROUP_KIND:
        return first_text(SENDER_AVATAR_FIELDS, message)

    return None


def resolve_conversation(
    message: dict,
    context: ChangeContext,
    wa_id: str,
    is_from_me: bool = False,
) -> ResolvedConversation:
    kind = conversation_kind(wa_id)
    return ResolvedConversation(
        wa_id=wa_id,
        kind=kind,
        name=resolve_display_name(message, context, wa_id, kind, is_from_me),
        avatar_url=resolve_avatar(message, context, wa_id, kind),
    )


def is_placeholder_name(name: Optional[str], wa_id: str) -> bool:
    """A stored name carries no information when it is empty or derived from the id."""
    if name is None or not name.strip():
        return True
    name = name.strip()
    return name in (wa_id, strip_protocol_suffix(wa_id), fallback_name(wa_id))


def should_replace_name(stored: Optional[str], wa_id: str, new_name: Optional[str]) -> bool:
    """
    Name update policy for existing conversations.

    A learned human-readable name is never overwritten; only empty or
    identifier-derived names are replaced, and only by a non-empty name.
    """
    if new_name is None or not new_name.strip():
        return False
    return is_placeholder_name(stored, wa_id)
