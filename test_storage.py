"""
Tests for the persistence gateway.

Tests cover:
- Conversation upsert and the name replacement policy
- last_message_at only moving forward
- Message append, media columns and raw payload
- Read queries and the health check
"""

import json

import pytest

from social_insight.models import Conversation, Message
from social_insight.schemas import NormalizedMessage, StoredMedia
from social_insight.storage import (
    append_message,
    build_engine,
    build_session_factory,
    check_db_health,
    get_conversation_by_wa_id,
    get_messages,
    init_db,
    list_conversations,
    upsert_conversation,
)

WA_ID = "5511999999999"


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'storage.sqlite'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def upsert(db, name=None, last_activity_at="2023-11-14T22:13:20Z", **kwargs):
    params = {"channel": "whatsapp", "avatar_url": None}
    params.update(kwargs)
    return upsert_conversation(
        db,
        external_id=WA_ID,
        name=name,
        last_activity_at=last_activity_at,
        **params,
    )


def normalized(wa_message_id, sent_at, body="hi", media=None):
    return NormalizedMessage(
        wa_message_id=wa_message_id,
        sender_name="Ana",
        sender_phone=WA_ID,
        message_body=body,
        sent_at=sent_at,
        media=media,
        raw_payload={"id": wa_message_id, "text": {"body": body}},
    )


class TestUpsertConversation:

    def test_create_then_update_same_row(self, db):
        first = upsert(db, name="+5511999999999")
        second = upsert(db, name="+5511999999999")
        db.commit()

        assert first == second
        assert db.query(Conversation).count() == 1

    def test_placeholder_replaced_by_real_name(self, db):
        upsert(db, name="+5511999999999")
        upsert(db, name="Ana")
        db.commit()

        assert get_conversation_by_wa_id(db, WA_ID).name == "Ana"

    def test_learned_name_kept(self, db):
        upsert(db, name="Ana")
        upsert(db, name="Someone else")
        upsert(db, name="+5511999999999")
        db.commit()

        assert get_conversation_by_wa_id(db, WA_ID).name == "Ana"

    def test_overwrite_when_not_preserving(self, db):
        upsert(db, name="Ana")
        upsert(db, name="Ana Maria", preserve_existing_name=False)
        db.commit()

        assert get_conversation_by_wa_id(db, WA_ID).name == "Ana Maria"

    def test_empty_values_do_not_clear(self, db):
        upsert(db, name="Ana", channel="5511000000000", avatar_url="https://pps.example/a.jpg")
        upsert(db, name=None, channel=None, avatar_url=None)
        db.commit()

        conversation = get_conversation_by_wa_id(db, WA_ID)
        assert conversation.name == "Ana"
        assert conversation.channel == "5511000000000"
        assert conversation.avatar_url == "https://pps.example/a.jpg"

    def test_last_activity_only_moves_forward(self, db):
        upsert(db, last_activity_at="2023-11-14T22:13:20Z")
        upsert(db, last_activity_at="2023-11-14T20:00:00Z")
        db.commit()
        assert get_conversation_by_wa_id(db, WA_ID).last_message_at == "2023-11-14T22:13:20Z"

        upsert(db, last_activity_at="2023-11-15T08:00:00Z")
        db.commit()
        assert get_conversation_by_wa_id(db, WA_ID).last_message_at == "2023-11-15T08:00:00Z"

    def test_uncommitted_work_is_rolled_back(self, db):
        upsert(db, name="Ana")
        db.rollback()

        assert get_conversation_by_wa_id(db, WA_ID) is None


class TestAppendMessage:

    def test_append_with_media(self, db):
        conversation_id = upsert(db)
        media = StoredMedia(
            path="2023/11/5511999999999/20231114_221320_3eb0c7-0001.jpg",
            mime_type="image/jpeg",
            size=1234,
            caption="Sunset",
        )

        row_id = append_message(db, conversation_id, normalized("3EB0C7A1", "2023-11-14T22:13:20Z", media=media))
        db.commit()

        row = db.get(Message, row_id)
        assert row.conversation_id == conversation_id
        assert row.media_path == media.path
        assert row.media_mime_type == "image/jpeg"
        assert row.media_size == 1234
        assert row.media_caption == "Sunset"
        assert json.loads(row.raw_payload) == {"id": "3EB0C7A1", "text": {"body": "hi"}}

    def test_without_media(self, db):
        conversation_id = upsert(db)

        row_id = append_message(db, conversation_id, normalized("m1", "2023-11-14T22:13:20Z"))
        db.commit()

        row = db.get(Message, row_id)
        assert row.media_path is None
        assert row.is_from_me is False

    def test_older_message_keeps_last_activity(self, db):
        conversation_id = upsert(db, last_activity_at="2023-11-14T22:13:20Z")
        append_message(db, conversation_id, normalized("old", "2023-11-01T00:00:00Z"))
        db.commit()

        assert get_conversation_by_wa_id(db, WA_ID).last_message_at == "2023-11-14T22:13:20Z"

    def test_newer_message_advances_last_activity(self, db):
        conversation_id = upsert(db, last_activity_at="2023-11-14T22:13:20Z")
        append_message(db, conversation_id, normalized("new", "2023-11-20T00:00:00Z"))
        db.commit()

        assert get_conversation_by_wa_id(db, WA_ID).last_message_at == "2023-11-20T00:00:00Z"

    def test_duplicate_provider_ids_are_kept(self, db):
        conversation_id = upsert(db)
        append_message(db, conversation_id, normalized("same", "2023-11-14T22:13:20Z"))
        append_message(db, conversation_id, normalized("same", "2023-11-14T22:13:20Z"))
        db.commit()

        assert db.query(Message).filter(Message.wa_message_id == "same").count() == 2


class TestReadQueries:

    def test_messages_in_canonical_order(self, db):
        conversation_id = upsert(db)
        for wa_message_id, sent_at in [
            ("b", "2023-11-14T22:13:20Z"),
            ("a", "2023-11-14T22:00:00Z"),
            ("c", "2023-11-14T22:13:20Z"),
        ]:
            append_message(db, conversation_id, normalized(wa_message_id, sent_at))
        db.commit()

        messages, total = get_messages(db, conversation_id)

        assert [m.wa_message_id for m in messages] == ["a", "b", "c"]
        assert total == 3

    def test_list_conversations_summary(self, db):
        conversation_id = upsert(db, name="Ana")
        append_message(db, conversation_id, normalized("a", "2023-11-14T22:00:00Z", body="earlier"))
        append_message(db, conversation_id, normalized("b", "2023-11-14T22:13:20Z", body="latest"))
        db.commit()

        [summary] = list_conversations(db)

        assert summary["wa_id"] == WA_ID
        assert summary["name"] == "Ana"
        assert summary["message_count"] == 2
        assert summary["last_message_body"] == "latest"

    def test_unnamed_conversation_lists_wa_id(self, db):
        upsert(db, name=None)
        db.commit()

        [summary] = list_conversations(db)

        assert summary["name"] == WA_ID
        assert summary["message_count"] == 0
        assert summary["last_message_body"] is None


class TestHealth:

    def test_healthy_after_init(self, session_factory):
        assert check_db_health(session_factory) is True

    def test_missing_schema(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'empty.sqlite'}")

        assert check_db_health(build_session_factory(engine)) is False
        engine.dispose()
