import json
import logging
from pathlib import Path
from typing import Generator, Optional, Tuple

from fastapi import Request
from sqlalchemy import create_engine, event, inspect, text, func
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from social_insight.resolver import should_replace_name
from social_insight.schemas import NormalizedMessage
from social_insight.timestamps import format_utc, utc_now

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def _enable_sqlite_transactions(engine: Engine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on SQLite.

    pysqlite defers BEGIN on its own, which breaks SAVEPOINT handling;
    emitting BEGIN explicitly makes begin_nested() reliable. Foreign keys
    are switched on for every connection.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _ensure_sqlite_directory(database_url: str) -> None:
    database = make_url(database_url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine.
    check_same_thread=False is required for SQLite because requests are
    processed in the threadpool.
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=False,
    )
    if is_sqlite:
        _ensure_sqlite_directory(database_url)
        _enable_sqlite_transactions(engine)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from social_insight.models import Conversation, Message  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            engine = db.get_bind()

            tables = set(inspect(engine).get_table_names())
            missing = {"conversations", "messages"} - tables
            if missing:
                logger.error(f"Database schema not applied: missing tables {sorted(missing)}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Persistence Gateway
# =============================================================================

def _apply_update(
    conversation,
    name: Optional[str],
    channel: Optional[str],
    avatar_url: Optional[str],
    last_activity_at: Optional[str],
    preserve_existing_name: bool,
) -> None:
    if preserve_existing_name:
        if should_replace_name(conversation.name, conversation.wa_id, name):
            logger.debug(f"Replacing placeholder name of {conversation.wa_id}: {conversation.name!r} -> {name!r}")
            conversation.name = name
    elif name:
        conversation.name = name

    if channel:
        conversation.channel = channel
    if avatar_url:
        conversation.avatar_url = avatar_url
    if last_activity_at and (conversation.last_message_at is None or last_activity_at > conversation.last_message_at):
        conversation.last_message_at = last_activity_at
    conversation.updated_at = format_utc(utc_now())


def upsert_conversation(
    db: Session,
    external_id: str,
    name: Optional[str],
    channel: Optional[str],
    avatar_url: Optional[str],
    last_activity_at: Optional[str],
    preserve_existing_name: bool = True,
) -> int:
    """
    Create or update a conversation row. Does not commit.

    Args:
        db: Database session (caller owns the transaction)
        external_id: Provider identifier (wa_id)
        name: Resolved display name
        channel: Owning account identifier
        avatar_url: Resolved avatar URL
        last_activity_at: Sent time of the message being stored
        preserve_existing_name: Only replace empty/identifier-derived names

    Returns:
        The conversation's primary key
    """
    from social_insight.models import Conversation

    existing = db.query(Conversation).filter(Conversation.wa_id == external_id).first()

    if existing is None:
        now = format_utc(utc_now())
        conversation = Conversation(
            wa_id=external_id,
            name=name or None,
            channel=channel,
            avatar_url=avatar_url,
            created_at=now,
            updated_at=now,
            last_message_at=last_activity_at,
        )
        try:
            # SAVEPOINT so a lost race only undoes this insert
            with db.begin_nested():
                db.add(conversation)
            logger.info(f"Conversation created: wa_id={external_id}, id={conversation.id}")
            return conversation.id
        except IntegrityError:
            # Another writer created the row between our SELECT and INSERT
            logger.info(f"Conversation {external_id} created concurrently, updating instead")
            existing = db.query(Conversation).filter(Conversation.wa_id == external_id).one()

    _apply_update(existing, name, channel, avatar_url, last_activity_at, preserve_existing_name)
    db.flush()
    logger.debug(f"Conversation updated: wa_id={external_id}, id={existing.id}")
    return existing.id


def append_message(db: Session, conversation_id: int, message: NormalizedMessage) -> int:
    """
    Insert one message row and refresh the parent's last activity. Does not commit.

    Returns:
        The new message's primary key
    """
    from social_insight.models import Conversation, Message

    media = message.media
    row = Message(
        conversation_id=conversation_id,
        wa_message_id=message.wa_message_id,
        sender_name=message.sender_name,
        sender_phone=message.sender_phone,
        message_type=message.message_type,
        message_body=message.message_body,
        is_from_me=message.is_from_me,
        sent_at=message.sent_at,
        media_path=media.path if media else None,
        media_mime_type=media.mime_type if media else None,
        media_size=media.size if media else None,
        media_duration=media.duration if media else None,
        media_caption=media.caption if media else None,
        media_filename=media.filename if media else None,
        raw_payload=json.dumps(message.raw_payload, ensure_ascii=False),
        created_at=format_utc(utc_now()),
    )
    db.add(row)

    conversation = db.get(Conversation, conversation_id)
    if conversation is not None and (
        conversation.last_message_at is None or message.sent_at > conversation.last_message_at
    ):
        conversation.last_message_at = message.sent_at

    db.flush()
    logger.debug(f"Message stored: id={row.id}, wa_message_id={message.wa_message_id}")
    return row.id


# =============================================================================
# Read Queries
# =============================================================================

def list_conversations(db: Session) -> list:
    """
    Conversations with their latest message and message count,
    most recent activity first.
    """
    from social_insight.models import Conversation, Message

    latest = (
        db.query(Message.message_body)
        .filter(Message.conversation_id == Conversation.id)
        .order_by(Message.sent_at.desc(), Message.id.desc())
        .limit(1)
        .correlate(Conversation)
        .scalar_subquery()
    )
    count = (
        db.query(func.count(Message.id))
        .filter(Message.conversation_id == Conversation.id)
        .correlate(Conversation)
        .scalar_subquery()
    )

    rows = (
        db.query(Conversation, latest.label("last_message_body"), count.label("message_count"))
        .order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(), Conversation.id.desc())
        .all()
    )
    logger.info(f"Listed {len(rows)} conversations")

    return [
        {
            "id": conversation.id,
            "wa_id": conversation.wa_id,
            "name": conversation.name or conversation.wa_id,
            "channel": conversation.channel,
            "avatar_url": conversation.avatar_url,
            "last_message_at": conversation.last_message_at,
            "last_message_body": last_message_body,
            "message_count": message_count or 0,
        }
        for conversation, last_message_body, message_count in rows
    ]


def get_conversation(db: Session, conversation_id: int):
    from social_insight.models import Conversation

    return db.get(Conversation, conversation_id)


def get_conversation_by_wa_id(db: Session, wa_id: str):
    from social_insight.models import Conversation

    return db.query(Conversation).filter(Conversation.wa_id == wa_id).first()


def get_messages(
    db: Session,
    conversation_id: int,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Messages of one conversation in canonical order (sent_at ASC, id ASC).

    Returns:
        Tuple of (messages list, total count in the conversation)
    """
    from social_insight.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()
    messages = (
        query.order_by(Message.sent_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(messages)} of {total} messages for conversation {conversation_id}")

    return messages, total
