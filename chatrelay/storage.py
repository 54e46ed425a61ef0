import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Generator, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.exceptions import StoreError
from chatrelay.models import Base, Chat, Message
from chatrelay.utils import from_iso, to_iso

logger = logging.getLogger(__name__)


class ChatStore:
    """
    Durable local history of chats and messages.

    Writes are idempotent: chats are keyed by jid and messages by
    (id, chat_jid), and re-inserting a key replaces the existing row.
    Every engine error is re-raised as StoreError.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        url = make_url(database_url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            # Live events and history sync write from different threads
            connect_args["check_same_thread"] = False
            if url.database and url.database != ":memory:":
                directory = os.path.dirname(url.database)
                if directory:
                    os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(database_url, connect_args=connect_args, echo=echo)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """
        Create all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.database_url}")
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreError(f"failed to initialize database: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Yield a session, rolling back and wrapping any engine error.
        """
        db = self.SessionLocal()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(str(e)) from e
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and both tables exist, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                tables = set(inspect(conn).get_table_names())
            missing = {"chats", "messages"} - tables
            if missing:
                logger.error(f"Database schema not applied: missing tables {sorted(missing)}")
                return False
            logger.debug("Database health check passed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # =========================================================================
    # Chats
    # =========================================================================

    def upsert_chat(self, jid: str, name: str, last_message_time: Optional[datetime]) -> None:
        """
        Insert or update the chat row keyed by jid.

        The name is always replaced. last_message_time only moves forward:
        an older time (history replayed after live traffic) keeps the stored one.
        """
        logger.debug(f"Upserting chat: jid={jid}, name={name}")
        new_time = to_iso(last_message_time) if last_message_time else None
        with self.session() as db:
            chat = db.get(Chat, jid)
            if chat is None:
                db.add(Chat(jid=jid, name=name, last_message_time=new_time))
            else:
                chat.name = name
                # ISO strings with a fixed layout compare in time order
                if new_time and (chat.last_message_time is None or new_time > chat.last_message_time):
                    chat.last_message_time = new_time
            db.commit()

    def get_last_message_time(self, jid: str) -> Optional[datetime]:
        with self.session() as db:
            value = db.query(Chat.last_message_time).filter(Chat.jid == jid).scalar()
        return from_iso(value) if value else None

    def save_chat_name(self, jid: str, name: str) -> None:
        """Write back a resolved name, keeping the chat's last message time."""
        with self.session() as db:
            chat = db.get(Chat, jid)
            if chat is None:
                db.add(Chat(jid=jid, name=name))
            else:
                chat.name = name
            db.commit()

    def get_chat_name(self, jid: str) -> Optional[str]:
        with self.session() as db:
            return db.query(Chat.name).filter(Chat.jid == jid).scalar()

    def get_chats(self) -> List[Chat]:
        """All chats, most recently active first."""
        with self.session() as db:
            return db.query(Chat).order_by(Chat.last_message_time.desc(), Chat.jid.asc()).all()

    # =========================================================================
    # Messages
    # =========================================================================

    def upsert_message(
        self,
        id: str,
        chat_jid: str,
        sender: str,
        content: str,
        timestamp: datetime,
        is_from_me: bool,
    ) -> bool:
        """
        Insert or replace a message keyed by (id, chat_jid).

        Args:
            id: Protocol message identifier
            chat_jid: Conversation the message belongs to
            sender: Sender identifier
            content: Text content; empty content is not persisted
            timestamp: Message time
            is_from_me: True when sent by the local account

        Returns:
            True if the row was written, False if skipped for empty content.
        """
        if not content:
            logger.debug(f"Skipping message without text content: {id}")
            return False

        with self.session() as db:
            db.merge(Message(
                id=id,
                chat_jid=chat_jid,
                sender=sender,
                content=content,
                timestamp=to_iso(timestamp),
                is_from_me=is_from_me,
            ))
            db.commit()
        logger.debug(f"Message stored: id={id}, chat={chat_jid}")
        return True

    def get_messages(self, chat_jid: str, limit: int = 50) -> List[Message]:
        """
        Messages for a chat, newest first.

        Args:
            chat_jid: Conversation to read
            limit: Maximum number of messages to return
        """
        logger.debug(f"Querying messages: chat={chat_jid}, limit={limit}")
        with self.session() as db:
            return (
                db.query(Message)
                .filter(Message.chat_jid == chat_jid)
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
                .all()
            )
