"""
SQLAlchemy ORM models for database tables.

Each table backs one document-store collection. For Pydantic request/response
schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from tabchat.storage import Base


class User(Base):
    """
    Participant profile, created on first sign-in.

    Table: users
    Primary Key: id (identity id supplied by the auth collaborator)
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    about = Column(Text, nullable=True)
    presence = Column(String, nullable=False, default="offline")  # online|away|offline
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class Conversation(Base):
    """
    A 1:1 conversation between exactly two users.

    participant_0 < participant_1 always (canonically sorted pair), and the
    unread slots are indexed by position in that pair, not by "self/other".
    The unique constraint makes find-or-create safe against concurrent callers.
    """
    __tablename__ = "conversations"
    __array_fields__ = {"participants": ("participant_0", "participant_1")}

    id = Column(String, primary_key=True)
    participant_0 = Column(String, nullable=False, index=True)
    participant_1 = Column(String, nullable=False, index=True)
    created_by = Column(String, nullable=False)
    last_message_id = Column(String, nullable=True)
    last_activity = Column(DateTime, nullable=True, index=True)
    unread_slot_0 = Column(Integer, nullable=False, default=0)
    unread_slot_1 = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("participant_0", "participant_1", name="uq_conversation_pair"),
    )


class ChatTab(Base):
    """
    Topic tab inside a conversation.

    message_counter is the last messageOrder handed out for this tab; it only
    ever grows, so order numbers are never reused.
    """
    __tablename__ = "chat_tabs"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    tab_order = Column(Integer, nullable=False, default=0)
    is_default = Column(Boolean, nullable=False, default=False)
    created_by = Column(String, nullable=False)
    message_counter = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class Message(Base):
    """
    A message inside a tab.

    Table: messages
    (tab_id, message_order) is unique; soft-deleted rows keep their slot.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    tab_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=False, index=True)
    message_type = Column(String, nullable=False, default="text")  # text|image|file
    content = Column(Text, nullable=True)
    media_url = Column(String, nullable=True)
    media_type = Column(String, nullable=True)
    reply_to_message_id = Column(String, nullable=True)
    sent_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    message_order = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("tab_id", "message_order", name="uq_message_order"),
    )


# Collection name -> ORM model
COLLECTIONS = {
    "users": User,
    "conversations": Conversation,
    "chat_tabs": ChatTab,
    "messages": Message,
}
