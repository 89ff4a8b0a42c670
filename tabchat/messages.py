"""
Message sequencer.

Assigns per-tab message order numbers, tracks delivered/read timestamps
and performs soft deletes. Conversation bookkeeping and topic detection
run on the background runner after the send has been delivered.
"""

import logging
from pathlib import Path
from typing import Optional

from tabchat.conversations import BATCH_SIZE, ConversationRegistry
from tabchat.errors import InvalidMessage, NotFound, NotParticipant
from tabchat.media import BaseMediaUploader, UploadedMedia
from tabchat.metrics import record_message_sent
from tabchat.schemas import ConversationResponse, MessageResponse, MessageType
from tabchat.storage import BatchOp, DocumentStore, Subscription, utcnow
from tabchat.tabs import TabManager
from tabchat.tasks import BackgroundTasks
from tabchat.topics import TopicDetectionEngine
from tabchat.utils import require_user_id

logger = logging.getLogger(__name__)

# search_messages only scans this many of the latest text messages
SEARCH_WINDOW = 100


class MessageSequencer:
    def __init__(
        self,
        store: DocumentStore,
        tabs: TabManager,
        registry: ConversationRegistry,
        tasks: BackgroundTasks,
        topics: Optional[TopicDetectionEngine] = None,
    ):
        self._store = store
        self._tabs = tabs
        self._registry = registry
        self._tasks = tasks
        self._topics = topics

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    def send(
        self,
        tab_id: str,
        sender_id: Optional[str],
        message_type: MessageType = MessageType.TEXT,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
    ) -> str:
        """
        Send a message into a tab.

        The order number comes from an atomic increment of the tab's
        message counter, so concurrent senders never share one. The message
        is marked delivered before returning; unread bookkeeping and topic
        detection are handed to the background runner and can not fail
        the send.

        Returns:
            The new message id
        """
        sender_id = require_user_id(sender_id)
        message_type = MessageType(message_type)
        if message_type is MessageType.TEXT:
            if not content or not content.strip():
                raise InvalidMessage("text messages require content")
        elif not media_url:
            raise InvalidMessage(f"{message_type.value} messages require a media url")

        conversation = self._participant_conversation(tab_id, sender_id)

        if reply_to_message_id is not None:
            target = self._store.get("messages", reply_to_message_id)
            if target is None or target["tab_id"] != tab_id:
                raise InvalidMessage(f"reply target {reply_to_message_id} is not in tab {tab_id}")

        message_order = self._store.increment("chat_tabs", tab_id, "message_counter")
        sent_at = utcnow()
        message_id = self._store.create(
            "messages",
            {
                "tab_id": tab_id,
                "sender_id": sender_id,
                "message_type": message_type.value,
                "content": content,
                "media_url": media_url,
                "media_type": media_type,
                "reply_to_message_id": reply_to_message_id,
                "sent_at": sent_at,
                "delivered_at": None,
                "read_at": None,
                "is_deleted": False,
                "message_order": message_order,
            },
        )
        self.mark_delivered(message_id)
        record_message_sent(message_type.value)
        logger.info(f"Message sent: id={message_id}, tab={tab_id}, order={message_order}, type={message_type.value}")

        self._tasks.submit(
            self._registry.record_message_sent, conversation.id, message_id, sender_id, sent_at,
            name="record_message_sent",
        )
        if self._topics is not None:
            self._tasks.submit(self._topics.on_message_sent, tab_id, name="topic_detection")
        return message_id

    def _participant_conversation(self, tab_id: str, user_id: str) -> ConversationResponse:
        """Conversation owning the tab; raises NotParticipant for outsiders."""
        tab = self._tabs.get_tab(tab_id)
        conversation = self._registry.get_conversation(tab.conversation_id)
        if conversation.slot_of(user_id) is None:
            raise NotParticipant(f"{user_id} is not a participant of {conversation.id}")
        return conversation

    def send_text(self, tab_id: str, sender_id: Optional[str], text: str,
                  reply_to_message_id: Optional[str] = None) -> str:
        return self.send(tab_id, sender_id, MessageType.TEXT, content=text,
                         reply_to_message_id=reply_to_message_id)

    def send_media(
        self,
        tab_id: str,
        sender_id: Optional[str],
        media: UploadedMedia,
        caption: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
    ) -> str:
        """Send an already uploaded image or file, with an optional caption."""
        return self.send(
            tab_id,
            sender_id,
            media.message_type,
            content=caption,
            media_url=media.url,
            media_type=media.content_type,
            reply_to_message_id=reply_to_message_id,
        )

    def send_upload(
        self,
        tab_id: str,
        sender_id: Optional[str],
        uploader: BaseMediaUploader,
        local_path: Path,
        caption: Optional[str] = None,
    ) -> str:
        """Upload a local file through the media collaborator, then send it."""
        tab = self._tabs.get_tab(tab_id)
        media = uploader.upload(Path(local_path), tab.conversation_id)
        logger.info(f"Uploaded {local_path} for tab {tab_id}: {media.content_type}, {media.size} bytes")
        return self.send_media(tab_id, sender_id, media, caption=caption)

    # -------------------------------------------------------------------------
    # Delivery state
    # -------------------------------------------------------------------------

    def mark_delivered(self, message_id: str) -> None:
        message = self.get_message(message_id)
        if message.delivered_at is None:
            self._store.update("messages", message_id, {"delivered_at": utcnow()})

    def mark_read(self, message_id: str, reader_id: Optional[str]) -> bool:
        """
        Mark one message read by the other participant.

        Returns:
            True if readAt was set, False if it was already read or the
            reader is the sender

        Raises:
            NotParticipant: reader is not part of the message's conversation
        """
        reader_id = require_user_id(reader_id)
        message = self.get_message(message_id)
        self._participant_conversation(message.tab_id, reader_id)
        if message.sender_id == reader_id or message.read_at is not None:
            return False

        now = utcnow()
        data = {"read_at": now}
        if message.delivered_at is None:
            data["delivered_at"] = now
        return self._store.update("messages", message_id, data)

    def mark_tab_read(self, tab_id: str, reader_id: Optional[str]) -> int:
        """
        Mark every unread message from the other participant as read.

        Written as one batch per BATCH_SIZE messages.

        Returns:
            Number of messages marked read
        """
        reader_id = require_user_id(reader_id)
        self._participant_conversation(tab_id, reader_id)
        unread = self._store.query(
            "messages",
            [("tab_id", "==", tab_id), ("sender_id", "!=", reader_id), ("read_at", "==", None)],
        )
        if not unread:
            return 0

        now = utcnow()
        ops = []
        for m in unread:
            data = {"read_at": now}
            if m["delivered_at"] is None:
                data["delivered_at"] = now
            ops.append(BatchOp.update("messages", m["id"], data))
        for start in range(0, len(ops), BATCH_SIZE):
            self._store.batch(ops[start:start + BATCH_SIZE])

        logger.info(f"Marked {len(ops)} messages read in tab {tab_id} for {reader_id}")
        return len(ops)

    def soft_delete(self, message_id: str, actor_id: Optional[str]) -> None:
        """
        Delete a message for everyone, keeping its row and order slot.

        Only the sender may delete. Content and media are cleared;
        timestamps and message_order stay as they were.
        """
        actor_id = require_user_id(actor_id)
        message = self.get_message(message_id)
        if message.sender_id != actor_id:
            raise NotParticipant(f"{actor_id} did not send message {message_id}")
        if message.is_deleted:
            return

        self._store.update(
            "messages",
            message_id,
            {"is_deleted": True, "content": None, "media_url": None, "media_type": None},
        )
        logger.info(f"Message soft-deleted: {message_id}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_message(self, message_id: str) -> MessageResponse:
        record = self._store.get("messages", message_id)
        if record is None:
            raise NotFound("message", message_id)
        return MessageResponse.model_validate(record)

    def list_messages(self, tab_id: str, limit: int = 50, after_order: Optional[int] = None) -> list[MessageResponse]:
        """Non-deleted messages of a tab in message_order, oldest first."""
        filters = [("tab_id", "==", tab_id), ("is_deleted", "==", False)]
        if after_order is not None:
            filters.append(("message_order", ">", after_order))
        records = self._store.query("messages", filters, order_by="message_order", limit=limit)
        return [MessageResponse.model_validate(r) for r in records]

    def search_messages(self, tab_id: str, query: str) -> list[MessageResponse]:
        """Case-insensitive substring match over the latest text messages."""
        needle = (query or "").strip().lower()
        if not needle:
            return []
        records = self._store.query(
            "messages",
            [
                ("tab_id", "==", tab_id),
                ("is_deleted", "==", False),
                ("message_type", "==", MessageType.TEXT.value),
            ],
            order_by="message_order",
            descending=True,
            limit=SEARCH_WINDOW,
        )
        hits = [r for r in reversed(records) if needle in (r["content"] or "").lower()]
        logger.debug(f"Search in tab {tab_id} for {needle!r}: {len(hits)} hits")
        return [MessageResponse.model_validate(r) for r in hits]

    def unread_count(self, tab_id: str, reader_id: str) -> int:
        """Messages in the tab from the other participant not yet read."""
        return len(self._store.query(
            "messages",
            [
                ("tab_id", "==", tab_id),
                ("sender_id", "!=", reader_id),
                ("read_at", "==", None),
                ("is_deleted", "==", False),
            ],
        ))

    def watch_messages(self, tab_id: str) -> Subscription:
        return self._store.subscribe(
            "messages",
            [("tab_id", "==", tab_id), ("is_deleted", "==", False)],
            order_by="message_order",
        )
