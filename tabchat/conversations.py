"""Conversation registry - one conversation per unordered participant pair."""

import logging
import uuid
from datetime import datetime
from typing import Optional

from tabchat.errors import DuplicateDocument, InvariantViolation, NotFound, NotParticipant
from tabchat.schemas import (
    ConversationResponse,
    ConversationSearchResult,
    MessageResponse,
    MessageType,
    UserResponse,
)
from tabchat.storage import BatchOp, DocumentStore, Increment, Subscription, utcnow
from tabchat.tabs import TabManager
from tabchat.users import UserDirectory
from tabchat.utils import require_user_id

logger = logging.getLogger(__name__)

# Maximum operations per store batch when cascading deletes
BATCH_SIZE = 500

# Conversation search scans this many recent text messages per tab
MESSAGE_SEARCH_WINDOW = 50
MAX_MATCHING_MESSAGES = 10


def sorted_pair(user_a: str, user_b: str) -> list[str]:
    """Canonical participant ordering, so pair lookup is order-independent."""
    return sorted([user_a, user_b])


class ConversationRegistry:
    """
    Finds-or-creates conversations and owns unread-count bookkeeping.

    Unread counters are positional: unread_slot_0 belongs to
    participants[0], unread_slot_1 to participants[1].
    """

    def __init__(self, store: DocumentStore, tabs: TabManager, users: Optional[UserDirectory] = None):
        self._store = store
        self._tabs = tabs
        self._users = users or UserDirectory(store)

    def find_conversation(self, user_a: str, user_b: str) -> Optional[str]:
        """
        Look up the conversation for a pair of users.

        Returns:
            Conversation id if one exists, None otherwise
        """
        pair = sorted_pair(user_a, user_b)
        logger.debug(f"Looking up conversation for pair {pair}")
        found = self._store.query(
            "conversations",
            [("participants", "==", pair)],
            limit=1,
        )
        return found[0]["id"] if found else None

    def create_conversation(self, creator_id: Optional[str], other_id: str) -> str:
        """
        Create the conversation for (creator, other), or return the existing one.

        The conversation and its default tab are written in one batch. The
        store's uniqueness constraint on the sorted pair settles races
        between both participants creating at once: the loser re-reads and
        returns the winner's id.

        Returns:
            Conversation id
        """
        creator_id = require_user_id(creator_id)
        other_id = require_user_id(other_id)
        if creator_id == other_id:
            raise InvariantViolation("a conversation needs two distinct participants")

        existing = self.find_conversation(creator_id, other_id)
        if existing is not None:
            logger.info(f"Conversation already exists for {creator_id}/{other_id}: {existing}")
            return existing

        conversation_id = uuid.uuid4().hex
        ops = [
            BatchOp.create(
                "conversations",
                {
                    "participants": sorted_pair(creator_id, other_id),
                    "created_by": creator_id,
                    "last_message_id": None,
                    "last_activity": utcnow(),
                    "unread_slot_0": 0,
                    "unread_slot_1": 0,
                },
                id=conversation_id,
            ),
            self._tabs.create_default_tab(conversation_id, creator_id),
        ]

        try:
            self._store.batch(ops)
        except DuplicateDocument:
            existing = self.find_conversation(creator_id, other_id)
            if existing is None:
                raise
            logger.info(f"Lost create race for {creator_id}/{other_id}, using {existing}")
            return existing

        logger.info(f"Conversation created: id={conversation_id}, by={creator_id}, with={other_id}")
        return conversation_id

    def get_conversation(self, conversation_id: str) -> ConversationResponse:
        record = self._store.get("conversations", conversation_id)
        if record is None:
            raise NotFound("conversation", conversation_id)
        return ConversationResponse.model_validate(record)

    def _slot(self, conversation: ConversationResponse, user_id: str) -> int:
        slot = conversation.slot_of(user_id)
        if slot is None:
            raise NotParticipant(f"{user_id} is not a participant of {conversation.id}")
        return slot

    def record_message_sent(
        self,
        conversation_id: str,
        message_id: str,
        sender_id: Optional[str],
        sent_at: Optional[datetime] = None,
    ) -> None:
        """
        Update last-message bookkeeping after a send.

        Increments the unread slot that is not the sender's: sender in slot 0
        bumps slot 1 and vice versa. The last-message pointer only moves
        forward: it is written when ``sent_at`` is not older than the stored
        last_activity, so bookkeeping finishing out of order never points the
        conversation back at an earlier message.
        """
        sender_id = require_user_id(sender_id)
        sent_at = sent_at or utcnow()
        conversation = self.get_conversation(conversation_id)
        recipient_slot = 1 - self._slot(conversation, sender_id)

        self._store.update(
            "conversations",
            conversation_id,
            {f"unread_slot_{recipient_slot}": Increment(1)},
        )
        if conversation.last_activity is None:
            guard = [("last_activity", "==", None)]
        else:
            guard = [("last_activity", "<=", sent_at)]
        advanced = self._store.update(
            "conversations",
            conversation_id,
            {"last_message_id": message_id, "last_activity": sent_at},
            where=guard,
        )
        logger.debug(
            f"Conversation {conversation_id}: message {message_id}, unread slot {recipient_slot} +1"
            + ("" if advanced else ", newer message already recorded")
        )

    def mark_read(self, conversation_id: str, reader_id: Optional[str]) -> None:
        """Reset the reader's unread slot; the other slot is untouched."""
        reader_id = require_user_id(reader_id)
        conversation = self.get_conversation(conversation_id)
        slot = self._slot(conversation, reader_id)
        self._store.update("conversations", conversation_id, {f"unread_slot_{slot}": 0})
        logger.debug(f"Conversation {conversation_id}: unread slot {slot} reset by {reader_id}")

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        conversation = self.get_conversation(conversation_id)
        self._slot(conversation, user_id)
        return conversation.unread_count_for(user_id)

    def list_conversations(self, user_id: Optional[str], unread_only: bool = False) -> list[ConversationResponse]:
        """Conversations of a user, most recent activity first."""
        user_id = require_user_id(user_id)
        records = self._store.query(
            "conversations",
            [("participants", "array-contains", user_id)],
            order_by="last_activity",
            descending=True,
        )
        conversations = [ConversationResponse.model_validate(r) for r in records]
        if unread_only:
            conversations = [c for c in conversations if c.unread_count_for(user_id) > 0]
        return conversations

    def list_by_timeframe(
        self,
        user_id: Optional[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[ConversationResponse]:
        """Conversations of a user whose last activity falls in [start, end], newest first."""
        user_id = require_user_id(user_id)
        filters = [("participants", "array-contains", user_id)]
        if start is not None:
            filters.append(("last_activity", ">=", start))
        if end is not None:
            filters.append(("last_activity", "<=", end))
        records = self._store.query(
            "conversations", filters, order_by="last_activity", descending=True, limit=limit,
        )
        return [ConversationResponse.model_validate(r) for r in records]

    def search_conversations(self, user_id: Optional[str], query: str) -> list[ConversationSearchResult]:
        """
        Find the caller's conversations by participant or by message text.

        A conversation matches on "participant" when the other user turns up
        in a user search for ``query``, and on "message" when one of its
        recent text messages contains it. Participant matches rank first,
        then the most recent activity.

        Returns:
            One result per conversation, with up to MAX_MATCHING_MESSAGES
            matching messages, newest first
        """
        user_id = require_user_id(user_id)
        query = (query or "").strip()
        if not query:
            return []

        matched_users = {u.id: u for u in self._users.search_users(query, exclude_user_id=user_id)}
        results = []
        for conversation in self.list_conversations(user_id):
            other_id = conversation.other_participant(user_id)
            messages = self._matching_messages(conversation.id, query.lower())
            match_types = []
            if other_id in matched_users:
                match_types.append("participant")
            if messages:
                match_types.append("message")
            if not match_types:
                continue

            other = matched_users.get(other_id)
            if other is None:
                record = self._store.get("users", other_id)
                other = UserResponse.model_validate(record) if record else None
            results.append(ConversationSearchResult(
                conversation=conversation,
                other_user=other,
                match_types=match_types,
                matching_messages=messages,
            ))

        # list_conversations is already newest-first; the sort is stable
        results.sort(key=lambda r: "participant" not in r.match_types)
        logger.debug(f"Conversation search {query!r} for {user_id}: {len(results)} results")
        return results

    def _matching_messages(self, conversation_id: str, needle: str) -> list[MessageResponse]:
        hits = []
        for tab in self._tabs.list_tabs(conversation_id):
            records = self._store.query(
                "messages",
                [
                    ("tab_id", "==", tab.id),
                    ("is_deleted", "==", False),
                    ("message_type", "==", MessageType.TEXT.value),
                ],
                order_by="sent_at",
                descending=True,
                limit=MESSAGE_SEARCH_WINDOW,
            )
            hits.extend(r for r in records if needle in (r["content"] or "").lower())
        hits.sort(key=lambda r: (r["sent_at"], r["message_order"]), reverse=True)
        return [MessageResponse.model_validate(r) for r in hits[:MAX_MATCHING_MESSAGES]]

    def watch_conversations(self, user_id: str) -> Subscription:
        return self._store.subscribe(
            "conversations",
            [("participants", "array-contains", user_id)],
            order_by="last_activity",
            descending=True,
        )

    def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation with all of its tabs and messages.

        Messages go out in batches of BATCH_SIZE; the tabs and the
        conversation record are removed in the final batch.
        """
        self.get_conversation(conversation_id)
        tabs = self._store.query("chat_tabs", [("conversation_id", "==", conversation_id)])
        logger.info(f"Deleting conversation {conversation_id} with {len(tabs)} tabs")

        for tab in tabs:
            messages = self._store.query("messages", [("tab_id", "==", tab["id"])])
            for start in range(0, len(messages), BATCH_SIZE):
                chunk = messages[start:start + BATCH_SIZE]
                self._store.batch([BatchOp.delete("messages", m["id"]) for m in chunk])
                logger.debug(f"Deleted {len(chunk)} messages from tab {tab['id']}")

        final = [BatchOp.delete("chat_tabs", tab["id"]) for tab in tabs]
        final.append(BatchOp.delete("conversations", conversation_id))
        for start in range(0, len(final), BATCH_SIZE):
            self._store.batch(final[start:start + BATCH_SIZE])
        logger.info(f"Conversation deleted: {conversation_id}")
