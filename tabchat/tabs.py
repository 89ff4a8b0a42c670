"""Tab lifecycle - create, order, rename and delete topic tabs."""

import logging
from enum import Enum
from typing import Optional, Sequence

from tabchat.errors import InvariantViolation, NotFound, NotParticipant
from tabchat.schemas import ChatTabResponse
from tabchat.storage import BatchOp, DocumentStore, Subscription
from tabchat.utils import require_user_id

logger = logging.getLogger(__name__)

DEFAULT_TAB_NAME = "General"


class TabDeletion(str, Enum):
    """Outcome of delete_tab. Failures are expected conditions, not errors."""
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    DEFAULT_TAB = "default_tab"
    HAS_MESSAGES = "has_messages"

    @property
    def ok(self) -> bool:
        return self is TabDeletion.DELETED


class TabManager:
    def __init__(self, store: DocumentStore):
        self._store = store

    def create_default_tab(self, conversation_id: str, creator_id: str) -> BatchOp:
        """
        Build the default tab for a new conversation.

        Returns the batch operation rather than writing it: the registry
        commits it together with the conversation so neither exists alone.
        """
        return BatchOp.create(
            "chat_tabs",
            {
                "conversation_id": conversation_id,
                "name": DEFAULT_TAB_NAME,
                "tab_order": 0,
                "is_default": True,
                "created_by": creator_id,
            },
        )

    def create_tab(self, conversation_id: str, creator_id: Optional[str], name: Optional[str] = None) -> str:
        """
        Create a tab at the end of the conversation's tab strip.

        Args:
            conversation_id: Owning conversation
            creator_id: Acting participant
            name: Display name; when omitted the tab is called "Topic <order>"
                and stays eligible for automatic renaming

        Returns:
            The new tab id
        """
        creator_id = require_user_id(creator_id)
        conversation = self._store.get("conversations", conversation_id)
        if conversation is None:
            raise NotFound("conversation", conversation_id)
        if creator_id not in conversation["participants"]:
            raise NotParticipant(f"{creator_id} is not a participant of {conversation_id}")

        existing = self._store.query(
            "chat_tabs",
            [("conversation_id", "==", conversation_id)],
            order_by="tab_order",
            descending=True,
            limit=1,
        )
        tab_order = existing[0]["tab_order"] + 1 if existing else 0
        tab_name = (name or "").strip() or f"Topic {tab_order}"

        tab_id = self._store.create(
            "chat_tabs",
            {
                "conversation_id": conversation_id,
                "name": tab_name,
                "tab_order": tab_order,
                "is_default": False,
                "created_by": creator_id,
            },
        )
        logger.info(f"Tab created: id={tab_id}, conversation={conversation_id}, order={tab_order}")
        return tab_id

    def get_tab(self, tab_id: str) -> ChatTabResponse:
        record = self._store.get("chat_tabs", tab_id)
        if record is None:
            raise NotFound("tab", tab_id)
        return ChatTabResponse.model_validate(record)

    def list_tabs(self, conversation_id: str) -> list[ChatTabResponse]:
        """Tabs of a conversation in display order."""
        records = self._store.query(
            "chat_tabs",
            [("conversation_id", "==", conversation_id)],
            order_by="tab_order",
        )
        return [ChatTabResponse.model_validate(r) for r in records]

    def get_default_tab(self, conversation_id: str) -> Optional[ChatTabResponse]:
        records = self._store.query(
            "chat_tabs",
            [("conversation_id", "==", conversation_id), ("is_default", "==", True)],
            limit=1,
        )
        return ChatTabResponse.model_validate(records[0]) if records else None

    def watch_tabs(self, conversation_id: str) -> Subscription:
        return self._store.subscribe(
            "chat_tabs",
            [("conversation_id", "==", conversation_id)],
            order_by="tab_order",
        )

    def reorder_tabs(self, conversation_id: str, ordered_tab_ids: Sequence[str]) -> None:
        """
        Reassign orders 0..n-1 to match ``ordered_tab_ids``.

        The sequence must name every tab of the conversation exactly once.
        All updates go out as one batch so readers never see a partial or
        duplicate ordering.
        """
        current = {tab.id for tab in self.list_tabs(conversation_id)}
        if not current:
            raise NotFound("conversation", conversation_id)

        requested = list(ordered_tab_ids)
        unknown = [tab_id for tab_id in requested if tab_id not in current]
        if unknown:
            raise NotFound("tab", unknown[0])
        if len(set(requested)) != len(requested) or set(requested) != current:
            raise InvariantViolation("reorder must list every tab of the conversation exactly once")

        ops = [
            BatchOp.update("chat_tabs", tab_id, {"tab_order": position})
            for position, tab_id in enumerate(requested)
        ]
        self._store.batch(ops)
        logger.info(f"Tabs reordered for conversation {conversation_id}: {requested}")

    def rename_tab(self, tab_id: str, new_name: str) -> bool:
        """
        Rename a tab unconditionally.

        Returns:
            True if renamed, False if the tab is unknown or the name is blank
        """
        new_name = (new_name or "").strip()
        if not new_name:
            logger.warning(f"Refusing blank name for tab {tab_id}")
            return False

        renamed = self._store.update("chat_tabs", tab_id, {"name": new_name})
        if renamed:
            logger.info(f"Tab {tab_id} renamed to {new_name!r}")
        else:
            logger.warning(f"Rename failed, tab not found: {tab_id}")
        return renamed

    def delete_tab(self, tab_id: str) -> TabDeletion:
        """
        Delete a tab that is not the default tab and holds no live messages.

        Soft-deleted message rows left in the tab are removed with it.

        Returns:
            TabDeletion; callers must check ``.ok``
        """
        record = self._store.get("chat_tabs", tab_id)
        if record is None:
            return TabDeletion.NOT_FOUND

        if record["is_default"]:
            logger.info(f"Cannot delete default tab {tab_id}")
            return TabDeletion.DEFAULT_TAB

        live = self._store.query(
            "messages",
            [("tab_id", "==", tab_id), ("is_deleted", "==", False)],
            limit=1,
        )
        if live:
            logger.info(f"Cannot delete tab {tab_id}: it has messages")
            return TabDeletion.HAS_MESSAGES

        leftovers = self._store.query("messages", [("tab_id", "==", tab_id)])
        ops = [BatchOp.delete("messages", m["id"]) for m in leftovers]
        ops.append(BatchOp.delete("chat_tabs", tab_id))
        self._store.batch(ops)
        logger.info(f"Tab deleted: {tab_id}")
        return TabDeletion.DELETED
