"""User directory - profiles, presence and search."""

import logging
from datetime import timedelta
from typing import Optional

from tabchat.errors import DuplicateDocument, NotFound
from tabchat.schemas import Presence, UserResponse
from tabchat.storage import DocumentStore, utcnow
from tabchat.utils import require_user_id

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_WINDOW = timedelta(days=1)


class UserDirectory:
    def __init__(self, store: DocumentStore):
        self._store = store

    def ensure_user(self, user_id: Optional[str], phone_number: str, display_name: Optional[str] = None) -> UserResponse:
        """
        Create the profile on first sign-in.

        Later calls return the stored profile unchanged.

        Raises:
            DuplicateDocument: phone number already belongs to another user
        """
        user_id = require_user_id(user_id)
        existing = self._store.get("users", user_id)
        if existing is not None:
            return UserResponse.model_validate(existing)

        try:
            self._store.create(
                "users",
                {
                    "phone_number": phone_number,
                    "display_name": display_name,
                    "presence": Presence.OFFLINE.value,
                    "last_seen": None,
                },
                id=user_id,
            )
        except DuplicateDocument:
            # Same user signing in twice at once
            existing = self._store.get("users", user_id)
            if existing is None:
                raise
            return UserResponse.model_validate(existing)

        logger.info(f"User created: {user_id}")
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> UserResponse:
        record = self._store.get("users", user_id)
        if record is None:
            raise NotFound("user", user_id)
        return UserResponse.model_validate(record)

    def update_profile(
        self,
        user_id: Optional[str],
        display_name: Optional[str] = None,
        about: Optional[str] = None,
    ) -> UserResponse:
        user_id = require_user_id(user_id)
        data = {}
        if display_name is not None:
            data["display_name"] = display_name.strip()
        if about is not None:
            data["about"] = about
        if data and not self._store.update("users", user_id, data):
            raise NotFound("user", user_id)
        return self.get_user(user_id)

    def update_presence(self, user_id: Optional[str], status: Presence) -> UserResponse:
        """Set presence and stamp last_seen."""
        user_id = require_user_id(user_id)
        status = Presence(status)
        if not self._store.update("users", user_id, {"presence": status.value, "last_seen": utcnow()}):
            raise NotFound("user", user_id)
        logger.debug(f"Presence of {user_id} set to {status.value}")
        return self.get_user(user_id)

    def search_users(self, query: str, exclude_user_id: Optional[str] = None) -> list[UserResponse]:
        """
        Find users by phone number or display name.

        A query starting with '+' is an exact phone lookup. Otherwise display
        names are matched case-insensitively by substring; exact matches
        come first, then online users, then alphabetical order.
        """
        query = (query or "").strip()
        if not query:
            return []

        if query.startswith("+"):
            records = self._store.query("users", [("phone_number", "==", query)])
        else:
            needle = query.lower()
            records = [
                r for r in self._store.query("users", [("display_name", "!=", None)])
                if needle in r["display_name"].lower()
            ]
            records.sort(key=lambda r: (
                r["display_name"].lower() != needle,
                r["presence"] != Presence.ONLINE.value,
                r["display_name"].lower(),
            ))

        users = [UserResponse.model_validate(r) for r in records if r["id"] != exclude_user_id]
        logger.debug(f"User search {query!r}: {len(users)} results")
        return users

    def list_users_by_status(
        self,
        status: Presence,
        exclude_user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[UserResponse]:
        """Users with the given presence, most recently seen first."""
        status = Presence(status)
        records = self._store.query(
            "users",
            [("presence", "==", status.value)],
            order_by="last_seen",
            descending=True,
            limit=limit,
        )
        return [UserResponse.model_validate(r) for r in records if r["id"] != exclude_user_id]

    def recently_active(
        self,
        exclude_user_id: Optional[str] = None,
        within: timedelta = RECENT_ACTIVITY_WINDOW,
        limit: int = 30,
    ) -> list[UserResponse]:
        """Users seen within ``within`` of now, most recent first."""
        since = utcnow() - within
        records = self._store.query(
            "users",
            [("last_seen", ">=", since)],
            order_by="last_seen",
            descending=True,
            limit=limit,
        )
        users = [UserResponse.model_validate(r) for r in records if r["id"] != exclude_user_id]
        logger.debug(f"{len(users)} users active since {since.isoformat()}")
        return users
