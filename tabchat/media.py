"""Media collaborator interface: blob upload lives outside the chat core."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from tabchat.schemas import MessageType


@dataclass(frozen=True)
class UploadedMedia:
    """Durable location and metadata returned by the uploader."""
    url: str
    content_type: str
    size: int

    @property
    def message_type(self) -> MessageType:
        """Images render inline, everything else is a file attachment."""
        if self.content_type.startswith("image/"):
            return MessageType.IMAGE
        return MessageType.FILE


class BaseMediaUploader(ABC):
    """Abstract interface for blob storage backends."""

    @abstractmethod
    def upload(self, local_path: Path, conversation_id: str) -> UploadedMedia:
        """Upload a local file under the conversation's namespace."""
        ...
