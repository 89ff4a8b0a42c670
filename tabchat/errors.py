"""Exception hierarchy for the chat core."""


class ChatCoreError(Exception):
    """Base exception for all chat-core errors."""


class NotFound(ChatCoreError):
    """Unknown conversation, tab, message or user id."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class Unauthenticated(ChatCoreError):
    """No caller identity is available."""


# Invariants
class InvariantViolation(ChatCoreError):
    """An operation would break a data-model invariant."""


class DefaultTabProtected(InvariantViolation):
    """The default tab of a conversation can never be deleted."""


class TabNotEmpty(InvariantViolation):
    """Tabs holding messages can not be deleted."""


class NotParticipant(InvariantViolation):
    """The acting user is not one of the conversation's two participants."""


class DuplicateDocument(InvariantViolation):
    """A uniqueness constraint rejected the write."""


class InvalidMessage(InvariantViolation):
    """Message payload does not fit its declared type."""


# Store
class StoreError(ChatCoreError):
    """Non-transient document store failure."""


class StoreUnavailable(StoreError):
    """Transient store failure that outlived the retry budget."""


# Classifier
class ClassifierUnavailable(ChatCoreError):
    """Classifier call failed (network, auth, timeout or malformed output).

    Always absorbed by topic detection, which falls back to keyword extraction.
    """
