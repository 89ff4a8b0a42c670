"""
Pytest configuration and shared fixtures.

Services run against a throwaway SQLite file per test with zero retry
backoff. Settings are reloaded before any app import so a developer's
.env can not leak into the run.
"""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["CLASSIFIER_API_KEY"] = ""

# Clear settings cache before any app imports to ensure test env vars are used
from tabchat.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from tabchat.conversations import ConversationRegistry  # noqa: E402
from tabchat.messages import MessageSequencer  # noqa: E402
from tabchat.storage import DocumentStore, create_session_factory  # noqa: E402
from tabchat.tabs import TabManager  # noqa: E402
from tabchat.tasks import BackgroundTasks  # noqa: E402
from tabchat.topics import TopicDetectionEngine  # noqa: E402
from tabchat.users import UserDirectory  # noqa: E402

ALICE = "alice"
BOB = "bob"
CAROL = "carol"

PET_APP_MESSAGES = [
    "Let's discuss the pet adoption app",
    "We need features for dogs and cats",
    "Also a search function",
    "And user profiles",
    "Great, let's start",
]


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'tabchat.db'}"


@pytest.fixture
def store(database_url):
    """Fresh document store with instant retries."""
    engine, session_factory = create_session_factory(database_url)
    document_store = DocumentStore(session_factory, backoff_seconds=0, poll_seconds=0.01)
    document_store.init_db()
    yield document_store
    engine.dispose()


@pytest.fixture
def tasks():
    runner = BackgroundTasks(max_workers=2)
    yield runner
    runner.shutdown()


@pytest.fixture
def tabs(store) -> TabManager:
    return TabManager(store)


@pytest.fixture
def registry(store, tabs) -> ConversationRegistry:
    return ConversationRegistry(store, tabs)


@pytest.fixture
def users(store) -> UserDirectory:
    return UserDirectory(store)


@pytest.fixture
def topics(store, tabs) -> TopicDetectionEngine:
    """Keyword-only topic detection (no classifier configured)."""
    return TopicDetectionEngine(store, tabs)


@pytest.fixture
def sequencer(store, tabs, registry, tasks, topics) -> MessageSequencer:
    return MessageSequencer(store, tabs, registry, tasks, topics)


@pytest.fixture
def conversation_id(registry) -> str:
    """Conversation between alice (slot 0) and bob (slot 1)."""
    return registry.create_conversation(ALICE, BOB)


@pytest.fixture
def default_tab(tabs, conversation_id):
    return tabs.get_default_tab(conversation_id)


@pytest.fixture
def topic_tab(tabs, conversation_id):
    """A second, unnamed tab ("Topic 1") eligible for auto-rename."""
    return tabs.get_tab(tabs.create_tab(conversation_id, ALICE))


@pytest.fixture
def app_settings(database_url) -> Settings:
    return Settings(
        DATABASE_URL=database_url,
        LOG_LEVEL="WARNING",
        AUTH_SECRET="",
        CLASSIFIER_API_KEY="",
        STORE_RETRY_BACKOFF_SECONDS=0,
    )
