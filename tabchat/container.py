"""Explicit construction of every chat-core service."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from tabchat.classifier import BaseTopicClassifier, GeminiClassifier
from tabchat.config import Settings
from tabchat.conversations import ConversationRegistry
from tabchat.messages import MessageSequencer
from tabchat.stopwords import load_stopwords
from tabchat.storage import DocumentStore, create_session_factory
from tabchat.tabs import TabManager
from tabchat.tasks import BackgroundTasks
from tabchat.topics import TopicDetectionEngine
from tabchat.users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Any
    store: DocumentStore
    tasks: BackgroundTasks
    classifier: Optional[BaseTopicClassifier]
    users: UserDirectory
    tabs: TabManager
    conversations: ConversationRegistry
    topics: TopicDetectionEngine
    messages: MessageSequencer

    @classmethod
    def create(cls, settings: Settings, classifier: Optional[BaseTopicClassifier] = None) -> "ServiceContainer":
        """
        Build the store, background runner and services from settings.

        A classifier passed in wins over the configured one; without either
        topic detection runs on keyword extraction only.
        """
        engine, session_factory = create_session_factory(settings.DATABASE_URL)
        store = DocumentStore(
            session_factory,
            max_attempts=settings.STORE_CREATE_MAX_ATTEMPTS,
            backoff_seconds=settings.STORE_RETRY_BACKOFF_SECONDS,
            poll_seconds=settings.SUBSCRIPTION_POLL_SECONDS,
        )
        store.init_db()

        if classifier is None and settings.classifier_configured:
            classifier = GeminiClassifier(
                api_key=settings.CLASSIFIER_API_KEY,
                model=settings.CLASSIFIER_MODEL,
                base_url=settings.CLASSIFIER_BASE_URL,
                timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
                temperature=settings.CLASSIFIER_TEMPERATURE,
                top_k=settings.CLASSIFIER_TOP_K,
                top_p=settings.CLASSIFIER_TOP_P,
                max_output_tokens=settings.CLASSIFIER_MAX_OUTPUT_TOKENS,
            )
        if classifier is None:
            logger.info("No topic classifier configured, using keyword extraction")

        tasks = BackgroundTasks(max_workers=settings.BACKGROUND_WORKERS)
        users = UserDirectory(store)
        tabs = TabManager(store)
        conversations = ConversationRegistry(store, tabs, users)
        topics = TopicDetectionEngine(
            store,
            tabs,
            classifier=classifier,
            min_messages=settings.MIN_MESSAGES_FOR_DETECTION,
            max_messages=settings.MAX_MESSAGES_TO_ANALYZE,
            stopwords=load_stopwords(settings.STOPWORDS_FILE),
        )
        messages = MessageSequencer(store, tabs, conversations, tasks, topics)

        return cls(
            settings=settings,
            engine=engine,
            store=store,
            tasks=tasks,
            classifier=classifier,
            users=users,
            tabs=tabs,
            conversations=conversations,
            topics=topics,
            messages=messages,
        )

    def close(self) -> None:
        """Drain background work, then release the classifier and engine."""
        self.tasks.shutdown()
        if self.classifier is not None:
            self.classifier.close()
        self.engine.dispose()
        logger.info("Services shut down")
