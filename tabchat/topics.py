"""
Topic detection - renames "Topic <n>" tabs after their own message history.

Each tab is analyzed at most once per process: the outcome is cached in
memory (not persisted) until reset() or manually_detect_topic() clears it.
The primary path asks the AI classifier; the keyword-frequency extractor
below takes over whenever no classifier is configured or the call fails.
"""

import logging
import re
import threading
import weakref
from collections import Counter
from enum import Enum
from typing import Iterable, Optional

from tabchat.classifier import BaseTopicClassifier
from tabchat.errors import ClassifierUnavailable
from tabchat.metrics import record_topic_outcome
from tabchat.schemas import MessageType, is_default_tab_name
from tabchat.stopwords import DEFAULT_STOPWORDS
from tabchat.storage import DocumentStore
from tabchat.tabs import TabManager

logger = logging.getLogger(__name__)

TOPIC_INSTRUCTIONS = """Analyze the following conversation and generate a short, descriptive topic name (2-5 words max).
The topic should be concise, clear, and capture the main subject being discussed.

Rules:
- Between 2 and 5 words
- Lowercase only (e.g., "pets app discussion")
- No punctuation and no quotes
- If there is no clear topic, respond with just "general chat"

Conversation:
{transcript}
Topic name:"""

MAX_TOPIC_WORDS = 5
MAX_KEYWORDS = 3
MAX_FALLBACK_LENGTH = 30
MIN_KEYWORD_LENGTH = 4

_NON_ALNUM = re.compile(r"[^\w\s]|_")


class TopicState(str, Enum):
    UNANALYZED = "unanalyzed"
    ANALYZING = "analyzing"
    RENAMED = "renamed"
    SKIPPED_CUSTOM_NAME = "skipped_custom_name"
    SKIPPED_NO_FIT = "skipped_no_fit"


def build_transcript(texts: Iterable[str]) -> str:
    """One "- <text>" line per message."""
    return "".join(f"- {text.strip()}\n" for text in texts if text and text.strip())


def clean_topic(raw: str) -> str:
    """Strip quotes, lowercase, and keep at most MAX_TOPIC_WORDS words."""
    topic = raw.strip().replace('"', "").replace("'", "").lower()
    return " ".join(topic.split()[:MAX_TOPIC_WORDS])


def extract_keywords(texts: Iterable[str], stopwords: frozenset = DEFAULT_STOPWORDS) -> str:
    """
    Deterministic keyword-frequency topic.

    Lowercases the joined text, drops non-alphanumerics, discards short
    tokens and stop words, then joins the three most frequent tokens (ties
    keep first-seen order) and truncates to MAX_FALLBACK_LENGTH characters.
    Returns "" when nothing qualifies.
    """
    joined = " ".join(t for t in texts if t).lower()
    tokens = [
        word for word in _NON_ALNUM.sub("", joined).split()
        if len(word) >= MIN_KEYWORD_LENGTH and word not in stopwords
    ]
    # most_common keeps insertion order among equal counts
    top = [word for word, _ in Counter(tokens).most_common(MAX_KEYWORDS)]
    return " ".join(top)[:MAX_FALLBACK_LENGTH].strip()


class TopicDetectionEngine:
    """
    Background, at-most-once-per-tab topic analysis.

    Per tab the engine moves Unanalyzed -> Analyzing -> {Renamed,
    SkippedCustomName, SkippedNoFit}. A per-tab lock serializes runs so two
    triggers for one tab can never rename it twice; any failure puts the
    tab back to Unanalyzed instead of leaving it in Analyzing.
    """

    def __init__(
        self,
        store: DocumentStore,
        tabs: TabManager,
        classifier: Optional[BaseTopicClassifier] = None,
        min_messages: int = 5,
        max_messages: int = 15,
        stopwords: frozenset = DEFAULT_STOPWORDS,
    ):
        self._store = store
        self._tabs = tabs
        self._classifier = classifier
        self.min_messages = min_messages
        self.max_messages = max_messages
        self._stopwords = stopwords

        self._states: dict[str, TopicState] = {}
        # An entry lives only while some caller holds the tab's lock object
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def state(self, tab_id: str) -> TopicState:
        with self._guard:
            return self._states.get(tab_id, TopicState.UNANALYZED)

    def _set_state(self, tab_id: str, state: TopicState) -> None:
        with self._guard:
            if state is TopicState.UNANALYZED:
                self._states.pop(tab_id, None)
            else:
                self._states[tab_id] = state

    def _tab_lock(self, tab_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tab_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tab_id] = lock
            return lock

    def reset(self, tab_id: str) -> None:
        """Forget the cached outcome for one tab."""
        with self._tab_lock(tab_id):
            self._set_state(tab_id, TopicState.UNANALYZED)

    def clear_cache(self) -> None:
        with self._guard:
            self._states.clear()

    def forget(self, tab_ids: Iterable[str]) -> None:
        """Drop cached outcomes of tabs that no longer exist."""
        with self._guard:
            for tab_id in tab_ids:
                self._states.pop(tab_id, None)

    def tracked_tabs(self) -> int:
        """Number of tabs with a cached outcome or a live lock."""
        with self._guard:
            return len(set(self._states) | set(self._locks.keys()))

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _live_message_count(self, tab_id: str, limit: int) -> int:
        return len(self._store.query(
            "messages",
            [("tab_id", "==", tab_id), ("is_deleted", "==", False)],
            limit=limit,
        ))

    def should_analyze(self, tab_id: str) -> bool:
        """Cheap pre-check: not yet analyzed and enough live messages."""
        if self.state(tab_id) is not TopicState.UNANALYZED:
            return False
        return self._live_message_count(tab_id, self.min_messages) >= self.min_messages

    def on_message_sent(self, tab_id: str) -> None:
        """Background hook run after every send."""
        if self.should_analyze(tab_id):
            self.analyze_and_rename(tab_id)

    def analyze_and_rename(self, tab_id: str) -> Optional[str]:
        """
        Analyze a tab unless its outcome is already cached.

        Returns:
            The new tab name, or None when nothing was renamed
        """
        with self._tab_lock(tab_id):
            if self.state(tab_id) is not TopicState.UNANALYZED:
                logger.debug(f"Tab {tab_id} already analyzed: {self.state(tab_id).value}")
                return None
            return self._analyze(tab_id)

    def manually_detect_topic(self, tab_id: str) -> Optional[str]:
        """
        Re-run detection for a tab regardless of the cache.

        Message-count and custom-name checks still apply.
        """
        with self._tab_lock(tab_id):
            self._set_state(tab_id, TopicState.UNANALYZED)
            logger.info(f"Manual topic detection requested for tab {tab_id}")
            return self._analyze(tab_id)

    # -------------------------------------------------------------------------
    # Analysis (caller holds the tab lock)
    # -------------------------------------------------------------------------

    def _analyze(self, tab_id: str) -> Optional[str]:
        self._set_state(tab_id, TopicState.ANALYZING)
        try:
            outcome, topic = self._run(tab_id)
        except Exception:
            self._set_state(tab_id, TopicState.UNANALYZED)
            raise
        self._set_state(tab_id, outcome)
        return topic

    def _run(self, tab_id: str) -> tuple:
        tab = self._tabs.get_tab(tab_id)

        if self._live_message_count(tab_id, self.min_messages) < self.min_messages:
            record_topic_outcome("not_enough_messages")
            return TopicState.UNANALYZED, None

        if not is_default_tab_name(tab.name):
            logger.info(f"Tab {tab_id} has a custom name {tab.name!r}, skipping topic detection")
            record_topic_outcome("skipped_custom_name")
            return TopicState.SKIPPED_CUSTOM_NAME, None

        recent = self._store.query(
            "messages",
            [
                ("tab_id", "==", tab_id),
                ("is_deleted", "==", False),
                ("message_type", "==", MessageType.TEXT.value),
            ],
            order_by="message_order",
            descending=True,
            limit=self.max_messages,
        )
        texts = [m["content"] for m in reversed(recent) if m["content"] and m["content"].strip()]
        if len(texts) < self.min_messages:
            record_topic_outcome("not_enough_messages")
            return TopicState.UNANALYZED, None

        topic = self.detect_topic(texts)
        if not topic:
            logger.info(f"No topic found for tab {tab_id}")
            record_topic_outcome("skipped_no_fit")
            return TopicState.SKIPPED_NO_FIT, None

        if not self._tabs.rename_tab(tab_id, topic):
            return TopicState.UNANALYZED, None

        logger.info(f"Tab {tab_id} auto-renamed to {topic!r}")
        record_topic_outcome("renamed")
        return TopicState.RENAMED, topic

    def detect_topic(self, texts: list[str]) -> str:
        """
        Topic for a list of message texts ("" if none fits).

        Uses the classifier when configured; any ClassifierUnavailable, or
        an answer that cleans up to nothing, falls through to keywords.
        """
        if self._classifier is not None:
            prompt = TOPIC_INSTRUCTIONS.format(transcript=build_transcript(texts))
            try:
                topic = clean_topic(self._classifier.generate(prompt))
                if topic:
                    return topic
                logger.warning("Classifier answer was empty after cleanup, using keyword fallback")
            except ClassifierUnavailable as e:
                logger.warning(f"Classifier unavailable, using keyword fallback: {e}")
            record_topic_outcome("classifier_fallback")

        return extract_keywords(texts, self._stopwords)
