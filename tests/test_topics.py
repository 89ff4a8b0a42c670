"""
Tests for topic detection.

Tests cover:
- Eligibility threshold and custom-name skip
- Exactly-once rename per tab
- Deterministic keyword fallback
- Classifier path, cleanup and failure fallback
- Manual detection and cache reset
- Serialized analysis under concurrent triggers
"""

import gc
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from conftest import ALICE, BOB, PET_APP_MESSAGES
from tabchat.classifier import BaseTopicClassifier, GeminiClassifier
from tabchat.errors import ClassifierUnavailable
from tabchat.messages import MessageSequencer
from tabchat.stopwords import DEFAULT_STOPWORDS, load_stopwords
from tabchat.topics import (
    TopicDetectionEngine,
    TopicState,
    build_transcript,
    clean_topic,
    extract_keywords,
)


class StubClassifier(BaseTopicClassifier):
    """Returns a canned answer and counts calls."""

    def __init__(self, answer: str = "pet adoption app", delay: float = 0.0):
        self.answer = answer
        self.delay = delay
        self.prompts = []
        self._lock = threading.Lock()

    def generate(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        return self.answer


class UnavailableClassifier(BaseTopicClassifier):
    def __init__(self):
        self.calls = 0

    def generate(self, prompt: str) -> str:
        self.calls += 1
        raise ClassifierUnavailable("network down")


@pytest.fixture
def quiet_sequencer(store, tabs, registry, tasks) -> MessageSequencer:
    """Sequencer without topic detection, so tests drive the engine by hand."""
    return MessageSequencer(store, tabs, registry, tasks)


def send_all(sequencer, tab_id, texts):
    return [sequencer.send_text(tab_id, ALICE if i % 2 == 0 else BOB, text) for i, text in enumerate(texts)]


class TestKeywordFallback:
    """Test the deterministic extractor."""

    def test_pet_app_conversation(self):
        # "lets" appears twice, the rest once; ties keep first-seen order
        assert extract_keywords(PET_APP_MESSAGES) == "lets discuss adoption"

    def test_frequency_order(self):
        texts = ["garden garden tomato", "tomato garden fence", "fence"]
        assert extract_keywords(texts) == "garden tomato fence"

    def test_short_tokens_and_stopwords_dropped(self):
        assert extract_keywords(["yeah okay the cat and dog", "thanks, really!"]) == ""

    def test_truncated_to_thirty_characters(self):
        texts = ["internationalization accessibility responsiveness"]
        result = extract_keywords(texts)
        assert len(result) <= 30
        assert result.startswith("internationalization")

    def test_punctuation_stripped(self):
        assert extract_keywords(["Budget!!! budget? BUDGET."]) == "budget"

    def test_custom_stopwords(self, tmp_path):
        table = tmp_path / "stopwords.txt"
        table.write_text("# filler\nbudget\n\n", encoding="utf-8")
        stopwords = load_stopwords(str(table))

        assert stopwords == frozenset({"budget"})
        assert extract_keywords(["budget travel travel"], stopwords) == "travel"

    def test_default_table_when_no_file(self):
        assert load_stopwords(None) is DEFAULT_STOPWORDS


class TestCleanup:
    def test_clean_topic(self):
        assert clean_topic(' "Pet Adoption App" \n') == "pet adoption app"
        assert clean_topic("one two three four five six seven") == "one two three four five"
        assert clean_topic("'  '") == ""

    def test_transcript(self):
        assert build_transcript(["hi ", "", "there"]) == "- hi\n- there\n"


class TestEligibility:
    """Test when a tab gets analyzed."""

    def test_four_messages_not_eligible(self, sequencer, topics, tasks, tabs, topic_tab):
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES[:4])
        assert tasks.drain(timeout=10)

        assert not topics.should_analyze(topic_tab.id)
        assert topics.state(topic_tab.id) is TopicState.UNANALYZED
        assert tabs.get_tab(topic_tab.id).name == "Topic 1"

    def test_fifth_message_triggers_single_rename(self, store, tabs, registry, tasks, topic_tab):
        classifier = StubClassifier()
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)
        sequencer = MessageSequencer(store, tabs, registry, tasks, engine)

        for text in PET_APP_MESSAGES:
            sequencer.send_text(topic_tab.id, ALICE, text)
            assert tasks.drain(timeout=10)

        assert tabs.get_tab(topic_tab.id).name == "pet adoption app"
        assert engine.state(topic_tab.id) is TopicState.RENAMED
        assert len(classifier.prompts) == 1

        for i in range(5):
            sequencer.send_text(topic_tab.id, BOB, f"more chatter {i}")
        assert tasks.drain(timeout=10)

        assert len(classifier.prompts) == 1
        assert tabs.get_tab(topic_tab.id).name == "pet adoption app"

    def test_custom_name_never_renamed(self, store, tabs, registry, tasks, topic_tab):
        classifier = StubClassifier()
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)
        sequencer = MessageSequencer(store, tabs, registry, tasks, engine)

        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES[:3])
        tabs.rename_tab(topic_tab.id, "Weekend Plans")
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES[3:] + ["and more", "even more"])
        assert tasks.drain(timeout=10)

        assert tabs.get_tab(topic_tab.id).name == "Weekend Plans"
        assert engine.state(topic_tab.id) is TopicState.SKIPPED_CUSTOM_NAME
        assert classifier.prompts == []

    def test_default_general_tab_is_skipped(self, sequencer, topics, tasks, tabs, default_tab):
        send_all(sequencer, default_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        assert tabs.get_tab(default_tab.id).name == "General"
        assert topics.state(default_tab.id) is TopicState.SKIPPED_CUSTOM_NAME

    def test_deleted_messages_do_not_count(self, sequencer, topics, tasks, tabs, topic_tab):
        ids = send_all(sequencer, topic_tab.id, PET_APP_MESSAGES[:4])
        sequencer.soft_delete(ids[0], ALICE)
        sequencer.send_text(topic_tab.id, BOB, PET_APP_MESSAGES[4])
        assert tasks.drain(timeout=10)

        assert tabs.get_tab(topic_tab.id).name == "Topic 1"
        assert topics.state(topic_tab.id) is TopicState.UNANALYZED


class TestFallbackPath:
    def test_no_classifier_uses_keywords(self, sequencer, topics, tasks, tabs, topic_tab):
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        assert tabs.get_tab(topic_tab.id).name == "lets discuss adoption"
        assert topics.state(topic_tab.id) is TopicState.RENAMED

    def test_classifier_failure_falls_back(self, store, tabs, registry, tasks, topic_tab):
        classifier = UnavailableClassifier()
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)
        sequencer = MessageSequencer(store, tabs, registry, tasks, engine)

        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        assert classifier.calls == 1
        assert tabs.get_tab(topic_tab.id).name == "lets discuss adoption"
        assert engine.state(topic_tab.id) is TopicState.RENAMED

    def test_gemini_error_status_falls_back(self, store, tabs, quiet_sequencer, tasks, topic_tab):
        requests = []

        def overloaded(request):
            requests.append(request)
            return httpx.Response(503, json={"error": "overloaded"})

        classifier = GeminiClassifier(api_key="test-key", transport=httpx.MockTransport(overloaded))
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)

        send_all(quiet_sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        assert engine.analyze_and_rename(topic_tab.id) == "lets discuss adoption"
        assert len(requests) == 1
        assert tabs.get_tab(topic_tab.id).name == "lets discuss adoption"
        classifier.close()

    def test_empty_classifier_answer_falls_back(self, store, tabs, topic_tab):
        engine = TopicDetectionEngine(store, tabs, classifier=StubClassifier(answer='""'))
        assert engine.detect_topic(PET_APP_MESSAGES) == "lets discuss adoption"

    def test_no_topic_found(self, store, tabs, registry, tasks, topic_tab):
        engine = TopicDetectionEngine(store, tabs)
        sequencer = MessageSequencer(store, tabs, registry, tasks, engine)

        send_all(sequencer, topic_tab.id, ["ok", "yes", "lol", "sure", "hmm"])
        assert tasks.drain(timeout=10)

        assert engine.state(topic_tab.id) is TopicState.SKIPPED_NO_FIT
        assert tabs.get_tab(topic_tab.id).name == "Topic 1"


class TestManualDetection:
    def test_manual_detect_reruns_after_rename_state(self, store, tabs, registry, tasks, topic_tab):
        classifier = StubClassifier(answer="pet adoption app")
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)
        sequencer = MessageSequencer(store, tabs, registry, tasks, engine)

        send_all(sequencer, topic_tab.id, ["ok", "yes", "lol", "sure", "hmm"])
        assert tasks.drain(timeout=10)
        assert tabs.get_tab(topic_tab.id).name == "pet adoption app"

        # A renamed tab no longer matches the default pattern
        tabs.rename_tab(topic_tab.id, "Topic 1")
        classifier.answer = "dog walking schedule"

        assert engine.analyze_and_rename(topic_tab.id) is None
        assert engine.manually_detect_topic(topic_tab.id) == "dog walking schedule"
        assert tabs.get_tab(topic_tab.id).name == "dog walking schedule"

    def test_manual_detect_respects_threshold(self, store, tabs, sequencer, tasks, topic_tab):
        engine = TopicDetectionEngine(store, tabs, classifier=StubClassifier())
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES[:2])
        assert tasks.drain(timeout=10)

        assert engine.manually_detect_topic(topic_tab.id) is None
        assert engine.state(topic_tab.id) is TopicState.UNANALYZED

    def test_manual_detect_respects_custom_name(self, store, tabs, sequencer, tasks, topic_tab):
        engine = TopicDetectionEngine(store, tabs, classifier=StubClassifier())
        tabs.rename_tab(topic_tab.id, "Weekend Plans")
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        assert engine.manually_detect_topic(topic_tab.id) is None
        assert engine.state(topic_tab.id) is TopicState.SKIPPED_CUSTOM_NAME

    def test_reset_and_clear_cache(self, store, tabs, sequencer, tasks, topic_tab):
        engine = TopicDetectionEngine(store, tabs)
        tabs.rename_tab(topic_tab.id, "Weekend Plans")
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        engine.analyze_and_rename(topic_tab.id)
        assert engine.state(topic_tab.id) is TopicState.SKIPPED_CUSTOM_NAME

        engine.reset(topic_tab.id)
        assert engine.state(topic_tab.id) is TopicState.UNANALYZED

        engine.analyze_and_rename(topic_tab.id)
        engine.clear_cache()
        assert engine.state(topic_tab.id) is TopicState.UNANALYZED

    def test_finished_tabs_hold_no_locks(self, store, tabs, sequencer, tasks, topic_tab, default_tab):
        engine = TopicDetectionEngine(store, tabs)
        send_all(sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        engine.analyze_and_rename(topic_tab.id)
        engine.analyze_and_rename(default_tab.id)
        engine.reset("never-seen")
        gc.collect()
        # only topic_tab has an outcome worth caching
        assert engine.tracked_tabs() == 1

        engine.forget([topic_tab.id])
        assert engine.state(topic_tab.id) is TopicState.UNANALYZED
        assert engine.tracked_tabs() == 0

        engine.analyze_and_rename(topic_tab.id)
        assert engine.state(topic_tab.id) is TopicState.SKIPPED_CUSTOM_NAME
        engine.clear_cache()
        gc.collect()
        assert engine.tracked_tabs() == 0

    def test_unknown_tab(self, store, tabs):
        from tabchat.errors import NotFound

        engine = TopicDetectionEngine(store, tabs)
        with pytest.raises(NotFound):
            engine.manually_detect_topic("missing")
        assert engine.state("missing") is TopicState.UNANALYZED


class TestConcurrency:
    def test_concurrent_triggers_rename_once(self, store, tabs, quiet_sequencer, tasks, topic_tab):
        classifier = StubClassifier(answer="pet adoption app", delay=0.05)
        engine = TopicDetectionEngine(store, tabs, classifier=classifier)
        send_all(quiet_sequencer, topic_tab.id, PET_APP_MESSAGES)
        assert tasks.drain(timeout=10)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.analyze_and_rename(topic_tab.id), range(8)))

        assert results.count("pet adoption app") == 1
        assert results.count(None) == 7
        assert len(classifier.prompts) == 1
        assert engine.state(topic_tab.id) is TopicState.RENAMED
