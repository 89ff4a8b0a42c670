"""
Tests for the conversation registry.

Tests cover:
- Idempotent creation in either participant order
- Exactly one default tab per conversation
- Positional unread slots and read resets
- Listing, unread filtering and cascading delete
- Search by participant or message text, activity windows
"""

from datetime import timedelta

import pytest

from conftest import ALICE, BOB, CAROL
from tabchat.errors import InvariantViolation, NotFound, NotParticipant, Unauthenticated
from tabchat.storage import utcnow


class TestCreateConversation:
    """Test find-or-create."""

    def test_create_is_idempotent_in_either_order(self, registry, tabs):
        first = registry.create_conversation(ALICE, BOB)
        second = registry.create_conversation(BOB, ALICE)

        assert first == second
        tab_list = tabs.list_tabs(first)
        assert len(tab_list) == 1
        assert tab_list[0].is_default
        assert tab_list[0].name == "General"
        assert tab_list[0].tab_order == 0

    def test_new_conversation_fields(self, registry):
        conversation = registry.get_conversation(registry.create_conversation(BOB, ALICE))

        assert conversation.participants == [ALICE, BOB]
        assert conversation.created_by == BOB
        assert conversation.unread_slot_0 == 0
        assert conversation.unread_slot_1 == 0
        assert conversation.last_message_id is None
        assert conversation.last_activity is not None

    def test_find_conversation(self, registry):
        assert registry.find_conversation(ALICE, BOB) is None
        conversation_id = registry.create_conversation(ALICE, BOB)
        assert registry.find_conversation(BOB, ALICE) == conversation_id
        assert registry.find_conversation(ALICE, CAROL) is None

    def test_lost_race_returns_winner(self, registry, tabs, monkeypatch):
        winner = registry.create_conversation(ALICE, BOB)

        # Simulate the other participant's lookup running before the winner committed
        real_find = registry.find_conversation
        lookups = {"n": 0}

        def stale_find(user_a, user_b):
            lookups["n"] += 1
            return None if lookups["n"] == 1 else real_find(user_a, user_b)

        monkeypatch.setattr(registry, "find_conversation", stale_find)

        assert registry.create_conversation(BOB, ALICE) == winner
        assert len(tabs.list_tabs(winner)) == 1

    def test_requires_two_distinct_users(self, registry):
        with pytest.raises(InvariantViolation):
            registry.create_conversation(ALICE, ALICE)

    def test_requires_identity(self, registry):
        with pytest.raises(Unauthenticated):
            registry.create_conversation(None, BOB)

    def test_unknown_conversation(self, registry):
        with pytest.raises(NotFound):
            registry.get_conversation("missing")


class TestUnreadSlots:
    """Test positional unread bookkeeping."""

    def test_send_increments_only_other_slot(self, registry, conversation_id):
        registry.record_message_sent(conversation_id, "m1", ALICE)
        registry.record_message_sent(conversation_id, "m2", ALICE)

        conversation = registry.get_conversation(conversation_id)
        assert conversation.unread_slot_0 == 0
        assert conversation.unread_slot_1 == 2
        assert conversation.last_message_id == "m2"

    def test_older_message_does_not_move_pointer(self, registry, conversation_id):
        now = utcnow()
        registry.record_message_sent(conversation_id, "newer", ALICE, sent_at=now + timedelta(seconds=2))
        registry.record_message_sent(conversation_id, "older", BOB, sent_at=now + timedelta(seconds=1))

        conversation = registry.get_conversation(conversation_id)
        assert conversation.last_message_id == "newer"
        assert conversation.last_activity == now + timedelta(seconds=2)
        assert conversation.unread_slot_0 == 1
        assert conversation.unread_slot_1 == 1

    def test_slot_follows_sorted_position(self, registry):
        # "zed" sorts after "amy", so zed sits in slot 1 even as creator
        conversation_id = registry.create_conversation("zed", "amy")
        registry.record_message_sent(conversation_id, "m1", "zed")

        conversation = registry.get_conversation(conversation_id)
        assert conversation.unread_slot_0 == 1
        assert conversation.unread_slot_1 == 0

    def test_mark_read_resets_only_reader_slot(self, registry, conversation_id):
        registry.record_message_sent(conversation_id, "m1", ALICE)
        registry.record_message_sent(conversation_id, "m2", BOB)

        registry.mark_read(conversation_id, BOB)

        conversation = registry.get_conversation(conversation_id)
        assert conversation.unread_slot_1 == 0
        assert conversation.unread_slot_0 == 1
        assert registry.unread_count(conversation_id, ALICE) == 1
        assert registry.unread_count(conversation_id, BOB) == 0

    def test_outsider_can_not_touch_slots(self, registry, conversation_id):
        with pytest.raises(NotParticipant):
            registry.record_message_sent(conversation_id, "m1", CAROL)
        with pytest.raises(NotParticipant):
            registry.mark_read(conversation_id, CAROL)

    def test_mark_read_unknown_conversation(self, registry):
        with pytest.raises(NotFound):
            registry.mark_read("missing", ALICE)


class TestListAndDelete:
    """Test listing and cascading delete."""

    def test_list_by_recent_activity(self, registry):
        with_bob = registry.create_conversation(ALICE, BOB)
        with_carol = registry.create_conversation(ALICE, CAROL)
        registry.create_conversation(BOB, CAROL)

        registry.record_message_sent(with_bob, "m1", BOB)

        listed = [c.id for c in registry.list_conversations(ALICE)]
        assert listed == [with_bob, with_carol]

        unread = [c.id for c in registry.list_conversations(ALICE, unread_only=True)]
        assert unread == [with_bob]

    def test_list_requires_identity(self, registry):
        with pytest.raises(Unauthenticated):
            registry.list_conversations("")

    def test_delete_cascades(self, registry, tabs, sequencer, tasks, store, conversation_id, topic_tab):
        default_tab = tabs.get_default_tab(conversation_id)
        sequencer.send_text(default_tab.id, ALICE, "hello")
        sequencer.send_text(topic_tab.id, BOB, "hi there")
        tasks.drain()

        registry.delete_conversation(conversation_id)

        with pytest.raises(NotFound):
            registry.get_conversation(conversation_id)
        assert tabs.list_tabs(conversation_id) == []
        assert store.query("messages", [("tab_id", "in", [default_tab.id, topic_tab.id])]) == []

    def test_watch_conversations(self, registry):
        with registry.watch_conversations(ALICE) as subscription:
            assert next(subscription) == []
            registry.create_conversation(ALICE, BOB)
            snapshot = next(subscription)
        assert [c["participants"] for c in snapshot] == [[ALICE, BOB]]


class TestSearch:
    """Test search by participant and by message text."""

    @pytest.fixture(autouse=True)
    def people(self, users):
        users.ensure_user(ALICE, "+15550001", "Alice")
        users.ensure_user(BOB, "+15550002", "Bob Gardener")
        users.ensure_user(CAROL, "+15550003", "Carol")

    def test_participant_matches_rank_first(self, registry, tabs, sequencer, tasks):
        with_bob = registry.create_conversation(ALICE, BOB)
        with_carol = registry.create_conversation(ALICE, CAROL)
        sequencer.send_text(tabs.get_default_tab(with_bob).id, BOB, "hello")
        sequencer.send_text(tabs.get_default_tab(with_carol).id, CAROL, "my garden is blooming")
        assert tasks.drain(timeout=10)

        results = registry.search_conversations(ALICE, "Garden")

        assert [r.conversation.id for r in results] == [with_bob, with_carol]
        assert results[0].match_types == ["participant"]
        assert results[0].other_user.id == BOB
        assert results[0].matching_messages == []
        assert results[1].match_types == ["message"]
        assert results[1].other_user.id == CAROL
        assert [m.content for m in results[1].matching_messages] == ["my garden is blooming"]

    def test_both_match_types_merge(self, registry, tabs, sequencer, tasks):
        with_bob = registry.create_conversation(ALICE, BOB)
        sequencer.send_text(tabs.get_default_tab(with_bob).id, BOB, "the garden needs water")
        assert tasks.drain(timeout=10)

        results = registry.search_conversations(ALICE, "garden")
        assert len(results) == 1
        assert results[0].match_types == ["participant", "message"]

    def test_matching_messages_newest_first_and_capped(self, registry, tabs, sequencer, tasks):
        with_carol = registry.create_conversation(ALICE, CAROL)
        default_tab = tabs.get_default_tab(with_carol)
        other_tab = tabs.get_tab(tabs.create_tab(with_carol, ALICE, "Plants"))
        for i in range(8):
            sequencer.send_text(default_tab.id, ALICE, f"tulip {i}")
        for i in range(4):
            sequencer.send_text(other_tab.id, CAROL, f"tulip bulbs {i}")
        deleted = sequencer.send_text(other_tab.id, CAROL, "tulip secret")
        sequencer.soft_delete(deleted, CAROL)
        assert tasks.drain(timeout=10)

        [result] = registry.search_conversations(ALICE, "tulip")
        contents = [m.content for m in result.matching_messages]
        assert len(contents) == 10
        assert contents[:4] == ["tulip bulbs 3", "tulip bulbs 2", "tulip bulbs 1", "tulip bulbs 0"]
        assert contents[-1] == "tulip 2"

    def test_only_own_conversations(self, registry, tabs, sequencer, tasks):
        bob_and_carol = registry.create_conversation(BOB, CAROL)
        sequencer.send_text(tabs.get_default_tab(bob_and_carol).id, BOB, "garden party")
        assert tasks.drain(timeout=10)

        assert registry.search_conversations(ALICE, "garden") == []
        assert registry.search_conversations(ALICE, "   ") == []

    def test_list_by_timeframe(self, registry):
        earlier = registry.create_conversation(ALICE, BOB)
        later = registry.create_conversation(ALICE, CAROL)
        now = utcnow()
        registry.record_message_sent(earlier, "m1", BOB, sent_at=now + timedelta(hours=1))
        registry.record_message_sent(later, "m2", CAROL, sent_at=now + timedelta(hours=2))

        midpoint = now + timedelta(minutes=90)
        assert [c.id for c in registry.list_by_timeframe(ALICE, start=midpoint)] == [later]
        assert [c.id for c in registry.list_by_timeframe(ALICE, start=now, end=midpoint)] == [earlier]
        assert [c.id for c in registry.list_by_timeframe(ALICE, limit=1)] == [later]
