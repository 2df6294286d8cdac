"""
Unit tests for `services/conversation_store.py` – bounded history, topic statistics, inferred
preferences, the continuity score and session expiry.

A fake clock drives every timestamp so decay and expiry windows can be crossed exactly.
"""

import math
import unittest

from core.errors import PreprocessingError
from helpers import FakeClock
from services.conversation_store import ConversationStore
from shared.models import Intent, MessageMetadata, MessageRole, TechnicalLevel

SESSION = "session-1"


def meta(intent=Intent.MARKET_DATA, confidence=0.8, tokens=(), hints=(), time_context=None):
    return MessageMetadata(
        intent=intent,
        confidence=confidence,
        tokens=tuple(tokens),
        contextual_hints=tuple(hints),
        time_context=time_context,
    )


class StoreTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = ConversationStore(clock=self.clock)

    def turn(self, session_id=SESSION, **kwargs):
        metadata = meta(**kwargs)
        self.store.add_message(session_id, MessageRole.USER, "q", metadata)
        self.store.add_message(
            session_id, MessageRole.ASSISTANT, "a",
            MessageMetadata(intent=metadata.intent, confidence=metadata.confidence, tokens=metadata.tokens),
        )


class TestHistory(StoreTestCase):

    def test_history_is_truncated_oldest_first(self):
        store = ConversationStore(max_messages=3, clock=self.clock)
        for i in range(5):
            store.add_message(SESSION, MessageRole.USER, f"m{i}")

        self.assertEqual([m.content for m in store.get_messages(SESSION)], ["m2", "m3", "m4"])
        self.assertEqual(store.get_metadata(SESSION).message_count, 3)

    def test_invalid_cap_is_rejected(self):
        with self.assertRaises(ValueError):
            ConversationStore(max_messages=0)

    def test_unknown_session_reads_are_empty(self):
        self.assertEqual(self.store.get_messages("nope"), [])
        self.assertIsNone(self.store.get_metadata("nope"))
        summary = self.store.get_conversation_summary("nope")
        self.assertEqual(summary.message_count, 0)
        self.assertEqual(summary.continuity_score, 1.0)

    def test_metadata_is_returned_as_a_copy(self):
        self.turn(tokens=("bitcoin",))
        snapshot = self.store.get_metadata(SESSION)
        snapshot.topics.clear()
        self.assertIn("MARKET_DATA", self.store.get_metadata(SESSION).topics)

    def test_create_and_delete_session(self):
        session_id = self.store.create_session()
        self.assertTrue(self.store.has_session(session_id))
        self.assertTrue(self.store.delete_session(session_id))
        self.assertFalse(self.store.delete_session(session_id))

    def test_recent_context_keeps_old_messages_on_tracked_topics(self):
        self.turn(tokens=("bitcoin",))
        self.clock.advance(3 * 60 * 60)
        self.store.add_message(SESSION, MessageRole.USER, "fresh")

        recent = self.store.get_recent_context(SESSION, max_messages=5)

        self.assertEqual([m.content for m in recent], ["q", "a", "fresh"])

    def test_recent_context_drops_old_untracked_messages(self):
        self.store.add_message(SESSION, MessageRole.USER, "hello")
        self.clock.advance(3 * 60 * 60)
        self.store.add_message(SESSION, MessageRole.USER, "again")

        self.assertEqual([m.content for m in self.store.get_recent_context(SESSION)], ["again"])


class TestTopics(StoreTestCase):

    def test_repeat_mentions_update_frequency_and_blend_confidence(self):
        self.store.add_message(SESSION, MessageRole.USER, "q1", meta(confidence=0.5, tokens=("bitcoin",)))
        self.store.add_message(SESSION, MessageRole.USER, "q2", meta(confidence=1.0, tokens=("ethereum",)))

        topic = self.store.get_topics(SESSION)[0]

        self.assertEqual(topic.frequency, 2)
        self.assertAlmostEqual(topic.confidence, 0.4 * 0.5 + 0.6 * 1.0)
        self.assertEqual(topic.related_tokens, {"bitcoin", "ethereum"})

    def test_last_mentioned_never_moves_backward(self):
        self.store.add_message(SESSION, MessageRole.USER, "late", meta(), timestamp=2000.0)
        self.store.add_message(SESSION, MessageRole.USER, "early", meta(), timestamp=1000.0)

        self.assertEqual(self.store.get_topics(SESSION, now=2000.0)[0].last_mentioned, 2000.0)

    def test_assistant_messages_do_not_count_as_topic_mentions(self):
        self.turn()
        self.assertEqual(self.store.get_topics(SESSION)[0].frequency, 1)

    def test_stale_topics_sink_below_fresh_ones(self):
        for _ in range(3):
            self.store.add_message(SESSION, MessageRole.USER, "q", meta(intent=Intent.DEFI, confidence=1.0))
        self.clock.advance(4 * 60 * 60)
        self.store.add_message(SESSION, MessageRole.USER, "q", meta(intent=Intent.SECURITY, confidence=1.0))

        names = [t.name for t in self.store.get_topics(SESSION)]

        self.assertEqual(names, ["SECURITY", "DEFI"])

    def test_importance_decays_exponentially(self):
        self.store.add_message(SESSION, MessageRole.USER, "q", meta(confidence=1.0))
        topic = self.store.get_topics(SESSION)[0]

        later = self.clock.now + 1800
        self.assertAlmostEqual(self.store.topic_importance(topic, later), math.exp(-1))

    def test_topic_copies_do_not_leak_mutation(self):
        self.store.add_message(SESSION, MessageRole.USER, "q", meta(tokens=("bitcoin",)))
        self.store.get_topics(SESSION)[0].related_tokens.add("mutated")
        self.assertEqual(self.store.get_topics(SESSION)[0].related_tokens, {"bitcoin"})


class TestPreferences(StoreTestCase):

    def test_favorite_tokens_are_ranked_by_count(self):
        self.turn(tokens=("ethereum",))
        self.turn(tokens=("bitcoin", "ethereum"))

        self.assertEqual(self.store.get_favorite_tokens(SESSION), ["ethereum", "bitcoin"])

    def test_interests_and_timeframes_accumulate(self):
        self.turn(hints=("PRICE_QUERY",), time_context="24h")
        self.turn(hints=("NEWS",), time_context="7d")

        prefs = self.store.get_user_preferences(SESSION)

        self.assertEqual(prefs.interests, ["NEWS", "PRICE_QUERY"])
        self.assertEqual(prefs.preferred_timeframes, ["24h", "7d"])

    def test_technical_level_only_rises(self):
        self.turn(intent=Intent.DEFI)
        self.assertEqual(self.store.get_user_preferences(SESSION).technical_level, TechnicalLevel.INTERMEDIATE)

        self.turn(intent=Intent.TECHNICAL)
        self.turn(intent=Intent.MARKET_DATA)

        self.assertEqual(self.store.get_user_preferences(SESSION).technical_level, TechnicalLevel.ADVANCED)

    def test_hints_raise_technical_level(self):
        self.turn(hints=("TREND_ANALYSIS",))
        self.assertEqual(self.store.get_conversation_summary(SESSION).user_level, "intermediate")


class TestContinuity(StoreTestCase):

    def test_first_turn_counts_as_following_the_flow(self):
        self.turn(confidence=0.8)
        expected = 0.5 * 1.0 + 0.5 * (0.6 * 1.0 + 0.4 * 0.8)
        self.assertAlmostEqual(self.store.get_continuity_score(SESSION), expected)

    def test_topic_switch_lowers_the_score(self):
        self.turn(intent=Intent.MARKET_DATA, confidence=0.9)
        before = self.store.get_continuity_score(SESSION)
        self.clock.advance(2 * 60 * 60)
        self.turn(intent=Intent.REGULATORY, confidence=0.9)

        self.assertLess(self.store.get_continuity_score(SESSION), before)

    def test_returning_to_a_hot_topic_counts_as_followed(self):
        self.turn(intent=Intent.MARKET_DATA, confidence=1.0)
        self.turn(intent=Intent.DEFI, confidence=1.0)
        score = self.store.get_continuity_score(SESSION)

        self.turn(intent=Intent.MARKET_DATA, confidence=1.0)

        self.assertAlmostEqual(self.store.get_continuity_score(SESSION), 0.5 * score + 0.5 * 1.0)

    def test_score_stays_within_bounds(self):
        intents = [Intent.MARKET_DATA, Intent.SECURITY, Intent.DEFI, Intent.TECHNICAL]
        for i in range(20):
            self.clock.advance(3 * 60 * 60)
            self.turn(intent=intents[i % len(intents)], confidence=(i % 5) / 4)
            score = self.store.get_continuity_score(SESSION)
            self.assertGreaterEqual(score, 0.0)
            self.assertLessEqual(score, 1.0)


class TestExpiry(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = ConversationStore(expiry_s=100, clock=self.clock)

    async def test_idle_sessions_are_removed(self):
        self.store.add_message("old", MessageRole.USER, "hi")
        self.clock.advance(150)
        self.store.add_message("new", MessageRole.USER, "hi")

        removed = self.store.clean_expired_sessions()

        self.assertEqual(removed, 1)
        self.assertFalse(self.store.has_session("old"))
        self.assertTrue(self.store.has_session("new"))

    async def test_in_flight_sessions_survive_the_sweep(self):
        self.store.add_message("busy", MessageRole.USER, "hi")
        self.clock.advance(150)

        async with self.store.session_guard("busy"):
            self.assertTrue(self.store.is_in_flight("busy"))
            self.assertEqual(self.store.clean_expired_sessions(), 0)

        self.assertFalse(self.store.is_in_flight("busy"))
        self.assertEqual(self.store.clean_expired_sessions(), 1)

    async def test_failed_turns_for_unknown_sessions_leave_no_locks(self):
        for i in range(100):
            with self.assertRaises(PreprocessingError):
                async with self.store.session_guard(f"unknown-{i}"):
                    raise PreprocessingError("Query cannot be empty")

        self.store.clean_expired_sessions()

        self.assertEqual(len(self.store._locks), 0)
        self.assertEqual(len(self.store), 0)

    async def test_stored_sessions_keep_their_lock_between_turns(self):
        async with self.store.session_guard("kept"):
            self.store.add_message("kept", MessageRole.USER, "hi")

        self.assertIn("kept", self.store._locks)
        self.store.delete_session("kept")
        self.assertNotIn("kept", self.store._locks)


if __name__ == "__main__":
    unittest.main()
