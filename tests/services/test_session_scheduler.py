"""
Unit tests for `services/session_scheduler.py` – the periodic expiry sweep.
"""

import logging
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from helpers import FakeClock
from services.conversation_store import ConversationStore
from services.session_scheduler import (
    run_sweep_job,
    shutdown_session_sweeper,
    start_session_sweeper,
)
from shared.models import MessageRole

logger = logging.getLogger(__name__)


class TestRunSweepJob(unittest.TestCase):

    def test_removes_expired_sessions(self):
        clock = FakeClock()
        store = ConversationStore(expiry_s=10, clock=clock)
        store.add_message("old", MessageRole.USER, "hi")
        clock.advance(60)

        self.assertEqual(run_sweep_job(store, logger), 1)
        self.assertEqual(len(store), 0)

    def test_failure_is_logged_not_raised(self):
        store = MagicMock()
        store.clean_expired_sessions.side_effect = RuntimeError("boom")

        self.assertEqual(run_sweep_job(store, logger), 0)


class TestSweeperLifecycle(unittest.IsolatedAsyncioTestCase):

    async def test_start_registers_interval_job_and_shutdown_stops_it(self):
        app = SimpleNamespace(state=SimpleNamespace())

        start_session_sweeper(app, ConversationStore(), interval_s=60)
        scheduler = app.state.session_scheduler
        try:
            self.assertTrue(scheduler.running)
            self.assertIsNotNone(scheduler.get_job("session_expiry_sweep"))
        finally:
            shutdown_session_sweeper(app)

        self.assertFalse(scheduler.running)

    def test_shutdown_without_start_is_a_no_op(self):
        shutdown_session_sweeper(SimpleNamespace(state=SimpleNamespace()))


if __name__ == "__main__":
    unittest.main()
