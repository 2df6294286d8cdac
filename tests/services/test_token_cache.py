"""
Unit tests for `services/token_cache.py`.
"""

import unittest

from helpers import FakeClock, make_details
from services.token_cache import TokenCache


class TestTokenCache(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = TokenCache(ttl_s=60, clock=self.clock)

    def test_hit_within_ttl(self):
        details = make_details()
        self.cache.set("bitcoin", details)
        self.clock.advance(59)

        self.assertIs(self.cache.get("bitcoin"), details)

    def test_entry_expires_after_ttl(self):
        self.cache.set("bitcoin", make_details())
        self.clock.advance(61)

        self.assertIsNone(self.cache.get("bitcoin"))
        self.assertEqual(len(self.cache), 0)

    def test_miss_and_clear(self):
        self.assertIsNone(self.cache.get("ethereum"))
        self.cache.set("ethereum", make_details("ethereum"))
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)


if __name__ == "__main__":
    unittest.main()
