"""
Unit tests for delivery/audience.py
"""

import unittest
from unittest.mock import patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from delivery.audience import build_audience_query, resolve_audience


class TestBuildAudienceQuery(unittest.TestCase):

    def test_all_excludes_opted_out(self):
        query = build_audience_query("all")
        self.assertEqual(query["unsubscribed"], {"$ne": True})
        self.assertEqual(query["suppressed"], {"$ne": True})
        self.assertEqual(query["bounced"], {"$ne": True})
        self.assertNotIn("is_customer", query)

    def test_leads_and_customers(self):
        self.assertEqual(build_audience_query("leads")["is_customer"], {"$ne": True})
        self.assertTrue(build_audience_query("customers")["is_customer"])

    def test_segment_filters(self):
        query = build_audience_query(
            "segment", {"utm_campaign": "spring", "source": "webinar", "ignored": "x"}
        )
        self.assertEqual(query["utm_campaign"], "spring")
        self.assertEqual(query["source"], "webinar")
        self.assertNotIn("ignored", query)

    def test_filters_only_narrow_segments(self):
        audience_filter = {"source": "facebook", "utm_campaign": "spring"}
        for audience_type in ("all", "leads", "customers"):
            with self.subTest(audience_type=audience_type):
                query = build_audience_query(audience_type, audience_filter)
                self.assertNotIn("source", query)
                self.assertNotIn("utm_campaign", query)

    def test_missing_type_means_all(self):
        self.assertEqual(build_audience_query(None), build_audience_query("all"))

    def test_unknown_type_raises(self):
        with self.assertRaises(ValueError):
            build_audience_query("vips")


class TestResolveAudience(unittest.TestCase):

    @patch("delivery.audience.contacts_collection")
    def test_dedupes_and_normalizes(self, mock_coll):
        mock_coll.find.return_value = [
            {"email": "Jane@Example.com"},
            {"email": "jane@example.com "},
            {"email": ""},
            {},
            {"email": "bob@example.com"},
        ]

        emails = resolve_audience({"_id": "p1", "audience_type": "customers"})

        self.assertEqual(emails, ["jane@example.com", "bob@example.com"])
        query, projection = mock_coll.find.call_args[0]
        self.assertTrue(query["is_customer"])
        self.assertEqual(projection, {"email": 1, "_id": 0})

    @patch("delivery.audience.contacts_collection")
    def test_empty(self, mock_coll):
        mock_coll.find.return_value = []
        self.assertEqual(resolve_audience({"_id": "p1"}), [])


if __name__ == "__main__":
    unittest.main()
