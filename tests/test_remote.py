"""
Tests for pulling deals from a live site.
"""

import unittest
from unittest import mock

import requests

from remote import FetchError, dedupe_records, fetch_all_deals, fetch_json, normalize_base_url, validate_records


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class CappedSession(FakeSession):
    """Serves `total` deals the way /api/deals does, clamping pageSize to `cap`."""

    def __init__(self, total, cap, report_pages=True):
        super().__init__([])
        self.total = total
        self.cap = cap
        self.report_pages = report_pages

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        size = min(params["pageSize"], self.cap)
        start = (params["page"] - 1) * size
        items = [{"id": str(i), "title": f"T{i}", "url": "u"} for i in range(start, min(start + size, self.total))]
        body = {"items": items, "total": self.total, "page": params["page"], "pageSize": size}
        if self.report_pages:
            body["totalPages"] = -(-self.total // size)
        return FakeResponse(body)


def page(ids):
    return FakeResponse({"items": [{"id": i, "title": f"T{i}", "url": "u"} for i in ids]})


@mock.patch("remote.time.sleep")
class TestFetchAllDeals(unittest.TestCase):
    def test_walks_until_short_page(self, sleep) -> None:
        session = FakeSession([page(["1", "2"]), page(["3", "4"]), page(["5"])])
        records = fetch_all_deals("example.com/", page_size=2, session=session)
        self.assertEqual([r["id"] for r in records], ["1", "2", "3", "4", "5"])
        self.assertEqual(session.calls[0], ("https://example.com/api/deals", {"page": 1, "pageSize": 2}))
        self.assertEqual(len(session.calls), 3)

    def test_max_pages(self, sleep) -> None:
        session = FakeSession([page(["1", "2"]), page(["3", "4"])])
        self.assertEqual(len(fetch_all_deals("https://x", max_pages=1, page_size=2, session=session)), 2)
        self.assertEqual(len(session.calls), 1)

    def test_retries_then_gives_up_keeping_earlier_pages(self, sleep) -> None:
        failure = requests.ConnectionError("boom")
        session = FakeSession([page(["1", "2"]), failure, FakeResponse({}, status=503), failure])
        records = fetch_all_deals("https://x", page_size=2, session=session)
        self.assertEqual([r["id"] for r in records], ["1", "2"])
        self.assertEqual(len(session.calls), 4)

    def test_site_clamped_page_size(self, sleep) -> None:
        session = CappedSession(250, cap=100)
        records = fetch_all_deals("https://x", page_size=200, session=session)
        self.assertEqual(len(records), 250)
        self.assertEqual(len({r["id"] for r in records}), 250)
        self.assertEqual(len(session.calls), 3)

    def test_clamped_page_size_without_total_pages(self, sleep) -> None:
        session = CappedSession(250, cap=100, report_pages=False)
        self.assertEqual(len(fetch_all_deals("https://x", page_size=200, session=session)), 250)

    def test_stops_at_reported_last_page(self, sleep) -> None:
        session = CappedSession(200, cap=100)
        self.assertEqual(len(fetch_all_deals("https://x", page_size=100, session=session)), 200)
        self.assertEqual(len(session.calls), 2)

    def test_stops_on_payload_without_items(self, sleep) -> None:
        session = FakeSession([FakeResponse({"error": "nope"})])
        self.assertEqual(fetch_all_deals("https://x", session=session), [])


@mock.patch("remote.time.sleep")
class TestFetchJson(unittest.TestCase):
    def test_recovers_after_a_failure(self, sleep) -> None:
        session = FakeSession([FakeResponse(ValueError("bad json")), FakeResponse({"ok": 1})])
        self.assertEqual(fetch_json(session, "https://x"), {"ok": 1})
        sleep.assert_called_once_with(1.0)

    def test_raises_fetch_error(self, sleep) -> None:
        session = FakeSession([requests.Timeout("slow")] * 2)
        with self.assertRaises(FetchError):
            fetch_json(session, "https://x", attempts=2)


class TestHelpers(unittest.TestCase):
    def test_normalize_base_url(self) -> None:
        self.assertEqual(normalize_base_url("coursespeak.com/"), "https://coursespeak.com")
        self.assertEqual(normalize_base_url("http://localhost:8000"), "http://localhost:8000")

    def test_dedupe(self) -> None:
        records, dropped = dedupe_records([{"id": "1", "n": 1}, {"id": "2"}, {"id": "1", "n": 2}, {"title": "no key"}])
        self.assertEqual(dropped, 1)
        self.assertEqual(records[0]["n"], 1)
        self.assertEqual(len(records), 3)

    def test_validate(self) -> None:
        problems = validate_records([{"id": "1", "title": "T", "url": "u"}, {"slug": "s", "title": "", "url": "u"}])
        self.assertEqual(len(problems), 1)
        self.assertTrue(problems[0].startswith("index 1"))


if __name__ == "__main__":
    unittest.main()
