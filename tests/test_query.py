"""
Unit tests for the listing pipeline (filter -> sort -> paginate).

Pipeline contract:
- free-only keeps price == 0 (missing price counts as 0)
- provider matches case-insensitively
- category matches through the shared category key, with the loose
  subcategory rule when q is also given
- sorts are stable; missing numbers count as 0, missing dates as epoch
- pages concatenate back to the full filtered sequence
"""

import unittest

from query import DealQuery, filter_deals, home_feed, paginate, recency, run_query, sort_deals
from schemas import Deal


def make(id_: str, **fields) -> Deal:
    return Deal(id=id_, **fields)


def example_collection():
    return [
        make("1", title="JS Basics", provider="Udemy", price=0, category="Web Development", updated_at="2025-01-03"),
        make("2", title="Python Pro", provider="Udemy", price=0, category="Data Science", updated_at="2025-01-02"),
        make("3", title="Design 101", provider="Coursera", price=49, category="Design", updated_at="2025-01-01"),
    ]


class TestExampleScenario(unittest.TestCase):
    def test_udemy_free_newest(self) -> None:
        query = DealQuery.from_params(provider="udemy", free_only="true", sort="newest", page="1", page_size="10")
        result = run_query(example_collection(), query)
        self.assertEqual([d.id for d in result.items], ["1", "2"])
        self.assertEqual(result.total, 2)
        self.assertEqual(result.total_pages, 1)


class TestFromParams(unittest.TestCase):
    def test_defaults(self) -> None:
        q = DealQuery.from_params()
        self.assertEqual((q.sort, q.page, q.page_size, q.free_only), ("newest", 1, 12, False))

    def test_coercion(self) -> None:
        q = DealQuery.from_params(q="  ", free_only="1", sort="bogus", page="-4", page_size="5000")
        self.assertIsNone(q.q)
        self.assertTrue(q.free_only)
        self.assertEqual(q.sort, "newest")
        self.assertEqual(q.page, 1)
        self.assertEqual(q.page_size, 100)

    def test_garbage_numbers(self) -> None:
        q = DealQuery.from_params(page="abc", page_size="0")
        self.assertEqual(q.page, 1)
        self.assertEqual(q.page_size, 1)
        self.assertFalse(DealQuery.from_params(free_only="yes").free_only)


class TestFilter(unittest.TestCase):
    def test_free_only_treats_missing_price_as_free(self) -> None:
        deals = example_collection() + [make("4", title="No price")]
        result = filter_deals(deals, DealQuery(free_only=True))
        self.assertEqual([d.id for d in result], ["1", "2", "4"])
        self.assertTrue(all((d.price or 0) == 0 for d in result))

    def test_provider_case_insensitive(self) -> None:
        result = filter_deals(example_collection(), DealQuery(provider="COURSERA"))
        self.assertEqual([d.id for d in result], ["3"])

    def test_term_searches_several_fields(self) -> None:
        deals = example_collection() + [make("5", title="Other", subcategory="Machine Learning")]
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(q="python"))], ["2"])
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(q="coursera"))], ["3"])
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(q="science"))], ["2"])
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(q="machine"))], ["5"])

    def test_category_by_slug_or_name(self) -> None:
        deals = [
            make("a", category="IT & Software"),
            make("b", category="IT &amp; Software"),
            make("c", category="Design"),
            make("d"),
        ]
        for value in ("it-and-software", "IT & Software", "it and software"):
            result = filter_deals(deals, DealQuery(category=value))
            self.assertEqual([d.id for d in result], ["a", "b"], value)
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(category="uncategorized"))], ["d"])

    def test_subcategory_loose_match(self) -> None:
        deals = [
            make("a", title="Network & Security basics", category="IT & Software", subcategory="Network & Security"),
            # subcategory matches although the category differs
            make("b", title="Security for devs", category="Development", subcategory="Network & Security"),
            # category matches but neither title nor subcategory mention the term
            make("c", title="Excel tricks", category="IT & Software", subcategory="Office"),
            make("d", title="Network & Security", category="Marketing"),
        ]
        result = filter_deals(deals, DealQuery(category="it-and-software", q="Network & Security"))
        self.assertEqual([d.id for d in result], ["a", "b"])

    def test_escaped_names_match_their_decoded_chip(self) -> None:
        deals = [
            make("a", title="Firewalls 101", category="IT &amp; Software", subcategory="Network &amp; Security"),
            make("b", title="Excel tricks", category="IT &amp; Software", subcategory="Office"),
        ]
        result = filter_deals(deals, DealQuery(category="it-and-software", q="Network & Security"))
        self.assertEqual([d.id for d in result], ["a"])
        self.assertEqual([d.id for d in filter_deals(deals, DealQuery(q="it & software"))], ["a", "b"])

    def test_empty_subcategory_is_not_a_loose_match(self) -> None:
        deals = [make("a", title="Security primer", category="Marketing")]
        self.assertEqual(filter_deals(deals, DealQuery(category="it-and-software", q="security")), [])

    def test_query_term_containing_subcategory(self) -> None:
        deals = [make("a", title="Hardware deep dive", category="Teaching", subcategory="Hardware")]
        result = filter_deals(deals, DealQuery(category="it-and-software", q="hardware deep"))
        self.assertEqual([d.id for d in result], ["a"])


class TestSort(unittest.TestCase):
    def test_price_ascending_missing_is_zero(self) -> None:
        deals = [make("a", price=20), make("b"), make("c", price=5), make("d", price=0)]
        prices = [d.price or 0 for d in sort_deals(deals, "price")]
        self.assertEqual(prices, sorted(prices))
        self.assertEqual([d.id for d in sort_deals(deals, "price")], ["b", "d", "c", "a"])

    def test_rating_and_students_descending(self) -> None:
        deals = [make("a", rating=4.1, students=10), make("b"), make("c", rating=4.9, students=500)]
        self.assertEqual([d.id for d in sort_deals(deals, "rating")], ["c", "a", "b"])
        self.assertEqual([d.id for d in sort_deals(deals, "students")], ["c", "a", "b"])

    def test_newest_falls_back_through_dates(self) -> None:
        deals = [
            make("created", created_at="2025-02-01T00:00:00Z"),
            make("none"),
            make("updated", updated_at="2025-03-01T00:00:00.000Z", created_at="2020-01-01"),
            make("expires", expires_at="2025-01-15"),
        ]
        self.assertEqual([d.id for d in sort_deals(deals, "newest")], ["updated", "created", "expires", "none"])
        self.assertEqual(recency(make("x")), 0.0)

    def test_updated_ignores_created(self) -> None:
        deals = [make("a", created_at="2025-05-01"), make("b", updated_at="2025-01-01")]
        self.assertEqual([d.id for d in sort_deals(deals, "updated")], ["b", "a"])

    def test_ties_keep_input_order(self) -> None:
        deals = [make(str(i), price=1) for i in range(6)]
        self.assertEqual([d.id for d in sort_deals(deals, "price")], [str(i) for i in range(6)])
        self.assertEqual([d.id for d in sort_deals(deals, "newest")], [str(i) for i in range(6)])


class TestPaginate(unittest.TestCase):
    def test_pages_reassemble_filtered_sequence(self) -> None:
        deals = [make(str(i), price=i % 3, updated_at=f"2025-01-{i + 1:02d}") for i in range(23)]
        query = DealQuery(sort="price", page_size=5)
        full = sort_deals(filter_deals(deals, query), "price")

        collected = []
        first = run_query(deals, query)
        for page in range(1, first.total_pages + 1):
            result = run_query(deals, DealQuery(sort="price", page=page, page_size=5))
            self.assertLessEqual(len(result.items), 5)
            self.assertEqual(result.total, 23)
            collected.extend(result.items)

        self.assertEqual([d.id for d in collected], [d.id for d in full])
        self.assertEqual(len({d.id for d in collected}), 23)
        self.assertEqual(first.total_pages, 5)

    def test_past_the_end_is_empty(self) -> None:
        result = paginate(example_collection(), page=9, page_size=10)
        self.assertEqual(result.items, [])
        self.assertEqual(result.total, 3)

    def test_empty_collection(self) -> None:
        result = run_query([], DealQuery())
        self.assertEqual((result.total, result.total_pages, result.items), (0, 0, []))

    def test_response_shape(self) -> None:
        body = run_query(example_collection(), DealQuery(page_size=2)).to_response()
        self.assertEqual(set(body), {"items", "total", "page", "pageSize", "totalPages"})
        self.assertEqual(body["items"][0]["updatedAt"], "2025-01-03")


class TestHomeFeed(unittest.TestCase):
    def test_empty_filter_falls_back_to_newest(self) -> None:
        result = home_feed(example_collection(), DealQuery(provider="nobody", page_size=2))
        self.assertEqual([d.id for d in result.items], ["1", "2"])
        self.assertEqual(result.total, 3)

    def test_matching_filter_is_used(self) -> None:
        result = home_feed(example_collection(), DealQuery(provider="coursera"))
        self.assertEqual([d.id for d in result.items], ["3"])

    def test_empty_store_stays_empty(self) -> None:
        self.assertEqual(home_feed([], DealQuery()).items, [])


if __name__ == "__main__":
    unittest.main()
