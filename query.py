"""
Listing pipeline: filter, sort and paginate an in-memory deal collection.

Everything here is pure. The public listing, the homepage feed and the
admin listing all call run_query() so the admin console sees exactly what
the site shows.
"""

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from categories import category_slug, normalize_subcategory
from schemas import Deal, DealPage, parse_timestamp

SORT_KEYS = ("newest", "updated", "rating", "students", "price")
DEFAULT_SORT = "newest"
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _to_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true")


@dataclass(frozen=True)
class DealQuery:
    q: Optional[str] = None
    category: Optional[str] = None
    provider: Optional[str] = None
    free_only: bool = False
    sort: str = DEFAULT_SORT
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_params(
        cls,
        q: Optional[str] = None,
        category: Optional[str] = None,
        provider: Optional[str] = None,
        free_only: Any = None,
        sort: Optional[str] = None,
        page: Any = None,
        page_size: Any = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "DealQuery":
        """Coerce raw query-string values; never raises."""
        sort_key = (sort or "").strip().lower()
        if sort_key not in SORT_KEYS:
            sort_key = DEFAULT_SORT
        size = _to_int(page_size, default_page_size)
        return cls(
            q=_clean(q),
            category=_clean(category),
            provider=_clean(provider),
            free_only=parse_flag(free_only),
            sort=sort_key,
            page=max(1, _to_int(page, 1)),
            page_size=min(MAX_PAGE_SIZE, max(1, size)),
        )


# -------------------------------
# Filtering
# -------------------------------

def _matches_term(deal: Deal, term: str) -> bool:
    # stored values may still carry HTML entities ("Network &amp; Security")
    for value in (deal.title, deal.provider, deal.category, deal.subcategory):
        if value and term in normalize_subcategory(value):
            return True
    return False


def _matches_subcategory(deal: Deal, term: str) -> bool:
    sub = normalize_subcategory(deal.subcategory)
    # an empty subcategory would be "contained" in every term
    if not sub:
        return False
    return term in sub or sub in term


def filter_deals(deals: Sequence[Deal], query: DealQuery) -> List[Deal]:
    term = normalize_subcategory(query.q) or None
    wanted_category = category_slug(query.category) if query.category else None
    provider = query.provider.lower() if query.provider else None

    out = []
    for deal in deals:
        if term and not _matches_term(deal, term):
            continue
        if wanted_category:
            ok_category = category_slug(deal.category) == wanted_category
            # subcategory chips link as ?category=<slug>&q=<subcategory>; a
            # subcategory hit is enough on its own
            if not ok_category and term:
                ok_category = _matches_subcategory(deal, term)
            if not ok_category:
                continue
        if provider and (deal.provider or "").strip().lower() != provider:
            continue
        if query.free_only and (deal.price or 0) != 0:
            continue
        out.append(deal)
    return out


# -------------------------------
# Sorting
# -------------------------------

def recency(deal: Deal) -> float:
    """updatedAt, then createdAt, then expiresAt; epoch when none parse."""
    for value in (deal.updated_at, deal.created_at, deal.expires_at):
        ts = parse_timestamp(value)
        if ts is not None:
            return ts
    return 0.0


def sort_deals(deals: Sequence[Deal], sort: str = DEFAULT_SORT) -> List[Deal]:
    # sorted() is stable, so ties keep their stored order
    if sort == "updated":
        return sorted(deals, key=lambda d: parse_timestamp(d.updated_at) or 0.0, reverse=True)
    if sort == "rating":
        return sorted(deals, key=lambda d: d.rating or 0, reverse=True)
    if sort == "students":
        return sorted(deals, key=lambda d: d.students or 0, reverse=True)
    if sort == "price":
        return sorted(deals, key=lambda d: d.price or 0)
    return sorted(deals, key=recency, reverse=True)


# -------------------------------
# Pagination
# -------------------------------

def paginate(deals: Sequence[Deal], page: int, page_size: int) -> DealPage:
    total = len(deals)
    start = (page - 1) * page_size
    return DealPage(
        items=list(deals[start:start + page_size]),
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size),
    )


def run_query(deals: Sequence[Deal], query: DealQuery) -> DealPage:
    matched = sort_deals(filter_deals(deals, query), query.sort)
    return paginate(matched, query.page, query.page_size)


def home_feed(deals: Sequence[Deal], query: DealQuery) -> DealPage:
    """Like run_query, but an empty result falls back to the newest unfiltered page."""
    result = run_query(deals, query)
    if result.items or not deals:
        return result
    return paginate(sort_deals(deals, DEFAULT_SORT), 1, query.page_size)
