"""
Category normalisation.

Every place that groups, filters or links by category goes through this
module so that category pages, filters and counts agree:

    "IT & Software"      -> "it and software"   -> "it-and-software"
    "IT &amp; Software"  -> "it and software"   -> "it-and-software"
    "it-and-software"    -> "it-and-software"   -> "it-and-software"
    ""  / None           -> "uncategorized"     -> "uncategorized"

normalize_category() is idempotent. category_slug() is the key used for
equality, so a slug taken from a URL selects the same deals as the display
name it was generated from.
"""

import html
import re
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

UNCATEGORIZED = "uncategorized"

_NON_WORD = re.compile(r"[^\w\s-]")
_SPACES = re.compile(r"\s+")
_SEPARATORS = re.compile(r"[\s-]+")
_SLUG_STRIP = re.compile(r"[^a-z0-9-]")


def normalize_category(raw: Optional[str]) -> str:
    if raw is None:
        return UNCATEGORIZED
    value = html.unescape(str(raw))
    value = value.replace("&", " and ")
    value = _NON_WORD.sub("", value)
    value = _SPACES.sub(" ", value).strip().lower()
    return value or UNCATEGORIZED


def category_slug(raw: Optional[str]) -> str:
    return _SEPARATORS.sub("-", normalize_category(raw)).strip("-") or UNCATEGORIZED


def normalize_subcategory(raw: Optional[str]) -> str:
    if not raw:
        return ""
    value = html.unescape(str(raw))
    return _SPACES.sub(" ", value).strip().lower()


def display_name(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = _SPACES.sub(" ", html.unescape(str(raw))).strip()
    return value or None


def slugify(text: Optional[str], default: str = "deal") -> str:
    """Title -> URL slug, e.g. "Python Pro: 2025!" -> "python-pro-2025"."""
    if not text:
        return default
    value = _SPACES.sub("-", str(text).strip().lower())
    value = _SLUG_STRIP.sub("", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or default


def group_categories(deals: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Bucket deals by category slug.

    Returns one entry per category, most populated first:
        {"name": "IT & Software", "slug": "it-and-software", "count": 12,
         "subcategories": [{"name": "Network & Security", "count": 5}, ...]}
    """
    buckets: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for deal in deals:
        raw = getattr(deal, "category", None)
        slug = category_slug(raw)
        bucket = buckets.get(slug)
        if bucket is None:
            bucket = {"name": display_name(raw) or "Uncategorized", "slug": slug, "count": 0, "subs": OrderedDict()}
            buckets[slug] = bucket
        bucket["count"] += 1

        sub = display_name(getattr(deal, "subcategory", None))
        if sub:
            bucket["subs"][sub] = bucket["subs"].get(sub, 0) + 1

    out = []
    for bucket in buckets.values():
        subs = sorted(bucket["subs"].items(), key=lambda kv: kv[1], reverse=True)
        out.append(
            {
                "name": bucket["name"],
                "slug": bucket["slug"],
                "count": bucket["count"],
                "subcategories": [{"name": name, "count": count} for name, count in subs],
            }
        )
    out.sort(key=lambda c: c["count"], reverse=True)
    return out
