"""
Cosmetic fallbacks for deals that carry no rating or enrolment count.

Values are derived from the deal's slug (or id) so a page renders the same
numbers on every request. They are never persisted and never used for
sorting.
"""

from typing import Any, Dict

FNV_OFFSET = 2166136261
FNV_PRIME = 16777619


def seeded_random(key: str) -> float:
    """32-bit FNV-1a over the UTF-16 code units of key, scaled to [0, 1]."""
    h = FNV_OFFSET
    data = key.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h / 0xFFFFFFFF


def derived_rating(key: str) -> float:
    r = seeded_random(key + ":rating")
    return round(4.5 + 0.3 * r, 1)


def derived_students(key: str) -> int:
    r = seeded_random(key + ":students")
    low, high = 1000, 80000
    value = int(low + (high - low) * r ** 0.6)
    return int(round(value / 10.0)) * 10


def display_values(deal: Any) -> Dict[str, Any]:
    key = str(deal.slug or deal.id)
    rating = deal.rating if deal.rating is not None else derived_rating(key)
    students = deal.students if deal.students is not None else derived_students(key)
    return {"rating": rating, "students": students}
