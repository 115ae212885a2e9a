"""
Pull the deal collection from a running Coursespeak site.

The public /api/deals endpoint is paged; fetch_all_deals() walks it until a
short page comes back, retrying each page a few times with a linear backoff.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 1.0
PAGE_DELAY = 0.2
DEFAULT_MAX_PAGES = 50
DEFAULT_PAGE_SIZE = 50


class FetchError(RuntimeError):
    pass


def normalize_base_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def fetch_json(
    session: requests.Session,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    attempts: int = MAX_ATTEMPTS,
) -> Any:
    for attempt in range(1, attempts + 1):
        try:
            resp = session.get(url, params=params, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Attempt %d/%d for %s failed: %s", attempt, attempts, url, e)
            if attempt == attempts:
                raise FetchError(f"Giving up on {url} after {attempts} attempts") from e
            time.sleep(BACKOFF_SECONDS * attempt)


def fetch_all_deals(
    base_url: str,
    max_pages: int = DEFAULT_MAX_PAGES,
    page_size: int = DEFAULT_PAGE_SIZE,
    session: Optional[requests.Session] = None,
) -> List[Dict[str, Any]]:
    """
    Collect every deal record the site lists.

    Stops after the last page the site reports (totalPages), at the first
    page shorter than the page size the site actually served, after
    max_pages, or when a page cannot be fetched or parsed; whatever was
    collected so far is returned.
    """
    session = session or requests.Session()
    api_url = f"{normalize_base_url(base_url)}/api/deals"
    collected: List[Dict[str, Any]] = []

    for page in range(1, max_pages + 1):
        try:
            data = fetch_json(session, api_url, params={"page": page, "pageSize": page_size})
        except FetchError as e:
            logger.error("Stopping at page %d: %s", page, e)
            break

        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            logger.error("Page %d has no items list; stopping", page)
            break

        collected.extend(r for r in items if isinstance(r, dict))
        logger.info("Page %d: %d deals (%d total)", page, len(items), len(collected))
        total_pages = data.get("totalPages")
        if isinstance(total_pages, int) and page >= total_pages:
            break
        # the site clamps pageSize, so compare against what it echoed back
        served = data.get("pageSize")
        if not isinstance(served, int) or served < 1:
            served = page_size
        if not items or len(items) < served:
            break
        time.sleep(PAGE_DELAY)

    return collected


def dedupe_records(records: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Drop repeated ids (first occurrence wins). Returns (records, dropped)."""
    seen = set()
    out = []
    for record in records:
        key = str(record.get("id") or record.get("slug") or "")
        if key and key in seen:
            continue
        if key:
            seen.add(key)
        out.append(record)
    return out, len(records) - len(out)


def validate_records(records: List[Dict[str, Any]]) -> List[str]:
    """Problems that make a snapshot unsafe to activate: missing id, title or url."""
    problems = []
    for index, record in enumerate(records):
        has_id = bool(record.get("id") or record.get("slug"))
        has_title = isinstance(record.get("title"), str) and bool(record["title"])
        has_url = isinstance(record.get("url"), str) and bool(record["url"])
        if not (has_id and has_title and has_url):
            problems.append(
                f"index {index}: id={record.get('id')!r} title={record.get('title')!r} url={record.get('url')!r}"
            )
    return problems
