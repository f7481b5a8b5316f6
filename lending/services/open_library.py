import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from lending.errors import ExternalServiceError

logger = logging.getLogger(__name__)

BASE_URL = "https://openlibrary.org"


class OpenLibraryClient:
    """Fetches catalog metadata for book intake by ISBN."""

    def __init__(self, timeout: Optional[float] = None, retries: int = 3, backoff: float = 0.5) -> None:
        self.timeout = timeout or settings.openlibrary_timeout
        self.retries = retries
        self.backoff = backoff

    def lookup(self, isbn: str) -> Optional[Dict[str, Any]]:
        """Return ``title``, ``author``, ``publisher``, ``publication_year`` and
        ``description`` for ``isbn``, or None when Open Library does not know it."""
        book_json = self._fetch_book_json(isbn)
        if not book_json or not book_json.get("title"):
            return None

        author_names: List[str] = []
        for item in book_json.get("authors", []) or []:
            if not isinstance(item, dict):
                continue
            if item.get("name"):
                author_names.append(item["name"])
                continue
            key = item.get("key")
            if key:
                name = self._fetch_author_name(key)
                if name:
                    author_names.append(name)

        publishers = [p.get("name", "") for p in book_json.get("publishers", []) or [] if isinstance(p, dict)]
        # publish_date comes as "2008", "August 1, 2008" or "2008-08-01"
        match = re.search(r"\b(\d{4})\b", book_json.get("publish_date") or "")
        year = int(match.group(1)) if match else None

        description = book_json.get("description")
        if isinstance(description, dict):
            description = description.get("value")

        return {
            "title": book_json["title"],
            "author": ", ".join(author_names) if author_names else "Unknown Author",
            "publisher": publishers[0] if publishers else None,
            "publication_year": year,
            "description": description,
        }

    def _fetch_book_json(self, isbn: str) -> Optional[dict]:
        url = f"{BASE_URL}/api/books?bibkeys=ISBN:{isbn}&format=json&jscmd=data"
        resp = self._http_get_with_retry(url)
        if resp is None:
            logger.error(f"Open Library unreachable while looking up ISBN {isbn}")
            raise ExternalServiceError("Open Library unreachable")
        if resp.status_code == 200:
            return resp.json().get(f"ISBN:{isbn}")
        return None

    def _fetch_author_name(self, author_key: str) -> Optional[str]:
        resp = self._http_get_with_retry(f"{BASE_URL}{author_key}.json")
        if resp is not None and resp.status_code == 200:
            return resp.json().get("name")
        return None

    def _http_get_with_retry(self, url: str) -> Optional[httpx.Response]:
        """httpx.get with exponential backoff on transport errors; None once retries run out."""
        for attempt in range(self.retries):
            try:
                return httpx.get(url, timeout=self.timeout)
            except httpx.RequestError as exc:
                logger.warning(f"GET {url} failed (attempt {attempt + 1}/{self.retries}): {exc}")
                if attempt < self.retries - 1:
                    time.sleep(self.backoff * (2 ** attempt))
        return None
