import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .errors import UpstreamError
from .models import Book

logger = logging.getLogger(__name__)

MAX_PAGES = 10


def _first_url(field: Any) -> Optional[str]:
    # Airtable attachment fields are lists of {"url": ...}
    if isinstance(field, list) and field and isinstance(field[0], dict):
        return field[0].get("url") or None
    return None


def _price(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def book_from_record(record: Dict[str, Any]) -> Book:
    fields = record.get("fields") or {}
    pages: List[str] = []
    for i in range(1, MAX_PAGES + 1):
        url = _first_url(fields.get(f"Pic {i}"))
        if url:
            pages.append(url)
    return Book(
        id=record.get("id"),
        name=fields.get("Name"),
        type=fields.get("Type"),
        description=fields.get("Notes"),
        price=_price(fields.get("Price")),
        cover_image=_first_url(fields.get("Cover")),
        pages=pages,
        download_url=_first_url(fields.get("Download")),
    )


class CatalogClient:
    """Read-only view of the pre-made books table. Nothing is cached; every call hits Airtable."""

    def __init__(self, http: httpx.AsyncClient, api_url: str, base_id: str, table: str, api_key: str):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.base_id = base_id
        self.table = table
        self.api_key = api_key

    @property
    def table_url(self) -> str:
        return f"{self.api_url}/{self.base_id}/{quote(self.table, safe='')}"

    async def list_books(self) -> List[Book]:
        books: List[Book] = []
        params: Dict[str, str] = {}
        while True:
            try:
                response = await self.http.get(
                    self.table_url,
                    params=params,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                body = response.json()
            except httpx.HTTPStatusError as exc:
                logger.error("Airtable returned %s: %s", exc.response.status_code, exc.response.text)
                raise UpstreamError("Failed to fetch books from Airtable.") from exc
            except (httpx.RequestError, ValueError) as exc:
                logger.exception("Airtable fetch failed")
                raise UpstreamError("Failed to fetch books from Airtable.") from exc

            books.extend(book_from_record(r) for r in body.get("records", []))
            offset = body.get("offset")
            if not offset:
                return books
            params = {"offset": offset}
