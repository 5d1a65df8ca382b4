import pytest

from colorbook.catalog import book_from_record
from colorbook.errors import UpstreamError


def _attachment(url):
    return [{"id": "att", "url": url, "filename": url.rsplit("/", 1)[-1]}]


RECORD = {
    "id": "rec1",
    "fields": {
        "Name": "Ocean Friends",
        "Type": "Animals",
        "Notes": "Fish and whales",
        "Price": "7.5",
        "Cover": _attachment("https://cdn.test/cover.jpg"),
        "Pic 1": _attachment("https://cdn.test/1.jpg"),
        "Pic 2": _attachment("https://cdn.test/2.jpg"),
        "Pic 4": _attachment("https://cdn.test/4.jpg"),
        "Pic 5": [],
        "Download": _attachment("https://cdn.test/ocean.pdf"),
    },
}


def test_only_populated_pages_in_order():
    book = book_from_record(RECORD)
    assert book.pages == ["https://cdn.test/1.jpg", "https://cdn.test/2.jpg", "https://cdn.test/4.jpg"]
    assert book.price == 7.5
    assert book.cover_image == "https://cdn.test/cover.jpg"
    assert book.download_url == "https://cdn.test/ocean.pdf"
    assert book.type == "Animals"
    assert book.description == "Fish and whales"


def test_sparse_record_defaults():
    book = book_from_record({"id": "rec2", "fields": {"Name": "Blank", "Price": "n/a"}})
    assert book.pages == []
    assert book.price == 0.0
    assert book.cover_image is None
    assert book.download_url is None


async def test_list_books_follows_offsets(services, upstream):
    upstream.airtable_pages = [
        {"records": [RECORD], "offset": "itr1"},
        {"records": [{"id": "rec2", "fields": {"Name": "Blank"}}]},
    ]
    books = await services.catalog.list_books()

    assert [b.id for b in books] == ["rec1", "rec2"]
    first, second = [r for r in upstream.requests if r.url.host == "airtable.test"]
    assert first.headers["Authorization"] == "Bearer key_test"
    assert str(first.url).split("?")[0] == "https://airtable.test/v0/app123/Coloring%20Book%20Pages"
    assert second.url.params["offset"] == "itr1"


async def test_list_books_upstream_failure(services, upstream):
    upstream.airtable_pages = [500]
    with pytest.raises(UpstreamError):
        await services.catalog.list_books()
