import pytest
import stripe

from colorbook.checkout import to_cents
from colorbook.errors import NotFoundError, UpstreamError, ValidationError
from colorbook.models import Book

from conftest import image_bytes


def _stored(store):
    return [name for name, _ in store.backend.list_with_age()]


def _pages(store, n):
    return [store.public_url(store.put(image_bytes(40 + i, 40), "raw-generated")) for i in range(n)]


class TestCustomOrder:
    async def test_price_is_per_page(self, services, stripe_sessions):
        url = await services.checkout.initiate_custom_order(_pages(services.store, 3))

        assert url == "https://checkout.stripe.test/cs_test_1"
        created = stripe_sessions.created[0]
        item = created["line_items"][0]
        assert item["price_data"]["unit_amount"] == 597
        assert item["price_data"]["currency"] == "usd"
        assert item["price_data"]["product_data"]["name"] == "Custom Coloring Book"
        assert item["quantity"] == 1
        assert created["mode"] == "payment"
        assert created["api_key"] == "sk_test"

    async def test_returns_url_from_sdk_session_object(self, services, stripe_sessions):
        url = await services.checkout.initiate_custom_order(_pages(services.store, 1))
        assert isinstance(stripe_sessions.sessions["cs_test_1"], stripe.checkout.Session)
        assert url == stripe_sessions.sessions["cs_test_1"].url

    async def test_metadata_points_at_assembled_pdf(self, services, stripe_sessions):
        await services.checkout.initiate_custom_order(_pages(services.store, 2))
        metadata = stripe_sessions.created[0]["metadata"]
        name = services.store.name_from_url(metadata["downloadUrl"])
        assert services.store.resolve(name).kind == "assembled-pdf"
        assert metadata["pageCount"] == "2"

    async def test_redirect_destinations(self, services, stripe_sessions):
        await services.checkout.initiate_custom_order(_pages(services.store, 1))
        created = stripe_sessions.created[0]
        assert created["success_url"] == "https://shop.test/success?session_id={CHECKOUT_SESSION_ID}"
        assert created["cancel_url"] == "https://shop.test"

    async def test_empty_order_creates_nothing(self, services, stripe_sessions):
        with pytest.raises(ValidationError):
            await services.checkout.initiate_custom_order([])
        assert stripe_sessions.created == []
        assert _stored(services.store) == []

    async def test_assembly_failure_creates_no_session(self, services, stripe_sessions):
        with pytest.raises(UpstreamError):
            await services.checkout.initiate_custom_order(["https://cdn.test/missing.jpg"])
        assert stripe_sessions.created == []

    async def test_stripe_error_surfaces_as_upstream(self, services, stripe_sessions):
        stripe_sessions.error = stripe.APIConnectionError("network down")
        with pytest.raises(UpstreamError):
            await services.checkout.initiate_custom_order(_pages(services.store, 1))


class TestCatalogOrder:
    async def test_session_carries_book_metadata(self, services, stripe_sessions):
        book = Book(name="Dinosaurs", price=9.99, description="Roar", cover_image="https://cdn.test/c.jpg",
                    download_url="https://cdn.test/dino.pdf")
        url = await services.checkout.initiate_catalog_order(book)

        assert url.startswith("https://checkout.stripe.test/")
        created = stripe_sessions.created[0]
        product = created["line_items"][0]["price_data"]["product_data"]
        assert product == {"name": "Dinosaurs", "description": "Roar", "images": ["https://cdn.test/c.jpg"]}
        assert created["line_items"][0]["price_data"]["unit_amount"] == 999
        assert created["metadata"] == {
            "bookName": "Dinosaurs",
            "downloadUrl": "https://cdn.test/dino.pdf",
            "coverImage": "https://cdn.test/c.jpg",
        }
        assert created["cancel_url"] == "https://shop.test/cancel"

    async def test_missing_download_url_is_empty(self, services, stripe_sessions):
        await services.checkout.initiate_catalog_order(Book(name="Cats", price=4.5))
        metadata = stripe_sessions.created[0]["metadata"]
        assert metadata["downloadUrl"] == ""
        assert metadata["coverImage"] == ""

    @pytest.mark.parametrize("book", [None, Book(price=5), Book(name="x"), Book(name="x", price=0), Book(name="x", price=-1)])
    async def test_name_and_positive_price_required(self, services, stripe_sessions, book):
        with pytest.raises(ValidationError):
            await services.checkout.initiate_catalog_order(book)
        assert stripe_sessions.created == []


class TestRetrieveDeliverable:
    async def test_reads_metadata(self, services):
        await services.checkout.initiate_catalog_order(
            Book(name="Cats", price=4.5, download_url="https://cdn.test/cats.pdf", cover_image="https://cdn.test/cats.jpg")
        )
        deliverable = await services.checkout.retrieve_deliverable("cs_test_1")
        assert deliverable.downloadUrl == "https://cdn.test/cats.pdf"
        assert deliverable.coverImage == "https://cdn.test/cats.jpg"

    async def test_missing_download_url(self, services):
        await services.checkout.initiate_catalog_order(Book(name="Cats", price=4.5))
        with pytest.raises(ValidationError):
            await services.checkout.retrieve_deliverable("cs_test_1")

    async def test_unknown_session(self, services):
        with pytest.raises(NotFoundError):
            await services.checkout.retrieve_deliverable("cs_nope")

    async def test_session_without_metadata(self, services, stripe_sessions):
        stripe_sessions.sessions["cs_bare"] = stripe.checkout.Session.construct_from({"id": "cs_bare"}, "sk_test")
        with pytest.raises(ValidationError):
            await services.checkout.retrieve_deliverable("cs_bare")

    async def test_blank_cover_image_is_none(self, services):
        await services.checkout.initiate_catalog_order(Book(name="Cats", price=4.5, download_url="https://cdn.test/cats.pdf"))
        deliverable = await services.checkout.retrieve_deliverable("cs_test_1")
        assert deliverable.coverImage is None


@pytest.mark.parametrize("amount, cents", [(1.99, 199), (3 * 1.99, 597), (0.1 + 0.2, 30), (10, 1000)])
def test_to_cents(amount, cents):
    assert to_cents(amount) == cents
