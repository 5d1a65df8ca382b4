import logging
from typing import Any, Dict, List, Optional, Sequence

import stripe
from starlette.concurrency import run_in_threadpool

from .assembler import assemble
from .errors import NotFoundError, UpstreamError, ValidationError
from .fetch import Fetcher
from .models import Book, SessionDeliverable
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

CUSTOM_BOOK_NAME = "Custom Coloring Book"


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def _metadata_value(metadata: Optional[stripe.StripeObject], key: str) -> Optional[str]:
    # StripeObject is mapping-like but has no .get() on current SDKs.
    if metadata is None or key not in metadata:
        return None
    return metadata[key] or None


class CheckoutService:
    """Creates Stripe checkout sessions and reads back the deliverable stored in their metadata.

    Sessions cost money once paid, so nothing here is retried automatically.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: ArtifactStore,
        api_key: str,
        frontend_url: str,
        unit_price: float = 1.99,
        currency: str = "usd",
        sessions: Any = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.api_key = api_key
        self.frontend_url = frontend_url.rstrip("/")
        self.unit_price = unit_price
        self.currency = currency
        self.sessions = sessions if sessions is not None else stripe.checkout.Session

    @property
    def success_url(self) -> str:
        return f"{self.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}"

    def _create(self, line_item: Dict[str, Any], metadata: Dict[str, str], cancel_url: str) -> stripe.checkout.Session:
        try:
            return self.sessions.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                line_items=[line_item],
                mode="payment",
                success_url=self.success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe session creation failed")
            raise UpstreamError(f"Failed to create checkout session: {exc.user_message or exc}") from exc

    async def initiate_custom_order(self, page_urls: Sequence[str]) -> str:
        urls: List[str] = [u for u in page_urls if u]
        if not urls:
            raise ValidationError("No images provided.")

        book = await assemble(urls, self.fetcher, self.store)
        download_url = self.store.public_url(book)
        line_item = {
            "price_data": {
                "currency": self.currency,
                "product_data": {"name": CUSTOM_BOOK_NAME},
                "unit_amount": to_cents(len(urls) * self.unit_price),
            },
            "quantity": 1,
        }
        metadata = {"downloadUrl": download_url, "pageCount": str(len(urls))}
        session = await run_in_threadpool(self._create, line_item, metadata, self.frontend_url)
        logger.info("Created custom checkout session %s for %d pages", session.id, len(urls))
        return session.url

    async def initiate_catalog_order(self, book: Optional[Book]) -> str:
        if book is None or not book.name or book.price is None or book.price <= 0:
            raise ValidationError("Book name and price are required.")

        line_item = {
            "price_data": {
                "currency": self.currency,
                "product_data": {
                    "name": book.name,
                    "description": book.description or "",
                    "images": [book.cover_image] if book.cover_image else [],
                },
                "unit_amount": to_cents(book.price),
            },
            "quantity": 1,
        }
        metadata = {
            "bookName": book.name,
            "downloadUrl": book.download_url or "",
            "coverImage": book.cover_image or "",
        }
        session = await run_in_threadpool(self._create, line_item, metadata, f"{self.frontend_url}/cancel")
        logger.info("Created catalog checkout session %s for %r", session.id, book.name)
        return session.url

    def _retrieve(self, session_id: str) -> stripe.checkout.Session:
        try:
            return self.sessions.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                raise NotFoundError(f"checkout session not found: {session_id}") from exc
            logger.exception("Error retrieving session %s", session_id)
            raise UpstreamError("Failed to retrieve session from Stripe") from exc
        except stripe.StripeError as exc:
            logger.exception("Error retrieving session %s", session_id)
            raise UpstreamError("Failed to retrieve session from Stripe") from exc

    async def retrieve_deliverable(self, session_id: str) -> SessionDeliverable:
        session = await run_in_threadpool(self._retrieve, session_id)
        metadata = session["metadata"] if "metadata" in session else None
        download_url = _metadata_value(metadata, "downloadUrl")
        if not download_url:
            raise ValidationError("Missing download URL in session metadata")
        return SessionDeliverable(downloadUrl=download_url, coverImage=_metadata_value(metadata, "coverImage"))
