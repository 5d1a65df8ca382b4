"""Shared fixtures: fake upstream services, a controllable clock and an in-process client."""

import io
from typing import Any, Dict, List, Optional

import httpx
import pytest
import redis
import stripe
from httpx import ASGITransport, AsyncClient
from PIL import Image

from colorbook.config import Settings
from colorbook.main import build_services, create_app

REPLICATE_URL = "https://replicate.test/v1"
STATUS_URL = f"{REPLICATE_URL}/predictions/p-1"
OUTPUT_URL = "https://replicate.delivery/p-1/out.jpg"
AIRTABLE_URL = "https://airtable.test/v0"


def image_bytes(width: int = 64, height: int = 48, color=(255, 255, 255), fmt: str = "JPEG") -> bytes:
    buf = io.BytesIO()
    mode = "RGBA" if fmt == "PNG" and len(color) == 4 else "RGB"
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Replicate, arbitrary image hosts and Airtable behind one httpx.MockTransport."""

    def __init__(self):
        self.statuses: List[Dict[str, Any]] = [{"status": "succeeded", "output": [OUTPUT_URL]}]
        self.created: Dict[str, Any] = {"id": "p-1", "status": "starting", "urls": {"get": STATUS_URL}}
        self.files: Dict[str, bytes] = {OUTPUT_URL: image_bytes(80, 60)}
        self.airtable_pages: List[Dict[str, Any]] = [{"records": []}]
        self.requests: List[httpx.Request] = []
        self.create_status = 201

    def polls(self) -> int:
        return sum(1 for r in self.requests if r.method == "GET" and str(r.url) == STATUS_URL)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.method == "POST" and url.startswith(REPLICATE_URL) and url.endswith("/predictions"):
            return httpx.Response(self.create_status, json=self.created)
        if request.method == "GET" and url == STATUS_URL:
            if len(self.statuses) > 1:
                body = self.statuses.pop(0)
            else:
                body = self.statuses[0]
            return httpx.Response(200, json=dict(body, id="p-1", urls={"get": STATUS_URL}))
        if url.startswith(AIRTABLE_URL):
            page = self.airtable_pages.pop(0) if len(self.airtable_pages) > 1 else self.airtable_pages[0]
            if isinstance(page, int):
                return httpx.Response(page, json={"error": "boom"})
            return httpx.Response(200, json=page)
        if url in self.files:
            return httpx.Response(200, content=self.files[url])
        return httpx.Response(404, text="not found")


class DownRedis:
    """Every redis command fails as if the server were unreachable."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")

        return fail


class FakeStripeSessions:
    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.sessions: Dict[str, stripe.checkout.Session] = {}
        self.error: Optional[Exception] = None

    def create(self, **kwargs):
        if self.error is not None:
            raise self.error
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(kwargs)
        # Real SDK objects rather than dicts, so callers cannot lean on dict methods.
        session = stripe.checkout.Session.construct_from(
            {
                "id": session_id,
                "object": "checkout.session",
                "url": f"https://checkout.stripe.test/{session_id}",
                "metadata": dict(kwargs.get("metadata") or {}),
            },
            "sk_test",
        )
        self.sessions[session_id] = session
        return session

    def retrieve(self, session_id, api_key=None):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError("No such checkout.session", "id", code="resource_missing")
        return self.sessions[session_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_dir=tmp_path / "images",
        public_base_url="http://testserver",
        frontend_url="https://shop.test",
        poll_interval_sec=0,
        max_poll_attempts=3,
        replicate_api_url=REPLICATE_URL,
        replicate_api_token="r8_test",
        stripe_secret_key="sk_test",
        airtable_api_url=AIRTABLE_URL,
        airtable_api_key="key_test",
        airtable_base_id="app123",
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def stripe_sessions():
    return FakeStripeSessions()


@pytest.fixture
def services(settings, upstream, stripe_sessions, clock):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    svc = build_services(settings, http=http, stripe_sessions=stripe_sessions)
    svc.store.clock = clock
    svc.downloads.clock = clock
    return svc


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        yield c
    await services.http.aclose()
