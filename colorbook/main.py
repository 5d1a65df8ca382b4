import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response

from .backends import RedisTokenStore, S3BlobBackend, redis_client, s3_client
from .catalog import CatalogClient
from .checkout import CheckoutService
from .config import Settings
from .downloads import DownloadGateway, MemoryTokenStore
from .errors import ColorbookError, StorageError, ValidationError
from .fetch import Fetcher
from .models import (
    Book,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSessionResponse,
    CreateCheckoutSessionRequest,
    DownloadLinkRequest,
    DownloadLinkResponse,
    GenerateRequest,
    GenerateResponse,
    SessionDeliverable,
)
from .storage import ARTIFACT_PREFIX, ArtifactStore, LocalBlobBackend, Reaper
from .worker import GenerationJobClient, PredictionClient, generate_preview_pair

logger = logging.getLogger(__name__)

ACCEPTED_UPLOADS = {"image/jpeg", "image/png", "image/webp"}
MEDIA_TYPES = {"jpg": "image/jpeg", "png": "image/png", "webp": "image/webp", "pdf": "application/pdf"}


@dataclass
class Services:
    settings: Settings
    http: httpx.AsyncClient
    store: ArtifactStore
    downloads: DownloadGateway
    jobs: GenerationJobClient
    checkout: CheckoutService
    catalog: CatalogClient
    reaper: Reaper


def build_services(
    settings: Settings,
    http: Optional[httpx.AsyncClient] = None,
    stripe_sessions: Any = None,
) -> Services:
    http = http or httpx.AsyncClient(timeout=settings.http_timeout_sec)

    if settings.store_backend == "s3":
        backend = S3BlobBackend(s3_client(settings), settings.s3_bucket)
    else:
        backend = LocalBlobBackend(settings.store_dir)
    store = ArtifactStore(
        backend,
        retention_sec=settings.artifact_retention_sec,
        public_base_url=settings.public_base_url,
        scratch_dir=settings.store_dir / ".partial",
    )

    if settings.token_backend == "redis":
        token_store = RedisTokenStore(
            redis_client(settings),
            key_ttl_sec=settings.download_token_ttl_sec + settings.artifact_retention_sec,
        )
    else:
        token_store = MemoryTokenStore()
    downloads = DownloadGateway(
        token_store,
        ttl_sec=settings.download_token_ttl_sec,
        public_base_url=settings.public_base_url,
        tombstone_sec=settings.artifact_retention_sec,
    )

    fetcher = Fetcher(http, store)
    predictions = PredictionClient(
        http,
        api_url=settings.replicate_api_url,
        api_token=settings.replicate_api_token,
        model=settings.replicate_model,
        version=settings.replicate_model_version,
    )
    jobs = GenerationJobClient(
        predictions,
        fetcher,
        store,
        poll_interval_sec=settings.poll_interval_sec,
        max_poll_attempts=settings.max_poll_attempts,
    )
    checkout = CheckoutService(
        fetcher,
        store,
        api_key=settings.stripe_secret_key,
        frontend_url=settings.frontend_url,
        unit_price=settings.unit_price,
        currency=settings.currency,
        sessions=stripe_sessions,
    )
    catalog = CatalogClient(
        http,
        api_url=settings.airtable_api_url,
        base_id=settings.airtable_base_id,
        table=settings.airtable_table,
        api_key=settings.airtable_api_key,
    )
    reaper = Reaper([store.sweep, downloads.purge_expired], settings.reaper_interval_sec)
    return Services(settings, http, store, downloads, jobs, checkout, catalog, reaper)


router = APIRouter()


def _services(request: Request) -> Services:
    return request.app.state.services


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.post("/generate", response_model=GenerateResponse)
async def generate(body: GenerateRequest, request: Request):
    services = _services(request)
    preview, raw = await generate_preview_pair(services.jobs, services.store, body.prompt)
    return GenerateResponse(output=services.store.public_url(preview), final=services.store.public_url(raw))


@router.post("/image-to-image", response_model=GenerateResponse)
async def image_to_image(request: Request, image: UploadFile = File(...)):
    # Stub: the prediction model has no image input, so this ends in a 501.
    if image.content_type not in ACCEPTED_UPLOADS:
        raise ColorbookError("unsupported image type", status_code=415)
    services = _services(request)
    raw = await services.jobs.submit(input_image=await image.read())
    return GenerateResponse(output=services.store.public_url(raw), final=services.store.public_url(raw))


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(body: CheckoutRequest, request: Request):
    session_url = await _services(request).checkout.initiate_custom_order(body.images)
    return CheckoutResponse(sessionUrl=session_url)


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(body: CreateCheckoutSessionRequest, request: Request):
    url = await _services(request).checkout.initiate_catalog_order(body.book)
    return CheckoutSessionResponse(url=url)


@router.get("/books", response_model=List[Book])
async def books(request: Request):
    return await _services(request).catalog.list_books()


@router.post("/generate-download-link", response_model=DownloadLinkResponse)
def generate_download_link(body: DownloadLinkRequest, request: Request):
    downloads = _services(request).downloads
    token = downloads.issue(body.downloadUrl or "")
    return DownloadLinkResponse(link=downloads.link_for(token))


@router.get("/download/{token}")
def download(token: str, request: Request):
    target = _services(request).downloads.redeem(token)
    return RedirectResponse(target, status_code=302)


@router.get("/session/{session_id}", response_model=SessionDeliverable)
async def session(session_id: str, request: Request):
    return await _services(request).checkout.retrieve_deliverable(session_id)


@router.get(ARTIFACT_PREFIX + "/{name}")
def get_artifact(name: str, request: Request):
    store = _services(request).store
    media_type = MEDIA_TYPES.get(name.rsplit(".", 1)[-1], "application/octet-stream")
    path = store.local_path(name)
    if path is not None:
        return FileResponse(str(path), media_type=media_type, filename=name)
    return Response(content=store.read(name), media_type=media_type)


async def handle_colorbook_error(request: Request, exc: ColorbookError):
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
    elif exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def handle_request_validation(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"invalid request: {field} {first.get('msg', '')}".strip()
    return await handle_colorbook_error(request, ValidationError(message))


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Serving artifacts from %s under %s", settings.store_dir, settings.public_base_url)
        services.reaper.start()
        try:
            yield
        finally:
            await services.reaper.stop()
            try:
                services.downloads.store.clear()
            except StorageError:
                logger.exception("Could not clear download tokens on shutdown")
            services.store.clear_scratch()
            await services.http.aclose()
            logger.info("Shut down")

    app = FastAPI(title="Colorbook API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.add_exception_handler(ColorbookError, handle_colorbook_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.include_router(router)
    return app


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    # The app is built by uvicorn through the factory, not at import.
    uvicorn.run("colorbook.main:create_app", factory=True, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
