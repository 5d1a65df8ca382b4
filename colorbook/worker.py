import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError as ModelValidationError

from .errors import (
    GenerationCancelled,
    GenerationFailed,
    GenerationTimedOut,
    UnsupportedMode,
    UpstreamError,
    ValidationError,
)
from .fetch import Fetcher
from .models import Artifact, GenerationJob
from .storage import ArtifactStore
from .watermark import watermark_artifact

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = "CLOR image of {prompt}. Style sketched. No shading. Only use black and white. Not realistic."
OUTPUT_FORMAT = "jpg"
FAILED_STATUSES = {"failed", "canceled"}


class CancelToken:
    """Checked between polls. Nothing cancels a job yet, a client disconnect included."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def _upstream_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class PredictionClient:
    """Replicate predictions API: create a prediction, then GET its ``urls.get``."""

    def __init__(self, http: httpx.AsyncClient, api_url: str, api_token: str, model: str, version: str):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.model = model
        self.version = version

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.api_token}"}

    async def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.RequestError as exc:
            raise UpstreamError(f"prediction service unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamError(
                f"prediction service returned {response.status_code}: {_upstream_message(response)}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("prediction service returned malformed JSON") from exc

    async def create(self, prompt: str) -> Dict[str, Any]:
        url = f"{self.api_url}/models/{self.model}/versions/{self.version}/predictions"
        payload = {"input": {"prompt": PROMPT_TEMPLATE.format(prompt=prompt), "output_format": OUTPUT_FORMAT}}
        return await self._call("POST", url, json=payload)

    async def get(self, status_url: str) -> Dict[str, Any]:
        return await self._call("GET", status_url)


def _first_output(prediction: Dict[str, Any]) -> str:
    output = prediction.get("output")
    if isinstance(output, list) and output:
        output = output[0]
    if not isinstance(output, str) or not output:
        raise UpstreamError("prediction succeeded without an output URL")
    return output


def _ext_for(url: str) -> str:
    path = url.split("?", 1)[0].lower()
    for ext in ("png", "webp"):
        if path.endswith(f".{ext}"):
            return ext
    return "jpg"


class GenerationJobClient:
    def __init__(
        self,
        predictions: PredictionClient,
        fetcher: Fetcher,
        store: ArtifactStore,
        poll_interval_sec: float = 2.0,
        max_poll_attempts: int = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.predictions = predictions
        self.fetcher = fetcher
        self.store = store
        self.poll_interval_sec = poll_interval_sec
        self.max_poll_attempts = max_poll_attempts
        self.sleep = sleep

    async def _poll(self, job: GenerationJob, prediction: Dict[str, Any], cancel: Optional[CancelToken]) -> Dict[str, Any]:
        # Anything that is neither succeeded nor failed counts as still running.
        while prediction.get("status") != "succeeded" and prediction.get("status") not in FAILED_STATUSES:
            if job.attempts >= self.max_poll_attempts:
                job.status = "timed-out"
                logger.warning("Prediction %s timed out after %d polls", job.external_job_id, job.attempts)
                raise GenerationTimedOut(job.attempts)
            if cancel is not None and cancel.cancelled:
                job.status = "failed"
                raise GenerationCancelled("generation cancelled")
            await self.sleep(self.poll_interval_sec)
            prediction = await self.predictions.get(job.status_url)
            job.attempts += 1
            logger.debug("Prediction %s poll %d: %s", job.external_job_id, job.attempts, prediction.get("status"))
        return prediction

    async def run(self, job: GenerationJob, cancel: Optional[CancelToken] = None) -> Artifact:
        if job.is_image_mode:
            raise UnsupportedMode("image-to-image generation is not supported yet")

        prediction = await self.predictions.create(job.prompt)
        job.external_job_id = prediction.get("id")
        job.status_url = (prediction.get("urls") or {}).get("get")
        if not job.status_url:
            raise UpstreamError("prediction service response is missing a status URL")
        logger.info("Submitted prediction %s", job.external_job_id)

        prediction = await self._poll(job, prediction, cancel)
        status = prediction.get("status")
        if status in FAILED_STATUSES:
            job.status = "failed"
            job.error = str(prediction.get("error") or "")
            logger.warning("Prediction %s %s: %s", job.external_job_id, status, job.error)
            raise GenerationFailed(status, job.error)

        output_url = _first_output(prediction)
        data = await self.fetcher.fetch(output_url)
        artifact = await asyncio.to_thread(self.store.put, data, "raw-generated", _ext_for(output_url))
        job.status = "succeeded"
        return artifact

    async def submit(self, prompt: Optional[str] = None, input_image: Optional[bytes] = None,
                     cancel: Optional[CancelToken] = None) -> Artifact:
        if prompt is not None:
            prompt = prompt.strip() or None
        try:
            job = GenerationJob(prompt=prompt, input_image=input_image)
        except ModelValidationError:
            if prompt is not None and input_image is not None:
                raise ValidationError("Send either a prompt or an image, not both.") from None
            raise ValidationError("Prompt is required.") from None
        return await self.run(job, cancel)


async def generate_preview_pair(client: GenerationJobClient, store: ArtifactStore, prompt: Optional[str]) -> Tuple[Artifact, Artifact]:
    """Returns ``(preview, raw)``. If watermarking fails the raw artifact stays behind for the reaper."""
    raw = await client.submit(prompt=prompt)
    preview = await watermark_artifact(store, raw)
    return preview, raw
