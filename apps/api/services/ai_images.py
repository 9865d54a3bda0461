"""AI image generation pipeline executed by the worker loop."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.ai_asset import AiAsset
from models.ai_job import AiJob
from services.blob_store import LocalBlobStore
from services.event_log import normalize_error, record_event
from services.job_claim import AI_IMAGE, release_after_failure

logger = logging.getLogger(__name__)

SIZE_PATTERN = re.compile(r"^(\d{2,4})x(\d{2,4})$", re.IGNORECASE)
DATA_URI_PATTERN = re.compile(r"^data:(.*?);base64,(.*)$", re.DOTALL)
DEFAULT_IMAGE_MIME = "image/webp"
EXTENSION_BY_MIME = {
    "png": "png",
    "jpeg": "jpg",
    "jpg": "jpg",
    "webp": "webp",
}


class ImageProviderError(RuntimeError):
    """Raised when the generation provider fails or returns no image."""


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime: str
    width: Optional[int] = None
    height: Optional[int] = None
    request_id: Optional[str] = None


def parse_size(size: Any) -> Tuple[Optional[int], Optional[int]]:
    """Parse a ``"WxH"`` size string; anything else yields (None, None)."""
    if not isinstance(size, str):
        return None, None
    match = SIZE_PATTERN.match(size.strip())
    if not match:
        return None, None
    return int(match.group(1)), int(match.group(2))


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return None


def resolve_dimensions(params: Optional[Dict[str, Any]]) -> Tuple[Optional[int], Optional[int], Dict[str, Any]]:
    """Split generation params into (width, height, remaining options).

    Explicit ``width``/``height`` win; a ``size`` string fills whichever is missing.
    """
    options = dict(params or {})
    size = options.pop("size", None)
    width = _positive_int(options.pop("width", None))
    height = _positive_int(options.pop("height", None))
    options.pop("label", None)
    if not width or not height:
        parsed_width, parsed_height = parse_size(size)
        width = width or parsed_width
        height = height or parsed_height
    return width, height, options


def extension_for_mime(mime: str) -> str:
    lowered = (mime or "").lower()
    for marker, extension in EXTENSION_BY_MIME.items():
        if marker in lowered:
            return extension
    return "bin"


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items:
        head = items[0]
        if isinstance(head, dict):
            return head
        if isinstance(head, str):
            return {"base64": head}
    return {}


def extract_image_payload(payload: Any) -> Dict[str, Any]:
    """Pull inline base64, URL, mime, dimensions and request id out of a provider response."""
    if not isinstance(payload, dict):
        return {}
    data0 = _first(payload.get("data"))
    image0 = _first(payload.get("images"))
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}

    def pick(*values: Any) -> Any:
        for value in values:
            if value not in (None, ""):
                return value
        return None

    image_value = payload.get("image") if isinstance(payload.get("image"), str) else None
    return {
        "base64": pick(data0.get("b64_json"), data0.get("base64"), data0.get("image"), image0.get("base64"), image_value),
        "url": pick(data0.get("url"), image0.get("url"), payload.get("url")),
        "mime": pick(payload.get("mime_type"), data0.get("mime_type"), data0.get("content_type")),
        "width": _positive_int(pick(payload.get("width"), data0.get("width"))),
        "height": _positive_int(pick(payload.get("height"), data0.get("height"))),
        "request_id": pick(payload.get("request_id"), payload.get("id"), data0.get("request_id"), meta.get("request_id")),
    }


def decode_base64_image(value: str, mime_hint: Optional[str] = None) -> Tuple[bytes, str]:
    """Decode plain or ``data:`` URI base64 image content."""
    mime = mime_hint or DEFAULT_IMAGE_MIME
    raw = value.strip()
    match = DATA_URI_PATTERN.match(raw)
    if match:
        mime = match.group(1) or mime
        raw = match.group(2)
    try:
        return base64.b64decode(raw, validate=False), mime
    except (binascii.Error, ValueError) as exc:
        raise ImageProviderError(f"Image payload is not valid base64: {exc}") from exc


class ImageProvider:
    """Generative image provider reached through an OpenAI-compatible images API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        key = api_key if api_key is not None else settings.AI_IMAGE_API_KEY
        request_timeout = timeout if timeout is not None else settings.AI_IMAGE_TIMEOUT_SECONDS
        if client is not None:
            self._client: Optional[AsyncOpenAI] = client
        elif key and "your_" not in key:
            self._client = AsyncOpenAI(
                api_key=key,
                base_url=base_url or settings.AI_IMAGE_API_URL,
                timeout=request_timeout,
                max_retries=0,
            )
        else:
            self._client = None
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout, follow_redirects=True)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
        if self._client is not None:
            await self._client.close()

    async def _fetch_url(self, url: str) -> Tuple[bytes, str]:
        try:
            response = await self._http.get(url)
        except httpx.HTTPError as exc:
            raise ImageProviderError(f"Image fetch failed: {exc}") from exc
        if not response.is_success:
            raise ImageProviderError(f"Image fetch failed: {response.status_code}")
        mime = (response.headers.get("content-type") or DEFAULT_IMAGE_MIME).split(";", 1)[0].strip()
        return response.content, mime or DEFAULT_IMAGE_MIME

    async def generate(self, job: AiJob) -> GeneratedImage:
        if self._client is None:
            raise ImageProviderError("Missing AI_IMAGE_API_KEY")

        width, height, options = resolve_dimensions(job.params if isinstance(job.params, dict) else None)
        extra_body: Dict[str, Any] = dict(options)
        if job.negative_prompt:
            extra_body["negative_prompt"] = job.negative_prompt
        if width:
            extra_body["width"] = width
        if height:
            extra_body["height"] = height

        request: Dict[str, Any] = {"model": job.model, "prompt": job.prompt}
        if width and height:
            request["size"] = f"{width}x{height}"
        if extra_body:
            request["extra_body"] = extra_body

        try:
            response = await self._client.images.generate(**request)
        except openai.APIError as exc:
            raise ImageProviderError(f"Image API error: {exc}") from exc

        payload = response.model_dump() if hasattr(response, "model_dump") else response
        extracted = extract_image_payload(payload)
        request_id = extracted.get("request_id") or getattr(response, "_request_id", None)

        if extracted.get("base64"):
            data, mime = decode_base64_image(extracted["base64"], extracted.get("mime"))
        elif extracted.get("url"):
            data, mime = await self._fetch_url(extracted["url"])
        else:
            raise ImageProviderError("Image API returned no image data")

        return GeneratedImage(
            data=data,
            mime=mime,
            width=extracted.get("width") or width,
            height=extracted.get("height") or height,
            request_id=str(request_id) if request_id else None,
        )


async def finalize_success(job: AiJob, image: GeneratedImage, storage_path: str) -> AiAsset:
    """Insert the asset and mark the job succeeded in one transaction."""
    async with async_session_maker() as db:
        result = await db.execute(select(AiJob).where(AiJob.id == job.id))
        db_job = result.scalar_one()
        asset = AiAsset(
            id=str(uuid.uuid4()),
            job_id=job.id,
            user_id=job.user_id,
            kind="image",
            storage_bucket=settings.AI_ASSET_BUCKET,
            storage_path=storage_path,
            mime_type=image.mime,
            width=image.width,
            height=image.height,
        )
        db.add(asset)
        db_job.status = "succeeded"
        db_job.error = None
        db_job.provider_request_id = image.request_id
        db_job.locked_at = None
        db_job.locked_by = None
        db_job.updated_at = datetime.now(timezone.utc)
        await db.commit()
        return asset


async def process_ai_job(
    job: AiJob,
    *,
    provider: ImageProvider,
    blob_store: LocalBlobStore,
    worker_id: str,
) -> str:
    """Generate, store and record one claimed image job; returns the resulting status."""
    start = perf_counter()
    attempt = int(job.attempt_count or 0)
    await record_event(
        user_id=job.user_id,
        job_kind=AI_IMAGE,
        subject_id=job.id,
        event_type="claimed",
        detail={"worker_id": worker_id, "attempt": attempt, "model": job.model},
    )
    try:
        image = await provider.generate(job)
        storage_path = f"images/{job.user_id}/{job.id}-{uuid.uuid4()}.{extension_for_mime(image.mime)}"
        stored_path = await blob_store.put(settings.AI_ASSET_BUCKET, storage_path, image.data, image.mime)
        await finalize_success(job, image, stored_path)
        duration_ms = int((perf_counter() - start) * 1000)
        await record_event(
            user_id=job.user_id,
            job_kind=AI_IMAGE,
            subject_id=job.id,
            event_type="succeeded",
            detail={"worker_id": worker_id, "storage_path": stored_path, "duration_ms": duration_ms, "model": job.model},
        )
        logger.info("ai_job_succeeded job_id=%s storage_path=%s model=%s", job.id, stored_path, job.model)
        return "succeeded"
    except Exception as exc:
        duration_ms = int((perf_counter() - start) * 1000)
        norm = normalize_error(exc)
        status = await release_after_failure(AI_IMAGE, job, norm["error_message"])
        await record_event(
            user_id=job.user_id,
            job_kind=AI_IMAGE,
            subject_id=job.id,
            event_type="failed",
            detail={
                "worker_id": worker_id,
                "duration_ms": duration_ms,
                "model": job.model,
                "attempt": attempt,
                "next_status": status,
                **norm,
            },
        )
        logger.error("ai_job_failed job_id=%s next_status=%s error=%s", job.id, status, norm["error_message"])
        return status
