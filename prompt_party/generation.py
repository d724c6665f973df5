"""
Generation coordination: the leased `is_generating` flag on a Game, and the
external image-generation collaborator.

The flag is advisory (it blocks UIs), not a mutex. A lease expiry is stored
next to it so a client that crashed mid-generation cannot leave the game
stuck in "generating" forever.
"""
from __future__ import annotations

import hashlib
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import ExternalServiceError, GenerationFailureKind, ValidationError
from .logging_utils import get_logger
from .models import Game, utcnow

logger = get_logger("prompt_party.generation")

DEFAULT_LEASE_SECONDS = 120


def lease_seconds_from_env() -> int:
    try:
        return int(os.getenv("GENERATION_LEASE_SECONDS", str(DEFAULT_LEASE_SECONDS)))
    except ValueError:
        return DEFAULT_LEASE_SECONDS


def begin_generation(game: Game, now: Optional[datetime] = None,
                     lease_seconds: Optional[int] = None) -> Game:
    now = now or utcnow()
    lease = lease_seconds if lease_seconds is not None else lease_seconds_from_env()
    return game.model_copy(update={
        "is_generating": True,
        "generation_expires_at": now + timedelta(seconds=lease),
    })


def end_generation(game: Game) -> Game:
    return game.model_copy(update={"is_generating": False, "generation_expires_at": None})


def is_generation_active(game: Game, now: Optional[datetime] = None) -> bool:
    if not game.is_generating:
        return False
    if game.generation_expires_at is None:
        return True
    return (now or utcnow()) < game.generation_expires_at


# --- external collaborator ---------------------------------------------------

class GenerationResult(BaseModel):
    image_url: str
    prompt: str
    created_at: datetime = Field(default_factory=utcnow)


def classify_generation_error(message: str) -> GenerationFailureKind:
    msg = (message or "").lower()
    if "rate limit" in msg:
        return GenerationFailureKind.RATE_LIMITED
    if "billing" in msg:
        return GenerationFailureKind.BILLING
    if "content policy" in msg:
        return GenerationFailureKind.CONTENT_POLICY
    if "api key" in msg or "credential" in msg:
        return GenerationFailureKind.INVALID_CREDENTIAL
    return GenerationFailureKind.OTHER


_STATUS_KINDS = {
    429: GenerationFailureKind.RATE_LIMITED,
    402: GenerationFailureKind.BILLING,
    401: GenerationFailureKind.INVALID_CREDENTIAL,
    403: GenerationFailureKind.INVALID_CREDENTIAL,
}


class ImageGenerator(ABC):
    """prompt + optional source image -> image reference."""

    @abstractmethod
    async def generate(self, prompt: str, source_image: Optional[str] = None) -> GenerationResult:
        ...


def _require_prompt(prompt: str) -> str:
    cleaned = (prompt or "").strip()
    if not cleaned:
        raise ValidationError("Prompt cannot be empty")
    return cleaned


class PlaceholderImageGenerator(ImageGenerator):
    """Deterministic placeholder images, used when no generation API is configured."""

    def __init__(self, base_url: str = "https://picsum.photos/seed", size: int = 1024):
        self.base_url = base_url.rstrip("/")
        self.size = size

    async def generate(self, prompt: str, source_image: Optional[str] = None) -> GenerationResult:
        cleaned = _require_prompt(prompt)
        digest = hashlib.sha256(f"{source_image or ''}|{cleaned}".encode()).hexdigest()[:16]
        url = f"{self.base_url}/{digest}/{self.size}/{self.size}"
        return GenerationResult(image_url=url, prompt=cleaned)


class HttpImageGenerator(ImageGenerator):
    """Client for an HTTP generation endpoint.

    Request body: {"prompt": str, "sourceImage": str | null}
    Response body: {"success": true, "imageUrl": str, "prompt": str, "createdAt": ms}
    Failures come back as {"error": str} with a status code that selects the kind.
    """

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 60.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=self._headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=self._headers())

    def _failure(self, response: httpx.Response) -> ExternalServiceError:
        try:
            data = response.json()
        except ValueError:
            data = None
        message = (data.get("error") if isinstance(data, dict) else None) or response.text
        message = message or f"HTTP error! status: {response.status_code}"
        kind = _STATUS_KINDS.get(response.status_code) or classify_generation_error(message)
        retry_after = None
        if kind is GenerationFailureKind.RATE_LIMITED:
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except ValueError:
                retry_after = None
        return ExternalServiceError(f"Image generation failed: {message}", kind=kind,
                                    retry_after=retry_after)

    async def generate(self, prompt: str, source_image: Optional[str] = None) -> GenerationResult:
        cleaned = _require_prompt(prompt)
        payload = {"prompt": cleaned, "sourceImage": source_image}
        try:
            response = await self._post(payload)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Image generation failed: {exc}") from exc

        if response.status_code >= 400:
            err = self._failure(response)
            logger.warning("generation_failed", extra={"status": response.status_code,
                                                       "kind": err.kind.value})
            raise err

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("success", True) or not data.get("imageUrl"):
            raise ExternalServiceError("Invalid response from image generation API")
        result: dict[str, Any] = {"image_url": data["imageUrl"], "prompt": data.get("prompt") or cleaned}
        if data.get("createdAt") is not None:
            result["created_at"] = data["createdAt"]
        return GenerationResult(**result)


def get_image_generator() -> ImageGenerator:
    url = os.getenv("IMAGE_API_URL")
    if url:
        return HttpImageGenerator(url, api_key=os.getenv("IMAGE_API_KEY"))
    return PlaceholderImageGenerator()
