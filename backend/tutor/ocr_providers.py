"""
OCR backends that turn an uploaded image into text.

Every backend satisfies :class:`OCRProvider`; :func:`create_provider` picks one
by its configured name so the extractor never switches on provider types.
"""

from __future__ import annotations

import asyncio
import base64
import io
from abc import ABC, abstractmethod
from typing import Any

import httpx
from loguru import logger

from tutor import config
from tutor.models import OCRResult


class OCRProviderError(RuntimeError):
    """A single provider failed to produce a result."""


class OCRProvider(ABC):
    """Abstract base for text extraction from image bytes."""

    name: str

    @abstractmethod
    async def extract_text(self, image: bytes) -> OCRResult:
        """Return recognised text and a confidence score in [0, 1]."""
        ...


class NoneProvider(OCRProvider):
    """Terminal safety net: never fails, never recognises anything."""

    name = "none"

    async def extract_text(self, image: bytes) -> OCRResult:
        return OCRResult(text="", confidence=0.0, provider=self.name)


class GoogleVisionProvider(OCRProvider):
    """Key-authenticated Google Cloud Vision ``TEXT_DETECTION`` client."""

    name = "google-vision"

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint or config.GOOGLE_VISION_ENDPOINT
        self.timeout = timeout or config.OCR_TIMEOUT_MS / 1000
        self._client = client

    async def extract_text(self, image: bytes) -> OCRResult:
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("ascii")},
                    "features": [{"type": "TEXT_DETECTION"}],
                }
            ]
        }
        if self._client is not None:
            response = await self._client.post(
                self.endpoint, params={"key": self.api_key}, json=payload
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.endpoint, params={"key": self.api_key}, json=payload
                )

        if response.status_code >= 400:
            raise OCRProviderError(
                f"Google Vision API error ({response.status_code}): {response.text}"
            )

        data = response.json()
        responses = data.get("responses") or [{}]
        annotation = responses[0].get("fullTextAnnotation")
        if not annotation:
            return OCRResult(text="", confidence=0.0, provider=self.name)

        return OCRResult(
            text=annotation.get("text", ""),
            confidence=_page_confidence(annotation.get("pages") or []),
            provider=self.name,
        )


class TesseractProvider(OCRProvider):
    """Local Tesseract engine. Slow, so it runs in a worker thread."""

    name = "tesseract"

    def __init__(self, languages: str | None = None) -> None:
        self.languages = languages or config.TESSERACT_LANGUAGES

    async def extract_text(self, image: bytes) -> OCRResult:
        text, confidence = await asyncio.to_thread(self._recognise, image)
        return OCRResult(text=text, confidence=confidence, provider=self.name)

    def _recognise(self, image: bytes) -> tuple[str, float]:
        import pytesseract
        from PIL import Image

        with Image.open(io.BytesIO(image)) as picture:
            picture.load()
            text = pytesseract.image_to_string(picture, lang=self.languages)
            data = pytesseract.image_to_data(
                picture, lang=self.languages, output_type=pytesseract.Output.DICT
            )
        return text.strip(), _word_confidence(data)


def _page_confidence(pages: list[dict[str, Any]]) -> float:
    # Mean over pages of the mean block confidence; pages without blocks count as 0.
    if not pages:
        return 0.0
    total = 0.0
    for page in pages:
        blocks = [float(block.get("confidence") or 0.0) for block in page.get("blocks") or []]
        if blocks:
            total += sum(blocks) / len(blocks)
    return total / len(pages)


def _word_confidence(data: dict[str, list[Any]]) -> float:
    scores: list[float] = []
    for word, conf in zip(data.get("text", []), data.get("conf", []), strict=False):
        if not str(word).strip():
            continue
        try:
            value = float(conf)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            scores.append(value)
    if not scores:
        return 0.0
    return sum(scores) / len(scores) / 100.0


def create_provider(name: str, *, google_vision_api_key: str | None = None) -> OCRProvider:
    """Build a provider by its configured name."""
    if name == "google-vision":
        api_key = google_vision_api_key or config.GOOGLE_VISION_API_KEY
        if not api_key:
            raise ValueError(
                "GOOGLE_VISION_API_KEY is required for google-vision OCR provider"
            )
        return GoogleVisionProvider(api_key)
    if name == "tesseract":
        return TesseractProvider()
    if name == "none":
        return NoneProvider()
    logger.error(f"Unknown OCR provider requested: {name}")
    raise ValueError(f"Unknown OCR provider: {name}")
