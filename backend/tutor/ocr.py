"""
Text extraction from images with an ordered provider fallback chain.

Providers are tried one at a time, in configured order. A provider result is
accepted as soon as its confidence reaches the threshold; errors, timeouts and
low-confidence results move on to the next provider. When the last provider
merely scores low its result is still returned, because partial text is more
useful to the student than a hard failure. Only a chain that ends in an error
raises :class:`OCRError`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence

from loguru import logger

from tutor import config
from tutor.models import OCRResult, ProviderAttempt
from tutor.ocr_providers import OCRProvider, create_provider

FallbackHook = Callable[[ProviderAttempt, str], None]

DEFAULT_TIMEOUT_MS = 30_000


class OCRError(RuntimeError):
    """Every provider in the chain failed; ``attempts`` keeps the history in order."""

    def __init__(self, message: str, attempts: Sequence[ProviderAttempt]) -> None:
        super().__init__(message)
        self.attempts: tuple[ProviderAttempt, ...] = tuple(attempts)


class OCRTimeoutError(RuntimeError):
    pass


class OCRExtractor:
    def __init__(
        self,
        providers: Sequence[OCRProvider],
        *,
        confidence_threshold: float,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        on_fallback: FallbackHook | None = None,
    ) -> None:
        if not providers:
            raise ValueError("OCRExtractor requires at least one provider")
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError(
                f"confidence_threshold must be within [0, 1], got {confidence_threshold}"
            )
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")
        self.providers: tuple[OCRProvider, ...] = tuple(providers)
        self.confidence_threshold = confidence_threshold
        self.timeout_ms = timeout_ms
        self.on_fallback = on_fallback

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self.providers]

    async def extract_text(self, image: bytes) -> OCRResult:
        attempts: list[ProviderAttempt] = []

        for index, provider in enumerate(self.providers):
            next_provider = (
                self.providers[index + 1] if index + 1 < len(self.providers) else None
            )
            start = time.perf_counter()

            try:
                result = await self._with_timeout(provider, image)
            except Exception as exc:  # noqa: BLE001 - every provider failure falls back
                attempt = ProviderAttempt(
                    provider=provider.name,
                    error=str(exc) or exc.__class__.__name__,
                    duration_ms=_elapsed_ms(start),
                )
                attempts.append(attempt)
                logger.debug(f"OCR provider {provider.name} failed: {attempt.error}")
                if next_provider is not None:
                    self._notify(attempt, next_provider.name)
                continue

            if result.confidence >= self.confidence_threshold:
                return result

            attempt = ProviderAttempt(
                provider=provider.name,
                low_confidence=True,
                duration_ms=_elapsed_ms(start),
            )
            attempts.append(attempt)
            if next_provider is None:
                logger.info(
                    f"Returning low-confidence OCR result from {provider.name} "
                    f"({result.confidence:.2f} < {self.confidence_threshold:.2f})"
                )
                return result
            self._notify(attempt, next_provider.name)

        raise OCRError("All OCR providers failed", attempts)

    async def _with_timeout(self, provider: OCRProvider, image: bytes) -> OCRResult:
        try:
            return await asyncio.wait_for(
                provider.extract_text(image), timeout=self.timeout_ms / 1000
            )
        except asyncio.TimeoutError as exc:
            raise OCRTimeoutError(
                f"{provider.name} timed out after {self.timeout_ms}ms"
            ) from exc

    def _notify(self, attempt: ProviderAttempt, next_provider: str) -> None:
        if self.on_fallback is None:
            return
        try:
            self.on_fallback(attempt, next_provider)
        except Exception as exc:
            logger.opt(exception=exc).warning(
                f"OCR fallback hook failed for {attempt.provider} -> {next_provider}"
            )


def log_fallback(attempt: ProviderAttempt, next_provider: str) -> None:
    reason = f"error: {attempt.error}" if attempt.error else "low confidence"
    logger.info(
        f"[ocr] Fallback from {attempt.provider} to {next_provider} "
        f"({reason}, {attempt.duration_ms}ms)"
    )


def create_ocr_extractor(
    *,
    provider: str | None = None,
    fallback_provider: str | None = None,
    confidence_threshold: float | None = None,
    timeout_ms: int | None = None,
) -> OCRExtractor:
    """Build the extractor configured for this deployment."""
    primary = provider or config.OCR_PROVIDER
    fallback = fallback_provider or config.OCR_FALLBACK_PROVIDER

    providers = [create_provider(primary)]
    if fallback != "none":
        providers.append(create_provider(fallback))

    return OCRExtractor(
        providers,
        confidence_threshold=(
            config.OCR_CONFIDENCE_THRESHOLD
            if confidence_threshold is None
            else confidence_threshold
        ),
        timeout_ms=timeout_ms or config.OCR_TIMEOUT_MS,
        on_fallback=log_fallback,
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
