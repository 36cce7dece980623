"""
Configuration constants for the tutoring message pipeline.

Values come from :mod:`app.settings` so deployments only have to set
environment variables (API keys stay out of VCS).
"""

from __future__ import annotations

from app.settings import settings

# Completion API -------------------------------------------------------------

OPENROUTER_API_KEY = settings.openrouter_api_key
OPENROUTER_API_BASE = settings.openrouter_base_url
OPENROUTER_DEFAULT_MODEL = settings.openrouter_default_model
COMPLETION_TIMEOUT_SECONDS = settings.completion_timeout_seconds
COMPLETION_MAX_TOKENS = 4096
COMPLETION_TEMPERATURE = 0.7

# OCR ------------------------------------------------------------------------

GOOGLE_VISION_API_KEY = settings.google_vision_api_key
GOOGLE_VISION_ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"
TESSERACT_LANGUAGES = "rus+eng"
OCR_PROVIDER = settings.ocr_provider
OCR_FALLBACK_PROVIDER = settings.ocr_fallback_provider
OCR_CONFIDENCE_THRESHOLD = settings.ocr_confidence_threshold
OCR_TIMEOUT_MS = settings.ocr_timeout_ms

# Conversation ---------------------------------------------------------------
#
# Only the most recent messages are sent as context. Flagged (blocked) turns
# and failed generations never reach the model.
MAX_CONTEXT_MESSAGES = settings.max_context_messages

# Safety event queue ---------------------------------------------------------
SAFETY_EVENT_QUEUE_SIZE = settings.safety_event_queue_size
SAFETY_EVENT_TIMEOUT_SECONDS = settings.safety_event_timeout_seconds
