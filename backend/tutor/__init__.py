"""Message-generation pipeline of the StudentHelper tutoring chat."""

from .ocr import OCRError, OCRExtractor, create_ocr_extractor
from .pipeline import MessagePipeline, PipelineOutcome, PipelineResult
from .prompts import build_system_prompt
from .safety import check_prompt_safety, check_response_safety

__all__ = [
    "MessagePipeline",
    "OCRError",
    "OCRExtractor",
    "PipelineOutcome",
    "PipelineResult",
    "build_system_prompt",
    "check_prompt_safety",
    "check_response_safety",
    "create_ocr_extractor",
]
