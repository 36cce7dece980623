from __future__ import annotations

import asyncio
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

import tyro
from loguru import logger

from tutor.llm import CompletionClient, CompletionOptions
from tutor.memory_store import InMemoryChatStore
from tutor.models import ConversationMode, TemplatePreset
from tutor.ocr import create_ocr_extractor
from tutor.pipeline import MessagePipeline, merge_ocr_text
from tutor.prompts import build_system_prompt
from tutor.safety import check_prompt_safety

CLI_USER = "cli"


@dataclass
class CLIArgs:
    """Ask the tutor one question from the terminal."""

    text: str = ""
    image: Path | None = None
    mode: ConversationMode = ConversationMode.FAST
    use_template: bool = False
    """Compose the prompt from the template fields below instead of the default prompt."""
    tone: str = "friendly"
    knowledge_level: str = "basic"
    output_format: str = "full"
    output_language: str = "ru"
    response_length: str = "medium"
    model: str | None = None
    dry_run: bool = False
    """Print the safety verdict, OCR result and system prompt without calling the model."""
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def _template(args: CLIArgs) -> TemplatePreset | None:
    if not args.use_template:
        return None
    return TemplatePreset(
        user_id=CLI_USER,
        name="cli",
        tone=args.tone,
        knowledge_level=args.knowledge_level,
        output_format=args.output_format,
        output_language=args.output_language,
        response_length=args.response_length,
        is_default=True,
    )


async def _dry_run(args: CLIArgs, image: bytes | None) -> None:
    content = args.text
    verdict = check_prompt_safety(content)
    print(f"input safety: {verdict.model_dump_json()}")
    if verdict.safe and image is not None:
        ocr_result = await create_ocr_extractor().extract_text(image)
        print(f"ocr: {ocr_result.model_dump_json()}")
        content = merge_ocr_text(content, ocr_result.text)
        verdict = check_prompt_safety(content)
        print(f"merged input safety: {verdict.model_dump_json()}")
    print("--- system prompt ---")
    print(build_system_prompt(args.mode, _template(args)))
    print("--- user message ---")
    print(content)


async def _run(args: CLIArgs) -> None:
    logger.debug({"event": "cli_params", **{k: str(v) for k, v in asdict(args).items()}})
    image = args.image.read_bytes() if args.image else None
    if not args.text and image is None:
        logger.error("Nothing to ask: pass --text and/or --image")
        raise SystemExit(2)

    if args.dry_run:
        await _dry_run(args, image)
        return

    store = InMemoryChatStore()
    session = await store.create_session(CLI_USER, title="CLI", mode=args.mode)
    template = _template(args)
    if template is not None:
        await store.create_template(template)

    async with CompletionClient() as client:
        pipeline = MessagePipeline(
            repository=store,
            completion_client=client,
            ocr_extractor=create_ocr_extractor() if image is not None else None,
            completion_options=CompletionOptions(model=args.model),
        )
        result = await pipeline.handle_message(session, args.text, image=image)
        await pipeline.safety_recorder.aclose()

    logger.info(f"Outcome: {result.outcome.value}")
    if result.usage is not None:
        logger.info(
            f"Tokens: {result.usage.prompt_tokens} in / {result.usage.completion_tokens} out"
        )
    print(result.assistant_message.content)


def main() -> None:
    """Entry-point: parse CLI via tyro and run the pipeline."""
    args = tyro.cli(CLIArgs)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
