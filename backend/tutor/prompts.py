"""
System prompt composition.

The prompt is a pure function of the conversation mode and the optional
template preset. Known template values map to fixed phrases; anything else is
echoed verbatim inside a labeled sentence and is never interpreted by the
composer. :data:`tutor.safety.SAFETY_GUARDRAIL` is always the last block.
"""

from __future__ import annotations

from tutor.models import ConversationMode, TemplatePreset
from tutor.safety import SAFETY_GUARDRAIL

IDENTITY = "Ты — StudentHelper, помощник для школьников."

RUSSIAN_LANGUAGE = "Отвечай на русском языке."

OCR_CAVEAT = (
    "Если задача получена с изображения через OCR, учитывай возможные неточности "
    "распознавания и при сомнениях уточняй условие у ученика."
)

DEFAULT_INSTRUCTIONS = (
    "Ты помогаешь ученикам 5–11 классов разобраться со школьными заданиями. "
    "Решай задачи пошагово и объясняй каждый шаг понятным языком. "
    f"{RUSSIAN_LANGUAGE} {OCR_CAVEAT}"
)

TONES = {
    "friendly": "Тон общения дружелюбный и тёплый: поддерживай ученика.",
    "formal": "Используй формальный, академический стиль общения.",
    "motivating": "Используй мотивирующий тон: хвали за усилия и подбадривай ученика.",
    "neutral": "Сохраняй нейтральный, спокойный тон.",
}

KNOWLEDGE_LEVELS = {
    "basic": "Объясняй простым языком, избегай сложных терминов.",
    "intermediate": "Поддерживай умеренную сложность объяснений, вводи термины с пояснениями.",
    "advanced": "Можешь использовать продвинутую терминологию и более строгие рассуждения.",
}

OUTPUT_FORMATS = {
    "full": "Давай полные развёрнутые объяснения с выводом ответа.",
    "concise": "Давай краткие ответы без лишних деталей.",
    "step-by-step": "Давай пошаговые решения, нумеруя каждый шаг.",
}

RESPONSE_LENGTHS = {
    "short": "Ответы должны быть короткими.",
    "medium": "Ответы должны быть средней длины.",
    "long": "Давай подробные, развёрнутые ответы.",
}

MODES = {
    ConversationMode.FAST: "Режим: быстрый ответ. Сразу дай решение и итоговый ответ.",
    ConversationMode.LEARNING: (
        "Режим: обучение. Помоги ученику понять, как решать такие задачи: "
        "наводи на решение вопросами и объясняй метод, а не только ответ."
    ),
}


def _render(value: str, known: dict[str, str], label: str) -> str:
    phrase = known.get(value)
    if phrase is not None:
        return phrase
    return f"{label}: {value}."


def _language(language: str) -> str:
    if language == "ru":
        return RUSSIAN_LANGUAGE
    return f"Отвечай на языке: {language}."


def build_system_prompt(
    mode: ConversationMode | str,
    template: TemplatePreset | None = None,
) -> str:
    """Render the system prompt for ``mode`` and an optional template preset."""
    mode = ConversationMode(mode)
    parts = [IDENTITY]

    if template is None:
        parts.append(DEFAULT_INSTRUCTIONS)
        parts.append(SAFETY_GUARDRAIL)
        return "\n\n".join(parts)

    parts.append(_render(template.tone, TONES, "Тон общения"))
    parts.append(_render(template.knowledge_level, KNOWLEDGE_LEVELS, "Уровень знаний ученика"))
    parts.append(_render(template.output_format, OUTPUT_FORMATS, "Формат ответа"))
    parts.append(_render(template.response_length, RESPONSE_LENGTHS, "Длина ответа"))
    parts.append(_language(template.output_language))
    parts.append(OCR_CAVEAT)
    parts.append(MODES[mode])
    parts.append(SAFETY_GUARDRAIL)
    return "\n\n".join(parts)
