"""Generate a reading text plus comprehension questions through the model gateway."""
from __future__ import annotations

from typing import Optional

from flask import current_app

from models import Language, ProficiencyLevel
from .model_gateway import ModelGatewayClient, create_text_with_questions_gateway
from .prompt_templates import PROMPT_TEMPLATES, build_generation_prompt
from .response_schemas import TextWithQuestionsResponse, parse_text_with_questions


class ExerciseGenerationError(RuntimeError):
    """The model did not produce a usable text with questions."""


def count_words(text: str) -> int:
    return len([part for part in (text or "").split() if part])


def generate_exercise(
    topic: str,
    language: Language,
    level: ProficiencyLevel,
    client: Optional[ModelGatewayClient] = None,
) -> TextWithQuestionsResponse:
    """Ask the model for a text about ``topic`` with 4-5 questions.

    Args:
        topic: Free-text topic chosen by the learner
        language: Target language row
        level: Proficiency level row
        client: Optional gateway (a text-with-questions client is built from config otherwise)

    Returns:
        The validated text with at least one question

    Raises:
        ExerciseGenerationError: when the reply is not a text with questions
        ModelGatewayError: when the gateway call itself fails
    """
    client = client or create_text_with_questions_gateway()

    prompt = build_generation_prompt(
        topic,
        language.name,
        language.code,
        level.name,
        level.description or "",
    )
    reply = client.send_message(prompt, PROMPT_TEMPLATES["EXERCISE_GENERATOR"])

    if reply.is_validated and isinstance(reply.value, TextWithQuestionsResponse):
        generated = reply.value
    else:
        # Unvalidated replies get one strict pass so the error names the broken field.
        raw = reply.value.to_dict() if reply.is_validated else reply.payload
        try:
            generated = parse_text_with_questions(raw)
        except ValueError as exc:
            current_app.logger.error(f"Exercise generation failed for topic: {topic} - invalid response format: {exc}")
            raise ExerciseGenerationError(f"Invalid response format: {exc}") from exc

    questions = [q for q in generated.questions if q.question.strip()]
    if not generated.text.strip() or not questions:
        current_app.logger.error(f"Exercise generation failed for topic: {topic} - empty text or no questions")
        raise ExerciseGenerationError("Generated exercise has no text or no questions")

    current_app.logger.info(
        f"Exercise generation succeeded for topic: {topic} ({len(questions)} questions, {language.code}/{level.name})"
    )
    return TextWithQuestionsResponse(text=generated.text, language_code=generated.language_code, questions=questions)
