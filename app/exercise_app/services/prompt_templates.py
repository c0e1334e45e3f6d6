"""Named prompt templates with ``${name}`` placeholders."""
from __future__ import annotations

import re
from typing import Any, Mapping

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")

PROMPT_TEMPLATES = {
    "LANGUAGE_TEACHER": (
        "You are an experienced ${language} (${languageCode}) language teacher working with learners "
        "at ${proficiencyLevel} level. You evaluate student answers based on their accuracy and give "
        "helpful, encouraging feedback. Focus on meaning over perfect grammar and always answer with "
        "valid JSON that follows the requested schema."
    ),
    "EXERCISE_GENERATOR": (
        "You are a language learning content creator. Write educational, engaging reading texts "
        "appropriate for the requested proficiency level, followed by comprehension questions written "
        "in the same language as the text. Always return valid JSON that exactly follows the requested schema."
    ),
    "TRANSLATION_ASSISTANT": (
        "You are a precise translation assistant. Translate the user's message into ${language} and "
        "return the translation as JSON with the keys text and language_of_response."
    ),
}


def resolve_template(template: str, context: Mapping[str, Any]) -> str:
    """Replace every ``${key}`` found in ``context``; unknown keys stay verbatim."""

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key in context:
            return str(context[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(replacer, template)


def excerpt(passage: str, limit: int = 500) -> str:
    """First ``limit`` characters of a passage, with an ellipsis when cut."""
    passage = passage or ""
    if len(passage) > limit:
        return passage[:limit] + "..."
    return passage


def build_grading_prompt(
    passage: str,
    question: str,
    answer: str,
    language: str,
    proficiency_level: str,
    excerpt_chars: int = 500,
) -> str:
    """Prompt asking the model to judge an answer and reply with {correct, feedback}."""
    return (
        "I need to evaluate a student's answer to a language exercise question.\n\n"
        f"Text passage: \"{excerpt(passage, excerpt_chars)}\"\n\n"
        f"Question: \"{question}\"\n\n"
        f"Student's answer: \"{answer}\"\n\n"
        "Evaluate if the student's answer is correct in terms of content and meaning, "
        "even if there are minor grammatical errors.\n"
        "Respond with a JSON object containing:\n"
        "1. \"correct\": boolean indicating if the answer is generally correct (true) or incorrect (false)\n"
        f"2. \"feedback\": constructive feedback in {language} explaining what was good and what could be improved\n\n"
        f"For {proficiency_level} level, focus on whether the student understood the text "
        "and answered the question correctly."
    )


def build_generation_prompt(
    topic: str,
    language_name: str,
    language_code: str,
    level_name: str,
    level_description: str = "",
) -> str:
    """Prompt asking for a reading text plus comprehension questions."""
    level = f"{level_name} level ({level_description})" if level_description else f"{level_name} level"
    return (
        f"Generate a language learning text about \"{topic}\" in {language_name} ({language_code}) "
        f"at {level}.\n"
        "The text should be educational, engaging, and appropriate for language learners at this level.\n"
        "Include 4-5 comprehension questions about the text that would be suitable for language practice.\n"
        "Return a JSON object with keys: text (string), language_code (string) and "
        "questions (array of objects with a single key: question)."
    )
