"""Grade free-text answers with the model gateway, falling back to keyword overlap."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from flask import current_app

from .model_gateway import ModelGatewayClient
from .prompt_templates import PROMPT_TEMPLATES, build_grading_prompt, resolve_template
from .response_schemas import AnswerVerificationResponse, ParsedResponse

DEFAULT_FAILURE_FEEDBACK = "Sorry, we could not evaluate your answer at this time. Please try again later."
HEURISTIC_CORRECT_FEEDBACK = (
    "Good job! Your answer mentions the key points of the text. Keep practicing to make it even more precise."
)
HEURISTIC_INCORRECT_FEEDBACK = (
    "Your answer seems to miss some key information from the text. "
    "Read the passage again and try to include more details from it."
)

_WORD_RE = re.compile(r"[^\W\d_]+", re.UNICODE)

STOPWORDS = frozenset({
    # English
    "about", "above", "after", "again", "also", "because", "been", "before", "being", "below",
    "between", "both", "could", "does", "doing", "down", "during", "each", "from", "further",
    "have", "having", "here", "into", "just", "more", "most", "only", "other", "over", "same",
    "should", "some", "such", "than", "that", "their", "theirs", "them", "then", "there",
    "these", "they", "this", "those", "through", "under", "until", "very", "were", "what",
    "when", "where", "which", "while", "whom", "will", "with", "would", "your", "yours",
    # Spanish
    "como", "esta", "este", "para", "pero", "porque", "sobre", "también", "tiene", "todo",
    # German
    "aber", "auch", "dass", "eine", "einen", "einer", "nicht", "oder", "sind", "wird",
    # Polish
    "jest", "oraz", "przez", "tego", "który", "która", "które", "bardzo", "jego", "jako",
})


@dataclass(frozen=True)
class QuestionContext:
    """Everything the grading prompt needs about one question."""
    question_id: str
    question: str
    passage: str
    language: str = "English"
    language_code: str = "en"
    proficiency_level: str = "A1"


@dataclass(frozen=True)
class EvaluationResult:
    is_correct: bool
    feedback: str
    source: str = "model"  # model | heuristic | default


def content_words(text: str) -> List[str]:
    """Lowercased words longer than three letters that are not stopwords, in order, deduplicated."""
    seen = []
    for word in _WORD_RE.findall((text or "").lower()):
        if len(word) > 3 and word not in STOPWORDS and word not in seen:
            seen.append(word)
    return seen


def candidate_keywords(passage: str, question: str, min_keywords: int = 5) -> List[str]:
    """Passage words shared with the question, padded from the passage up to ``min_keywords``."""
    passage_words = content_words(passage)
    question_words = set(content_words(question))
    candidates = [word for word in passage_words if word in question_words]
    for word in passage_words:
        if len(candidates) >= min_keywords:
            break
        if word not in candidates:
            candidates.append(word)
    return candidates


def heuristic_grade(
    passage: str,
    question: str,
    answer: str,
    keyword_divisor: int = 3,
    min_keywords: int = 5,
) -> EvaluationResult:
    """Mark correct when the answer mentions at least ceil(candidates / divisor) keywords."""
    candidates = candidate_keywords(passage, question, min_keywords)
    answer_lower = (answer or "").lower()
    found = sum(1 for keyword in candidates if keyword in answer_lower)
    required = math.ceil(len(candidates) / max(1, keyword_divisor))
    is_correct = found >= required
    feedback = HEURISTIC_CORRECT_FEEDBACK if is_correct else HEURISTIC_INCORRECT_FEEDBACK
    return EvaluationResult(is_correct=is_correct, feedback=feedback, source="heuristic")


class FeedbackEvaluator:
    """Evaluate an answer for a stored question; never raises."""

    def __init__(
        self,
        gateway: Optional[ModelGatewayClient],
        context_loader: Optional[Callable[[str], Optional[QuestionContext]]] = None,
        keyword_divisor: int = 3,
        min_keywords: int = 5,
        excerpt_chars: int = 500,
    ):
        self.gateway = gateway
        self._context_loader = context_loader
        self.keyword_divisor = keyword_divisor
        self.min_keywords = min_keywords
        self.excerpt_chars = excerpt_chars

    @property
    def context_loader(self) -> Callable[[str], Optional[QuestionContext]]:
        if self._context_loader is None:
            from utils import load_question_context  # Import here to avoid circular dependency
            self._context_loader = load_question_context
        return self._context_loader

    def evaluate(self, question_id: str, answer: str) -> EvaluationResult:
        try:
            return self._evaluate(question_id, answer)
        except Exception as exc:
            current_app.logger.error(f"Unexpected error while evaluating question {question_id}: {exc}")
            return EvaluationResult(False, DEFAULT_FAILURE_FEEDBACK, source="default")

    def _evaluate(self, question_id: str, answer: str) -> EvaluationResult:
        try:
            context = self.context_loader(question_id)
        except Exception as exc:
            current_app.logger.error(f"Failed to load grading context for question {question_id}: {exc}")
            context = None
        if context is None:
            return EvaluationResult(False, DEFAULT_FAILURE_FEEDBACK, source="default")

        system_prompt = resolve_template(
            PROMPT_TEMPLATES["LANGUAGE_TEACHER"],
            {
                "language": context.language,
                "languageCode": context.language_code,
                "proficiencyLevel": context.proficiency_level,
            },
        )
        prompt = build_grading_prompt(
            context.passage,
            context.question,
            answer,
            context.language,
            context.proficiency_level,
            excerpt_chars=self.excerpt_chars,
        )

        try:
            if self.gateway is None:
                raise RuntimeError("no model gateway configured")
            reply = self.gateway.send_message(prompt, system_prompt)
            result = self._result_from_reply(reply)
        except Exception as exc:
            current_app.logger.warning(
                f"Model grading failed for question {question_id}, using keyword heuristic: {exc}"
            )
            return heuristic_grade(
                context.passage,
                context.question,
                answer,
                keyword_divisor=self.keyword_divisor,
                min_keywords=self.min_keywords,
            )

        current_app.logger.info(f"Graded answer for question {question_id}: correct={result.is_correct}")
        return result

    @staticmethod
    def _result_from_reply(reply: ParsedResponse) -> EvaluationResult:
        if reply.is_validated:
            value = reply.value
            if isinstance(value, AnswerVerificationResponse):
                return EvaluationResult(value.correct, value.feedback)
            raise ValueError(f"unexpected reply shape: {type(value).__name__}")

        payload = reply.payload
        if isinstance(payload, dict) and "correct" in payload:
            correct = payload.get("correct")
            if isinstance(correct, str):
                correct = correct.strip().lower() == "true"
            return EvaluationResult(bool(correct), str(payload.get("feedback") or ""))
        raise ValueError("reply has no 'correct' field")
