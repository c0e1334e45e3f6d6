"""Typed shapes for model replies and the permissive validator that picks one.

The model is asked for one of three JSON shapes. ``validate_payload`` decides
which shape a parsed reply looks like and validates it strictly; when strict
validation fails the raw object is kept and wrapped in ``Unvalidated`` so
callers have to branch on it explicitly.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union


class SchemaMismatch(ValueError):
    """Payload does not satisfy the selected response shape."""

    def __init__(self, schema: str, reason: str):
        super().__init__(f"{schema}: {reason}")
        self.schema = schema
        self.reason = reason


@dataclass(frozen=True)
class TextResponse:
    text: str
    language_of_response: Optional[str] = None
    arithmetical_value: Optional[float] = None

    schema_name = "text_response"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GeneratedQuestion:
    question: str


@dataclass(frozen=True)
class TextWithQuestionsResponse:
    text: str
    language_code: str
    questions: List[GeneratedQuestion] = field(default_factory=list)

    schema_name = "text_with_questions"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AnswerVerificationResponse:
    correct: bool
    feedback: str

    schema_name = "answer_verification"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ParsedShape = Union[TextResponse, TextWithQuestionsResponse, AnswerVerificationResponse]


@dataclass(frozen=True)
class Validated:
    """Reply that matched one of the known shapes."""
    value: ParsedShape

    is_validated = True


@dataclass(frozen=True)
class Unvalidated:
    """Reply that parsed as JSON but failed strict validation."""
    payload: Any
    error: Optional[str] = None

    is_validated = False


ParsedResponse = Union[Validated, Unvalidated]


def _require_str(obj: Dict[str, Any], key: str, schema: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise SchemaMismatch(schema, f"'{key}' must be a string")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_text_response(raw: Any) -> TextResponse:
    schema = TextResponse.schema_name
    if not isinstance(raw, dict):
        raise SchemaMismatch(schema, "expected an object")
    text = _require_str(raw, "text", schema)
    language = raw.get("language_of_response")
    if language is not None and not isinstance(language, str):
        raise SchemaMismatch(schema, "'language_of_response' must be a string or null")
    value = raw.get("arithmetical_value")
    if value is not None and not _is_number(value):
        raise SchemaMismatch(schema, "'arithmetical_value' must be a number or null")
    return TextResponse(text=text, language_of_response=language, arithmetical_value=value)


def parse_text_with_questions(raw: Any) -> TextWithQuestionsResponse:
    schema = TextWithQuestionsResponse.schema_name
    if not isinstance(raw, dict):
        raise SchemaMismatch(schema, "expected an object")
    text = _require_str(raw, "text", schema)
    language_code = _require_str(raw, "language_code", schema)
    items = raw.get("questions")
    if not isinstance(items, list):
        raise SchemaMismatch(schema, "'questions' must be an array")
    questions = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not isinstance(item.get("question"), str):
            raise SchemaMismatch(schema, f"questions[{index}] must be an object with a string 'question'")
        questions.append(GeneratedQuestion(question=item["question"]))
    return TextWithQuestionsResponse(text=text, language_code=language_code, questions=questions)


def parse_answer_verification(raw: Any) -> AnswerVerificationResponse:
    schema = AnswerVerificationResponse.schema_name
    if not isinstance(raw, dict):
        raise SchemaMismatch(schema, "expected an object")
    correct = raw.get("correct")
    if not isinstance(correct, bool):
        raise SchemaMismatch(schema, "'correct' must be a boolean")
    feedback = _require_str(raw, "feedback", schema)
    return AnswerVerificationResponse(correct=correct, feedback=feedback)


def select_parser(raw: Any):
    """Pick the shape a payload most likely has, by its structural markers."""
    if isinstance(raw, dict):
        if isinstance(raw.get("questions"), list):
            return parse_text_with_questions
        if isinstance(raw.get("correct"), bool) and "feedback" in raw:
            return parse_answer_verification
    return parse_text_response


def validate_payload(raw: Any) -> ParsedResponse:
    """Validate against the selected shape, keeping the raw object on mismatch."""
    parser = select_parser(raw)
    try:
        return Validated(parser(raw))
    except SchemaMismatch as exc:
        return Unvalidated(payload=raw, error=str(exc))


# JSON-schema response_format descriptors sent with chat-completion requests.

TEXT_RESPONSE_FORMAT = {
    "type": "json_schema",
    "json_schema": {
        "name": TextResponse.schema_name,
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The generated text response"},
                "language_of_response": {"type": ["string", "null"]},
                "arithmetical_value": {"type": ["number", "null"]},
            },
            "required": ["text", "language_of_response", "arithmetical_value"],
            "additionalProperties": False,
        },
    },
}

TEXT_WITH_QUESTIONS_FORMAT = {
    "type": "json_schema",
    "json_schema": {
        "name": TextWithQuestionsResponse.schema_name,
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The generated text response"},
                "language_code": {"type": "string", "description": "The language of the generated text"},
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {"question": {"type": "string"}},
                        "required": ["question"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["text", "language_code", "questions"],
            "additionalProperties": False,
        },
    },
}

ANSWER_VERIFICATION_FORMAT = {
    "type": "json_schema",
    "json_schema": {
        "name": AnswerVerificationResponse.schema_name,
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "correct": {"type": "boolean"},
                "feedback": {"type": "string"},
            },
            "required": ["correct", "feedback"],
            "additionalProperties": False,
        },
    },
}
