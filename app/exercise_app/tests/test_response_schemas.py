import pytest

from services.response_schemas import (
    ANSWER_VERIFICATION_FORMAT,
    AnswerVerificationResponse,
    GeneratedQuestion,
    SchemaMismatch,
    TextResponse,
    TextWithQuestionsResponse,
    Unvalidated,
    Validated,
    parse_answer_verification,
    parse_text_with_questions,
    validate_payload,
)


def test_questions_array_selects_text_with_questions():
    result = validate_payload({
        "text": "Ala ma kota.",
        "language_code": "pl",
        "questions": [{"question": "Kto ma kota?"}, {"question": "Co ma Ala?"}],
    })
    assert isinstance(result, Validated)
    assert result.value == TextWithQuestionsResponse(
        text="Ala ma kota.",
        language_code="pl",
        questions=[GeneratedQuestion("Kto ma kota?"), GeneratedQuestion("Co ma Ala?")],
    )


def test_boolean_correct_with_feedback_selects_answer_verification():
    result = validate_payload({"correct": False, "feedback": "Almost."})
    assert result.is_validated
    assert result.value == AnswerVerificationResponse(correct=False, feedback="Almost.")


def test_plain_object_falls_back_to_text_response():
    result = validate_payload({"text": "Hola", "language_of_response": "es", "arithmetical_value": None})
    assert result.value == TextResponse(text="Hola", language_of_response="es", arithmetical_value=None)

    result = validate_payload({"text": "Five", "arithmetical_value": 5})
    assert result.value.arithmetical_value == 5
    assert result.value.language_of_response is None


def test_questions_present_but_invalid_is_passed_through_unvalidated():
    raw = {"text": "Hi", "questions": [{"question": "Why?"}]}  # language_code missing
    result = validate_payload(raw)
    assert isinstance(result, Unvalidated)
    assert result.payload is raw
    assert "language_code" in result.error


def test_non_boolean_correct_is_treated_as_text_and_kept_raw():
    raw = {"correct": "yes", "feedback": "Nice"}
    result = validate_payload(raw)
    assert not result.is_validated
    assert result.payload == raw


def test_non_object_payload_is_unvalidated():
    result = validate_payload(["a", "b"])
    assert isinstance(result, Unvalidated)
    assert result.payload == ["a", "b"]


def test_strict_parsers_raise_schema_mismatch():
    with pytest.raises(SchemaMismatch) as excinfo:
        parse_answer_verification({"correct": True})
    assert excinfo.value.schema == "answer_verification"

    with pytest.raises(SchemaMismatch):
        parse_text_with_questions({"text": "t", "language_code": "en", "questions": ["not an object"]})


def test_bool_is_not_accepted_as_arithmetical_value():
    result = validate_payload({"text": "t", "arithmetical_value": True})
    assert isinstance(result, Unvalidated)


def test_answer_verification_format_is_strict_json_schema():
    schema = ANSWER_VERIFICATION_FORMAT["json_schema"]
    assert ANSWER_VERIFICATION_FORMAT["type"] == "json_schema"
    assert schema["strict"] is True
    assert schema["schema"]["required"] == ["correct", "feedback"]
