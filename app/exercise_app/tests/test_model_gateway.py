import json
from unittest import mock

import pytest
import requests
from flask import Flask

from services import model_gateway
from services.model_gateway import (
    InvalidArgument,
    MalformedUpstreamResponse,
    ModelGatewayClient,
    NotInitialized,
    UpstreamError,
    create_answer_verification_gateway,
    gateway_from_config,
)
from services.response_schemas import (
    ANSWER_VERIFICATION_FORMAT,
    AnswerVerificationResponse,
    TextResponse,
    Unvalidated,
)


class _Resp:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


def _completion(content):
    return _Resp(200, {"id": "gen-1", "choices": [{"message": {"role": "assistant", "content": content}}]})


@pytest.fixture(autouse=True)
def app_context():
    app = Flask(__name__)
    with app.app_context():
        yield


@pytest.fixture
def sleeps(monkeypatch):
    waits = []
    monkeypatch.setattr(model_gateway, "time", mock.Mock(sleep=lambda seconds: waits.append(seconds)))
    return waits


def _client(**kwargs):
    kwargs.setdefault("api_key", "test-key")
    kwargs.setdefault("api_endpoint", "https://gateway.test/v1/chat/completions")
    return ModelGatewayClient(**kwargs)


def test_payload_merges_defaults_with_per_call_params():
    client = _client(response_format=ANSWER_VERIFICATION_FORMAT, system_message="default system")
    payload = client.build_payload("What is it?", "You are a teacher", {"temperature": 0.1, "top_p": 0.5})

    assert payload["messages"] == [
        {"role": "system", "content": "You are a teacher"},
        {"role": "user", "content": "What is it?"},
    ]
    assert payload["model"] == "openai/gpt-4o-mini"
    assert payload["response_format"] == ANSWER_VERIFICATION_FORMAT
    assert payload["temperature"] == 0.1
    assert payload["top_p"] == 0.5
    assert payload["max_tokens"] == 400

    assert client.build_payload("Hi")["messages"][0]["content"] == "default system"


def test_blank_message_is_rejected_before_any_call():
    client = _client()
    with mock.patch("services.model_gateway.requests.post") as post:
        with pytest.raises(InvalidArgument):
            client.send_message("   ")
    post.assert_not_called()


def test_missing_api_key_is_not_initialized():
    client = ModelGatewayClient(api_key="")
    with mock.patch("services.model_gateway.requests.post") as post:
        with pytest.raises(NotInitialized):
            client.send_message("hello")
    post.assert_not_called()


def test_retries_server_errors_then_succeeds(sleeps):
    responses = [
        _Resp(500, {"error": {"message": "upstream down"}}),
        _Resp(500, None),
        _completion(json.dumps({"correct": True, "feedback": "Well done"})),
    ]
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        return responses[len(calls) - 1]

    client = _client(timeout=12)
    with mock.patch("services.model_gateway.requests.post", side_effect=fake_post):
        result = client.send_message("Grade this")

    assert len(calls) == 3
    assert sleeps == [2, 4]
    assert calls[0]["headers"]["Authorization"] == "Bearer test-key"
    assert calls[0]["timeout"] == 12
    assert result.is_validated
    assert result.value == AnswerVerificationResponse(correct=True, feedback="Well done")


@pytest.mark.parametrize("status", [400, 401])
def test_bad_request_and_bad_credentials_are_not_retried(sleeps, status):
    client = _client()
    with mock.patch(
        "services.model_gateway.requests.post",
        return_value=_Resp(status, {"error": {"message": "No auth credentials found"}}),
    ) as post:
        with pytest.raises(UpstreamError) as excinfo:
            client.send_message("Grade this")

    assert post.call_count == 1
    assert sleeps == []
    assert excinfo.value.status == status
    assert str(excinfo.value) == "No auth credentials found"
    assert excinfo.value.body == {"error": {"message": "No auth credentials found"}}


def test_exhausted_retries_raise_last_error(sleeps):
    client = _client(retry_limit=3)
    with mock.patch(
        "services.model_gateway.requests.post",
        side_effect=[_Resp(503, None), _Resp(502, None), _Resp(429, {"message": "slow down"})],
    ) as post:
        with pytest.raises(UpstreamError) as excinfo:
            client.send_message("Grade this")

    assert post.call_count == 3
    assert sleeps == [2, 4]
    assert excinfo.value.status == 429
    assert str(excinfo.value) == "slow down"


def test_timeouts_are_retried_and_wrapped(sleeps):
    client = _client(retry_limit=2)
    with mock.patch(
        "services.model_gateway.requests.post",
        side_effect=requests.exceptions.Timeout("read timed out"),
    ) as post:
        with pytest.raises(UpstreamError) as excinfo:
            client.send_message("Grade this")

    assert post.call_count == 2
    assert sleeps == [2]
    assert excinfo.value.status is None
    assert isinstance(excinfo.value.__cause__, requests.exceptions.Timeout)


@pytest.mark.parametrize("payload", [
    {"choices": []},
    {"choices": [{"message": {}}]},
    {"choices": [{"message": {"content": ""}}]},
    {"result": "no choices"},
])
def test_unusable_success_payload_is_malformed_and_not_retried(sleeps, payload):
    client = _client()
    with mock.patch("services.model_gateway.requests.post", return_value=_Resp(200, payload)) as post:
        with pytest.raises(MalformedUpstreamResponse):
            client.send_message("Grade this")
    assert post.call_count == 1
    assert sleeps == []


def test_plain_text_content_is_wrapped_as_text_response():
    client = _client()
    with mock.patch("services.model_gateway.requests.post", return_value=_completion("Just prose.")):
        result = client.send_message("Say something")
    assert result.value == TextResponse(text="Just prose.", language_of_response="en")


def test_fenced_json_content_is_parsed():
    client = _client()
    content = "```json\n{\"correct\": false, \"feedback\": \"Try again\"}\n```"
    with mock.patch("services.model_gateway.requests.post", return_value=_completion(content)):
        result = client.send_message("Grade this")
    assert result.value == AnswerVerificationResponse(correct=False, feedback="Try again")


def test_broken_json_falls_back_to_plain_text():
    client = _client()
    with mock.patch("services.model_gateway.requests.post", return_value=_completion("{not json")):
        result = client.send_message("Grade this")
    assert result.value == TextResponse(text="{not json", language_of_response="en")


def test_schema_mismatch_is_passed_through_unvalidated():
    client = _client()
    content = json.dumps({"questions": "none", "score": 3})
    with mock.patch("services.model_gateway.requests.post", return_value=_completion(content)):
        result = client.send_message("Grade this")
    assert isinstance(result, Unvalidated)
    assert result.payload == {"questions": "none", "score": 3}


def test_structured_object_content_is_returned_directly():
    client = _client()
    with mock.patch(
        "services.model_gateway.requests.post",
        return_value=_completion({"correct": True, "feedback": "Great"}),
    ):
        result = client.send_message("Grade this")
    assert result.value == AnswerVerificationResponse(correct=True, feedback="Great")


def test_gateway_from_config_reads_flask_settings():
    cfg = {
        "OPENROUTER_API_KEY": "cfg-key",
        "OPENROUTER_API_ENDPOINT": "https://example.test/chat",
        "OPENROUTER_MODEL": "some/model",
        "OPENROUTER_RETRY_LIMIT": 5,
        "OPENROUTER_TIMEOUT_SECONDS": 9,
    }
    client = gateway_from_config(cfg)
    assert client.is_configured
    assert (client.api_key, client.api_endpoint, client.model) == ("cfg-key", "https://example.test/chat", "some/model")
    assert client.retry_limit == 5
    assert client.timeout == 9

    verifier = create_answer_verification_gateway(cfg)
    assert verifier.response_format == ANSWER_VERIFICATION_FORMAT
    assert verifier.default_params["temperature"] == 0.2
