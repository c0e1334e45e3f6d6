"""Client wrapper around an OpenRouter-compatible chat-completion API."""
from __future__ import annotations

import json
import time
from typing import Any, Dict, Mapping, Optional

import requests
from flask import current_app

from .response_schemas import (
    ANSWER_VERIFICATION_FORMAT,
    TEXT_RESPONSE_FORMAT,
    TEXT_WITH_QUESTIONS_FORMAT,
    ParsedResponse,
    TextResponse,
    Validated,
    validate_payload,
)


class ModelGatewayError(Exception):
    """Base class for model gateway failures."""


class InvalidArgument(ModelGatewayError):
    """Caller input rejected before any network call."""


class NotInitialized(ModelGatewayError):
    """Endpoint or API key missing."""


class UpstreamError(ModelGatewayError):
    """Non-2xx reply, timeout or connection failure talking to the gateway."""

    def __init__(self, status: Optional[int], message: str, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class MalformedUpstreamResponse(ModelGatewayError):
    """Successful status but the payload has no usable message content."""


class ModelGatewayClient:
    """Stateful chat-completion client with timeout and bounded retries."""

    DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
    DEFAULT_MODEL = "openai/gpt-4o-mini"
    DEFAULT_SYSTEM_MESSAGE = "You are a helpful language learning assistant."
    DEFAULT_TIMEOUT = 30
    DEFAULT_RETRY_LIMIT = 3
    DEFAULT_MODEL_PARAMS = {
        "temperature": 0.7,
        "max_tokens": 400,
        "top_p": 1,
        "frequency_penalty": 0,
    }
    NON_RETRYABLE_STATUS_CODES = {400, 401}
    DEFAULT_LANGUAGE = "en"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        model: Optional[str] = None,
        default_params: Optional[Dict[str, Any]] = None,
        system_message: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_key = api_key or ""
        self.api_endpoint = api_endpoint or self.DEFAULT_ENDPOINT
        self.model = model or self.DEFAULT_MODEL
        self.default_params = dict(self.DEFAULT_MODEL_PARAMS if default_params is None else default_params)
        self.system_message = system_message or self.DEFAULT_SYSTEM_MESSAGE
        self.response_format = response_format
        self.retry_limit = max(1, int(retry_limit))
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_endpoint)

    def send_message(
        self,
        user_text: str,
        system_text: Optional[str] = None,
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> ParsedResponse:
        """Send one system+user exchange and return the parsed reply.

        Args:
            user_text: The user message; must not be blank
            system_text: Optional system prompt overriding the client default
            extra_params: Per-call sampling parameters; they win over defaults

        Returns:
            ``Validated`` when the reply matches a known shape, else ``Unvalidated``

        Raises:
            InvalidArgument, NotInitialized, UpstreamError, MalformedUpstreamResponse
        """
        if not user_text or not user_text.strip():
            raise InvalidArgument("User message cannot be empty")

        if not self.is_configured:
            current_app.logger.error("Model gateway not configured - API key or endpoint missing")
            raise NotInitialized("Model gateway is not initialized: API key and endpoint are required")

        payload = self.build_payload(user_text, system_text, extra_params)
        data = self._perform_api_call(payload)
        return self.parse_response(data)

    def build_payload(
        self,
        user_text: str,
        system_text: Optional[str] = None,
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [
                {"role": "system", "content": system_text or self.system_message},
                {"role": "user", "content": user_text},
            ],
            "model": self.model,
        }
        if self.response_format:
            payload["response_format"] = self.response_format
        payload.update(self.default_params)
        if extra_params:
            payload.update(extra_params)
        return payload

    def _perform_api_call(self, payload: Dict[str, Any]) -> Any:
        """POST the payload, retrying everything except 400/401 with 2**n second backoff."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        attempt = 0
        last_error: Optional[ModelGatewayError] = None

        while attempt < self.retry_limit:
            try:
                response = requests.post(
                    self.api_endpoint,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
                if not 200 <= response.status_code < 300:
                    raise self._upstream_error(response)
                try:
                    return response.json()
                except ValueError as exc:
                    raise MalformedUpstreamResponse(f"Gateway returned a non-JSON body: {exc}") from exc

            except UpstreamError as exc:
                last_error = exc
                if exc.status in self.NON_RETRYABLE_STATUS_CODES:
                    current_app.logger.error("Model gateway HTTP %s (not retried): %s", exc.status, exc)
                    raise

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                last_error = UpstreamError(None, f"Model gateway timeout/connection error: {exc}")
                last_error.__cause__ = exc

            except requests.exceptions.RequestException as exc:
                last_error = UpstreamError(None, f"Model gateway request failed: {exc}")
                last_error.__cause__ = exc

            attempt += 1
            if attempt < self.retry_limit:
                wait = 2 ** attempt
                current_app.logger.warning(
                    "Model gateway call failed (%s). Retrying in %ss (attempt %s/%s).",
                    last_error,
                    wait,
                    attempt,
                    self.retry_limit,
                )
                time.sleep(wait)

        current_app.logger.error("Model gateway call failed after %s attempts: %s", self.retry_limit, last_error)
        raise last_error

    @staticmethod
    def _upstream_error(response) -> UpstreamError:
        body = None
        try:
            body = response.json()
        except ValueError:
            body = None

        message = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                message = error.get("message")
            elif isinstance(error, str):
                message = error
            message = message or body.get("message")
        return UpstreamError(
            response.status_code,
            message or f"HTTP error! status: {response.status_code}",
            body,
        )

    def parse_response(self, data: Any) -> ParsedResponse:
        """Pull ``choices[0].message.content`` out of a reply and parse it."""
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            current_app.logger.error("Invalid response structure from model gateway: %s", str(data)[:500])
            raise MalformedUpstreamResponse("Invalid response structure from model gateway")

        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if content is None or content == "":
            current_app.logger.error("Invalid message content in choice: %s", str(choice)[:500])
            raise MalformedUpstreamResponse("Invalid message content in model gateway response")

        return self.parse_content(content)

    def parse_content(self, content: Any) -> ParsedResponse:
        if isinstance(content, str):
            candidate = self._strip_code_fence(content)
            if candidate.startswith("{") or candidate.startswith("["):
                try:
                    parsed = json.loads(candidate)
                except json.JSONDecodeError as exc:
                    current_app.logger.warning("Failed to parse reply as JSON at position %s: %s", exc.pos, exc.msg)
                else:
                    result = validate_payload(parsed)
                    if not result.is_validated:
                        current_app.logger.warning("Reply failed schema validation, passing through: %s", result.error)
                    return result
            return Validated(TextResponse(text=content, language_of_response=self.DEFAULT_LANGUAGE))

        if isinstance(content, (dict, list)):
            return validate_payload(content)

        raise MalformedUpstreamResponse(
            f"Unable to extract expected response format from content of type {type(content).__name__}"
        )

    @staticmethod
    def _strip_code_fence(text: str) -> str:
        """Remove a surrounding markdown fence (```json ... ```) if present."""
        text = text.strip()
        if text.startswith("```"):
            parts = text.split("```")
            if len(parts) >= 3:
                text = parts[1]
                if text.startswith("json"):
                    text = text[4:]
                text = text.strip()
        return text


def gateway_from_config(
    config: Optional[Mapping[str, Any]] = None,
    response_format: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> ModelGatewayClient:
    """Build a client from Flask config values (``current_app.config`` by default)."""
    if config is None:
        config = current_app.config
    settings = {
        "api_key": config.get("OPENROUTER_API_KEY"),
        "api_endpoint": config.get("OPENROUTER_API_ENDPOINT"),
        "model": config.get("OPENROUTER_MODEL"),
        "retry_limit": config.get("OPENROUTER_RETRY_LIMIT", ModelGatewayClient.DEFAULT_RETRY_LIMIT),
        "timeout": config.get("OPENROUTER_TIMEOUT_SECONDS", ModelGatewayClient.DEFAULT_TIMEOUT),
        "response_format": response_format,
    }
    settings.update(overrides)
    return ModelGatewayClient(**settings)


def create_text_gateway(config: Optional[Mapping[str, Any]] = None, **overrides: Any) -> ModelGatewayClient:
    return gateway_from_config(config, TEXT_RESPONSE_FORMAT, **overrides)


def create_text_with_questions_gateway(
    config: Optional[Mapping[str, Any]] = None, **overrides: Any
) -> ModelGatewayClient:
    overrides.setdefault("default_params", {"temperature": 0.7, "max_tokens": 1200, "top_p": 1})
    return gateway_from_config(config, TEXT_WITH_QUESTIONS_FORMAT, **overrides)


def create_answer_verification_gateway(
    config: Optional[Mapping[str, Any]] = None, **overrides: Any
) -> ModelGatewayClient:
    # Low temperature keeps grading consistent.
    overrides.setdefault("default_params", {"temperature": 0.2, "max_tokens": 250})
    return gateway_from_config(config, ANSWER_VERIFICATION_FORMAT, **overrides)
