"""HTTP client the exercise chat uses to load exercises and submit answers."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

FETCH_ERROR_MESSAGES = {
    404: "Exercise not found",
    401: "You need to be logged in to access this exercise",
    403: "You do not have permission to access this exercise",
}

SUBMIT_ERROR_MESSAGES = {
    401: "You need to be logged in to submit answers",
    403: "You do not have permission to answer this question",
    404: "Question not found",
}


class ExerciseApiError(Exception):
    """Request to the exercise API failed; ``status`` is None for network errors."""

    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class ExerciseApiClient:
    """Thin wrapper over ``GET /exercises/<id>`` and ``POST /questions/<id>/responses``."""

    DEFAULT_TIMEOUT = 30

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_exercise(self, text_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"/exercises/{text_id}", FETCH_ERROR_MESSAGES, "Failed to fetch exercise data")
        return self._json(response)

    def submit_response(self, question_id: str, response_text: str, response_time: int) -> Dict[str, Any]:
        response = self._request(
            "POST",
            f"/questions/{question_id}/responses",
            SUBMIT_ERROR_MESSAGES,
            "Failed to submit answer",
            json={"response_text": response_text, "response_time": response_time},
        )
        return self._json(response)

    def _request(self, method: str, path: str, messages: Dict[int, str], fallback: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ExerciseApiError(None, f"{fallback}: network error") from exc

        if not 200 <= response.status_code < 300:
            message = messages.get(response.status_code) or f"{fallback}: {response.reason or response.status_code}"
            logger.warning("%s %s returned %s", method, url, response.status_code)
            raise ExerciseApiError(response.status_code, message)
        return response

    @staticmethod
    def _json(response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ExerciseApiError(response.status_code, "Server returned an invalid response") from exc
        if not isinstance(data, dict):
            raise ExerciseApiError(response.status_code, "Server returned an invalid response")
        return data
