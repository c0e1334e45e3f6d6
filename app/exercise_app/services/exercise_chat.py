"""Conversational state machine for answering an exercise's questions.

The chat shows one question at a time. A correct answer advances to the next
question after a short pause; an incorrect one asks the same question again.
All transitions go through ``reduce(state, event)``; the controller only
performs I/O and schedules the delayed advance/repeat events on a timer.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from .exercise_api import ExerciseApiError

logger = logging.getLogger(__name__)

COMPLETION_QUESTION_ID = "completion"
COMPLETION_TEXT = "Congratulations! You have completed all questions for this exercise."
DEFAULT_FEEDBACK_TEXT = "Thank you for your answer."
INVALID_REPLY_TEXT = "Server returned an invalid response"
FEEDBACK_DELAY_MS = 2000


class ChatStatus(Enum):
    LOADING_INITIAL = "loading-initial"
    AWAITING_ANSWER = "awaiting-answer"
    SUBMITTING = "submitting"
    SHOWING_FEEDBACK = "showing-feedback"
    COMPLETED = "completed"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Transcript messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AIQuestionMessage:
    id: str
    timestamp: str
    text: str
    question_id: str
    type: str = field(default="ai_question", init=False)
    sender: str = field(default="ai", init=False)

    @property
    def is_completion(self) -> bool:
        return self.question_id == COMPLETION_QUESTION_ID


@dataclass(frozen=True)
class UserAnswerMessage:
    id: str
    timestamp: str
    text: str
    question_id: str
    response_time_ms: int
    type: str = field(default="user_answer", init=False)
    sender: str = field(default="user", init=False)


@dataclass(frozen=True)
class FeedbackResultMessage:
    id: str
    timestamp: str
    question_id: str
    original_answer_text: str
    is_correct: bool
    feedback_text: str
    user_response_id: str
    type: str = field(default="feedback_result", init=False)
    sender: str = field(default="ai", init=False)


@dataclass(frozen=True)
class LoadingAIMessage:
    id: str
    timestamp: str
    type: str = field(default="loading_ai", init=False)
    sender: str = field(default="ai", init=False)


ChatMessage = Union[AIQuestionMessage, UserAnswerMessage, FeedbackResultMessage, LoadingAIMessage]


@dataclass(frozen=True)
class ExerciseQuestion:
    id: str
    content: str


# ---------------------------------------------------------------------------
# State and events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatState:
    status: ChatStatus = ChatStatus.LOADING_INITIAL
    text: Optional[Dict[str, Any]] = None
    questions: Tuple[ExerciseQuestion, ...] = ()
    current_index: int = -1
    transcript: Tuple[ChatMessage, ...] = ()
    is_loading_submission: bool = False
    error: Optional[str] = None
    last_correct: Optional[bool] = None
    question_started_at: Optional[float] = None
    attempts: int = 0
    max_attempts: Optional[int] = None
    pending_reply: Optional[LoadingAIMessage] = None

    @property
    def current_question(self) -> Optional[ExerciseQuestion]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def is_last_question(self) -> bool:
        return self.current_index >= 0 and self.current_index == len(self.questions) - 1

    @property
    def is_complete(self) -> bool:
        last = self.transcript[-1] if self.transcript else None
        return isinstance(last, AIQuestionMessage) and last.is_completion

    @property
    def is_initial_load_error(self) -> bool:
        return self.status is ChatStatus.ERROR and not self.questions

    @property
    def accepts_answer(self) -> bool:
        """Input is enabled: a question is active and nothing is in flight."""
        if self.is_loading_submission or self.current_question is None or self.is_complete:
            return False
        if self.status is ChatStatus.AWAITING_ANSWER:
            return True
        # A failed submission leaves the question active so the learner can retry.
        return self.status is ChatStatus.ERROR and self.question_started_at is not None

    @property
    def input_visible(self) -> bool:
        return not self.is_complete

    @property
    def visible_messages(self) -> Tuple[ChatMessage, ...]:
        """Transcript plus the typing indicator while a grade is awaited."""
        if self.pending_reply is not None:
            return self.transcript + (self.pending_reply,)
        return self.transcript


@dataclass(frozen=True)
class ExerciseLoaded:
    text: Dict[str, Any]
    questions: Tuple[ExerciseQuestion, ...]
    now_ms: float
    message_id: str
    timestamp: str


@dataclass(frozen=True)
class LoadFailed:
    message: str


@dataclass(frozen=True)
class RetryLoad:
    pass


@dataclass(frozen=True)
class AnswerSubmitted:
    answer_text: str
    now_ms: float
    message_id: str
    timestamp: str


@dataclass(frozen=True)
class GradeReceived:
    response: Dict[str, Any]
    timestamp: str


@dataclass(frozen=True)
class SubmissionFailed:
    message: str


@dataclass(frozen=True)
class AdvanceDue:
    now_ms: float
    message_id: str
    timestamp: str


@dataclass(frozen=True)
class RepeatDue:
    now_ms: float
    message_id: str
    timestamp: str


ChatEvent = Union[
    ExerciseLoaded, LoadFailed, RetryLoad, AnswerSubmitted,
    GradeReceived, SubmissionFailed, AdvanceDue, RepeatDue,
]


def _append(state: ChatState, message: ChatMessage) -> Tuple[ChatMessage, ...]:
    return state.transcript + (message,)


def _ask(state: ChatState, index: int, event) -> ChatState:
    question = state.questions[index]
    message = AIQuestionMessage(event.message_id, event.timestamp, question.content, question.id)
    return replace(
        state,
        status=ChatStatus.AWAITING_ANSWER,
        current_index=index,
        transcript=_append(state, message),
        error=None,
        last_correct=None,
        question_started_at=event.now_ms,
        attempts=0 if index != state.current_index else state.attempts,
    )


def _advance(state: ChatState, event) -> ChatState:
    if state.current_index < len(state.questions) - 1:
        return _ask(state, state.current_index + 1, event)
    completion = AIQuestionMessage(event.message_id, event.timestamp, COMPLETION_TEXT, COMPLETION_QUESTION_ID)
    return replace(
        state,
        status=ChatStatus.COMPLETED,
        transcript=_append(state, completion),
        error=None,
        question_started_at=None,
    )


def reduce(state: ChatState, event: ChatEvent) -> ChatState:
    """Apply one event; events that are not valid in the current state are ignored."""
    if state.status is ChatStatus.COMPLETED:
        return state

    if isinstance(event, ExerciseLoaded):
        if state.status is not ChatStatus.LOADING_INITIAL:
            return state
        if not event.questions:
            return replace(state, status=ChatStatus.ERROR, error="The exercise has no questions.")
        loaded = replace(state, text=event.text, questions=tuple(event.questions), transcript=())
        return _ask(loaded, 0, event)

    if isinstance(event, LoadFailed):
        if state.status is not ChatStatus.LOADING_INITIAL:
            return state
        return replace(state, status=ChatStatus.ERROR, error=event.message)

    if isinstance(event, RetryLoad):
        if not state.is_initial_load_error:
            return state
        return replace(state, status=ChatStatus.LOADING_INITIAL, error=None)

    if isinstance(event, AnswerSubmitted):
        question = state.current_question
        if not state.accepts_answer or not event.answer_text.strip():
            return state
        response_time = max(1, int(event.now_ms - state.question_started_at))
        message = UserAnswerMessage(event.message_id, event.timestamp, event.answer_text, question.id, response_time)
        return replace(
            state,
            status=ChatStatus.SUBMITTING,
            transcript=_append(state, message),
            is_loading_submission=True,
            error=None,
            pending_reply=LoadingAIMessage(f"{event.message_id}-reply", event.timestamp),
        )

    if isinstance(event, GradeReceived):
        if state.status is not ChatStatus.SUBMITTING:
            return state
        response = event.response
        if not isinstance(response, dict):
            return replace(
                state,
                status=ChatStatus.ERROR,
                error=INVALID_REPLY_TEXT,
                is_loading_submission=False,
                pending_reply=None,
            )
        is_correct = bool(response.get("is_correct"))
        message = FeedbackResultMessage(
            id=str(response.get("id") or uuid4()),
            timestamp=event.timestamp,
            question_id=str(response.get("question_id") or state.current_question.id),
            original_answer_text=response.get("response_text") or "",
            is_correct=is_correct,
            feedback_text=response.get("feedback") or DEFAULT_FEEDBACK_TEXT,
            user_response_id=str(response.get("id") or ""),
        )
        return replace(
            state,
            status=ChatStatus.SHOWING_FEEDBACK,
            transcript=_append(state, message),
            is_loading_submission=False,
            pending_reply=None,
            last_correct=is_correct,
            question_started_at=None,
            attempts=state.attempts + 1,
        )

    if isinstance(event, SubmissionFailed):
        if state.status is not ChatStatus.SUBMITTING:
            return state
        return replace(
            state,
            status=ChatStatus.ERROR,
            error=event.message,
            is_loading_submission=False,
            pending_reply=None,
        )

    if isinstance(event, AdvanceDue):
        if state.status is not ChatStatus.SHOWING_FEEDBACK or state.last_correct is not True:
            return state
        return _advance(state, event)

    if isinstance(event, RepeatDue):
        if state.status is not ChatStatus.SHOWING_FEEDBACK or state.last_correct is not False:
            return state
        if state.max_attempts is not None and state.attempts >= state.max_attempts:
            return _advance(state, event)
        return _ask(state, state.current_index, event)

    return state


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

class TimerHandle:
    def __init__(self, cancel: Optional[Callable[[], None]] = None):
        self._cancel = cancel
        self.cancelled = False

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            if self._cancel:
                self._cancel()


class VirtualTimer:
    """Deterministic scheduler; time only moves when ``advance`` is called."""

    def __init__(self, start_ms: float = 0):
        self._now = start_ms
        self._queue: List[Tuple[float, int, Callable[[], None], TimerHandle]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._queue, (self._now + delay_ms, next(self._counter), callback, handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, _, handle in self._queue if not handle.cancelled)

    def advance(self, ms: float) -> None:
        """Move time forward, running due callbacks in order."""
        target = self._now + ms
        while self._queue and self._queue[0][0] <= target:
            due, _, callback, handle = heapq.heappop(self._queue)
            self._now = due
            if not handle.cancelled:
                handle.cancelled = True
                callback()
        self._now = target


class AsyncioTimer:
    """Scheduler backed by an asyncio event loop.

    Only the delayed advance/repeat runs on the loop. Inside a coroutine use
    ``ExerciseChatController.load_async``/``submit_answer_async`` so the
    blocking HTTP calls run in the loop's executor.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time() * 1000

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        timer = self.loop.call_later(delay_ms / 1000, callback)
        return TimerHandle(timer.cancel)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_questions(data: Dict[str, Any]) -> Tuple[ExerciseQuestion, ...]:
    items = data.get("questions") if isinstance(data, dict) else None
    return tuple(
        ExerciseQuestion(id=str(item["id"]), content=item.get("content", ""))
        for item in items or []
        if isinstance(item, dict) and item.get("id")
    )


class ExerciseChatController:
    """Drive one exercise attempt: load, submit answers, advance or repeat."""

    def __init__(
        self,
        text_id: str,
        api,
        scheduler,
        feedback_delay_ms: float = FEEDBACK_DELAY_MS,
        max_attempts: Optional[int] = None,
        on_change: Optional[Callable[[ChatState], None]] = None,
    ):
        self.text_id = text_id
        self.api = api
        self.scheduler = scheduler
        self.feedback_delay_ms = feedback_delay_ms
        self.on_change = on_change
        self._state = ChatState(max_attempts=max_attempts)
        self._pending: Optional[TimerHandle] = None

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def transcript(self) -> Tuple[ChatMessage, ...]:
        return self._state.transcript

    def dispatch(self, event: ChatEvent) -> ChatState:
        previous = self._state
        self._state = reduce(previous, event)
        if self._state is not previous and self.on_change:
            self.on_change(self._state)
        return self._state

    def load(self) -> ChatState:
        if not self.text_id:
            return self.dispatch(LoadFailed("Text ID is missing."))
        try:
            data = self.api.fetch_exercise(self.text_id)
        except Exception as exc:
            return self._load_failed(exc)
        return self._loaded(data)

    async def load_async(self) -> ChatState:
        """Same as ``load`` with the fetch run in the event loop's executor."""
        if not self.text_id:
            return self.dispatch(LoadFailed("Text ID is missing."))
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self.api.fetch_exercise, self.text_id)
        except Exception as exc:
            return self._load_failed(exc)
        return self._loaded(data)

    def _load_failed(self, exc: Exception) -> ChatState:
        if isinstance(exc, ExerciseApiError):
            return self.dispatch(LoadFailed(exc.message))
        logger.error("Unexpected error loading exercise %s: %s", self.text_id, exc)
        return self.dispatch(LoadFailed(f"An unknown error occurred while fetching data: {exc}"))

    def _loaded(self, data) -> ChatState:
        if not isinstance(data, dict):
            return self.dispatch(LoadFailed(INVALID_REPLY_TEXT))
        return self.dispatch(ExerciseLoaded(
            text=data,
            questions=_parse_questions(data),
            now_ms=self.scheduler.now(),
            message_id=str(uuid4()),
            timestamp=_iso_now(),
        ))

    def retry_load(self) -> ChatState:
        self.dispatch(RetryLoad())
        if self._state.status is ChatStatus.LOADING_INITIAL:
            return self.load()
        return self._state

    def submit_answer(self, answer_text: str) -> bool:
        """Submit an answer for the active question; returns False when input is not accepted."""
        answer = self._begin_submission(answer_text)
        if answer is None:
            return False
        try:
            result = self.api.submit_response(answer.question_id, answer.text, answer.response_time_ms)
        except Exception as exc:
            self._submission_failed(answer, exc)
            return True
        self._grade_received(answer, result)
        return True

    async def submit_answer_async(self, answer_text: str) -> bool:
        """Same as ``submit_answer`` with the HTTP call run in the event loop's executor."""
        answer = self._begin_submission(answer_text)
        if answer is None:
            return False
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, self.api.submit_response, answer.question_id, answer.text, answer.response_time_ms
            )
        except Exception as exc:
            self._submission_failed(answer, exc)
            return True
        self._grade_received(answer, result)
        return True

    def _begin_submission(self, answer_text: str) -> Optional[UserAnswerMessage]:
        before = self._state
        self.dispatch(AnswerSubmitted(
            answer_text=answer_text,
            now_ms=self.scheduler.now(),
            message_id=str(uuid4()),
            timestamp=_iso_now(),
        ))
        if self._state is before:
            return None
        return self._state.transcript[-1]

    def _submission_failed(self, answer: UserAnswerMessage, exc: Exception) -> None:
        if isinstance(exc, ExerciseApiError):
            self.dispatch(SubmissionFailed(exc.message))
            return
        logger.error("Unexpected error submitting answer for question %s: %s", answer.question_id, exc)
        self.dispatch(SubmissionFailed(f"An unknown error occurred while submitting answer: {exc}"))

    def _grade_received(self, answer: UserAnswerMessage, result) -> None:
        try:
            self.dispatch(GradeReceived(response=result, timestamp=_iso_now()))
        except Exception as exc:
            self._submission_failed(answer, exc)
            return
        if self._state.status is not ChatStatus.SHOWING_FEEDBACK:
            return
        event_type = AdvanceDue if self._state.last_correct else RepeatDue
        self._pending = self.scheduler.call_later(self.feedback_delay_ms, lambda: self._fire(event_type))

    def _fire(self, event_type) -> None:
        self._pending = None
        self.dispatch(event_type(
            now_ms=self.scheduler.now(),
            message_id=str(uuid4()),
            timestamp=_iso_now(),
        ))

    def close(self) -> None:
        """Discard the attempt (navigation away); cancels any pending advance/repeat."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    @classmethod
    def from_config(cls, text_id: str, api, scheduler, config, **kwargs) -> "ExerciseChatController":
        """Build a controller using FEEDBACK_DELAY_MS / MAX_ATTEMPTS_PER_QUESTION from a config mapping."""
        return cls(
            text_id,
            api,
            scheduler,
            feedback_delay_ms=config.get("FEEDBACK_DELAY_MS", FEEDBACK_DELAY_MS),
            max_attempts=config.get("MAX_ATTEMPTS_PER_QUESTION"),
            **kwargs,
        )
