import asyncio
import threading

import pytest

from services.exercise_api import ExerciseApiError
from services.exercise_chat import (
    COMPLETION_QUESTION_ID,
    COMPLETION_TEXT,
    DEFAULT_FEEDBACK_TEXT,
    INVALID_REPLY_TEXT,
    AIQuestionMessage,
    AnswerSubmitted,
    AsyncioTimer,
    ChatStatus,
    ExerciseChatController,
    FeedbackResultMessage,
    GradeReceived,
    LoadingAIMessage,
    UserAnswerMessage,
    VirtualTimer,
    reduce,
)

EXERCISE = {
    "id": "text-1",
    "title": "Shopping",
    "content": "Anna bought bread.",
    "questions": [
        {"id": "q-1", "content": "What did Anna buy?"},
        {"id": "q-2", "content": "Who went shopping?"},
    ],
}


class FakeApi:
    def __init__(self, exercise=None, fetch_error=None, grades=None):
        self.exercise = exercise if exercise is not None else EXERCISE
        self.fetch_error = fetch_error
        self.grades = list(grades or [])
        self.fetches = 0
        self.submissions = []

    def fetch_exercise(self, text_id):
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.exercise

    def submit_response(self, question_id, response_text, response_time):
        self.submissions.append((question_id, response_text, response_time))
        grade = self.grades.pop(0)
        if isinstance(grade, Exception):
            raise grade
        if isinstance(grade, bool):
            grade = {
                "id": f"resp-{len(self.submissions)}",
                "question_id": question_id,
                "response_text": response_text,
                "is_correct": grade,
                "feedback": "Correct!" if grade else "Not quite.",
            }
        return grade


@pytest.fixture
def timer():
    return VirtualTimer()


def _controller(api, timer, **kwargs):
    controller = ExerciseChatController("text-1", api, timer, **kwargs)
    controller.load()
    return controller


def _questions(controller):
    return [m for m in controller.transcript if isinstance(m, AIQuestionMessage)]


def test_load_shows_first_question(timer):
    controller = _controller(FakeApi(), timer)

    state = controller.state
    assert state.status is ChatStatus.AWAITING_ANSWER
    assert state.current_question.id == "q-1"
    assert state.accepts_answer
    assert len(controller.transcript) == 1
    first = controller.transcript[0]
    assert (first.type, first.sender, first.text, first.question_id) == ("ai_question", "ai", "What did Anna buy?", "q-1")


def test_missing_text_id_fails_without_fetch(timer):
    api = FakeApi()
    controller = ExerciseChatController("", api, timer)
    state = controller.load()
    assert state.status is ChatStatus.ERROR
    assert state.error == "Text ID is missing."
    assert api.fetches == 0


def test_fetch_error_message_is_shown_and_retry_reloads(timer):
    api = FakeApi(fetch_error=ExerciseApiError(404, "Exercise not found"))
    controller = _controller(api, timer)

    assert controller.state.is_initial_load_error
    assert controller.state.error == "Exercise not found"
    assert controller.transcript == ()
    assert controller.submit_answer("hello") is False

    api.fetch_error = None
    state = controller.retry_load()
    assert state.status is ChatStatus.AWAITING_ANSWER
    assert api.fetches == 2


def test_exercise_without_questions_is_an_error(timer):
    controller = _controller(FakeApi(exercise={"id": "text-1", "questions": []}), timer)
    assert controller.state.status is ChatStatus.ERROR
    assert controller.state.error == "The exercise has no questions."


def test_correct_answer_advances_after_delay(timer):
    api = FakeApi(grades=[True])
    controller = _controller(api, timer)

    timer.advance(1500)
    assert controller.submit_answer("bread") is True

    kinds = [m.type for m in controller.transcript]
    assert kinds == ["ai_question", "user_answer", "feedback_result"]
    answer = controller.transcript[1]
    assert isinstance(answer, UserAnswerMessage)
    assert answer.response_time_ms == 1500
    assert api.submissions == [("q-1", "bread", 1500)]
    assert controller.state.status is ChatStatus.SHOWING_FEEDBACK
    assert not controller.state.accepts_answer

    timer.advance(1999)
    assert len(controller.transcript) == 3

    timer.advance(1)
    assert len(controller.transcript) == 4
    assert controller.transcript[-1].question_id == "q-2"
    assert controller.state.status is ChatStatus.AWAITING_ANSWER


def test_incorrect_answer_repeats_same_question(timer):
    api = FakeApi(grades=[False, True])
    controller = _controller(api, timer)

    controller.submit_answer("cheese")
    feedback = controller.transcript[-1]
    assert isinstance(feedback, FeedbackResultMessage)
    assert feedback.is_correct is False
    assert feedback.feedback_text == "Not quite."

    timer.advance(2000)
    asked = _questions(controller)
    assert [q.question_id for q in asked] == ["q-1", "q-1"]
    assert asked[0].id != asked[1].id

    timer.advance(300)
    controller.submit_answer("bread")
    assert api.submissions[-1] == ("q-1", "bread", 300)


def test_last_correct_answer_appends_completion_message(timer):
    controller = _controller(FakeApi(grades=[True, True]), timer)

    controller.submit_answer("bread")
    timer.advance(2000)
    controller.submit_answer("Anna")
    timer.advance(2000)

    last = controller.transcript[-1]
    assert last.question_id == COMPLETION_QUESTION_ID
    assert last.text == COMPLETION_TEXT
    assert controller.state.status is ChatStatus.COMPLETED
    assert controller.state.is_complete
    assert not controller.state.input_visible
    assert controller.submit_answer("more?") is False


def test_submission_failure_keeps_transcript_and_allows_retry(timer):
    api = FakeApi(grades=[ExerciseApiError(None, "Failed to submit answer: network error"), True])
    controller = _controller(api, timer)

    timer.advance(1000)
    controller.submit_answer("bread")
    state = controller.state
    assert state.status is ChatStatus.ERROR
    assert state.error == "Failed to submit answer: network error"
    assert not state.is_initial_load_error
    assert [m.type for m in controller.transcript] == ["ai_question", "user_answer"]
    assert state.accepts_answer

    timer.advance(500)
    assert controller.submit_answer("bread again") is True
    assert api.submissions[-1] == ("q-1", "bread again", 1500)
    assert controller.state.status is ChatStatus.SHOWING_FEEDBACK


def test_missing_feedback_uses_default_text(timer):
    grade = {"id": "r-1", "question_id": "q-1", "response_text": "bread", "is_correct": True, "feedback": ""}
    controller = _controller(FakeApi(grades=[grade]), timer)
    controller.submit_answer("bread")
    assert controller.transcript[-1].feedback_text == DEFAULT_FEEDBACK_TEXT
    assert controller.transcript[-1].user_response_id == "r-1"


def test_blank_answers_are_rejected(timer):
    api = FakeApi(grades=[True])
    controller = _controller(api, timer)
    assert controller.submit_answer("   ") is False
    assert api.submissions == []
    assert len(controller.transcript) == 1


def test_reducer_ignores_answer_while_submitting(timer):
    controller = _controller(FakeApi(), timer)
    submitting = reduce(controller.state, AnswerSubmitted("bread", 10, "m-1", "t"))
    assert submitting.status is ChatStatus.SUBMITTING
    assert submitting.is_loading_submission

    again = reduce(submitting, AnswerSubmitted("bread", 20, "m-2", "t"))
    assert again is submitting


def test_attempt_cap_advances_after_repeated_misses(timer):
    controller = _controller(FakeApi(grades=[False, False]), timer, max_attempts=2)

    controller.submit_answer("wrong")
    timer.advance(2000)
    assert controller.state.current_question.id == "q-1"

    controller.submit_answer("still wrong")
    timer.advance(2000)
    assert controller.state.current_question.id == "q-2"
    assert controller.state.attempts == 0


def test_close_cancels_pending_transition(timer):
    controller = _controller(FakeApi(grades=[True]), timer)
    controller.submit_answer("bread")
    assert timer.pending == 1

    controller.close()
    timer.advance(5000)

    assert timer.pending == 0
    assert len(controller.transcript) == 3
    assert controller.state.status is ChatStatus.SHOWING_FEEDBACK


def test_on_change_is_notified(timer):
    seen = []
    controller = ExerciseChatController("text-1", FakeApi(), timer, on_change=seen.append)
    controller.load()
    assert [s.status for s in seen] == [ChatStatus.AWAITING_ANSWER]


def test_asyncio_timer_drives_the_controller():
    async def scenario():
        controller = ExerciseChatController("text-1", FakeApi(grades=[True]), AsyncioTimer(), feedback_delay_ms=10)
        controller.load()
        controller.submit_answer("bread")
        await asyncio.sleep(0.05)
        return controller

    controller = asyncio.run(scenario())
    assert controller.state.current_question.id == "q-2"


def test_controller_reads_delay_and_cap_from_config(timer):
    config = {"FEEDBACK_DELAY_MS": 500, "MAX_ATTEMPTS_PER_QUESTION": 1}
    controller = ExerciseChatController.from_config("text-1", FakeApi(grades=[False]), timer, config)
    controller.load()

    controller.submit_answer("wrong")
    timer.advance(500)

    assert controller.state.current_question.id == "q-2"


def test_non_object_grade_ends_in_error_and_allows_retry(timer):
    api = FakeApi(grades=[["not", "a", "dict"], True])
    controller = _controller(api, timer)

    assert controller.submit_answer("bread") is True

    state = controller.state
    assert state.status is ChatStatus.ERROR
    assert state.error == INVALID_REPLY_TEXT
    assert not state.is_loading_submission
    assert state.accepts_answer
    assert timer.pending == 0

    assert controller.submit_answer("bread") is True
    assert controller.state.status is ChatStatus.SHOWING_FEEDBACK


def test_reducer_rejects_non_object_grade(timer):
    controller = _controller(FakeApi(), timer)
    submitting = reduce(controller.state, AnswerSubmitted("bread", 10, "m-1", "t"))
    state = reduce(submitting, GradeReceived(response=None, timestamp="t"))
    assert state.status is ChatStatus.ERROR
    assert state.pending_reply is None


def test_typing_indicator_shows_only_while_grading(timer):
    seen = []
    controller = ExerciseChatController("text-1", FakeApi(grades=[True]), timer, on_change=seen.append)
    controller.load()
    controller.submit_answer("bread")

    submitting = next(s for s in seen if s.status is ChatStatus.SUBMITTING)
    indicator = submitting.visible_messages[-1]
    assert isinstance(indicator, LoadingAIMessage)
    assert (indicator.type, indicator.sender) == ("loading_ai", "ai")
    assert indicator not in submitting.transcript

    assert controller.state.pending_reply is None
    assert not any(isinstance(m, LoadingAIMessage) for m in controller.state.visible_messages)


def test_async_methods_run_api_calls_off_the_loop():
    loop_threads = []

    class ThreadRecordingApi(FakeApi):
        def fetch_exercise(self, text_id):
            loop_threads.append(threading.get_ident())
            return super().fetch_exercise(text_id)

        def submit_response(self, question_id, response_text, response_time):
            loop_threads.append(threading.get_ident())
            return super().submit_response(question_id, response_text, response_time)

    async def scenario():
        controller = ExerciseChatController(
            "text-1", ThreadRecordingApi(grades=[False]), AsyncioTimer(), feedback_delay_ms=10
        )
        await controller.load_async()
        assert await controller.submit_answer_async("cheese") is True
        await asyncio.sleep(0.05)
        return controller, threading.get_ident()

    controller, loop_thread = asyncio.run(scenario())
    assert len(loop_threads) == 2
    assert loop_thread not in loop_threads
    assert [m.question_id for m in controller.transcript if isinstance(m, AIQuestionMessage)] == ["q-1", "q-1"]
