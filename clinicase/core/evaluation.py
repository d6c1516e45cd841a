"""
Local grading of learner answers.

Correctness is decided here from the cached question, never from what the
generator says about the answer.
"""

from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from clinicase.core.state import ConversationStore
from clinicase.core.turn import is_open_question
from clinicase.utils.text_match import SIMILARITY_THRESHOLD, map_answer_to_index

STATUS_GRADED = "graded"
STATUS_OPEN = "open"
STATUS_PENDING = "pending"
STATUS_CLOSED = "closed"
STATUS_SKIPPED = "skipped"


@dataclass
class Evaluation:
    """
    Outcome of grading one answer, as attached to a turn.
    """

    user_answer: str = ""
    correct_answer: str = ""
    correct_index: int = -1
    is_correct: bool | None = None
    total_correct: int = 0
    total_answered: int = 0
    status: str = STATUS_PENDING
    resolved_index: int = -1

    @property
    def pending(self) -> bool:
        return self.status == STATUS_PENDING

    def to_payload(self) -> dict[str, Any]:
        """
        Render the evaluation object of the wire response.

        Returns:
            dict[str, Any]: The payload; ``pending`` is present only while deferred.
        """
        out: dict[str, Any] = {
            "user_answer": self.user_answer,
            "correct_answer": self.correct_answer,
            "correct_index": self.correct_index,
            "is_correct": self.is_correct,
            "total_correct": self.total_correct,
            "total_answered": self.total_answered,
        }
        if self.pending and self.user_answer:
            out["pending"] = True
        return out


@dataclass
class FinalEvaluation:
    """
    Authoritative score of a finished conversation.
    """

    score_correct: int
    score_total: int
    score_percent: float
    tier: str
    strengths: str
    improvements: str
    summary: str
    missing_correct_index_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AnswerEvaluator:
    """
    Grades an answer against the question cached for a conversation.
    """

    def __init__(
        self, store: ConversationStore, threshold: float = SIMILARITY_THRESHOLD
    ) -> None:
        self.store = store
        self.threshold = threshold

    def evaluate(
        self, conversation_id: str, answer: str, explicit_index: int | None = None
    ) -> Evaluation:
        """
        Grade the learner's answer to the last delivered question and tally it.

        Open questions (no options) count as answered and correct without a
        verdict. Other answers are resolved to an option; when that fails or no
        valid correct index is cached the evaluation is pending and nothing is
        tallied. Answers given before any question was delivered are not graded.
        The caller serializes exchanges on a conversation.

        Args:
            conversation_id (str): The conversation id.
            answer (str): The learner's raw answer.
            explicit_index (int | None, optional): Option index sent by the client. Defaults to None.

        Returns:
            Evaluation: The grading outcome with cumulative totals.
        """
        snap = self.store.snapshot(conversation_id)
        options = list(snap.last_question_options)
        ev = Evaluation(
            user_answer=answer,
            total_correct=snap.correct_count,
            total_answered=snap.answered_count,
        )

        if not snap.last_question_text:
            ev.status = STATUS_SKIPPED
            return ev

        if is_open_question(options):
            ev.total_correct, ev.total_answered = self.store.record_answer(
                conversation_id, True
            )
            ev.status = STATUS_OPEN
            return ev

        ci = snap.last_correct_index
        valid = snap.has_valid_correct_index()
        if valid:
            ev.correct_index = ci
            ev.correct_answer = options[ci]

        match = map_answer_to_index(answer, options, explicit_index, self.threshold)
        ev.resolved_index = match.index
        if not valid or not match.found:
            logger.info(
                "[AnswerEvaluator] pending thread={} resolved={} correct_index={}",
                conversation_id,
                match.index,
                ci,
            )
            return ev

        ev.is_correct = match.index == ci
        ev.status = STATUS_GRADED
        ev.total_correct, ev.total_answered = self.store.record_answer(
            conversation_id, ev.is_correct
        )
        logger.debug(
            "[AnswerEvaluator] thread={} method={} resolved={} correct_index={} ok={}",
            conversation_id,
            match.method,
            match.index,
            ci,
            ev.is_correct,
        )
        return ev


def seed_evaluation() -> Evaluation:
    """
    Empty evaluation returned with the first question of a case.
    """
    return Evaluation(status=STATUS_OPEN)
