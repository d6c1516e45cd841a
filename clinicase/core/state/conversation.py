import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ConversationState:
    """
    Mutable per-conversation record. Guarded by its own lock.

    ``exchange_seq`` counts completed learner exchanges; ``last_outcome`` is the
    result of the latest one, returned to requests that overlapped it.
    """

    conversation_id: str
    turn_budget: int
    turns_asked: int = 0
    closure_pending: bool = False
    finished: bool = False
    asked_questions: list[str] = field(default_factory=list)
    last_question_text: str = ""
    last_question_kind: str = ""
    last_question_options: list[str] = field(default_factory=list)
    last_correct_index: int = -1
    missing_index_noted: bool = False
    correct_count: int = 0
    answered_count: int = 0
    missing_correct_index_events: int = 0
    closing_feedback: str = ""
    final_evaluation: Any = None
    exchange_seq: int = 0
    last_outcome: Any = None
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )
    # held for a whole learner exchange, generator calls included
    exchange_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def phase(self) -> str:
        if self.finished:
            return "FINISHED"
        if self.closure_pending:
            return "CLOSURE_PENDING"
        return "OPEN"

    def has_valid_correct_index(self) -> bool:
        return 0 <= self.last_correct_index < len(self.last_question_options)

    def snapshot(self) -> "ConversationSnapshot":
        return ConversationSnapshot(
            conversation_id=self.conversation_id,
            turn_budget=self.turn_budget,
            turns_asked=self.turns_asked,
            closure_pending=self.closure_pending,
            finished=self.finished,
            asked_questions=tuple(self.asked_questions),
            last_question_text=self.last_question_text,
            last_question_kind=self.last_question_kind,
            last_question_options=tuple(self.last_question_options),
            last_correct_index=self.last_correct_index,
            correct_count=self.correct_count,
            answered_count=self.answered_count,
            missing_correct_index_events=self.missing_correct_index_events,
            closing_feedback=self.closing_feedback,
            final_evaluation=self.final_evaluation,
        )


@dataclass(frozen=True)
class ConversationSnapshot:
    """
    Immutable copy of a conversation, safe to read outside the lock.
    """

    conversation_id: str
    turn_budget: int
    turns_asked: int
    closure_pending: bool
    finished: bool
    asked_questions: tuple[str, ...]
    last_question_text: str
    last_question_kind: str
    last_question_options: tuple[str, ...]
    last_correct_index: int
    correct_count: int
    answered_count: int
    missing_correct_index_events: int
    closing_feedback: str = ""
    final_evaluation: Any = None

    @property
    def phase(self) -> str:
        if self.finished:
            return "FINISHED"
        if self.closure_pending:
            return "CLOSURE_PENDING"
        return "OPEN"

    def has_valid_correct_index(self) -> bool:
        return 0 <= self.last_correct_index < len(self.last_question_options)
