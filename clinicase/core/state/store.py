"""
In-memory conversation store.

Each conversation is a ``ConversationState`` with its own lock. The store lock only
guards lookup, creation and LRU eviction, so exchanges on different conversations
never wait on each other. Evicting the least recently used conversation bounds
memory in a long-running process; an evicted conversation restarts from zero if
its id is seen again.

A second, coarser lock per conversation serializes whole learner exchanges so
overlapping requests cannot grade one question twice.
"""

import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Iterator

from loguru import logger

from clinicase.core.state.conversation import ConversationSnapshot, ConversationState
from clinicase.core.turn import QuestionPayload


class ConversationStore:
    """
    LRU-bounded map of conversation id to state.
    """

    def __init__(self, default_budget: int = 4, capacity: int = 5000) -> None:
        """
        Initialize the store.

        Args:
            default_budget (int, optional): Budget for conversations created without one. Defaults to 4.
            capacity (int, optional): Maximum number of conversations kept. Defaults to 5000.
        """
        self.default_budget = max(1, int(default_budget))
        self.capacity = max(1, int(capacity))
        self._records: OrderedDict[str, ConversationState] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._records

    def _record(self, conversation_id: str, budget: int | None = None) -> ConversationState:
        """
        Fetch a conversation, creating it with zeroed counters when absent.

        Args:
            conversation_id (str): The conversation id.
            budget (int | None, optional): Budget for a newly created record. Defaults to None.

        Returns:
            ConversationState: The live record.
        """
        with self._lock:
            rec = self._records.get(conversation_id)
            if rec is not None:
                self._records.move_to_end(conversation_id)
                return rec
            rec = ConversationState(
                conversation_id=conversation_id,
                turn_budget=budget if budget and budget > 0 else self.default_budget,
            )
            self._records[conversation_id] = rec
            while len(self._records) > self.capacity:
                evicted, _ = self._records.popitem(last=False)
                logger.info("[ConversationStore] evicted thread={}", evicted)
            return rec

    @contextmanager
    def locked(self, conversation_id: str) -> Iterator[ConversationState]:
        """
        Hold a conversation's lock for a read-modify-write.

        Args:
            conversation_id (str): The conversation id.

        Yields:
            ConversationState: The live record, valid only inside the block.
        """
        rec = self._record(conversation_id)
        with rec.lock:
            yield rec

    @contextmanager
    def exchange(self, conversation_id: str) -> Iterator[Any]:
        """
        Serialize learner exchanges on a conversation.

        The count of completed exchanges is read on arrival. If another exchange
        completed while this caller waited for its turn, the two requests
        overlapped and that exchange's outcome is yielded so the caller can return
        it instead of grading the same question twice.

        Args:
            conversation_id (str): The conversation id.

        Yields:
            Any: The overlapped exchange's outcome, or None.
        """
        rec = self._record(conversation_id)
        with rec.lock:
            arrived_at = rec.exchange_seq
        with rec.exchange_lock:
            with rec.lock:
                overlapped = rec.last_outcome if rec.exchange_seq != arrived_at else None
            yield overlapped

    def complete_exchange(self, conversation_id: str, outcome: Any) -> int:
        """
        Record the outcome of a finished exchange.

        Returns:
            int: The number of completed exchanges.
        """
        with self.locked(conversation_id) as rec:
            rec.exchange_seq += 1
            rec.last_outcome = outcome
            return rec.exchange_seq

    def ensure(self, conversation_id: str, budget: int | None = None) -> ConversationSnapshot:
        """
        Register a conversation, fixing its budget if it is new.
        """
        rec = self._record(conversation_id, budget)
        with rec.lock:
            return rec.snapshot()

    def get_turn_count(self, conversation_id: str) -> int:
        with self.locked(conversation_id) as rec:
            return rec.turns_asked

    def increment_turn_count(self, conversation_id: str) -> int:
        """
        Count one delivered question and flag closure when the budget is reached.

        The count is capped at the budget and closure is flagged in the same
        critical section as the increment.

        Args:
            conversation_id (str): The conversation id.

        Returns:
            int: The new count.
        """
        with self.locked(conversation_id) as rec:
            _advance(rec)
            return rec.turns_asked

    def get_budget(self, conversation_id: str) -> int:
        with self.locked(conversation_id) as rec:
            return rec.turn_budget if rec.turn_budget > 0 else self.default_budget

    def set_budget(self, conversation_id: str, budget: int) -> None:
        """
        Change a conversation's budget. Ignored once a question has been delivered.
        """
        if budget <= 0:
            return
        with self.locked(conversation_id) as rec:
            if rec.turns_asked == 0:
                rec.turn_budget = budget

    def snapshot(self, conversation_id: str) -> ConversationSnapshot:
        with self.locked(conversation_id) as rec:
            return rec.snapshot()

    def recent_questions(self, conversation_id: str, limit: int = 5) -> list[str]:
        """
        Most recent delivered question texts, oldest first.
        """
        with self.locked(conversation_id) as rec:
            return list(rec.asked_questions[-limit:]) if limit > 0 else []

    def record_question(
        self, conversation_id: str, question: QuestionPayload
    ) -> ConversationSnapshot:
        """
        Cache a delivered question and advance the turn counter.

        Args:
            conversation_id (str): The conversation id.
            question (QuestionPayload): The question as sent to the learner.

        Returns:
            ConversationSnapshot: State after the update.
        """
        with self.locked(conversation_id) as rec:
            rec.last_question_text = question.text
            rec.last_question_kind = question.kind
            rec.last_question_options = list(question.options)
            rec.last_correct_index = (
                question.correct_index if question.has_valid_correct_index() else -1
            )
            rec.missing_index_noted = False
            if question.text:
                rec.asked_questions.append(question.text)
            _advance(rec)
            return rec.snapshot()

    def set_correct_index(self, conversation_id: str, index: int) -> bool:
        """
        Store a recovered correct index for the cached question.

        Returns:
            bool: False if the index does not fit the cached options.
        """
        with self.locked(conversation_id) as rec:
            if not 0 <= index < len(rec.last_question_options):
                return False
            rec.last_correct_index = index
            return True

    def note_missing_correct_index(self, conversation_id: str) -> bool:
        """
        Count a missing correct index once per delivered question.

        Returns:
            bool: True if this call incremented the counter.
        """
        with self.locked(conversation_id) as rec:
            if rec.missing_index_noted:
                return False
            rec.missing_index_noted = True
            rec.missing_correct_index_events += 1
            return True

    def record_answer(self, conversation_id: str, correct: bool) -> tuple[int, int]:
        """
        Tally one evaluated answer.

        Returns:
            tuple[int, int]: ``(correct_count, answered_count)`` after the update.
        """
        with self.locked(conversation_id) as rec:
            rec.answered_count += 1
            if correct:
                rec.correct_count += 1
            return rec.correct_count, rec.answered_count

    def mark_finished(
        self, conversation_id: str, feedback: str = "", final_evaluation: Any = None
    ) -> ConversationSnapshot:
        """
        Close a conversation and keep its closing feedback for replays.

        Args:
            conversation_id (str): The conversation id.
            feedback (str, optional): The closing feedback text. Defaults to "".
            final_evaluation (Any, optional): The computed final evaluation. Defaults to None.

        Returns:
            ConversationSnapshot: State after the update.
        """
        with self.locked(conversation_id) as rec:
            rec.finished = True
            rec.closure_pending = False
            rec.closing_feedback = feedback
            rec.final_evaluation = final_evaluation
            return rec.snapshot()


def _advance(rec: ConversationState) -> None:
    if rec.finished:
        return
    if rec.turns_asked < rec.turn_budget:
        rec.turns_asked += 1
    if rec.turns_asked >= rec.turn_budget:
        rec.closure_pending = True
