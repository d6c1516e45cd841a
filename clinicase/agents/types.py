"""Shared types for the interactive case engine."""

from dataclasses import dataclass
from typing import Any, Protocol

from clinicase.core.evaluation import Evaluation, FinalEvaluation
from clinicase.core.turn import SCHEMA_VERSION, TurnDocument


@dataclass
class DocumentHit:
    """Best match from the document index.

    ``has_result`` is True only for hits carrying source metadata; a hit with a
    snippet but no metadata is a plain-text hit.
    """

    has_result: bool = False
    source: str = ""
    section: str = ""
    snippet: str = ""

    @property
    def is_plain_text(self) -> bool:
        return not self.has_result and bool(self.snippet.strip())


@dataclass
class StartRequest:
    """Patient profile that opens a case."""

    age: str = ""
    sex: str = ""
    case_type: str = ""
    pregnant: bool = False
    max_interactions: int | None = None


@dataclass
class AnswerRequest:
    """A learner answer to the last delivered question."""

    message: str
    conversation_id: str = ""
    answer_index: int | None = None


@dataclass
class StartResult:
    """First exchange of a case."""

    conversation_id: str
    case: dict[str, Any]
    turn: TurnDocument
    evaluation: Evaluation
    turn_budget: int
    fallback: bool = False

    def to_payload(self) -> dict[str, Any]:
        """
        Render the start response body.

        Returns:
            dict[str, Any]: ``case``, ``data`` (the turn plus seeded evaluation),
            ``thread_id`` and ``schema_version``.
        """
        data = self.turn.to_wire()
        data["evaluation"] = self.evaluation.to_payload()
        return {
            "case": dict(self.case),
            "data": data,
            "thread_id": self.conversation_id,
            "schema_version": SCHEMA_VERSION,
        }


@dataclass
class TurnResult:
    """Outcome of one answer exchange."""

    conversation_id: str
    turn: TurnDocument
    evaluation: Evaluation | None = None
    final_evaluation: FinalEvaluation | None = None
    closing: bool = False

    def to_payload(self) -> dict[str, Any]:
        """
        Render the ``data`` object of the message response.

        Returns:
            dict[str, Any]: The wire turn with ``evaluation``, ``final_evaluation`` on
            closing turns, ``status``, ``thread_id`` and ``schema_version``.
        """
        data = self.turn.to_wire()
        if self.evaluation is not None:
            data["evaluation"] = self.evaluation.to_payload()
        if self.final_evaluation is not None:
            data["final_evaluation"] = self.final_evaluation.to_dict()
        if self.closing:
            data["status"] = "finished"
        data["thread_id"] = self.conversation_id
        data["schema_version"] = SCHEMA_VERSION
        return data


class GeneratorService(Protocol):
    """Interface for the upstream turn generator."""

    def create_conversation(self) -> str:  # pragma: no cover - interface
        """Open a conversation and return its id."""
        ...

    def stream_structured_reply(
        self, conversation_id: str, user_prompt: str, format_instructions: str
    ) -> str:  # pragma: no cover - interface
        """Send a prompt and return the full reply text, which may be malformed."""
        ...


class EvidenceService(Protocol):
    """Interface for knowledge lookups."""

    def search_documents(self, query: str) -> DocumentHit:  # pragma: no cover - interface
        """Return the best document hit for a query."""
        ...

    def search_literature(self, query: str) -> str:  # pragma: no cover - interface
        """Return a compact literature summary, or an empty string."""
        ...
