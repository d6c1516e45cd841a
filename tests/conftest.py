import json
from typing import Any, Callable

import pytest

from clinicase.agents import DocumentHit, EvidenceCollector, TurnOrchestrator
from clinicase.core.errors import UpstreamError
from clinicase.utils.env_cfg import InteractiveConfig

OPTIONS = [
    "Solicitar troponinas",
    "Radiografía de tórax",
    "Ecografía abdominal",
    "Alta domiciliaria",
]


def turn_json(
    text: str = "¿Cuál es el siguiente paso?",
    options: list[str] | None = None,
    correct_index: int | None = 0,
    feedback: str = "Explicación clínica.",
    kind: str = "single-choice",
    finish: int = 0,
) -> str:
    """
    Build a generator reply holding one turn.

    Args:
        text (str, optional): The question text.
        options (list[str] | None, optional): The options. Defaults to OPTIONS.
        correct_index (int | None, optional): Correct option; None omits the key. Defaults to 0.
        feedback (str, optional): The feedback text.
        kind (str, optional): The question type. Defaults to "single-choice".
        finish (int, optional): The finish flag. Defaults to 0.

    Returns:
        str: The JSON reply.
    """
    question: dict[str, Any] = {
        "tipo": kind,
        "texto": text,
        "opciones": list(OPTIONS if options is None else options),
    }
    if correct_index is not None:
        question["correct_index"] = correct_index
    return json.dumps(
        {"feedback": feedback, "next": {"hallazgos": {}, "pregunta": question}, "finish": finish},
        ensure_ascii=False,
    )


class ScriptedGenerator:
    """
    Generator that replays scripted replies in order.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, replies: list[Any] | None = None, conversation_id: str = "thread_test") -> None:
        """
        Initialize the ScriptedGenerator.

        Args:
            replies (list[Any] | None, optional): Reply texts or exceptions. Defaults to None.
            conversation_id (str, optional): Id returned by create_conversation.
        """
        self.replies = list(replies or [])
        self.conversation_id = conversation_id
        self.create_error: Exception | None = None
        self.calls: list[tuple[str, str, str]] = []

    def create_conversation(self) -> str:
        if self.create_error is not None:
            raise self.create_error
        return self.conversation_id

    def stream_structured_reply(
        self, conversation_id: str, user_prompt: str, format_instructions: str
    ) -> str:
        self.calls.append((conversation_id, user_prompt, format_instructions))
        if not self.replies:
            raise AssertionError("unexpected generator call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeEvidence:
    """
    Evidence service that finds documents for queries containing a keyword.
    """

    def __init__(
        self,
        keyword: str = "",
        literature_keyword: str = "",
        fail: bool = False,
    ) -> None:
        self.keyword = keyword
        self.literature_keyword = literature_keyword
        self.fail = fail
        self.queries: list[str] = []

    def search_documents(self, query: str) -> DocumentHit:
        self.queries.append(query)
        if self.fail:
            raise UpstreamError("index offline")
        if self.keyword and self.keyword in query:
            return DocumentHit(
                has_result=True,
                source="Harrison",
                section="Cardiología",
                snippet=f"Texto sobre {self.keyword}",
            )
        return DocumentHit()

    def search_literature(self, query: str) -> str:
        if self.fail:
            raise UpstreamError("pubmed offline")
        if self.literature_keyword and self.literature_keyword in query:
            return "Acute coronary syndromes. Lancet. 2022. PMID: 1"
        return ""


@pytest.fixture
def make_generator() -> Callable[..., ScriptedGenerator]:
    return ScriptedGenerator


@pytest.fixture
def make_orchestrator() -> Callable[..., TurnOrchestrator]:
    """
    Factory for orchestrators running with shuffling disabled.

    Returns:
        Callable[..., TurnOrchestrator]: ``factory(generator, max_questions=4, evidence=None)``.
    """

    def factory(
        generator: ScriptedGenerator,
        max_questions: int = 4,
        evidence: FakeEvidence | None = None,
    ) -> TurnOrchestrator:
        config = InteractiveConfig(max_questions=max_questions, testing=True)
        collector = None
        if evidence is not None:
            collector = EvidenceCollector(evidence, timeout=5.0)
        return TurnOrchestrator(generator, evidence=collector, config=config)

    return factory


@pytest.fixture
def make_turn() -> Callable[..., str]:
    return turn_json


@pytest.fixture
def options() -> list[str]:
    return list(OPTIONS)


@pytest.fixture
def make_evidence() -> Callable[..., FakeEvidence]:
    return FakeEvidence
