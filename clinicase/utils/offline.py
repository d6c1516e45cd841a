"""Deterministic collaborators for fake mode and tests."""

import itertools
import json
import threading
from collections import defaultdict

from clinicase.agents import prompts
from clinicase.agents.types import DocumentHit
from clinicase.core.turn import MINIMAL_QUESTION_TEXT

OFFLINE_OPTIONS = ["Opción A", "Opción B", "Opción C", "Opción D"]


def _turn(feedback: str, text: str, finish: int = 0) -> str:
    question = (
        {"tipo": "single-choice", "texto": text, "opciones": OFFLINE_OPTIONS, "correct_index": 0}
        if text
        else {"tipo": "", "texto": "", "opciones": []}
    )
    return json.dumps(
        {"feedback": feedback, "next": {"hallazgos": {}, "pregunta": question}, "finish": finish},
        ensure_ascii=False,
    )


class OfflineGenerator:
    """
    Generator that answers without any network call.

    Start turns carry a short anamnesis, follow-up turns are numbered practice
    questions, and the correct option is always the first one before shuffling.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._asked: defaultdict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def create_conversation(self) -> str:
        with self._lock:
            return f"thread_offline_{next(self._ids)}"

    def stream_structured_reply(
        self, conversation_id: str, user_prompt: str, format_instructions: str
    ) -> str:
        if format_instructions == prompts.RECOVERY_INSTRUCTIONS:
            return '{"correct_index": 0}'
        if format_instructions == prompts.closing_instructions():
            return _turn(
                "Resumen Final:\nCaso de práctica completado sin incidencias.\n"
                "Referencias: Guía clínica de referencia",
                "",
                finish=1,
            )
        with self._lock:
            self._asked[conversation_id] += 1
            number = self._asked[conversation_id]
        if format_instructions == prompts.start_instructions():
            return _turn("Anamnesis inicial de práctica.", MINIMAL_QUESTION_TEXT)
        return _turn("Explicación breve de práctica.", f"Pregunta {number} de práctica")


class NullEvidenceService:
    """
    Evidence service that never finds anything.
    """

    def search_documents(self, query: str) -> DocumentHit:
        return DocumentHit()

    def search_literature(self, query: str) -> str:
        return ""
