"""
Turn schema and structural validation.

A turn is the unit exchanged with the upstream generator:

    {"feedback": str,
     "next": {"hallazgos": {...}, "pregunta": {"tipo", "texto", "opciones", "correct_index"}},
     "finish": 0 | 1}

Decoding is strict on shape (feedback string, findings and question objects, numeric
finish) and lenient inside the question, whose fields are coerced. Anything that
fails to decode goes down the repair path.
"""

import json
import re
from typing import Any, Mapping, Sequence

from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictStr,
    ValidationError,
    field_validator,
)

SCHEMA_VERSION = "interactive_v2"
SINGLE_CHOICE = "single-choice"
MINIMAL_QUESTION_TEXT = "¿Cuál es el siguiente mejor paso diagnóstico?"
MINIMAL_OPTIONS = ("A", "B", "C", "D")

_JSON_BLOCK = re.compile(r"\{.*\}", re.S)
_EMBEDDED_OPTION = re.compile(
    r"^[ \t]*[-*•]?[ \t]*([A-Da-d0-9])[ \t]*[-).:]+[ \t]+([^\n]{3,})$", re.M
)


class QuestionPayload(BaseModel):
    """
    The ``pregunta`` block of a turn.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: str = Field(default="", alias="tipo")
    text: str = Field(default="", alias="texto")
    options: list[str] = Field(default_factory=list, alias="opciones")
    correct_index: int | None = None

    @field_validator("kind", "text", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("options", mode="before")
    @classmethod
    def _string_options(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [o.strip() for o in value if isinstance(o, str) and o.strip()]

    @field_validator("correct_index", mode="before")
    @classmethod
    def _as_index(cls, value: Any) -> int | None:
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        return None

    def has_valid_correct_index(self) -> bool:
        return self.correct_index is not None and 0 <= self.correct_index < len(
            self.options
        )

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "tipo": self.kind,
            "texto": self.text,
            "opciones": list(self.options),
        }
        if self.correct_index is not None:
            out["correct_index"] = self.correct_index
        return out


class NextBlock(BaseModel):
    """
    The ``next`` block: findings revealed so far plus the next question.
    """

    model_config = ConfigDict(populate_by_name=True)

    findings: dict[str, Any] = Field(alias="hallazgos")
    question: QuestionPayload = Field(alias="pregunta")


class TurnDocument(BaseModel):
    """
    A structurally valid turn.
    """

    model_config = ConfigDict(populate_by_name=True)

    feedback: StrictStr
    next_block: NextBlock = Field(alias="next")
    finish: float

    @field_validator("finish", mode="before")
    @classmethod
    def _numeric_finish(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("finish must be a number")
        return value

    @property
    def question(self) -> QuestionPayload:
        return self.next_block.question

    def to_wire(self) -> dict[str, Any]:
        """
        Render the turn with its wire (Spanish) keys.

        Returns:
            dict[str, Any]: The JSON-ready turn.
        """
        return {
            "feedback": self.feedback,
            "next": {
                "hallazgos": dict(self.next_block.findings),
                "pregunta": self.question.to_wire(),
            },
            "finish": 1 if self.finish == 1 else 0,
        }


def extract_json(text: str) -> str:
    """
    Pull the JSON object out of a model reply.

    Args:
        text (str): Raw generator output, possibly wrapped in prose or fences.

    Returns:
        str: The braced text, the outermost ``{...}`` span, or ``"{}"``.
    """
    s = (text or "").strip()
    if s.startswith("{") and s.endswith("}"):
        return s
    m = _JSON_BLOCK.search(s)
    return m.group(0) if m else "{}"


def decode_turn(raw: str | Mapping[str, Any] | None) -> TurnDocument | None:
    """
    Strictly decode a candidate turn.

    Args:
        raw (str | Mapping[str, Any] | None): Generator text or an already parsed mapping.

    Returns:
        TurnDocument | None: The decoded turn, or None when it is not structurally usable.
    """
    if raw is None:
        return None
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = json.loads(extract_json(raw))
        except json.JSONDecodeError as e:
            logger.debug("Turn is not valid JSON: {}", e)
            return None
    if not isinstance(data, Mapping):
        return None
    try:
        return TurnDocument.model_validate(dict(data))
    except ValidationError as e:
        logger.debug("Turn failed validation: {} error(s)", e.error_count())
        return None


def is_valid_turn(doc: Mapping[str, Any] | None) -> bool:
    """
    Check that a candidate turn has feedback text, findings and question objects,
    and a numeric finish flag.

    Args:
        doc (Mapping[str, Any] | None): The parsed candidate.

    Returns:
        bool: True if the turn is structurally usable.
    """
    return decode_turn(doc) is not None


def minimal_question() -> QuestionPayload:
    return QuestionPayload(
        kind=SINGLE_CHOICE,
        text=MINIMAL_QUESTION_TEXT,
        options=list(MINIMAL_OPTIONS),
        correct_index=0,
    )


def minimal_turn() -> TurnDocument:
    """
    Build the fallback turn used when the generator cannot produce a usable one.

    Returns:
        TurnDocument: A generic single-choice turn with four options and ``correct_index=0``.
    """
    return TurnDocument(
        feedback="",
        next_block=NextBlock(findings={}, question=minimal_question()),
        finish=0,
    )


def final_question() -> QuestionPayload:
    """
    The empty question carried by a closing turn. Keys are kept so clients can
    detect closure without special parsing.
    """
    return QuestionPayload(kind="", text="", options=[])


def is_open_question(options: Sequence[str]) -> bool:
    """
    An open question has no options and is not graded. The type label is not
    consulted: options without a usable correct index go through index recovery.
    """
    return not options


def all_short_letters(options: list[str]) -> bool:
    if not options:
        return True
    return all(len(o.strip()) == 1 and o.strip().upper() in "ABCD" for o in options)


def extract_embedded_options(text: str) -> list[str]:
    """
    Parse option lines such as ``A) ...``, ``b. ...`` or ``- C - ...`` from free text.

    Args:
        text (str): Question text and/or feedback that may list the options inline.

    Returns:
        list[str]: Two to six unique option bodies, or an empty list.
    """
    found: list[str] = []
    for m in _EMBEDDED_OPTION.finditer(text or ""):
        body = m.group(2).strip()
        if body and body not in found:
            found.append(body)
    return found if 2 <= len(found) <= 6 else []


def repair_embedded_options(question: QuestionPayload, feedback: str) -> bool:
    """
    Replace missing or letter-only options with options listed inline.

    The stale correct index is dropped since it referred to the old list.

    Args:
        question (QuestionPayload): The question to repair in place.
        feedback (str): Turn feedback, also searched for option lines.

    Returns:
        bool: True if the options were replaced.
    """
    if len(question.options) >= 2 and not all_short_letters(question.options):
        return False
    extracted = extract_embedded_options(f"{question.text}\n{feedback}")
    if not extracted:
        return False
    question.options = extracted
    question.correct_index = None
    return True


def question_is_usable(question: QuestionPayload) -> bool:
    """
    A question needs text, and single-choice questions need at least two options.
    """
    if not question.text.strip():
        return False
    if SINGLE_CHOICE in question.kind.lower() and len(question.options) < 2:
        return False
    return True
