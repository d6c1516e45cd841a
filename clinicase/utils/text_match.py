"""
Answer normalization and option matching.

Maps a learner's free-text or symbolic answer onto an option index. Resolution is
pure and deterministic: an explicit index wins, then a single letter or digit, then
token-set similarity against every option.
"""

from dataclasses import dataclass
from typing import Sequence

# Matches below this similarity are rejected so that a wrong answer is never
# graded correct through incidental word overlap.
SIMILARITY_THRESHOLD = 0.70

_ACCENTS = str.maketrans(
    {
        **dict.fromkeys("áàäâÁÀÄÂ", "a"),
        **dict.fromkeys("éèëêÉÈËÊ", "e"),
        **dict.fromkeys("íìïîÍÌÏÎ", "i"),
        **dict.fromkeys("óòöôÓÒÖÔ", "o"),
        **dict.fromkeys("úùüûÚÙÜÛ", "u"),
        **dict.fromkeys("ñÑ", "n"),
    }
)

METHOD_EXPLICIT = "explicit_index"
METHOD_SYMBOL = "symbol"
METHOD_SIMILARITY = "similarity"
METHOD_NONE = "none"


@dataclass(frozen=True)
class AnswerMatch:
    """
    Result of resolving an answer against a list of options.
    """

    index: int
    method: str = METHOD_NONE
    score: float = 0.0

    @property
    def found(self) -> bool:
        return self.index >= 0


NO_MATCH = AnswerMatch(index=-1)


def normalize_answer(text: str) -> str:
    """
    Lower-case, strip accents from Latin vowels and ``ñ``, drop punctuation and
    collapse whitespace.

    Args:
        text (str): The raw text.

    Returns:
        str: The normalized text.
    """
    out: list[str] = []
    last_space = False
    for ch in (text or "").strip().translate(_ACCENTS):
        if ch.isalnum():
            out.append(ch.lower())
            last_space = False
        elif ch.isspace() and not last_space:
            out.append(" ")
            last_space = True
    return "".join(out).strip()


def tokenize(text: str) -> list[str]:
    """
    Split normalized text on whitespace.

    Args:
        text (str): Normalized text.

    Returns:
        list[str]: The tokens.
    """
    return text.split() if text else []


def jaccard(a: Sequence[str], b: Sequence[str]) -> float:
    """
    Jaccard similarity of two token sets.

    Args:
        a (Sequence[str]): First token list.
        b (Sequence[str]): Second token list.

    Returns:
        float: ``|A ∩ B| / |A ∪ B|``, or 0.0 when either side is empty.
    """
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def _symbol_index(answer: str, n_options: int) -> int:
    """
    Map a single letter or digit to a zero-based position.

    Letters map alphabetically (``A``/``a`` -> 0). Digits map to their value
    (``0`` -> 0, ``1`` -> 1).

    Args:
        answer (str): The trimmed answer.
        n_options (int): Number of options available.

    Returns:
        int: The position, or -1 when the symbol is out of range or not a symbol.
    """
    if len(answer) != 1:
        return -1
    ch = answer
    if "A" <= ch <= "Z":
        idx = ord(ch) - ord("A")
    elif "a" <= ch <= "z":
        idx = ord(ch) - ord("a")
    elif "0" <= ch <= "9":
        idx = ord(ch) - ord("0")
    else:
        return -1
    return idx if idx < n_options else -1


def map_answer_to_index(
    answer: str,
    options: Sequence[str],
    explicit_index: int | None = None,
    threshold: float = SIMILARITY_THRESHOLD,
) -> AnswerMatch:
    """
    Resolve the option chosen by the learner.

    Priority: explicit index > single letter/digit > best Jaccard similarity
    (accepted only at or above ``threshold``).

    Args:
        answer (str): The learner's raw answer.
        options (Sequence[str]): The option texts of the question being answered.
        explicit_index (int | None, optional): An index supplied by the client. Defaults to None.
        threshold (float, optional): Minimum similarity for a textual match. Defaults to 0.70.

    Returns:
        AnswerMatch: The resolved index with the method used, or ``NO_MATCH``.
    """
    if explicit_index is not None and 0 <= explicit_index < len(options):
        return AnswerMatch(index=explicit_index, method=METHOD_EXPLICIT, score=1.0)

    trimmed = (answer or "").strip()
    if not trimmed or not options:
        return NO_MATCH

    symbol = _symbol_index(trimmed, len(options))
    if symbol >= 0:
        return AnswerMatch(index=symbol, method=METHOD_SYMBOL, score=1.0)

    answer_tokens = tokenize(normalize_answer(trimmed))
    best_idx, best_score = -1, 0.0
    for i, opt in enumerate(options):
        score = jaccard(answer_tokens, tokenize(normalize_answer(opt)))
        if score > best_score:
            best_idx, best_score = i, score

    if best_idx >= 0 and best_score >= threshold:
        return AnswerMatch(index=best_idx, method=METHOD_SIMILARITY, score=best_score)
    return NO_MATCH
