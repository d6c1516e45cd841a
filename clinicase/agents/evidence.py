"""Evidence lookups for feedback grounding and correct-index recovery."""

from typing import Callable

from loguru import logger

from clinicase.agents.types import DocumentHit, EvidenceService
from clinicase.core.errors import UpstreamError
from clinicase.utils.deadline import Deadline, call_with_timeout

DEFAULT_SOURCE = "Base de conocimiento médico"
MAX_REFERENCES = 3


def _clip(text: str, limit: int, ellipsis: str = "") -> str:
    text = (text or "").strip()
    return text[:limit] + ellipsis if len(text) > limit else text


def option_query(question: str, option: str) -> str:
    """
    Compact query pairing a question with one candidate answer.

    Args:
        question (str): The question text, cut to 180 characters.
        option (str): The candidate option, cut to 160 characters.

    Returns:
        str: ``"<question> — Candidato: <option>"``, or whichever part is present.
    """
    q, o = _clip(question, 180), _clip(option, 160)
    if q and o:
        return f"{q} — Candidato: {o}"
    return o or q


class CompositeEvidenceService:
    """
    ``EvidenceService`` built from a document search and a literature search.

    Either side may be None, in which case it reports no evidence.
    """

    def __init__(
        self,
        documents: Callable[[str], DocumentHit] | None = None,
        literature: Callable[[str], str] | None = None,
    ) -> None:
        self.documents = documents
        self.literature = literature

    def search_documents(self, query: str) -> DocumentHit:
        return self.documents(query) if self.documents else DocumentHit()

    def search_literature(self, query: str) -> str:
        return self.literature(query) if self.literature else ""


class EvidenceCollector:
    """
    Queries document and literature search under a short sub-deadline.

    Every lookup runs through ``call_with_timeout`` with whatever is left of
    ``min(timeout, outer deadline)``. Failures and timeouts are logged and treated
    as "no evidence".
    """

    def __init__(
        self,
        service: EvidenceService | None,
        timeout: float = 8.0,
        enabled: bool = True,
        max_query_chars: int = 300,
    ) -> None:
        """
        Initialize the collector.

        Args:
            service (EvidenceService | None): Backing search service; None disables lookups.
            timeout (float, optional): Sub-timeout for one collection or recovery, in seconds. Defaults to 8.0.
            enabled (bool, optional): False disables every lookup. Defaults to True.
            max_query_chars (int, optional): Queries are cut to this length. Defaults to 300.
        """
        self.service = service
        self.timeout = timeout
        self.enabled = enabled
        self.max_query_chars = max_query_chars

    @property
    def active(self) -> bool:
        return self.enabled and self.service is not None

    def _sub_deadline(self, outer: Deadline | None) -> Deadline:
        budget = outer.cap(self.timeout) if outer is not None else self.timeout
        return Deadline(budget)

    def _documents(self, query: str, sub: Deadline) -> DocumentHit:
        try:
            return call_with_timeout(self.service.search_documents, sub.remaining(), query)
        except UpstreamError as e:
            logger.warning("[Evidence] document search failed: {}", e)
            return DocumentHit()

    def _literature(self, query: str, sub: Deadline) -> str:
        try:
            return call_with_timeout(self.service.search_literature, sub.remaining(), query) or ""
        except UpstreamError as e:
            logger.warning("[Evidence] literature search failed: {}", e)
            return ""

    def collect(self, query: str, deadline: Deadline | None = None) -> str:
        """
        Build a references block for a query.

        Args:
            query (str): Free-text query; cut to ``max_query_chars``.
            deadline (Deadline | None, optional): Outer deadline of the exchange. Defaults to None.

        Returns:
            str: ``"\\n\\nReferencias:\\n- ..."`` with up to three entries, or an empty string.
        """
        query = _clip(query, self.max_query_chars)
        if not self.active or not query:
            return ""
        sub = self._sub_deadline(deadline)
        refs: list[str] = []

        hit = self._documents(query, sub)
        if hit.has_result:
            line = hit.source.strip() or DEFAULT_SOURCE
            if hit.section.strip():
                line += f" — {hit.section.strip()}"
            snippet = _clip(hit.snippet, 420, "…")
            if snippet:
                line += f': "{snippet}"'
            refs.append(line)
        elif hit.is_plain_text:
            refs.append(f'{DEFAULT_SOURCE}: "{_clip(hit.snippet, 420, "…")}"')

        literature = self._literature(query, sub)
        if literature.strip():
            refs.append("PubMed: " + _clip(literature, 600, "…"))

        if not refs:
            return ""
        body = "".join(f"- {r}\n" for r in refs[:MAX_REFERENCES])
        return "\n\nReferencias:\n" + body

    def score_option(self, query: str, sub: Deadline) -> int:
        """
        Evidence score of one candidate.

        A document hit with metadata adds 2, otherwise a plain-text hit adds 1;
        a literature hit adds 1.
        """
        score = 0
        hit = self._documents(query, sub)
        if hit.has_result:
            score += 2
        elif hit.is_plain_text:
            score += 1
        if self._literature(query, sub).strip():
            score += 1
        return score

    def recover_correct_index(
        self, question: str, options: list[str], deadline: Deadline | None = None
    ) -> int:
        """
        Pick the option best supported by evidence.

        Args:
            question (str): The question text.
            options (list[str]): Its options.
            deadline (Deadline | None, optional): Outer deadline of the exchange. Defaults to None.

        Returns:
            int: The option with the strictly highest positive score, or -1 on ties,
            zero scores, or when the sub-deadline ran out before every option was scored.
        """
        if not self.active or not options:
            return -1
        sub = self._sub_deadline(deadline)
        scores: list[int] = []
        for opt in options:
            if sub.expired:
                logger.info("[Evidence] recovery ran out of time after {} option(s)", len(scores))
                return -1
            scores.append(self.score_option(option_query(question, opt), sub))
        if sub.expired:
            logger.info("[Evidence] recovery ran out of time while scoring")
            return -1

        best = max(scores)
        if best <= 0 or scores.count(best) > 1:
            logger.info("[Evidence] recovery abstained scores={}", scores)
            return -1
        return scores.index(best)
