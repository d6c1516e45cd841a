"""
Feedback text handling.

The generator is told not to grade, but its feedback is still scrubbed of verdict
phrases before it reaches the learner; grading comes only from local evaluation.
Closing feedback is rebuilt here from the authoritative tallies.
"""

import re

from clinicase.core.evaluation import FinalEvaluation

DEFAULT_REFERENCE = "Referencias: Fuente clínica estándar"
NO_SUMMARY = "No disponible"

_VERDICT_LINE = re.compile(
    r"^\s*[*_#>\-\s]*(?:evaluaci[oó]n|evaluation)\s*:"
    r"|^\s*[*_#>\-\s]*(?:veredicto|resultado)\s*:\s*[*_\s]*(?:in)?correct[oa]?\b",
    re.I,
)
_SCORE_LINE = re.compile(r"^\s*[*_#\s]*(?:puntaje|puntuaci[oó]n|score)\s*:", re.I)
_SUMMARY_HEADER = re.compile(r"^\s*[*_#\s]*resumen\s+final\s*:\s*", re.I)
_REFERENCE_LINE = re.compile(r"^\s*[*_#\s]*(?:referencias?|fuentes?)\s*:", re.I)
_VERDICT_PHRASES = (
    re.compile(r"(?:evaluaci[oó]n|evaluation)\s*:\s*(?:in)?correct[oa]?\b[.!]?", re.I),
    re.compile(r"¡\s*(?:in)?correct[oa]\s*!", re.I),
    re.compile(r"\btu\s+respuesta\s+(?:es|fue)\s+(?:in)?correcta\b[.!]?", re.I),
    re.compile(r"\byour\s+answer\s+(?:is|was)\s+(?:in)?correct\b[.!]?", re.I),
    re.compile(r"^\s*(?:in)?correct[oa]\s*[.!:]\s*", re.I),
)


def _collapse(lines: list[str]) -> str:
    out: list[str] = []
    for ln in lines:
        if not ln.strip() and (not out or not out[-1].strip()):
            continue
        out.append(ln)
    return "\n".join(out).strip()


def sanitize_feedback(text: str) -> str:
    """
    Remove correctness verdicts the generator may have written into feedback.

    Whole verdict lines (``Evaluación: ...``) are dropped; inline verdict phrases
    are cut out of the remaining lines.

    Args:
        text (str): Raw generator feedback.

    Returns:
        str: Feedback without verdicts.
    """
    kept: list[str] = []
    for line in (text or "").splitlines():
        if _VERDICT_LINE.match(line):
            continue
        cleaned = line
        for pattern in _VERDICT_PHRASES:
            cleaned = pattern.sub("", cleaned)
        if cleaned != line:
            cleaned = re.sub(r"[ \t]{2,}", " ", cleaned).strip()
        if line.strip() and not cleaned.strip(" .!:;,"):
            continue
        kept.append(cleaned)
    return _collapse(kept)


def strip_score_lines(text: str) -> str:
    """
    Remove ``Puntaje:``/``Score:`` lines; the score is computed locally.
    """
    return _collapse(
        [ln for ln in (text or "").splitlines() if not _SCORE_LINE.match(ln)]
    )


def split_references(text: str) -> tuple[str, str]:
    """
    Split feedback into its narrative and its trailing references block.

    Args:
        text (str): Feedback text.

    Returns:
        tuple[str, str]: ``(narrative, references)``; references start at the first
        ``Referencias:``/``Fuente:`` line and may be empty.
    """
    lines = (text or "").splitlines()
    for i, ln in enumerate(lines):
        if _REFERENCE_LINE.match(ln):
            return _collapse(lines[:i]), _collapse(lines[i:])
    return _collapse(lines), ""


def extract_core_summary(text: str, max_lines: int = 2) -> str:
    """
    Salvage a short narrative summary from model feedback.

    Verdict, score and header lines are skipped; collection stops at the
    references block.

    Args:
        text (str): Model feedback.
        max_lines (int, optional): Number of lines to keep. Defaults to 2.

    Returns:
        str: The summary, or an empty string.
    """
    narrative, _ = split_references(text)
    kept: list[str] = []
    for line in narrative.splitlines():
        ln = line.strip()
        if not ln or _VERDICT_LINE.match(ln) or _SCORE_LINE.match(ln):
            continue
        ln = _SUMMARY_HEADER.sub("", ln).strip()
        if not ln:
            continue
        kept.append(ln)
        if len(kept) >= max_lines:
            break
    return " ".join(kept)


def performance_tier(pct: float) -> str:
    """
    Qualitative label for a percentage score.
    """
    if pct >= 85:
        return "Excelente"
    if pct >= 70:
        return "Bueno"
    if pct >= 50:
        return "Aceptable"
    if pct > 0:
        return "Necesita refuerzo"
    return "Sin aciertos"


def derive_strengths_improvements(correct: int, total: int, pct: float) -> tuple[str, str]:
    """
    Heuristic one-line strengths and areas to improve for a score.

    Args:
        correct (int): Correct answers.
        total (int): Evaluated answers.
        pct (float): Percentage score.

    Returns:
        tuple[str, str]: ``(strengths, improvements)``.
    """
    _ = correct
    if total == 0:
        return (
            "Inicio del caso completado.",
            "Responder preguntas para generar retroalimentación específica.",
        )
    if pct >= 85:
        return (
            "Excelente identificación de hallazgos y razonamiento clínico integrador.",
            "Profundizar en diagnósticos diferenciales secundarios y seguimiento a largo plazo.",
        )
    if pct >= 70:
        return (
            "Buen razonamiento y selección de conductas apropiadas.",
            "Refinar priorización de pruebas complementarias específicas.",
        )
    if pct >= 50:
        return (
            "Reconoces parte de los hallazgos clave y estructuras un plan básico.",
            "Consolidar criterios diagnósticos y justificar secuencia de manejo.",
        )
    if pct > 0:
        return (
            "Participación activa y formulación inicial de hipótesis.",
            "Reforzar correlación clínico-patológica y selección de pruebas iniciales.",
        )
    return (
        "Participación inicial registrada.",
        "Repasar fundamentos diagnósticos básicos antes de avanzar.",
    )


def summarize_performance(
    correct: int, total: int, model_feedback: str, missing_events: int = 0
) -> FinalEvaluation:
    """
    Compute the authoritative final evaluation.

    Args:
        correct (int): Correct answers tallied locally.
        total (int): Answers evaluated locally.
        model_feedback (str): The generator's closing text, used only for the narrative.
        missing_events (int, optional): Times the generator omitted a correct index. Defaults to 0.

    Returns:
        FinalEvaluation: Score, tier, heuristics and summary.
    """
    pct = (correct / total) * 100.0 if total > 0 else 0.0
    strengths, improvements = derive_strengths_improvements(correct, total, pct)
    summary = extract_core_summary(strip_score_lines(sanitize_feedback(model_feedback)))
    return FinalEvaluation(
        score_correct=correct,
        score_total=total,
        score_percent=round(pct, 1),
        tier=performance_tier(pct),
        strengths=strengths,
        improvements=improvements,
        summary=summary or NO_SUMMARY,
        missing_correct_index_events=missing_events,
    )


def build_final_feedback(final: FinalEvaluation, model_feedback: str) -> str:
    """
    Render the closing feedback text. Any score the model wrote is discarded.

    Args:
        final (FinalEvaluation): The computed final evaluation.
        model_feedback (str): The generator's closing text, searched for references.

    Returns:
        str: The closing feedback.
    """
    lines = [
        "Resumen Final:",
        f"Puntaje: {final.score_correct}/{final.score_total} "
        f"({final.score_percent:.1f}%) - {final.tier}",
    ]
    if final.score_total > 0:
        lines += [
            "Desempeño:",
            f"- Preguntas respondidas: {final.score_total}",
            f"- Respuestas correctas: {final.score_correct}",
        ]
    else:
        lines.append("Desempeño: sin preguntas evaluadas")
    lines += [
        f"Síntesis: {final.summary}",
        f"Fortalezas: {final.strengths}",
        f"Áreas de mejora: {final.improvements}",
    ]
    _, refs = split_references(strip_score_lines(sanitize_feedback(model_feedback)))
    lines.append(refs or DEFAULT_REFERENCE)
    return "\n".join(lines)


def append_references(text: str, refs: str) -> str:
    """
    Append a references block to a text.
    """
    if not (refs or "").strip():
        return text
    if not (text or "").strip():
        return refs.strip()
    return text.rstrip("\n ") + "\n\n" + refs.strip()
