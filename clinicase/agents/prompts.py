"""
Prompts sent to the upstream generator.

All prompts are in Spanish. Turn prompts forbid correctness verdicts in the
feedback: grading is done locally and the generator only explains.
"""

from typing import Sequence

from clinicase.agents.types import StartRequest

REPAIR_SOURCE_CHARS = 4000

_DIAGNOSTICS = {
    2: (
        "LABORATORIOS DISPONIBLES:",
        "- Hemograma completo, química sanguínea básica",
        "- Gases arteriales, electrolitos",
        "- Marcadores inflamatorios (PCR, VSG)",
    ),
    3: (
        "LABORATORIOS ESPECÍFICOS:",
        "- Marcadores cardíacos (troponinas, CK-MB)",
        "- Función renal y hepática completa",
        "- Coagulación (PT, PTT, INR)",
    ),
    4: (
        "IMÁGENES DIAGNÓSTICAS:",
        "- Radiografía de tórax",
        "- Electrocardiograma",
        "- Ecografía abdominal",
    ),
}
_SPECIALIZED = (
    "ESTUDIOS ESPECIALIZADOS:",
    "- TAC o RM según indicación clínica",
    "- Estudios funcionales específicos",
    "- Interconsultas especializadas",
)

_NO_VERDICT = (
    "PROHIBIDO indicar si la respuesta del estudiante es correcta o incorrecta "
    "(nada de 'Evaluación:', 'Correcto', 'Incorrecto'): el sistema evalúa por separado. "
    "El feedback es una explicación neutral."
)


def progressive_diagnostics(turn_number: int) -> str:
    """
    Diagnostic material unlocked at a given turn.

    Turn 1 has none; turn 2 basic labs, turn 3 specific labs, turn 4 imaging and
    specialised studies from turn 5 on.

    Args:
        turn_number (int): One-based number of the question about to be asked.

    Returns:
        str: A block starting with a blank line, or an empty string.
    """
    if turn_number <= 1:
        return ""
    lines = _DIAGNOSTICS.get(turn_number, _SPECIALIZED)
    return "\n\n" + "\n".join(lines)


def start_prompt(request: StartRequest) -> str:
    pregnant = "sí" if request.pregnant else "no"
    parts = [
        "INICIO DE SESIÓN: genera un caso clínico interactivo y guárdalo para los turnos siguientes.",
        "FASE DE ANAMNESIS: en 'feedback' muestra la historia clínica completa (motivo de consulta, "
        "enfermedad actual, antecedentes, contexto social/familiar, examen físico inicial) en 3-4 párrafos.",
        "Al final del feedback añade una línea 'Referencias:' con UNA cita abreviada (libro guía o PMID).",
        f"Paciente: edad={request.age.strip()}, sexo={request.sex.strip()}, gestante={pregnant}.",
    ]
    if request.case_type.strip():
        parts.append(f"Tipo de caso: {request.case_type.strip()}.")
    return " ".join(parts)


def start_instructions() -> str:
    return " ".join(
        [
            "Responde SOLO en JSON válido con claves: feedback, next{hallazgos, pregunta{tipo, texto, "
            "opciones, correct_index}}, finish.",
            "tipo='single-choice'; 'opciones' son CUATRO enunciados clínicos completos, sin prefijos de "
            "letra; 'correct_index' (0-3) indica la opción correcta y no se menciona en el texto.",
            "Las opciones se randomizarán: no pongas siempre la correcta en la primera posición.",
            "Usa {} si no hay hallazgos. finish=0. Idioma: español. Sin markdown ni texto fuera del JSON.",
        ]
    )


def question_instructions(previous_questions: Sequence[str], turn_number: int) -> str:
    """
    Format constraints for a non-closing turn.

    Args:
        previous_questions (Sequence[str]): Recent question texts not to repeat.
        turn_number (int): One-based number of the question about to be asked.

    Returns:
        str: The instructions.
    """
    previous = [q.strip() for q in previous_questions if q.strip()]
    history = ""
    if previous:
        history = (
            "PREGUNTAS YA HECHAS (no repetir estos temas ni variantes): "
            + " | ".join(previous)
            + ". Progresa a temas nuevos."
        )
    parts = [
        "Responde SOLO en JSON válido con: feedback, next{hallazgos{}, pregunta{tipo:'single-choice', "
        "texto, opciones, correct_index}}, finish(0).",
        "El feedback (120-220 palabras) explica el razonamiento clínico de la pregunta anterior: "
        "qué hallazgos orientan y por qué cada alternativa es o no adecuada."
        + progressive_diagnostics(turn_number),
        _NO_VERDICT,
        "La última línea del feedback empieza con 'Fuente:' y contiene 1-2 citas (libro/guía o PMID).",
        "'opciones' son CUATRO textos clínicos descriptivos, no solo letras; 'correct_index' (0-3) es "
        "obligatorio. Las opciones se randomizarán: crea 4 opciones balanceadas.",
        "No repitas la historia clínica inicial.",
        history,
        "No cierres el caso: finish=0 siempre. Idioma: español. Sin texto fuera del JSON.",
    ]
    return " ".join(p for p in parts if p)


def closing_instructions() -> str:
    return " ".join(
        [
            "Responde SOLO en JSON válido con: feedback, next{hallazgos{}, pregunta{}}, finish(1).",
            "Formato 'feedback': primera línea 'Resumen Final:'; luego una síntesis (máximo 80 palabras) "
            "con diagnóstico probable, diferenciales clave y manejo inicial.",
            "NO incluyas línea 'Puntaje:' ni evalúes respuestas (el sistema lo hará).",
            "Termina con una línea 'Referencias:' con 1-2 citas. Sin nueva pregunta. Idioma: español.",
        ]
    )


def repair_prompt(previous_content: str) -> str:
    """
    Ask the generator to rewrite its last message as strict JSON.

    Args:
        previous_content (str): The malformed reply; cut to 4000 characters.

    Returns:
        str: The repair prompt.
    """
    prev = (previous_content or "").strip()[:REPAIR_SOURCE_CHARS]
    return (
        "Reescribe tu último mensaje como JSON estricto con claves: feedback, next{hallazgos{}, "
        "pregunta{tipo, texto, opciones}}, finish(0|1). Sin texto fuera del JSON. "
        "Usa {} en hallazgos si no hay nuevos.\n\nMensaje previo:\n" + prev
    )


REPAIR_INSTRUCTIONS = "Responde SOLO JSON válido"


def recovery_prompt(question: str, options: Sequence[str]) -> str:
    """
    Ask only for the correct index of an already delivered question.

    Args:
        question (str): The question text.
        options (Sequence[str]): Its options, enumerated from 0.

    Returns:
        str: The prompt.
    """
    listed = "".join(f" {i}) {opt};" for i, opt in enumerate(options))
    return (
        f'Pregunta previa: "{question}". Opciones:{listed} '
        f'Responde SOLO JSON {{"correct_index":X}} indicando el índice (0-{len(options) - 1}) '
        "de la opción más correcta. No añadas explicación."
    )


RECOVERY_INSTRUCTIONS = "Devuelve solo JSON con correct_index"
