import threading
import time

import pytest

from clinicase.agents import AnswerRequest, EvidenceCollector, StartRequest, TurnOrchestrator
from clinicase.agents import prompts
from clinicase.core.errors import InvalidRequestError, UpstreamError, UpstreamTimeoutError
from clinicase.core.evaluation import STATUS_GRADED, STATUS_OPEN, STATUS_PENDING, STATUS_SKIPPED
from clinicase.core.turn import MINIMAL_OPTIONS, MINIMAL_QUESTION_TEXT, SCHEMA_VERSION

CLOSING = (
    "Resumen Final:\nSíndrome coronario agudo probable.\nPuntaje: 4/4\n"
    "Referencias: Harrison, cap. 269"
)


def _answer(orch: TurnOrchestrator, message: str, cid: str = "thread_test", index: int | None = None):
    return orch.submit_answer(
        AnswerRequest(message=message, conversation_id=cid, answer_index=index)
    )


def test_start_delivers_first_question(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=1, feedback="Varón de 55 años con dolor torácico.")])
    orch = make_orchestrator(gen)

    result = orch.start_case(StartRequest(age="55", sex="M", case_type="cardio", max_interactions=3))

    payload = result.to_payload()
    assert payload["thread_id"] == "thread_test"
    assert payload["schema_version"] == SCHEMA_VERSION
    assert payload["case"]["anamnesis"] == "Varón de 55 años con dolor torácico."
    assert payload["case"]["age"] == "55"
    assert payload["data"]["finish"] == 0
    assert payload["data"]["next"]["pregunta"]["texto"] == "P1"
    assert payload["data"]["evaluation"]["total_answered"] == 0
    assert result.fallback is False
    assert orch.store.get_turn_count("thread_test") == 1
    assert orch.store.get_budget("thread_test") == 3
    assert gen.calls[0][2] == prompts.start_instructions()


def test_budget_of_three_closes_after_third_answer(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=1),
            make_turn(text="P2", correct_index=0),
            make_turn(text="P3", correct_index=2),
            make_turn(feedback=CLOSING, text="", options=[], correct_index=None, kind="", finish=1),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest(max_interactions=3))

    first = _answer(orch, "B")
    assert first.turn.finish == 0
    assert first.evaluation.is_correct is True
    assert first.turn.question.text == "P2"

    second = _answer(orch, "C")
    assert second.turn.finish == 0
    assert second.evaluation.is_correct is False
    assert orch.store.snapshot("thread_test").closure_pending is True

    closing = _answer(orch, "ecografia abdominal")
    data = closing.to_payload()
    assert data["finish"] == 1
    assert data["status"] == "finished"
    assert data["next"]["pregunta"] == {"tipo": "", "texto": "", "opciones": []}
    assert closing.evaluation.is_correct is True
    final = data["final_evaluation"]
    assert final["score_correct"] == 2
    assert final["score_total"] == 3
    assert final["score_percent"] == 66.7
    assert final["summary"] == "Síndrome coronario agudo probable."
    assert "Puntaje: 2/3 (66.7%)" in data["feedback"]
    assert "4/4" not in data["feedback"]
    assert "Referencias: Harrison, cap. 269" in data["feedback"]
    assert gen.calls[-1][2] == prompts.closing_instructions()
    assert orch.store.snapshot("thread_test").finished is True


def test_budget_of_one_closes_on_first_answer(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            make_turn(feedback=CLOSING, text="", options=[], correct_index=None, kind="", finish=1),
        ]
    )
    orch = make_orchestrator(gen, max_questions=1)
    orch.start_case(StartRequest())

    assert orch.store.snapshot("thread_test").closure_pending is True
    result = _answer(orch, "A")
    assert result.closing is True
    assert result.final_evaluation.score_correct == 1
    assert result.final_evaluation.score_total == 1


def test_finished_conversation_replays_closing(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            make_turn(feedback=CLOSING, text="", options=[], correct_index=None, kind="", finish=1),
        ]
    )
    orch = make_orchestrator(gen, max_questions=1)
    orch.start_case(StartRequest())
    closing = _answer(orch, "A")
    calls = len(gen.calls)

    again = _answer(orch, "otra respuesta")

    assert len(gen.calls) == calls
    assert again.turn.finish == 1
    assert again.turn.feedback == closing.turn.feedback
    assert again.final_evaluation == closing.final_evaluation
    assert again.evaluation.total_answered == 1


def test_out_of_range_budget_uses_default(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator([make_turn(text="P1")])
    orch = make_orchestrator(gen, max_questions=4)

    result = orch.start_case(StartRequest(max_interactions=25))

    assert result.turn_budget == 4


def test_verdicts_are_removed_from_feedback(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            make_turn(
                text="P2",
                feedback="Evaluación: CORRECTO\nLa troponina confirma daño miocárdico.",
            ),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "B")

    assert result.turn.feedback == "La troponina confirma daño miocárdico."
    assert result.evaluation.is_correct is False


def test_missing_correct_index_recovered_from_generator(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=None),
            make_turn(text="P2", correct_index=1),
            '{"correct_index": 2}',
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "C")

    assert result.evaluation.status == STATUS_GRADED
    assert result.evaluation.is_correct is True
    assert result.evaluation.correct_index == 2
    assert gen.calls[-1][2] == prompts.RECOVERY_INSTRUCTIONS
    assert orch.store.snapshot("thread_test").missing_correct_index_events == 1


def test_missing_correct_index_recovered_from_evidence(
    make_generator, make_orchestrator, make_turn, make_evidence
) -> None:
    options = ["Reposo", "Angioplastia primaria", "Antibióticos", "Observación"]
    gen = make_generator(
        [
            make_turn(text="P1", options=options, correct_index=None),
            make_turn(text="P2", correct_index=0),
        ]
    )
    orch = make_orchestrator(gen, evidence=make_evidence(keyword="Angioplastia"))
    orch.start_case(StartRequest())

    result = _answer(orch, "B")

    assert result.evaluation.is_correct is True
    assert all(call[2] != prompts.RECOVERY_INSTRUCTIONS for call in gen.calls)


def test_unrecoverable_index_leaves_evaluation_pending(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=None),
            make_turn(text="P2", correct_index=1),
            "no sé",
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "A")

    assert result.evaluation.status == STATUS_PENDING
    assert result.evaluation.to_payload()["pending"] is True
    snap = orch.store.snapshot("thread_test")
    assert snap.answered_count == 0
    assert snap.missing_correct_index_events == 1


def test_open_question_counts_as_answered(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="Describe el ECG", options=[], correct_index=None, kind="open"),
            make_turn(text="P2", correct_index=0),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "Elevación del ST en cara inferior")

    assert result.evaluation.status == STATUS_OPEN
    assert result.evaluation.is_correct is None
    assert result.evaluation.total_answered == 1
    assert result.evaluation.total_correct == 1


def test_mislabelled_choice_question_is_graded(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0, kind="multiple-choice"),
            make_turn(text="P2", correct_index=0, kind="open"),
        ]
    )
    orch = make_orchestrator(gen)
    start = orch.start_case(StartRequest())
    assert start.turn.question.kind == "single-choice"

    result = _answer(orch, "D")

    assert result.evaluation.status == STATUS_GRADED
    assert result.evaluation.is_correct is False
    assert (result.evaluation.total_correct, result.evaluation.total_answered) == (0, 1)
    assert result.turn.question.kind == "single-choice"


def test_malformed_turn_is_repaired(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            "Aquí va la pregunta siguiente sin JSON",
            make_turn(text="P2 reparada", correct_index=1),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "A")

    assert result.turn.question.text == "P2 reparada"
    assert gen.calls[-1][2] == prompts.REPAIR_INSTRUCTIONS
    assert "sin JSON" in gen.calls[-1][1]


def test_unrepairable_turn_uses_minimal_question(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=0), "basura", "más basura"])
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "A")

    assert result.turn.finish == 0
    assert result.turn.question.text == MINIMAL_QUESTION_TEXT
    assert result.turn.question.options == list(MINIMAL_OPTIONS)
    assert result.evaluation.is_correct is True
    assert orch.store.get_turn_count("thread_test") == 2


def test_embedded_options_are_rebuilt(make_generator, make_orchestrator, make_turn) -> None:
    text = "¿Cuál es el diagnóstico?\nA) Infarto agudo\nB) Pericarditis\nC) Neumotórax"
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            make_turn(text=text, options=["A", "B", "C"], correct_index=None, kind=""),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "A")

    question = result.turn.question
    assert question.options == ["Infarto agudo", "Pericarditis", "Neumotórax"]
    assert question.kind == "single-choice"
    assert question.correct_index is None


def test_generator_timeout_propagates_without_state_change(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator(
        [
            make_turn(text="P1", correct_index=0),
            UpstreamTimeoutError("slow"),
            make_turn(text="P2", correct_index=0),
        ]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    with pytest.raises(UpstreamTimeoutError):
        _answer(orch, "A")
    snap = orch.store.snapshot("thread_test")
    assert snap.turns_asked == 1
    assert snap.answered_count == 0

    retry = _answer(orch, "A")
    assert retry.evaluation.total_answered == 1
    assert orch.store.get_turn_count("thread_test") == 2


def test_generator_failure_yields_minimal_turn(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=0), UpstreamError("500")])
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "B")

    assert result.turn.question.text == MINIMAL_QUESTION_TEXT
    assert result.evaluation.is_correct is False


def test_start_soft_timeout_returns_fallback(make_generator, make_orchestrator) -> None:
    gen = make_generator([UpstreamTimeoutError("slow start")])
    orch = make_orchestrator(gen)

    result = orch.start_case(StartRequest(age="30", sex="F", pregnant=True))

    assert result.fallback is True
    assert result.conversation_id == "thread_test"
    assert result.case["gestante"] == 1
    assert result.turn.question.text == MINIMAL_QUESTION_TEXT
    assert orch.store.get_turn_count("thread_test") == 1


def test_start_without_conversation_returns_fallback(make_generator, make_orchestrator) -> None:
    gen = make_generator()
    gen.create_error = UpstreamError("no threads")
    orch = make_orchestrator(gen)

    result = orch.start_case(StartRequest())

    assert result.fallback is True
    assert result.conversation_id == ""
    assert len(orch.store) == 0


def test_empty_answer_is_rejected(make_generator, make_orchestrator) -> None:
    orch = make_orchestrator(make_generator())

    with pytest.raises(InvalidRequestError):
        _answer(orch, "   ")


def test_answer_without_thread_creates_conversation(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=0)])
    orch = make_orchestrator(gen)

    result = _answer(orch, "hola", cid="")

    assert result.conversation_id == "thread_test"
    assert result.evaluation.status == STATUS_SKIPPED
    assert orch.store.get_turn_count("thread_test") == 1


def test_answer_without_thread_falls_back_to_local_id(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=0)])
    gen.create_error = UpstreamError("no threads")
    orch = make_orchestrator(gen)

    result = _answer(orch, "hola", cid="")

    assert result.conversation_id.startswith("local-")


def test_explicit_index_takes_priority(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=3), make_turn(text="P2")])
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    result = _answer(orch, "A", index=3)

    assert result.evaluation.is_correct is True
    assert result.evaluation.correct_answer == "Alta domiciliaria"


def test_previous_questions_are_sent_to_generator(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator([make_turn(text="Primera pregunta"), make_turn(text="P2")])
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    _answer(orch, "A")

    assert "Primera pregunta" in gen.calls[-1][2]
    assert "LABORATORIOS DISPONIBLES" in gen.calls[-1][2]




def test_evidence_is_appended_to_prompt_and_case(
    make_generator, make_orchestrator, make_turn, make_evidence
) -> None:
    gen = make_generator(
        [
            make_turn(text="¿Qué marcador pides?", feedback="Dolor torácico opresivo."),
            make_turn(text="P2"),
        ]
    )
    orch = make_orchestrator(gen, evidence=make_evidence(literature_keyword="torácico"))
    start = orch.start_case(StartRequest())

    assert "PubMed: Acute coronary syndromes" in start.case["anamnesis"]

    orch.evidence = EvidenceCollector(make_evidence(keyword="marcador"), timeout=5.0)
    _answer(orch, "A")

    prompt = gen.calls[-1][1]
    assert prompt.startswith("A\n\nEvidencia de apoyo para la explicación:")
    assert 'Harrison — Cardiología: "Texto sobre marcador"' in prompt


def test_failing_evidence_does_not_break_the_exchange(
    make_generator, make_orchestrator, make_turn, make_evidence
) -> None:
    gen = make_generator([make_turn(text="P1", correct_index=0), make_turn(text="P2")])
    orch = make_orchestrator(gen, evidence=make_evidence(fail=True))
    orch.start_case(StartRequest())

    result = _answer(orch, "A")

    assert result.evaluation.is_correct is True
    assert gen.calls[-1][1] == "A"


def test_conversations_are_isolated(make_generator, make_orchestrator, make_turn) -> None:
    gen = make_generator(
        [
            make_turn(text="P1 de a", correct_index=0),
            make_turn(text="P1 de b", correct_index=1),
            make_turn(text="P2 de a"),
        ],
        conversation_id="thread_a",
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())
    gen.conversation_id = "thread_b"
    orch.start_case(StartRequest(max_interactions=5))

    _answer(orch, "A", cid="thread_a")

    a, b = orch.store.snapshot("thread_a"), orch.store.snapshot("thread_b")
    assert (a.turns_asked, a.correct_count, a.turn_budget) == (2, 1, 4)
    assert (b.turns_asked, b.correct_count, b.turn_budget) == (1, 0, 5)
    assert b.last_question_text == "P1 de b"


def test_overlapping_answers_are_tallied_once(make_generator, make_orchestrator, make_turn) -> None:
    entered = threading.Event()
    release = threading.Event()

    class GatedGenerator(make_generator):
        def stream_structured_reply(self, conversation_id, user_prompt, format_instructions):
            if len(self.calls) == 1:
                entered.set()
                release.wait(5)
            return super().stream_structured_reply(
                conversation_id, user_prompt, format_instructions
            )

    gen = GatedGenerator([make_turn(text="P1", correct_index=0), make_turn(text="P2", correct_index=1)])
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    results = []
    first = threading.Thread(target=lambda: results.append(_answer(orch, "A")))
    first.start()
    assert entered.wait(5)
    second = threading.Thread(target=lambda: results.append(_answer(orch, "A")))
    second.start()
    time.sleep(0.2)
    release.set()
    first.join(5)
    second.join(5)

    snap = orch.store.snapshot("thread_test")
    assert len(results) == 2
    assert results[0] is results[1]
    assert results[0].turn.question.text == "P2"
    assert (snap.turns_asked, snap.answered_count, snap.correct_count) == (2, 1, 1)
    assert len(gen.calls) == 2


def test_answer_after_completed_exchange_is_a_new_answer(
    make_generator, make_orchestrator, make_turn
) -> None:
    gen = make_generator(
        [make_turn(text="P1", correct_index=0), make_turn(text="P2", correct_index=1), make_turn(text="P3")]
    )
    orch = make_orchestrator(gen)
    orch.start_case(StartRequest())

    first = _answer(orch, "A")
    second = _answer(orch, "A")

    assert first is not second
    assert second.evaluation.is_correct is False
    assert orch.store.snapshot("thread_test").answered_count == 2
