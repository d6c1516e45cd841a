"""Turn orchestrator: the interactive case state machine."""

import json
import uuid
from typing import Any

from loguru import logger

from clinicase.agents import prompts
from clinicase.agents.evidence import EvidenceCollector
from clinicase.agents.policies import TurnBudgetPolicy
from clinicase.agents.types import (
    AnswerRequest,
    GeneratorService,
    StartRequest,
    StartResult,
    TurnResult,
)
from clinicase.core.errors import InvalidRequestError, UpstreamError, UpstreamTimeoutError
from clinicase.core.evaluation import (
    STATUS_CLOSED,
    AnswerEvaluator,
    Evaluation,
    seed_evaluation,
)
from clinicase.core.feedback import (
    append_references,
    build_final_feedback,
    sanitize_feedback,
    summarize_performance,
)
from clinicase.core.shuffle import OptionRandomizer
from clinicase.core.state import ConversationSnapshot, ConversationStore
from clinicase.core.turn import (
    SINGLE_CHOICE,
    NextBlock,
    QuestionPayload,
    TurnDocument,
    decode_turn,
    extract_json,
    final_question,
    is_open_question,
    minimal_question,
    minimal_turn,
    question_is_usable,
    repair_embedded_options,
)
from clinicase.utils.deadline import Deadline, call_with_timeout
from clinicase.utils.env_cfg import InteractiveConfig

CASE_TITLE = "Caso clínico interactivo"
DEFAULT_ANAMNESIS = "Historia clínica inicial proporcionada por el sistema."
FALLBACK_ANAMNESIS = "Caso clínico básico generado por el sistema de respaldo."


class TurnOrchestrator:
    """
    Drive a case through OPEN -> CLOSURE_PENDING -> FINISHED.

    The generator only writes content. Turn counting, closure and grading are
    decided here from the conversation store.
    """

    def __init__(
        self,
        generator: GeneratorService,
        store: ConversationStore | None = None,
        evidence: EvidenceCollector | None = None,
        randomizer: OptionRandomizer | None = None,
        config: InteractiveConfig | None = None,
        budget_policy: TurnBudgetPolicy | None = None,
    ) -> None:
        """
        Initialize the TurnOrchestrator.

        Args:
            generator (GeneratorService): The upstream turn generator.
            store (ConversationStore | None, optional): Conversation state. Defaults to a new store.
            evidence (EvidenceCollector | None, optional): Evidence lookups. Defaults to a disabled collector.
            randomizer (OptionRandomizer | None, optional): Option shuffler. Defaults to one enabled unless testing.
            config (InteractiveConfig | None, optional): Engine configuration. Defaults to InteractiveConfig().
            budget_policy (TurnBudgetPolicy | None, optional): Budget resolution. Defaults to one built from config.
        """
        self.config = config or InteractiveConfig()
        cfg = self.config
        self.generator = generator
        self.store = store or ConversationStore(cfg.max_questions, cfg.store_capacity)
        self.evidence = evidence or EvidenceCollector(
            None, timeout=cfg.evidence_timeout, enabled=False
        )
        self.randomizer = randomizer or OptionRandomizer(enabled=not cfg.testing)
        self.budget_policy = budget_policy or TurnBudgetPolicy(
            default=cfg.max_questions,
            min_requested=cfg.min_requested_questions,
            max_requested=cfg.max_requested_questions,
        )
        self.evaluator = AnswerEvaluator(self.store)

    # --- start --- #

    def start_case(self, request: StartRequest) -> StartResult:
        """
        Open a case and deliver its first question.

        The first reply is awaited under the soft timeout; any upstream failure or
        timeout yields the fallback start instead of an error.

        Args:
            request (StartRequest): The patient profile and optional budget.

        Returns:
            StartResult: The case, the first turn and a seeded evaluation.
        """
        cfg = self.config
        budget = self.budget_policy.resolve(request.max_interactions)
        deadline = Deadline(cfg.start_timeout)

        try:
            cid = call_with_timeout(self.generator.create_conversation, deadline.remaining())
        except UpstreamError as e:
            logger.warning("[InteractiveCase][Start] create_conversation failed: {}", e)
            return self._fallback_start(request, "", budget)
        self.store.ensure(cid, budget)

        try:
            turn, fallback = self._request_turn(
                cid,
                prompts.start_prompt(request),
                prompts.start_instructions(),
                deadline,
                first_timeout=deadline.cap(cfg.start_soft_timeout),
            )
        except UpstreamTimeoutError:
            logger.warning(
                "[InteractiveCase][Start][SoftTimeout] thread={} soft={}s",
                cid,
                cfg.start_soft_timeout,
            )
            return self._fallback_start(request, cid, budget)

        turn.feedback = sanitize_feedback(turn.feedback)
        question = self._prepare_question(cid, turn)
        if not fallback:
            self.randomizer.apply(question)
        turn.finish = 0
        snap = self.store.record_question(cid, question)

        anamnesis = turn.feedback.strip() or DEFAULT_ANAMNESIS
        refs = self.evidence.collect(_first_line(anamnesis, 240), deadline)
        case = _case_payload(request, append_references(anamnesis, refs))

        logger.info(
            "[InteractiveCase][Start] thread={} max={} turn={} closing={}",
            cid,
            snap.turn_budget,
            snap.turns_asked,
            snap.closure_pending,
        )
        return StartResult(
            conversation_id=cid,
            case=case,
            turn=turn,
            evaluation=seed_evaluation(),
            turn_budget=snap.turn_budget,
            fallback=fallback,
        )

    def _fallback_start(self, request: StartRequest, cid: str, budget: int) -> StartResult:
        turn = minimal_turn()
        if cid:
            self.store.ensure(cid, budget)
            self.store.record_question(cid, turn.next_block.question)
        return StartResult(
            conversation_id=cid,
            case=_case_payload(request, FALLBACK_ANAMNESIS),
            turn=turn,
            evaluation=seed_evaluation(),
            turn_budget=budget,
            fallback=True,
        )

    # --- answers --- #

    def submit_answer(self, request: AnswerRequest) -> TurnResult:
        """
        Process a learner answer and produce the next turn.

        Exchanges on one conversation run one at a time. A request that overlapped
        an exchange on the same question gets that exchange's result back.

        Args:
            request (AnswerRequest): The answer, its conversation id and an optional option index.

        Returns:
            TurnResult: The next question, or the closing turn once the budget is spent.

        Raises:
            InvalidRequestError: If the answer text is empty.
            UpstreamTimeoutError: If the generator does not answer before the deadline.
        """
        message = (request.message or "").strip()
        if not message:
            raise InvalidRequestError("mensaje must not be empty")
        deadline = Deadline(self.config.message_timeout)

        cid = (request.conversation_id or "").strip()
        if not cid:
            try:
                cid = call_with_timeout(
                    self.generator.create_conversation, deadline.remaining()
                )
            except UpstreamTimeoutError:
                raise
            except UpstreamError as e:
                logger.warning("[InteractiveCase][Message] create_conversation failed: {}", e)
                cid = f"local-{uuid.uuid4().hex}"
            self.store.ensure(cid)

        with self.store.exchange(cid) as overlapped:
            if overlapped is not None:
                logger.info(
                    "[InteractiveCase][Message][Overlap] thread={} returning concurrent result",
                    cid,
                )
                return overlapped

            snap = self.store.snapshot(cid)
            logger.info(
                "[InteractiveCase][Message][Begin] thread={} curr={} max={} closing={} finished={}",
                cid,
                snap.turns_asked,
                snap.turn_budget,
                snap.closure_pending,
                snap.finished,
            )
            if snap.finished:
                return self._replay_closing(snap, message)
            if snap.closure_pending:
                result = self._close(snap, message, request.answer_index, deadline)
            else:
                result = self._advance(snap, message, request.answer_index, deadline)
            self.store.complete_exchange(cid, result)
            return result

    def _advance(
        self,
        snap: ConversationSnapshot,
        message: str,
        answer_index: int | None,
        deadline: Deadline,
    ) -> TurnResult:
        cid = snap.conversation_id
        cfg = self.config
        previous = self.store.recent_questions(cid, cfg.history_lookback)

        user_prompt = message
        if snap.last_question_text:
            refs = self.evidence.collect(
                f"{snap.last_question_text} — Respuesta: {message}", deadline
            )
            if refs:
                user_prompt = f"{message}\n\nEvidencia de apoyo para la explicación:{refs}"

        turn, fallback = self._request_turn(
            cid,
            user_prompt,
            prompts.question_instructions(previous, snap.turns_asked + 1),
            deadline,
        )
        turn.feedback = sanitize_feedback(turn.feedback)
        question = self._prepare_question(cid, turn)
        if not fallback:
            self.randomizer.apply(question)

        self._ensure_correct_index(snap, deadline)
        evaluation = self.evaluator.evaluate(cid, message, answer_index)

        after = self.store.record_question(cid, question)
        turn.finish = 0
        logger.info(
            "[InteractiveCase][Message][Return] thread={} count={} max={} finish=0 closing={}",
            cid,
            after.turns_asked,
            after.turn_budget,
            after.closure_pending,
        )
        return TurnResult(conversation_id=cid, turn=turn, evaluation=evaluation)

    def _close(
        self,
        snap: ConversationSnapshot,
        message: str,
        answer_index: int | None,
        deadline: Deadline,
    ) -> TurnResult:
        cid = snap.conversation_id
        model_feedback = self._closing_narrative(cid, message, deadline)

        self._ensure_correct_index(snap, deadline)
        evaluation = self.evaluator.evaluate(cid, message, answer_index)

        graded = self.store.snapshot(cid)
        final = summarize_performance(
            graded.correct_count,
            graded.answered_count,
            model_feedback,
            graded.missing_correct_index_events,
        )
        feedback = build_final_feedback(final, model_feedback)
        query = model_feedback.strip() or snap.last_question_text or message
        feedback = append_references(feedback, self.evidence.collect(query, deadline))

        done = self.store.mark_finished(cid, feedback, final)
        logger.info(
            "[InteractiveCase][Message][Return] thread={} count={} max={} finish=1 closing=True "
            "score={}/{}",
            cid,
            done.turns_asked,
            done.turn_budget,
            final.score_correct,
            final.score_total,
        )
        return TurnResult(
            conversation_id=cid,
            turn=_closing_turn(feedback),
            evaluation=evaluation,
            final_evaluation=final,
            closing=True,
        )

    def _replay_closing(self, snap: ConversationSnapshot, message: str) -> TurnResult:
        logger.info("[InteractiveCase][Message][Finished] thread={} replaying closure", snap.conversation_id)
        final = snap.final_evaluation or summarize_performance(
            snap.correct_count, snap.answered_count, "", snap.missing_correct_index_events
        )
        feedback = snap.closing_feedback or build_final_feedback(final, "")
        evaluation = Evaluation(
            user_answer=message,
            total_correct=snap.correct_count,
            total_answered=snap.answered_count,
            status=STATUS_CLOSED,
        )
        return TurnResult(
            conversation_id=snap.conversation_id,
            turn=_closing_turn(feedback),
            evaluation=evaluation,
            final_evaluation=final,
            closing=True,
        )

    def _closing_narrative(self, cid: str, message: str, deadline: Deadline) -> str:
        """
        Ask the generator for its closing synthesis; only the narrative is used.
        """
        try:
            raw = call_with_timeout(
                self.generator.stream_structured_reply,
                deadline.remaining(),
                cid,
                message,
                prompts.closing_instructions(),
            )
        except UpstreamTimeoutError:
            raise
        except UpstreamError as e:
            logger.warning("[InteractiveCase][Close] generator failed thread={}: {}", cid, e)
            return ""
        doc = decode_turn(raw) or self._repair(cid, raw, deadline)
        if doc is None:
            logger.warning("[InteractiveCase][Close] unusable closing reply thread={}", cid)
            return ""
        return doc.feedback

    # --- generator plumbing --- #

    def _request_turn(
        self,
        cid: str,
        user_prompt: str,
        instructions: str,
        deadline: Deadline,
        first_timeout: float | None = None,
    ) -> tuple[TurnDocument, bool]:
        """
        Request a turn, repairing it once if it does not decode.

        Args:
            cid (str): The conversation id.
            user_prompt (str): The prompt.
            instructions (str): Format instructions.
            deadline (Deadline): Overall deadline of the exchange.
            first_timeout (float | None, optional): Wait for the first reply. Defaults to the remaining time.

        Returns:
            tuple[TurnDocument, bool]: The turn and whether it is the built-in minimal turn.

        Raises:
            UpstreamTimeoutError: If a generator call outlives its wait.
        """
        wait = deadline.remaining() if first_timeout is None else first_timeout
        try:
            raw = call_with_timeout(
                self.generator.stream_structured_reply, wait, cid, user_prompt, instructions
            )
        except UpstreamTimeoutError:
            raise
        except UpstreamError as e:
            logger.warning("[InteractiveCase] generator failed thread={}: {}", cid, e)
            return minimal_turn(), True

        turn = decode_turn(raw)
        if turn is None:
            logger.info("[InteractiveCase] malformed turn thread={}, requesting repair", cid)
            turn = self._repair(cid, raw, deadline)
        if turn is None:
            logger.warning("[InteractiveCase] repair failed thread={}, using minimal turn", cid)
            return minimal_turn(), True
        return turn, False

    def _repair(self, cid: str, raw: str, deadline: Deadline) -> TurnDocument | None:
        try:
            fixed = call_with_timeout(
                self.generator.stream_structured_reply,
                deadline.remaining(),
                cid,
                prompts.repair_prompt(raw),
                prompts.REPAIR_INSTRUCTIONS,
            )
        except UpstreamTimeoutError:
            raise
        except UpstreamError as e:
            logger.warning("[InteractiveCase] repair call failed thread={}: {}", cid, e)
            return None
        return decode_turn(fixed)

    def _prepare_question(self, cid: str, turn: TurnDocument) -> QuestionPayload:
        """
        Make the turn's question deliverable, replacing it with the minimal one if needed.
        """
        question = turn.next_block.question
        if repair_embedded_options(question, turn.feedback):
            logger.info(
                "[InteractiveCase] rebuilt {} embedded options thread={}",
                len(question.options),
                cid,
            )
        if len(question.options) >= 2:
            question.kind = SINGLE_CHOICE
        if not question_is_usable(question):
            logger.info("[InteractiveCase][RepairedQuestion] thread={}", cid)
            question = minimal_question()
            turn.next_block.question = question
        return question

    # --- correct index recovery --- #

    def _ensure_correct_index(self, snap: ConversationSnapshot, deadline: Deadline) -> None:
        """
        Recover a missing correct index for the cached question, evidence first.
        """
        cid = snap.conversation_id
        options = list(snap.last_question_options)
        if is_open_question(options) or snap.has_valid_correct_index():
            return
        if self.store.note_missing_correct_index(cid):
            logger.warning("[InteractiveCase] missing correct_index thread={}", cid)

        idx = self.evidence.recover_correct_index(snap.last_question_text, options, deadline)
        source = "evidence"
        if idx < 0:
            idx = self._ask_correct_index(cid, snap.last_question_text, options, deadline)
            source = "generator"
        if idx >= 0 and self.store.set_correct_index(cid, idx):
            logger.info(
                "[InteractiveCase] recovered correct_index={} via {} thread={}", idx, source, cid
            )

    def _ask_correct_index(
        self, cid: str, question: str, options: list[str], deadline: Deadline
    ) -> int:
        try:
            raw = call_with_timeout(
                self.generator.stream_structured_reply,
                deadline.remaining(),
                cid,
                prompts.recovery_prompt(question, options),
                prompts.RECOVERY_INSTRUCTIONS,
            )
        except UpstreamError as e:
            logger.warning("[InteractiveCase] correct_index query failed thread={}: {}", cid, e)
            return -1
        idx = _parse_correct_index(raw)
        return idx if 0 <= idx < len(options) else -1


def _parse_correct_index(raw: str) -> int:
    try:
        data = json.loads(extract_json(raw))
    except json.JSONDecodeError:
        return -1
    value = data.get("correct_index") if isinstance(data, dict) else None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return -1
    return int(value) if float(value).is_integer() else -1


def _closing_turn(feedback: str) -> TurnDocument:
    return TurnDocument(
        feedback=feedback,
        next_block=NextBlock(findings={}, question=final_question()),
        finish=1,
    )


def _first_line(text: str, limit: int) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()[:limit]
    return ""


def _case_payload(request: StartRequest, anamnesis: str) -> dict[str, Any]:
    return {
        "id": 0,
        "title": CASE_TITLE,
        "type": "interactive",
        "age": request.age.strip(),
        "sex": request.sex.strip(),
        "gestante": 1 if request.pregnant else 0,
        "is_real": 1,
        "anamnesis": anamnesis,
        "physical_examination": "",
        "diagnostic_tests": "",
        "final_diagnosis": "",
        "management": "",
    }
