from typing import Any, cast

from fastapi import FastAPI, HTTPException, Response
from loguru import logger
from pydantic import BaseModel, Field, field_validator
from starlette.middleware.cors import CORSMiddleware

from clinicase.agents import (
    AnswerRequest,
    CompositeEvidenceService,
    EvidenceCollector,
    StartRequest,
    TurnOrchestrator,
)
from clinicase.core.errors import InvalidRequestError, UpstreamTimeoutError
from clinicase.utils.env_cfg import InteractiveConfig, load_host_env, load_interactive_env
from clinicase.utils.offline import NullEvidenceService, OfflineGenerator

# Load allowed origins from environment or default to the frontend's dev ports
allowed_origins = load_host_env().cors_allowed_origins.split(",")

app = FastAPI(title="Clinicase")
app.add_middleware(
    middleware_class=cast(Any, CORSMiddleware),
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

orchestrator: TurnOrchestrator | None = None


def build_orchestrator(config: InteractiveConfig | None = None) -> TurnOrchestrator:
    """
    Wire the orchestrator from configuration.

    Fake mode uses the offline generator and no evidence. Otherwise the OpenAI
    generator is used, with document search only for ``vs_`` vector store ids and
    PubMed for literature.

    Args:
        config (InteractiveConfig | None, optional): Engine configuration. Defaults to the environment.

    Returns:
        TurnOrchestrator: The configured orchestrator.
    """
    cfg = config or load_interactive_env()
    if cfg.fake:
        logger.info("Interactive engine running in fake mode")
        return TurnOrchestrator(
            OfflineGenerator(),
            evidence=EvidenceCollector(NullEvidenceService(), enabled=False),
            config=cfg,
        )

    from clinicase.utils.openai_cfg import OpenAIDocumentSearch, OpenAIGenerator
    from clinicase.utils.pubmed import PubMedClient

    documents = None
    if cfg.vector_store_id.startswith("vs_"):
        documents = OpenAIDocumentSearch(cfg.vector_store_id).search
    service = CompositeEvidenceService(documents, PubMedClient().search)
    return TurnOrchestrator(
        OpenAIGenerator(),
        evidence=EvidenceCollector(
            service, timeout=cfg.evidence_timeout, enabled=not cfg.testing
        ),
        config=cfg,
    )


def get_orchestrator() -> TurnOrchestrator:
    global orchestrator
    if orchestrator is None:
        orchestrator = build_orchestrator()
    return orchestrator


# --- Pydantic models for request and response payloads ---


class StartIn(BaseModel):
    age: str = ""
    sex: str = ""
    type: str = ""
    pregnant: bool = False
    max_interactions: int | None = None

    @field_validator("age", "sex", "type", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


class StartOut(BaseModel):
    case: dict[str, Any]
    data: dict[str, Any]
    thread_id: str
    schema_version: str


class MessageIn(BaseModel):
    thread_id: str = ""
    mensaje: str = Field(default="")
    answer_index: int | None = None


class MessageOut(BaseModel):
    data: dict[str, Any]


# --- API Endpoints ---


@app.post("/casos-interactivos/iniciar", response_model=StartOut, tags=["Interactive"])
def start_case(payload: StartIn, response: Response) -> dict[str, Any]:
    """
    Open an interactive case.

    Args:
        payload (StartIn): Patient profile and optional question budget.
        response (Response): Used to expose the soft timeout header.

    Returns:
        dict[str, Any]: The case, the first turn, the thread id and the schema version.
    """
    orch = get_orchestrator()
    response.headers["X-Interactive-Start-Soft-Timeout"] = str(
        int(orch.config.start_soft_timeout)
    )
    result = orch.start_case(
        StartRequest(
            age=payload.age,
            sex=payload.sex,
            case_type=payload.type,
            pregnant=payload.pregnant,
            max_interactions=payload.max_interactions,
        )
    )
    return result.to_payload()


@app.post("/casos-interactivos/mensaje", response_model=MessageOut, tags=["Interactive"])
def message(payload: MessageIn) -> dict[str, Any]:
    """
    Submit an answer and receive the next turn.

    Args:
        payload (MessageIn): Thread id, answer text and optional option index.

    Returns:
        dict[str, Any]: ``{"data": turn}``.

    Raises:
        HTTPException: 400 for an empty answer, 503 when the generator timed out.
    """
    try:
        result = get_orchestrator().submit_answer(
            AnswerRequest(
                message=payload.mensaje,
                conversation_id=payload.thread_id,
                answer_index=payload.answer_index,
            )
        )
    except InvalidRequestError as e:
        logger.error("HTTPException: invalid message body: {}", e)
        raise HTTPException(status_code=400, detail="invalid body")
    except UpstreamTimeoutError as e:
        logger.error("HTTPException: interactive turn timed out: {}", e)
        raise HTTPException(
            status_code=503, detail="interactive case service unavailable, retry"
        )
    return {"data": result.to_payload()}


@app.get("/health", tags=["Health"])
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    from clinicase.utils.logging_cfg import setup_logging

    setup_logging()
    uvicorn.run("clinicase.core.api:app", host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    main()
