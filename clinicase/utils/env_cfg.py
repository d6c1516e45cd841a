import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class HostConfig:
    """
    Dataclass for host configuration.
    """

    backend_host: str
    cors_allowed_origins: str


@dataclass(frozen=True)
class InteractiveConfig:
    """
    Dataclass for the interactive case engine configuration.
    """

    max_questions: int = 4
    min_requested_questions: int = 3
    max_requested_questions: int = 10
    start_timeout: float = 25.0
    start_soft_timeout: float = 8.0
    message_timeout: float = 25.0
    evidence_timeout: float = 8.0
    vector_store_id: str = ""
    testing: bool = False
    fake: bool = False
    store_capacity: int = 5000
    history_lookback: int = 5


@dataclass(frozen=True)
class OpenAIConfig:
    """
    Dataclass for OpenAI configuration.
    """

    api_key: str
    api_base: str | None
    model: str
    timeout: float
    max_retries: int
    assistant_id: str


@dataclass(frozen=True)
class PubMedConfig:
    """
    Dataclass for PubMed E-utilities configuration.
    """

    base_url: str
    api_key: str | None
    retmax: int
    timeout: float


@dataclass(frozen=True)
class LogConfig:
    """
    Dataclass for logging configuration.
    """

    path: Path
    level: str


def _as_bool(val: str | None, default: bool = False) -> bool:
    """
    Interpret an environment string as a boolean flag.

    Args:
        val (str | None): The raw environment value.
        default (bool, optional): Value used when the variable is unset. Defaults to False.

    Returns:
        bool: The parsed flag.
    """
    if val is None:
        return default
    return val.strip().lower() in _TRUTHY


def _bounded_int(name: str, default: int, low: int, high: int | None = None) -> int:
    """
    Read an integer environment variable, keeping the default when the value is
    missing, unparsable or outside ``[low, high]``.

    Args:
        name (str): The environment variable name.
        default (int): The fallback value.
        low (int): Inclusive lower bound.
        high (int | None, optional): Inclusive upper bound. Defaults to None (unbounded).

    Returns:
        int: The accepted value.
    """
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for {}: {!r}", name, raw)
        return default
    if value < low or (high is not None and value > high):
        logger.warning(
            "Ignoring out-of-range value for {}: {} (allowed {}..{})",
            name,
            value,
            low,
            high if high is not None else "inf",
        )
        return default
    return value


def load_host_env() -> HostConfig:
    """
    Loads host configuration from environment variables or defaults.

    Returns:
        HostConfig: Dataclass containing host configuration.
        - backend_host (str): The backend host URL.
        - cors_allowed_origins (str): Comma-separated list of allowed CORS origins.
    """
    return HostConfig(
        backend_host=os.getenv("BACKEND_HOST", "http://localhost:8000"),
        cors_allowed_origins=os.getenv(
            "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ),
    )


def load_interactive_env() -> InteractiveConfig:
    """
    Loads the interactive case configuration from environment variables or defaults.

    Returns:
        InteractiveConfig: Dataclass containing the engine configuration.
        - max_questions (int): Default question budget per conversation.
        - start_timeout (float): Overall deadline for the first exchange, in seconds.
        - start_soft_timeout (float): Soft deadline for the first exchange, in seconds.
        - message_timeout (float): Overall deadline for answer exchanges, in seconds.
        - evidence_timeout (float): Deadline for a single evidence lookup round, in seconds.
        - vector_store_id (str): Identifier of the curated document index.
        - testing (bool): Disable option shuffling and evidence lookups.
        - fake (bool): Use the deterministic offline generator.
        - store_capacity (int): Maximum number of conversations kept in memory.
    """
    return InteractiveConfig(
        max_questions=_bounded_int("CASOS_INTERACTIVOS_MAX_PREGUNTAS", 4, 1),
        start_timeout=float(_bounded_int("INTERACTIVE_START_TIMEOUT_SEC", 25, 5, 90)),
        start_soft_timeout=float(
            _bounded_int("INTERACTIVE_START_SOFT_TIMEOUT_SEC", 8, 3, 30)
        ),
        message_timeout=float(
            _bounded_int("INTERACTIVE_MESSAGE_TIMEOUT_SEC", 25, 5, 90)
        ),
        evidence_timeout=float(
            _bounded_int("INTERACTIVE_EVIDENCE_TIMEOUT_SEC", 8, 1, 30)
        ),
        vector_store_id=os.getenv("INTERACTIVE_VECTOR_ID", "").strip(),
        testing=_as_bool(os.getenv("TESTING")),
        fake=_as_bool(os.getenv("INTERACTIVE_FAKE")),
        store_capacity=_bounded_int("INTERACTIVE_STORE_CAPACITY", 5000, 1),
    )


def load_openai_env() -> OpenAIConfig:
    """
    Loads OpenAI configuration from environment variables or defaults.

    Returns:
        OpenAIConfig: Dataclass containing OpenAI configuration.
        - api_key (str): The API key (empty when unset).
        - api_base (str | None): Optional base URL for OpenAI-compatible servers.
        - model (str): The chat model used for structured turns.
        - timeout (float): Per-request timeout in seconds.
        - max_retries (int): Client-level retry count.
        - assistant_id (str): Assistant label reported in logs.
    """
    return OpenAIConfig(
        api_key=os.getenv("OPENAI_API_KEY", ""),
        api_base=os.getenv("OPENAI_API_BASE") or None,
        model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        timeout=float(os.getenv("OPENAI_TIMEOUT", "60")),
        max_retries=int(os.getenv("OPENAI_MAX_RETRIES", "0")),
        assistant_id=os.getenv("CASOS_INTERACTIVOS_ASSISTANT", "").strip(),
    )


def load_pubmed_env() -> PubMedConfig:
    """
    Loads PubMed configuration from environment variables or defaults.

    Returns:
        PubMedConfig: Dataclass containing PubMed configuration.
    """
    return PubMedConfig(
        base_url=os.getenv(
            "PUBMED_BASE_URL", "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
        ).rstrip("/"),
        api_key=os.getenv("NCBI_API_KEY") or None,
        retmax=_bounded_int("PUBMED_RETMAX", 3, 1, 20),
        timeout=float(os.getenv("PUBMED_TIMEOUT", "10")),
    )


def load_log_env() -> LogConfig:
    """
    Loads logging configuration from environment variables or defaults.

    Returns:
        LogConfig: Dataclass containing logging configuration.
        - path (Path): Path to the log file.
        - level (str): Minimum level printed to the console.
    """
    project_root: Path = Path(__file__).parents[2].resolve()
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if level not in _LEVELS:
        logger.warning("Ignoring unknown LOG_LEVEL {!r}", level)
        level = "INFO"
    return LogConfig(
        path=Path(
            os.getenv("LOG_PATH", project_root / ".logs" / "clinicase.log")
        ).expanduser(),
        level=level,
    )
