import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field

from loguru import logger
from openai import APITimeoutError, OpenAI, OpenAIError
from openai.types.chat import ChatCompletionMessageParam

from clinicase.agents.types import DocumentHit
from clinicase.core.errors import UpstreamError, UpstreamTimeoutError
from clinicase.utils.env_cfg import OpenAIConfig, load_openai_env


def _client(config: OpenAIConfig) -> OpenAI:
    return OpenAI(
        api_key=config.api_key,
        base_url=config.api_base,
        timeout=config.timeout,
        max_retries=config.max_retries,
    )


@dataclass
class OpenAIGenerator:
    """
    Turn generator backed by OpenAI chat completions.

    Each conversation keeps a bounded message history so later turns see the case
    that was generated at the start. The format instructions of each call are sent
    as the system message.
    """

    config: OpenAIConfig = field(default_factory=load_openai_env)
    history_messages: int = 12
    max_conversations: int = 5000
    client: OpenAI = field(init=False)
    _history: "OrderedDict[str, list[ChatCompletionMessageParam]]" = field(
        init=False, default_factory=OrderedDict
    )
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        """
        Post-initialization to build the client.
        """
        self.client = _client(self.config)
        logger.info(
            "OpenAIGenerator ready (model={}, assistant={})",
            self.config.model,
            self.config.assistant_id or "-",
        )

    def create_conversation(self) -> str:
        """
        Open a conversation with an empty history.

        Returns:
            str: The new conversation id.
        """
        cid = f"thread_{uuid.uuid4().hex}"
        with self._lock:
            self._history[cid] = []
            while len(self._history) > self.max_conversations:
                self._history.popitem(last=False)
        return cid

    def stream_structured_reply(
        self, conversation_id: str, user_prompt: str, format_instructions: str
    ) -> str:
        """
        Stream a reply and return it once complete.

        Args:
            conversation_id (str): The conversation id.
            user_prompt (str): The user message.
            format_instructions (str): Output constraints, sent as the system message.

        Returns:
            str: The concatenated reply text.

        Raises:
            UpstreamTimeoutError: If the request timed out.
            UpstreamError: If the API call failed.
        """
        with self._lock:
            history = list(self._history.get(conversation_id, []))

        messages: list[ChatCompletionMessageParam] = [
            {"role": "system", "content": format_instructions},
            *history,
            {"role": "user", "content": user_prompt},
        ]
        parts: list[str] = []
        try:
            stream = self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                stream=True,
            )
            for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    parts.append(chunk.choices[0].delta.content)
        except APITimeoutError as e:
            logger.error("Chat completion timed out: {}", e)
            raise UpstreamTimeoutError(f"Chat completion timed out: {e}") from e
        except OpenAIError as e:
            logger.error("Error during chat completion: {}", e)
            raise UpstreamError(f"Chat completion failed: {e}") from e

        reply = "".join(parts)
        with self._lock:
            turns = self._history.setdefault(conversation_id, [])
            turns.append({"role": "user", "content": user_prompt})
            turns.append({"role": "assistant", "content": reply})
            del turns[: max(0, len(turns) - self.history_messages)]
            self._history.move_to_end(conversation_id)
        return reply


@dataclass
class OpenAIDocumentSearch:
    """
    Document search over an OpenAI vector store.
    """

    vector_store_id: str
    config: OpenAIConfig = field(default_factory=load_openai_env)
    client: OpenAI = field(init=False)

    def __post_init__(self) -> None:
        self.client = _client(self.config)

    def search(self, query: str) -> DocumentHit:
        """
        Return the best match for a query.

        A match with a filename or attributes is a metadata hit; content alone is a
        plain-text hit.

        Args:
            query (str): The search query.

        Returns:
            DocumentHit: The hit, empty when nothing matched.

        Raises:
            UpstreamError: If the search call failed.
        """
        try:
            page = self.client.vector_stores.search(
                vector_store_id=self.vector_store_id,
                query=query,
                max_num_results=1,
            )
            results = list(page.data)
        except OpenAIError as e:
            logger.error("Vector store search failed: {}", e)
            raise UpstreamError(f"Vector store search failed: {e}") from e

        if not results:
            return DocumentHit()
        best = results[0]
        snippet = " ".join(
            c.text.strip() for c in best.content if getattr(c, "text", "")
        ).strip()
        attrs = best.attributes or {}
        source = str(attrs.get("source") or attrs.get("title") or best.filename or "")
        section = str(attrs.get("section") or attrs.get("chapter") or "")
        has_metadata = bool(best.filename or attrs)
        return DocumentHit(
            has_result=has_metadata and bool(snippet),
            source=source,
            section=section,
            snippet=snippet,
        )
