"""Long-term memory augmentation from a similarity index."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from assistant.invoker import invoke_with_retries
from assistant.memory.embedding_service import EmbeddingService
from assistant.memory.vector_memory import SimilarityIndex
from assistant.messages import Message, Role

logger = logging.getLogger(__name__)

REFERENCE_HEADER = "Related to this conversation document parts:\n"
DEFAULT_RECENT_USER_MESSAGES = 4
DEFAULT_TOP_K = 50


class LongTermMemory:
    """Turns recent user turns into an embedding query and renders the matches."""

    def __init__(
        self,
        index: SimilarityIndex,
        embedder_factory: Callable[[str], EmbeddingService],
        *,
        recent_user_messages: int = DEFAULT_RECENT_USER_MESSAGES,
        top_k: int = DEFAULT_TOP_K,
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
    ) -> None:
        self._index = index
        self._embedder_factory = embedder_factory
        self._recent_user_messages = recent_user_messages
        self._top_k = top_k
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts

    def query_text(self, history: Sequence[Message]) -> str:
        user_messages = [m for m in history if m.role == Role.USER]
        recent = user_messages[-self._recent_user_messages :] if self._recent_user_messages > 0 else []
        return "\n".join(text for text in (m.text() for m in recent) if text)

    async def build_message(self, history: Sequence[Message], api_key: str) -> Message | None:
        text = self.query_text(history)
        if not text.strip():
            return None
        embedder = self._embedder_factory(api_key)
        vector = await invoke_with_retries(
            lambda: asyncio.to_thread(embedder.embed, text),
            timeout_seconds=self._timeout_seconds,
            max_attempts=self._max_attempts,
            label="embeddings.create",
        )
        matches = self._index.query(vector, self._top_k)
        snippets = [match.text for match in matches if match.text]
        if not snippets:
            logger.info("Long-term memory returned no matches")
            return None
        content = REFERENCE_HEADER + "\n".join(snippets)
        logger.info(
            "Long-term memory message built with %s matches and %s characters",
            len(snippets),
            len(content),
        )
        return Message(Role.ASSISTANT, content)
