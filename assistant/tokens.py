"""Model-aware token counting and suffix truncation backed by tiktoken."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Protocol, Sequence

import tiktoken

from assistant.errors import EncodingError
from assistant.messages import Message, PartType

logger = logging.getLogger(__name__)

DEFAULT_TOKENIZER_MODEL = "gpt-4o"
APPROX_IMAGE_TOKENS = 800


class Encoding(Protocol):
    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: Sequence[int]) -> str: ...


@lru_cache(maxsize=16)
def encoding_for(model: str) -> Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError as exc:
        raise EncodingError(f"No tokenizer known for model {model!r}") from exc


def _encode(encoding: Encoding, text: str) -> list[int]:
    # Chat text may legitimately contain strings like "<|endoftext|>".
    if isinstance(encoding, tiktoken.Encoding):
        return encoding.encode(text, disallowed_special=())
    return encoding.encode(text)


def count_tokens(text: str, model: str) -> int:
    if not text:
        return 0
    return len(_encode(encoding_for(model), text))


def truncate_to_token_count(text: str, model: str, max_tokens: int) -> str:
    """Return the longest suffix of ``text`` that fits in ``max_tokens`` tokens."""
    return _truncate_suffix(encoding_for(model), text, max_tokens)


def _truncate_suffix(encoding: Encoding, text: str, max_tokens: int) -> str:
    if max_tokens <= 0 or not text:
        return ""
    tokens = _encode(encoding, text)
    if len(tokens) <= max_tokens:
        return text
    keep = max_tokens
    while keep > 0:
        candidate = encoding.decode(tokens[-keep:])
        # A slice that splits a multi-byte character decodes to U+FFFD, which is not a suffix.
        if text.endswith(candidate) and len(_encode(encoding, candidate)) <= max_tokens:
            return candidate
        keep -= 1
    return ""


class TokenCounter:
    """Token accounting bound to one model, falling back to a default tokenizer."""

    def __init__(
        self,
        model: str,
        *,
        fallback_model: str = DEFAULT_TOKENIZER_MODEL,
        encoding: Encoding | None = None,
    ) -> None:
        self._model = model
        if encoding is not None:
            self._encoding = encoding
            return
        try:
            self._encoding = encoding_for(model)
        except EncodingError:
            logger.warning("No tokenizer for model %s, using %s", model, fallback_model)
            self._model = fallback_model
            self._encoding = encoding_for(fallback_model)

    @property
    def model(self) -> str:
        return self._model

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(_encode(self._encoding, text))

    def truncate(self, text: str, max_tokens: int) -> str:
        return _truncate_suffix(self._encoding, text, max_tokens)

    def count_message(self, message: Message | None) -> int:
        if message is None:
            return 0
        total = 0
        for part in message.parts:
            if part.type == PartType.TEXT:
                total += self.count(part.text)
            else:
                total += APPROX_IMAGE_TOKENS
        return total
