"""Fit stored conversation history into a model token budget."""

from __future__ import annotations

import logging
from typing import Sequence

from assistant.errors import BudgetExceededError
from assistant.messages import ContentPart, Message, PartType
from assistant.tokens import APPROX_IMAGE_TOKENS, TokenCounter

logger = logging.getLogger(__name__)


def count_total_tokens(messages: Sequence[Message], counter: TokenCounter) -> int:
    return sum(counter.count_message(message) for message in messages)


def _truncate_message(message: Message, allowance: int, counter: TokenCounter) -> Message | None:
    """Keep the newest content of ``message`` that fits in ``allowance`` tokens."""
    if allowance <= 0:
        return None
    if isinstance(message.content, str):
        text = counter.truncate(message.content, allowance)
        return message.with_content(text) if text else None

    kept: list[ContentPart] = []
    used = 0
    for part in reversed(message.content):
        if part.type == PartType.IMAGE_URL:
            if used + APPROX_IMAGE_TOKENS > allowance:
                break
            kept.append(part)
            used += APPROX_IMAGE_TOKENS
            continue
        cost = counter.count(part.text)
        if used + cost <= allowance:
            kept.append(part)
            used += cost
            continue
        text = counter.truncate(part.text, allowance - used)
        if text:
            kept.append(ContentPart.of_text(text))
        break
    kept = [part for part in kept if not part.is_empty()]
    if not kept:
        return None
    kept.reverse()
    return message.with_content(tuple(kept))


def reduce_history(
    history: Sequence[Message],
    *,
    leading: Message | None,
    augmentation: Message | None,
    budget: int,
    counter: TokenCounter,
) -> list[Message]:
    """Return ``[leading, augmentation, *newest history]`` within ``budget`` tokens.

    History is walked newest to oldest. The first message that would overflow is
    cut down to the remaining allowance, keeping its end, and everything older
    is dropped. A non-positive budget yields an empty list.
    """
    if budget <= 0:
        return []

    overhead = counter.count_message(leading) + counter.count_message(augmentation)
    if overhead >= budget:
        raise BudgetExceededError(
            f"Leading prompt and memory augmentation use {overhead} tokens, budget is {budget}"
        )
    remaining = budget - overhead

    reduced: list[Message] = []
    used = 0
    for message in reversed(history):
        cost = counter.count_message(message)
        if used + cost <= remaining:
            reduced.append(message)
            used += cost
            continue
        partial = _truncate_message(message, remaining - used, counter)
        if partial is not None:
            reduced.append(partial)
            used += counter.count_message(partial)
            logger.debug("Oldest retained message truncated to %s tokens", counter.count_message(partial))
        break
    reduced.reverse()

    prefix = [m for m in (leading, augmentation) if m is not None]
    logger.info(
        "Reduced history: overhead=%s history=%s/%s messages, %s tokens of %s",
        overhead,
        len(reduced),
        len(history),
        overhead + used,
        budget,
    )
    return prefix + reduced
