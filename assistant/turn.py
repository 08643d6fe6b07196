"""One conversation turn: persist input, check access, reduce history, answer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable

from assistant.access import AccessControl, Authorized, Denied, denial_message
from assistant.conversation_buffer import TurnRequest
from assistant.errors import PersistenceError
from assistant.history import count_total_tokens, reduce_history
from assistant.invoker import invoke_with_retries
from assistant.llm import Completion, complete
from assistant.long_term_memory import LongTermMemory
from assistant.memory.event_store import AuditEventStore
from assistant.memory.message_store import MessageStore
from assistant.messages import Message, Role, log_prefix, system_message
from assistant.profile import BotProfile
from assistant.tokens import TokenCounter
from assistant.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CompleteFn = Callable[..., Completion]


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> dict[str, int]:
    return {key: total.get(key, 0) + usage.get(key, 0) for key in total.keys() | usage.keys()}


class TurnRunner:
    def __init__(
        self,
        profile: BotProfile,
        *,
        messages: MessageStore,
        events: AuditEventStore,
        access: AccessControl,
        counter: TokenCounter,
        long_term_memory: LongTermMemory | None = None,
        tools: ToolRegistry | None = None,
        base_url: str | None = None,
        complete_fn: CompleteFn = complete,
    ) -> None:
        self._profile = profile
        self._messages = messages
        self._events = events
        self._access = access
        self._counter = counter
        self._long_term_memory = long_term_memory
        self._tools = tools if tools is not None and tools.count() else None
        self._base_url = base_url
        self._complete = complete_fn

    async def run(self, request: TurnRequest) -> None:
        """Run a dispatched turn; every failure ends in exactly one user-facing reply."""
        prefix = log_prefix(request.sender)
        try:
            async with request.sink.keep_typing():
                answer = await self._answer(request)
        except Exception:
            logger.exception("%s [ERROR] turn failed", prefix)
            await request.sink.send(self._profile.strings.error_string)
            return
        await request.sink.send(answer)
        logger.info("%s answer sent to the user", prefix)

    async def _answer(self, request: TurnRequest) -> str:
        sender = request.sender
        prefix = log_prefix(sender)
        self._store_fragments(request)

        decision = self._access.check(sender)
        if isinstance(decision, Denied):
            return denial_message(decision.reason, self._profile.strings)

        history = self._messages.active_history(
            sender.chat_id,
            since_hours=self._profile.history_window_hours,
        )
        logger.info("%s messages loaded from the database: %s", prefix, len(history))
        prompt = await self._build_prompt(history, decision)

        model = self._profile.gpt_model
        if any(message.has_image() for message in prompt):
            model = self._profile.gpt_model_for_image_url
        payload = [message.to_api() for message in prompt]
        completion = await self._complete_with_tools(request, payload, decision, model)
        logger.info("%s completion received, total_tokens=%s", prefix, completion.total_tokens)

        answer = completion.content or self._profile.strings.no_answer_error
        self._store_answer(request, answer, completion, decision)
        return answer

    async def _request_completion(
        self,
        payload: list[dict[str, Any]],
        decision: Authorized,
        model: str,
    ) -> Completion:
        tools = self._tools.definitions() if self._tools is not None else None
        return await invoke_with_retries(
            lambda: asyncio.to_thread(
                self._complete,
                payload,
                decision.api_key,
                base_url=self._base_url,
                model=model,
                timeout=self._profile.completion_timeout_seconds,
                tools=tools,
            ),
            timeout_seconds=self._profile.completion_timeout_seconds,
            max_attempts=self._profile.completion_attempts,
            label="chat.completions.create",
        )

    async def _complete_with_tools(
        self,
        request: TurnRequest,
        payload: list[dict[str, Any]],
        decision: Authorized,
        model: str,
    ) -> Completion:
        """Request a completion, answering model tool calls for up to ``max_tool_rounds`` rounds.

        Tool exchanges live only in ``payload``; they are not persisted.
        """
        completion = await self._request_completion(payload, decision, model)
        usage = dict(completion.usage)
        rounds_left = self._profile.max_tool_rounds
        while self._tools is not None and completion.tool_calls and rounds_left > 0:
            rounds_left -= 1
            logger.info(
                "%s model requested tools: %s",
                log_prefix(request.sender),
                ", ".join(call.name for call in completion.tool_calls),
            )
            await request.sink.send(self._profile.strings.web_search_notice)
            payload = payload + [
                Message(Role.ASSISTANT, completion.content or "", tool_calls=completion.tool_calls).to_api()
            ]
            for call in completion.tool_calls:
                payload.append((await self._tools.run(call)).to_api())
            completion = await self._request_completion(payload, decision, model)
            usage = _add_usage(usage, completion.usage)
        return replace(completion, usage=usage)

    async def _build_prompt(self, history: list[Message], decision: Authorized) -> list[Message]:
        augmentation = None
        if self._long_term_memory is not None:
            augmentation = await self._long_term_memory.build_message(history, decision.api_key)
        no_tools = None if self._tools is not None else system_message(self._profile.strings.no_tools_prompt)
        prompt = reduce_history(
            history,
            leading=self._profile.leading_message(),
            augmentation=augmentation,
            budget=self._profile.token_budget - self._counter.count_message(no_tools),
            counter=self._counter,
        )
        if no_tools is not None:
            prompt.insert(0, no_tools)
        logger.debug("Prompt uses %s tokens", count_total_tokens(prompt, self._counter))
        return prompt

    def _store_fragments(self, request: TurnRequest) -> None:
        self._messages.add_batch(fragment.message for fragment in request.fragments)
        for fragment in request.fragments:
            try:
                self._events.record_user_message(
                    request.sender,
                    fragment.kind,
                    content_length=len(fragment.message.text()) or None,
                )
            except PersistenceError:
                logger.exception("%s [ERROR] could not record user_message event", log_prefix(request.sender))
        logger.info("%s %s fragments saved to the messages table", log_prefix(request.sender), len(request.fragments))

    def _store_answer(
        self,
        request: TurnRequest,
        answer: str,
        completion: Completion,
        decision: Authorized,
    ) -> None:
        sender = request.sender
        try:
            self._messages.add(Message(Role.ASSISTANT, answer, chat_id=sender.chat_id, user_id=None))
            self._events.record_answer(
                sender,
                content_length=len(answer),
                model=completion.model,
                object_name=completion.object,
                usage=completion.usage,
                api_key_source=decision.source.value,
            )
        except PersistenceError:
            logger.exception("%s [ERROR] answer could not be saved, delivering anyway", log_prefix(sender))
