"""Tool registry: definitions offered to the model and execution of its calls."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from assistant.invoker import invoke_with_retries
from assistant.messages import Message, Role, ToolCall
from assistant.tools.base import BaseTool, ToolExecutionResult

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "Sorry, I couldn't get additional information from Perplexity. "
    "I'll try to answer based on my existing knowledge."
)


class ToolRegistry:
    def __init__(self, *, timeout_seconds: float = 60, max_attempts: int = 3) -> None:
        self._timeout = timeout_seconds
        self._attempts = max_attempts
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def count(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        return sorted(self._tools.keys())

    def definitions(self) -> list[dict[str, Any]]:
        return [self._tools[name].definition() for name in self.list_tools()]

    def execute(self, tool_name: str, payload: dict[str, Any]) -> ToolExecutionResult:
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolExecutionResult(ok=False, output={"error": f"Unknown tool: {tool_name}"})
        return tool.execute(payload)

    async def run(self, call: ToolCall) -> Message:
        """Execute one model tool call and wrap the outcome as a ``tool`` message.

        Failures after all attempts become a fallback answer so the model can
        still reply from its own knowledge.
        """
        try:
            payload = json.loads(call.arguments or "{}")
            if not isinstance(payload, dict):
                raise ValueError(f"tool arguments must be an object, got {type(payload).__name__}")
            result = await invoke_with_retries(
                lambda: asyncio.to_thread(self.execute, call.name, payload),
                timeout_seconds=self._timeout,
                max_attempts=self._attempts,
                label=f"tool.{call.name}",
            )
            output = result.output
        except Exception as exc:
            logger.exception("Tool call %s (%s) failed", call.name, call.id)
            output = {
                "answer": FALLBACK_ANSWER,
                "error": str(exc),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        return Message(Role.TOOL, json.dumps(output, ensure_ascii=False), tool_call_id=call.id)
