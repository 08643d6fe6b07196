"""Web search through the Perplexity chat completions API."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from urllib import request

from assistant.llm import auth_headers, send_request
from assistant.tools.base import BaseTool, ToolExecutionResult

PERPLEXITY_BASE = "https://api.perplexity.ai"
DEFAULT_SEARCH_MODEL = "sonar-pro"
ANSWER_INSTRUCTIONS = (
    "\n\nAnswer with long text and a lot of details and examples."
    "\n\nTry to add all related full urls next to the answer if possible."
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSearchTool(BaseTool):
    name = "perplexity"
    description = "Search the internet for current information"
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
        },
        "required": ["query"],
    }

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = PERPLEXITY_BASE,
        model: str = DEFAULT_SEARCH_MODEL,
        max_tokens: int = 1024,
        timeout: float = 60,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    def execute(self, payload: dict[str, Any]) -> ToolExecutionResult:
        query = str(payload.get("query", "")).strip()
        if not query:
            return ToolExecutionResult(ok=False, output={"error": "Missing query"})

        body = {
            "model": self._model,
            "messages": [{"role": "user", "content": query + ANSWER_INSTRUCTIONS}],
            "max_tokens": self._max_tokens,
        }
        req = request.Request(
            self._base_url + "/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            headers=auth_headers(self._api_key, "application/json"),
            method="POST",
        )
        data = send_request(req, self._timeout)

        answer = ""
        for choice in data.get("choices") or []:
            answer = ((choice.get("message") or {}).get("content") or "").strip()
            if answer:
                break
        sources = [str(url) for url in data.get("citations") or []]
        if sources:
            answer += "\n\nSources:\n" + "\n".join(sources)
        return ToolExecutionResult(
            ok=True,
            output={
                "answer": answer,
                "sources": sources,
                "query": query,
                "timestamp": _now(),
            },
        )
