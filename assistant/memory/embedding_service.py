"""OpenAI-compatible embeddings client."""

from __future__ import annotations

import json
from urllib import request

from assistant.errors import TransientServiceError
from assistant.llm import DEFAULT_HTTP_TIMEOUT_SECONDS, OPENAI_BASE, auth_headers, send_request

DEFAULT_EMBED_MODEL = "text-embedding-ada-002"


class EmbeddingService:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        model: str = DEFAULT_EMBED_MODEL,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._base_url = (base_url or OPENAI_BASE).rstrip("/")
        self._model = model
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def embed(self, text: str) -> list[float]:
        if not text.strip():
            return []
        payload = {
            "model": self._model,
            "input": text,
        }
        encoded = json.dumps(payload, ensure_ascii=True).encode("utf-8")
        req = request.Request(
            self._base_url + "/embeddings",
            data=encoded,
            headers=auth_headers(self._api_key, "application/json"),
            method="POST",
        )
        data = send_request(req, self._timeout)

        rows = data.get("data") or []
        if not rows:
            raise TransientServiceError(f"Embeddings API returned no vectors: {data}")
        vector = rows[0].get("embedding")
        if not isinstance(vector, list):
            raise TransientServiceError(f"Embeddings API returned invalid vector: {data}")
        return [float(v) for v in vector]


def chunk_text(text: str, *, chunk_size: int = 800, overlap: int = 120) -> list[str]:
    raw = (text or "").strip()
    if not raw:
        return []
    if len(raw) <= chunk_size:
        return [raw]
    out: list[str] = []
    start = 0
    step = max(1, chunk_size - overlap)
    while start < len(raw):
        out.append(raw[start : start + chunk_size])
        start += step
    return out
