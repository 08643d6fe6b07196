"""Minimal OpenAI-compatible client for chat completions and transcription."""

from __future__ import annotations

import json
import mimetypes
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib import error, request

from assistant.errors import TransientServiceError
from assistant.messages import ToolCall

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
OPENAI_BASE = "https://api.openai.com/v1"
DEFAULT_HTTP_TIMEOUT_SECONDS = 600


class ApiError(TransientServiceError):
    """Error reported by the remote API, carrying its HTTP status and error code."""

    def __init__(self, status: int, body: str, *, code: str | None = None, kind: str | None = None) -> None:
        super().__init__(f"LLM API HTTP {status}: {body}")
        self.status = status
        self.code = code
        self.kind = kind
        self.body = body


@dataclass(frozen=True)
class Completion:
    content: str | None
    model: str | None = None
    object: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens", 0))


def _parse_usage(data: dict[str, Any]) -> dict[str, int]:
    usage = (data.get("usage") or {})
    return {
        "prompt_tokens": int(usage.get("prompt_tokens") or 0),
        "completion_tokens": int(usage.get("completion_tokens") or 0),
        "total_tokens": int(usage.get("total_tokens") or 0),
    }


def _parse_tool_calls(msg: dict[str, Any]) -> tuple[ToolCall, ...]:
    calls: list[ToolCall] = []
    for raw in msg.get("tool_calls") or []:
        function = raw.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        calls.append(ToolCall(id=str(raw.get("id") or ""), name=name, arguments=function.get("arguments") or "{}"))
    return tuple(calls)


def read_secret(secrets_dir: Path, filename: str) -> str | None:
    """Read first line of a secret file; return None if missing or empty."""
    path = secrets_dir / filename
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    return raw if raw else None


def _api_error(exc: error.HTTPError) -> ApiError:
    body = exc.read().decode("utf-8", errors="replace")
    code: str | None = None
    kind: str | None = None
    try:
        details = (json.loads(body) or {}).get("error") or {}
        if isinstance(details, dict):
            code = details.get("code")
            kind = details.get("type")
    except (ValueError, AttributeError):
        pass
    return ApiError(exc.code, body, code=code, kind=kind)


def send_request(req: request.Request, timeout: float) -> dict[str, Any]:
    try:
        with request.urlopen(req, timeout=timeout) as response:  # noqa: S310
            return json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        raise _api_error(exc) from exc
    except error.URLError as exc:
        raise TransientServiceError(f"LLM API unreachable: {exc.reason}") from exc


def auth_headers(api_key: str, content_type: str) -> dict[str, str]:
    return {
        "Content-Type": content_type,
        "Authorization": f"Bearer {api_key}",
    }


def complete(
    messages: list[dict[str, Any]],
    api_key: str,
    *,
    base_url: str | None = None,
    model: str = DEFAULT_MODEL,
    max_tokens: int | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    tools: list[dict[str, Any]] | None = None,
) -> Completion:
    """
    Call OpenAI-compatible chat completions API.
    base_url: e.g. https://api.openai.com/v1 or http://localhost:11434/v1 (Ollama).
    tools: function definitions offered to the model with tool_choice "auto".
    """
    url = (base_url or OPENAI_BASE).rstrip("/") + "/chat/completions"
    body: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": False,
    }
    if max_tokens:
        body["max_tokens"] = max_tokens
    if tools:
        body["tools"] = tools
        body["tool_choice"] = "auto"
    encoded = json.dumps(body).encode("utf-8")
    req = request.Request(url, data=encoded, headers=auth_headers(api_key, "application/json"), method="POST")
    data = send_request(req, timeout)

    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    for choice in data.get("choices") or []:
        msg = choice.get("message") or {}
        if "content" in msg or "tool_calls" in msg:
            content = msg.get("content")
            tool_calls = _parse_tool_calls(msg)
            break
    if content is not None:
        content = content.strip() or None
    return Completion(
        content=content,
        model=data.get("model"),
        object=data.get("object"),
        usage=_parse_usage(data),
        tool_calls=tool_calls,
    )


def _multipart(fields: dict[str, str], file_field: str, file_path: Path) -> tuple[bytes, str]:
    boundary = uuid.uuid4().hex
    mime = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode("utf-8")
        )
    chunks.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{file_path.name}"\r\n'
            f"Content-Type: {mime}\r\n\r\n"
        ).encode("utf-8")
    )
    chunks.append(file_path.read_bytes())
    chunks.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


def transcribe(
    audio_path: Path,
    api_key: str,
    *,
    base_url: str | None = None,
    model: str = DEFAULT_TRANSCRIPTION_MODEL,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> str:
    """Upload an audio file to the transcriptions endpoint and return its text."""
    url = (base_url or OPENAI_BASE).rstrip("/") + "/audio/transcriptions"
    payload, content_type = _multipart({"model": model}, "file", audio_path)
    req = request.Request(url, data=payload, headers=auth_headers(api_key, content_type), method="POST")
    data = send_request(req, timeout)
    text = data.get("text")
    if not isinstance(text, str):
        raise TransientServiceError(f"Transcription API unexpected response: {data}")
    return text.strip()
