from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock
from urllib import error

from assistant.errors import TransientServiceError
from assistant.llm import ApiError, complete, transcribe
from assistant.memory.embedding_service import EmbeddingService, chunk_text


def fake_response(payload: dict) -> mock.MagicMock:
    response = mock.MagicMock()
    response.read.return_value = json.dumps(payload).encode("utf-8")
    response.__enter__.return_value = response
    return response


class CompleteTests(unittest.TestCase):
    @mock.patch("assistant.llm.request.urlopen")
    def test_parses_answer_and_usage(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response(
            {
                "model": "gpt-4o-2024",
                "object": "chat.completion",
                "choices": [{"message": {"role": "assistant", "content": "  Hi there \n"}}],
                "usage": {"prompt_tokens": 9, "completion_tokens": 3, "total_tokens": 12},
            }
        )

        result = complete([{"role": "user", "content": "Hello"}], "sk-test", base_url="http://llm.local/v1/", model="gpt-4o")

        self.assertEqual(result.content, "Hi there")
        self.assertEqual((result.model, result.object, result.total_tokens), ("gpt-4o-2024", "chat.completion", 12))
        req = urlopen.call_args.args[0]
        self.assertEqual(req.full_url, "http://llm.local/v1/chat/completions")
        self.assertEqual(req.get_header("Authorization"), "Bearer sk-test")
        self.assertEqual(json.loads(req.data)["stream"], False)

    @mock.patch("assistant.llm.request.urlopen")
    def test_blank_answer_is_none(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"choices": [{"message": {"content": "   "}}]})
        self.assertIsNone(complete([], "sk-test").content)

    @mock.patch("assistant.llm.request.urlopen")
    def test_http_error_becomes_api_error(self, urlopen: mock.MagicMock) -> None:
        body = json.dumps({"error": {"code": "rate_limit_exceeded", "type": "requests"}}).encode("utf-8")
        urlopen.side_effect = error.HTTPError("http://x", 429, "Too Many Requests", {}, io.BytesIO(body))

        with self.assertRaises(ApiError) as ctx:
            complete([], "sk-test")
        self.assertEqual((ctx.exception.status, ctx.exception.code, ctx.exception.kind), (429, "rate_limit_exceeded", "requests"))

    @mock.patch("assistant.llm.request.urlopen")
    def test_unreachable_service_is_transient(self, urlopen: mock.MagicMock) -> None:
        urlopen.side_effect = error.URLError("connection refused")
        with self.assertRaises(TransientServiceError):
            complete([], "sk-test")

    @mock.patch("assistant.llm.request.urlopen")
    def test_tools_are_offered_and_tool_calls_parsed(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response(
            {
                "choices": [
                    {
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_9",
                                    "type": "function",
                                    "function": {"name": "perplexity", "arguments": "{\"query\": \"rates\"}"},
                                }
                            ],
                        }
                    }
                ]
            }
        )
        definition = {"type": "function", "function": {"name": "perplexity", "parameters": {}}}

        result = complete([], "sk-test", tools=[definition])

        self.assertIsNone(result.content)
        self.assertEqual([(c.id, c.name, c.arguments) for c in result.tool_calls], [("call_9", "perplexity", '{"query": "rates"}')])
        body = json.loads(urlopen.call_args.args[0].data)
        self.assertEqual((body["tools"], body["tool_choice"]), ([definition], "auto"))

    @mock.patch("assistant.llm.request.urlopen")
    def test_no_tools_leaves_request_plain(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"choices": [{"message": {"content": "ok"}}]})
        complete([], "sk-test")
        body = json.loads(urlopen.call_args.args[0].data)
        self.assertNotIn("tools", body)
        self.assertNotIn("tool_choice", body)


class TranscribeTests(unittest.TestCase):
    @mock.patch("assistant.llm.request.urlopen")
    def test_uploads_file_as_multipart(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"text": " hello world "})
        with tempfile.TemporaryDirectory() as tmpdir:
            audio = Path(tmpdir) / "voice.mp3"
            audio.write_bytes(b"ID3fake")
            text = transcribe(audio, "sk-test")

        self.assertEqual(text, "hello world")
        req = urlopen.call_args.args[0]
        self.assertTrue(req.full_url.endswith("/audio/transcriptions"))
        self.assertIn(b'name="model"', req.data)
        self.assertIn(b"whisper-1", req.data)
        self.assertIn(b"ID3fake", req.data)


class EmbeddingServiceTests(unittest.TestCase):
    @mock.patch("assistant.llm.request.urlopen")
    def test_embed_returns_vector(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"data": [{"embedding": [1, 2.5]}]})
        self.assertEqual(EmbeddingService("sk-test").embed("hello"), [1.0, 2.5])

    @mock.patch("assistant.llm.request.urlopen")
    def test_missing_vector_is_an_error(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"data": []})
        with self.assertRaises(TransientServiceError):
            EmbeddingService("sk-test").embed("hello")

    def test_chunk_text_overlaps(self) -> None:
        chunks = chunk_text("abcdefghij", chunk_size=4, overlap=1)
        self.assertEqual(chunks[:3], ["abcd", "defg", "ghij"])
        self.assertEqual(chunk_text("   "), [])


if __name__ == "__main__":
    unittest.main()
