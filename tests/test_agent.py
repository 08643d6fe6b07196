from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from assistant.agent import build_long_term_memory, build_parser, build_tools, check_leading_prompt
from assistant.errors import ConfigurationError
from assistant.long_term_memory import LongTermMemory
from assistant.profile import BotSecrets
from assistant.tokens import TokenCounter

from fakes import CharEncoding, make_profile


class AgentWiringTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.counter = TokenCounter("test-model", encoding=CharEncoding())
        self.secrets = BotSecrets(telegram_bot_token=None, openai_api_key="sk-test", llm_base_url=None)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_leading_prompt_must_fit_budget(self) -> None:
        check_leading_prompt(make_profile(self.base), self.counter)
        tight = make_profile(self.base, max_context_tokens=120, average_answer_tokens=100)
        with self.assertRaises(ConfigurationError):
            check_leading_prompt(tight, self.counter)

    def test_long_term_memory_is_opt_in(self) -> None:
        index = mock.Mock()
        self.assertIsNone(build_long_term_memory(make_profile(self.base), self.secrets, index))
        enabled = make_profile(self.base, long_term_memory={"enabled": True, "top_k": 5})
        self.assertIsInstance(build_long_term_memory(enabled, self.secrets, index), LongTermMemory)

    def test_web_search_needs_its_key(self) -> None:
        profile = make_profile(self.base)
        self.assertIsNone(build_tools(profile, self.secrets))
        with_key = BotSecrets(telegram_bot_token=None, openai_api_key="sk-test", llm_base_url=None, perplexity_api_key="pplx")
        registry = build_tools(profile, with_key)
        self.assertEqual(registry.list_tools(), ["perplexity"])

    def test_parser_requires_profile(self) -> None:
        args = build_parser().parse_args(["--profile", "default", "--data-dir", "/tmp/x"])
        self.assertEqual((args.profile, args.data_dir, args.log_level), ("default", "/tmp/x", "INFO"))


if __name__ == "__main__":
    unittest.main()
