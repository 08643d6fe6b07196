from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from assistant.cli import build_parser, run
from assistant.memory.engine import MemoryEngine
from assistant.memory.vector_memory import VectorMemoryStore


class AdminCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        profiles = self.root / "config" / "profiles"
        profiles.mkdir(parents=True)
        (profiles / "ops.yaml").write_text(
            yaml.safe_dump({"name": "ops", "gpt_model": "gpt-4o"}),
            encoding="utf-8",
        )
        self.data_dir = self.root / "data"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def admin(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        args = build_parser().parse_args(
            ["--profile", "ops", "--repo-root", str(self.root), "--data-dir", str(self.data_dir), *argv]
        )
        return run(args, out=out), out.getvalue()

    def test_premium_lifecycle(self) -> None:
        self.assertEqual(self.admin("set-premium", "77")[0], 0)
        self.assertEqual(self.admin("set-premium", "78")[0], 0)
        code, listing = self.admin("list-premium")
        self.assertEqual(code, 0)
        self.assertEqual(sorted(line.split("\t")[0] for line in listing.splitlines()), ["77", "78"])

        self.assertEqual(self.admin("remove-premium", "77")[0], 0)
        _, listing = self.admin("list-premium")
        self.assertEqual([line.split("\t")[0] for line in listing.splitlines()], ["78"])

    def test_remove_premium_for_unknown_user(self) -> None:
        code, output = self.admin("remove-premium", "404")
        self.assertEqual(code, 1)
        self.assertIn("not found", output)

    def test_usage_report_is_json(self) -> None:
        code, output = self.admin("usage", "--days", "7")
        self.assertEqual(code, 0)
        report = json.loads(output)
        self.assertEqual(report["total_tokens"], 0)
        self.assertEqual(report["window_days"], 7)

    def test_index_document_stores_embedded_chunks(self) -> None:
        secrets = self.data_dir / "secrets"
        secrets.mkdir(parents=True)
        (secrets / "openai_api_key.txt").write_text("sk-admin\n", encoding="utf-8")
        document = self.root / "handbook.txt"
        document.write_text("Office hours are nine to five. " * 60, encoding="utf-8")

        with mock.patch("assistant.cli.EmbeddingService") as service_cls:
            service_cls.return_value.embed.return_value = [0.5, 0.5]
            service_cls.return_value.model = "text-embedding-ada-002"
            code, output = self.admin("index-document", str(document), "--chunk-size", "500", "--overlap", "50")

        self.assertEqual(code, 0)
        result = json.loads(output)
        self.assertTrue(result["ok"])
        self.assertGreater(result["chunks"], 1)
        service_cls.assert_called_once_with("sk-admin", base_url=None, model="text-embedding-ada-002")

        engine = MemoryEngine(self.data_dir / "memory.db")
        try:
            matches = VectorMemoryStore(engine.connect()).query([0.5, 0.5], top_k=100)
        finally:
            engine.close()
        self.assertEqual(len(matches), result["chunks"])

    def test_index_document_requires_api_key(self) -> None:
        document = self.root / "empty.txt"
        document.write_text("text", encoding="utf-8")
        code, output = self.admin("index-document", str(document))
        self.assertEqual(code, 1)
        self.assertIn("openai_api_key.txt", output)


if __name__ == "__main__":
    unittest.main()
