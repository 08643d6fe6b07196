"""Administrative commands: premium users, custom keys, usage and document indexing."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TextIO

from assistant.memory.embedding_service import EmbeddingService, chunk_text
from assistant.memory.engine import MemoryEngine
from assistant.memory.event_store import AuditEventStore
from assistant.memory.user_store import UsageType, UserStore
from assistant.memory.vector_memory import VectorMemoryStore
from assistant.profile import BotProfile, ensure_profile_directories, load_profile, load_secrets

DOCUMENT_SOURCE_KIND = "document"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Administer the Telegram assistant")
    parser.add_argument("--profile", required=True, help="Profile name, e.g. default")
    parser.add_argument("--repo-root", default=None, help="Optional repo root override for config loading")
    parser.add_argument("--data-dir", default=None, help="Optional data directory override")
    sub = parser.add_subparsers(dest="command", required=True)

    set_premium = sub.add_parser("set-premium", help="Grant premium access to a user")
    set_premium.add_argument("user_id", type=int)

    remove_premium = sub.add_parser("remove-premium", help="Revoke premium access")
    remove_premium.add_argument("user_id", type=int)

    sub.add_parser("list-premium", help="List premium users")

    set_key = sub.add_parser("set-key", help="Store or clear a user's own API key")
    set_key.add_argument("user_id", type=int)
    group = set_key.add_mutually_exclusive_group(required=True)
    group.add_argument("--key", default=None)
    group.add_argument("--clear", action="store_true")

    usage = sub.add_parser("usage", help="Show token usage")
    usage.add_argument("--days", type=int, default=None, help="Only count the last N days")
    usage.add_argument("--user-id", type=int, default=None, help="Show the total for one user")

    index = sub.add_parser("index-document", help="Embed a text document into long-term memory")
    index.add_argument("path")
    index.add_argument("--chunk-size", type=int, default=800)
    index.add_argument("--overlap", type=int, default=120)
    return parser


def _index_document(
    profile: BotProfile,
    vectors: VectorMemoryStore,
    embedder: EmbeddingService,
    path: Path,
    *,
    chunk_size: int,
    overlap: int,
) -> dict[str, object]:
    """Chunk a UTF-8 text file, embed every chunk and store it under a fresh source id."""
    text = path.read_text(encoding="utf-8")
    chunks = chunk_text(text, chunk_size=chunk_size, overlap=overlap)
    if not chunks:
        return {"ok": False, "error": f"{path} is empty"}
    rows = [(i, chunk, embedder.embed(chunk)) for i, chunk in enumerate(chunks)]
    source_id = vectors.next_source_id(DOCUMENT_SOURCE_KIND)
    vectors.replace_chunks(
        source_kind=DOCUMENT_SOURCE_KIND,
        source_id=source_id,
        source_ref=str(path),
        chunks=rows,
        embedding_model=embedder.model,
    )
    return {"ok": True, "profile": profile.name, "source_id": source_id, "chunks": len(rows)}


def run(args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    repo_root = Path(args.repo_root).resolve() if args.repo_root else None
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else None
    profile = load_profile(args.profile, repo_root=repo_root, base_data_dir=data_dir)
    ensure_profile_directories(profile)

    engine = MemoryEngine(profile.paths.db_path)
    engine.initialize()
    conn = engine.connect()
    users = UserStore(conn)
    try:
        if args.command == "set-premium":
            users.upsert(args.user_id)
            users.set_usage_type(args.user_id, UsageType.PREMIUM)
            print(f"User {args.user_id} is now premium", file=out)
        elif args.command == "remove-premium":
            if not users.set_usage_type(args.user_id, None):
                print(f"User {args.user_id} not found", file=out)
                return 1
            print(f"User {args.user_id} is no longer premium", file=out)
        elif args.command == "list-premium":
            for user in users.list_by_usage_type(UsageType.PREMIUM):
                print(f"{user.user_id}\t{user.username or ''}", file=out)
        elif args.command == "set-key":
            users.upsert(args.user_id)
            users.set_api_key(args.user_id, None if args.clear else args.key)
            print(f"API key for user {args.user_id} {'cleared' if args.clear else 'stored'}", file=out)
        elif args.command == "usage":
            events = AuditEventStore(conn)
            if args.user_id is not None:
                report: dict[str, object] = {"user_id": args.user_id, "used_tokens": events.used_tokens(args.user_id)}
            else:
                report = events.summary(window_days=args.days)
            print(json.dumps(report, indent=2, ensure_ascii=False), file=out)
        elif args.command == "index-document":
            secrets = load_secrets(profile.paths)
            if not secrets.openai_api_key:
                print("openai_api_key.txt missing, cannot embed", file=out)
                return 1
            embedder = EmbeddingService(
                secrets.openai_api_key,
                base_url=secrets.llm_base_url,
                model=profile.long_term_memory.embedding_model,
            )
            result = _index_document(
                profile,
                VectorMemoryStore(conn),
                embedder,
                Path(args.path),
                chunk_size=args.chunk_size,
                overlap=args.overlap,
            )
            print(json.dumps(result, ensure_ascii=False), file=out)
            return 0 if result["ok"] else 1
    finally:
        engine.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    return run(build_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
