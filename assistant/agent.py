"""Telegram assistant runtime entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from assistant.access import AccessControl
from assistant.conversation_buffer import ConversationBuffer
from assistant.errors import ConfigurationError
from assistant.long_term_memory import LongTermMemory
from assistant.memory.embedding_service import EmbeddingService
from assistant.memory.engine import MemoryEngine
from assistant.memory.event_store import AuditEventStore
from assistant.memory.message_store import MessageStore
from assistant.memory.user_store import UserStore
from assistant.memory.vector_memory import VectorMemoryStore
from assistant.profile import BotProfile, BotSecrets, ensure_profile_directories, load_profile, load_secrets
from assistant.telegram_bot import TelegramBot
from assistant.tokens import TokenCounter
from assistant.tools.registry import ToolRegistry
from assistant.tools.web_search_tool import WebSearchTool
from assistant.turn import TurnRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Telegram assistant")
    parser.add_argument("--profile", required=True, help="Profile name, e.g. default")
    parser.add_argument(
        "--repo-root",
        default=None,
        help="Optional repo root override for config loading",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Optional data directory override (defaults to ~/agentdata/<profile>)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level, e.g. DEBUG")
    return parser


def configure_logging(logs_dir: Path, level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(logs_dir / "assistant.log", encoding="utf-8"),
        ],
    )
    # Request-level chatter from the HTTP client drowns out turn logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def check_leading_prompt(profile: BotProfile, counter: TokenCounter) -> None:
    """Fail at startup when the leading prompt alone cannot fit into the budget."""
    leading_tokens = counter.count_message(profile.leading_message())
    if leading_tokens >= profile.token_budget:
        raise ConfigurationError(
            f"Leading prompt uses {leading_tokens} tokens, budget is {profile.token_budget}"
        )
    logger.info("Leading prompt uses %s of %s budget tokens", leading_tokens, profile.token_budget)


def build_long_term_memory(
    profile: BotProfile,
    secrets: BotSecrets,
    index: VectorMemoryStore,
) -> LongTermMemory | None:
    config = profile.long_term_memory
    if not config.enabled:
        return None

    def _embedder(api_key: str) -> EmbeddingService:
        return EmbeddingService(api_key, base_url=secrets.llm_base_url, model=config.embedding_model)

    return LongTermMemory(
        index,
        _embedder,
        recent_user_messages=config.recent_user_messages,
        top_k=config.top_k,
        max_attempts=profile.embedding_attempts,
    )


def build_tools(profile: BotProfile, secrets: BotSecrets) -> ToolRegistry | None:
    if secrets.perplexity_api_key is None:
        logger.info("perplexity_api_key.txt missing; web search is disabled")
        return None
    registry = ToolRegistry(
        timeout_seconds=profile.web_search_timeout_seconds,
        max_attempts=profile.web_search_attempts,
    )
    registry.register(WebSearchTool(secrets.perplexity_api_key, timeout=profile.web_search_timeout_seconds))
    logger.info("Tools registered: %s", ", ".join(registry.list_tools()))
    return registry


def main() -> int:
    args = build_parser().parse_args()
    repo_root = Path(args.repo_root).resolve() if args.repo_root else None
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else None
    profile = load_profile(args.profile, repo_root=repo_root, base_data_dir=data_dir)
    ensure_profile_directories(profile)
    configure_logging(profile.paths.logs_dir, args.log_level)
    secrets = load_secrets(profile.paths)
    if secrets.openai_api_key is None:
        logger.warning("openai_api_key.txt missing; only users with their own key can be served")

    counter = TokenCounter(profile.tokenizer_model)
    check_leading_prompt(profile, counter)

    memory_engine = MemoryEngine(profile.paths.db_path)
    memory_engine.initialize()
    conn = memory_engine.connect()

    users = UserStore(conn)
    messages = MessageStore(conn)
    events = AuditEventStore(conn)
    access = AccessControl(
        users,
        events,
        default_api_key=secrets.openai_api_key,
        max_trial_tokens=profile.max_trial_tokens,
    )
    runner = TurnRunner(
        profile,
        messages=messages,
        events=events,
        access=access,
        counter=counter,
        long_term_memory=build_long_term_memory(profile, secrets, VectorMemoryStore(conn)),
        tools=build_tools(profile, secrets),
        base_url=secrets.llm_base_url,
    )
    buffer = ConversationBuffer(runner.run, quiet_period_seconds=profile.quiet_period_seconds)
    telegram_bot = TelegramBot(
        profile,
        secrets,
        buffer=buffer,
        access=access,
        users=users,
        messages=messages,
        events=events,
    )

    events.record("agent_boot")
    try:
        started = telegram_bot.start()
    finally:
        events.record("agent_shutdown")
        memory_engine.close()
    return 0 if started else 1


if __name__ == "__main__":
    raise SystemExit(main())
