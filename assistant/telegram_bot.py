"""Telegram front end: maps updates to fragments and delivers answers."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Callable

from telegram import Bot, BotCommand, Message as TelegramMessage, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from assistant.access import AccessControl, Denied, denial_message
from assistant.conversation_buffer import BufferKey, ConversationBuffer, Fragment
from assistant.errors import InputValidationError, PersistenceError
from assistant.invoker import invoke_with_retries
from assistant.llm import DEFAULT_TRANSCRIPTION_MODEL, transcribe
from assistant.media import convert_audio_to_mp3, image_to_data_url, resize_image
from assistant.memory.event_store import AuditEventStore
from assistant.memory.message_store import MessageStore
from assistant.memory.user_store import UserStore
from assistant.messages import Sender, log_prefix, user_image, user_text
from assistant.profile import BotProfile, BotSecrets

logger = logging.getLogger(__name__)

MAX_TELEGRAM_MESSAGE_LEN = 4096
REPLY_ATTEMPTS = 2
REPLY_TIMEOUT_SECONDS = 30
TYPING_INTERVAL_SECONDS = 4.0
VOICE_PREFIX = "Transcription of the user's voice message:\n\n"
AUDIO_PREFIX = "You sent an audio file. Transcription of this audio file:\n\n"

TranscribeFn = Callable[..., str]


def split_message(text: str, limit: int = MAX_TELEGRAM_MESSAGE_LEN) -> list[str]:
    if not text:
        return []
    return [text[i : i + limit] for i in range(0, len(text), limit)]


def duration_seconds(duration: int | timedelta | None) -> int | None:
    if isinstance(duration, timedelta):
        return int(duration.total_seconds())
    return duration


def format_audio_transcription(text: str) -> str:
    return f"{AUDIO_PREFIX}```\n{text}\n```\n"


def sender_from_update(update: Update) -> Sender | None:
    user = update.effective_user
    chat = update.effective_chat
    if user is None or chat is None:
        return None
    return Sender(
        user_id=user.id,
        chat_id=chat.id,
        username=user.username,
        language_code=user.language_code,
        is_bot=bool(user.is_bot),
        chat_type=chat.type,
    )


class TelegramReplySink:
    """Delivers text to one chat: splits long replies and retries each send."""

    def __init__(self, bot: Bot, chat_id: int, *, attempts: int = REPLY_ATTEMPTS) -> None:
        self._bot = bot
        self._chat_id = chat_id
        self._attempts = attempts

    async def _send_chunk(self, chunk: str) -> TelegramMessage:
        try:
            return await self._bot.send_message(chat_id=self._chat_id, text=chunk, parse_mode=ParseMode.MARKDOWN)
        except BadRequest as exc:
            # Model output is not always valid Telegram Markdown.
            logger.info("chat_id=%s Markdown rejected (%s), sending plain text", self._chat_id, exc)
            return await self._bot.send_message(chat_id=self._chat_id, text=chunk)

    async def send(self, text: str) -> None:
        for chunk in split_message(text):
            try:
                await invoke_with_retries(
                    functools.partial(self._send_chunk, chunk),
                    timeout_seconds=REPLY_TIMEOUT_SECONDS,
                    max_attempts=self._attempts,
                    label="telegram.send_message",
                )
            except Exception:
                logger.exception("chat_id=%s [ERROR] could not send message to the user", self._chat_id)
                return

    @contextlib.asynccontextmanager
    async def keep_typing(self, interval: float = TYPING_INTERVAL_SECONDS) -> AsyncIterator[None]:
        async def _loop() -> None:
            while True:
                try:
                    await self._bot.send_chat_action(chat_id=self._chat_id, action=ChatAction.TYPING)
                except Exception as exc:
                    logger.warning("chat_id=%s could not send typing action: %s", self._chat_id, exc)
                await asyncio.sleep(interval)

        task = asyncio.create_task(_loop())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


class TelegramBot:
    def __init__(
        self,
        profile: BotProfile,
        secrets: BotSecrets,
        *,
        buffer: ConversationBuffer,
        access: AccessControl,
        users: UserStore,
        messages: MessageStore,
        events: AuditEventStore,
        transcribe_fn: TranscribeFn = transcribe,
    ) -> None:
        self._profile = profile
        self._secrets = secrets
        self._buffer = buffer
        self._access = access
        self._users = users
        self._messages = messages
        self._events = events
        self._transcribe = transcribe_fn
        self._app: Application | None = None

    @property
    def enabled(self) -> bool:
        return self._secrets.telegram_bot_token is not None

    def start(self) -> bool:
        token = self._secrets.telegram_bot_token
        if token is None:
            logger.error("telegram_bot_token.txt missing in %s", self._profile.paths.secrets_dir)
            return False
        self._app = (
            Application.builder()
            .token(token)
            .post_init(self._post_init)
            .build()
        )
        self._setup_handlers()
        logger.info(
            "Bot %s started, long-term memory %s",
            self._profile.name,
            "on" if self._profile.long_term_memory.enabled else "off",
        )
        # Polling blocks in the main thread so signal handlers keep working.
        self._app.run_polling(drop_pending_updates=False, allowed_updates=Update.ALL_TYPES)
        return True

    async def _post_init(self, app: Application) -> None:
        await app.bot.set_my_commands(
            [
                BotCommand("start", "Start the conversation"),
                BotCommand("help", "How to use the bot"),
                BotCommand("reset", "Forget the conversation so far"),
            ]
        )

    def _setup_handlers(self) -> None:
        if self._app is None:
            raise RuntimeError("Application must be built before handlers are registered")
        self._app.add_handler(CommandHandler("start", self._cmd_start))
        self._app.add_handler(CommandHandler("help", self._cmd_help))
        self._app.add_handler(CommandHandler("reset", self._cmd_reset))
        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text))
        self._app.add_handler(MessageHandler(filters.VOICE, self._handle_voice))
        self._app.add_handler(MessageHandler(filters.AUDIO, self._handle_audio))
        self._app.add_handler(MessageHandler(filters.PHOTO, self._handle_photo))
        self._app.add_handler(MessageHandler(filters.Document.ALL, self._handle_document))
        self._app.add_handler(MessageHandler(filters.VIDEO, self._handle_video))
        self._app.add_handler(MessageHandler(filters.Sticker.ALL, self._handle_sticker))

    def _sink(self, bot: Bot, sender: Sender) -> TelegramReplySink:
        return TelegramReplySink(bot, sender.chat_id)

    def _buffer_fragment(self, sender: Sender, fragment: Fragment, bot: Bot) -> None:
        self._buffer.append(
            BufferKey.for_sender(sender),
            fragment,
            sender=sender,
            sink=self._sink(bot, sender),
        )

    async def _reply(self, bot: Bot, sender: Sender, text: str) -> None:
        await self._sink(bot, sender).send(text)

    def _record_command(self, sender: Sender, command: str) -> None:
        try:
            self._events.record_command(sender, command)
        except PersistenceError:
            logger.exception("%s [ERROR] could not record /%s command event", log_prefix(sender), command)

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        if sender is None:
            return
        try:
            self._users.upsert(sender.user_id, username=sender.username, language_code=sender.language_code)
        except PersistenceError as exc:
            await self._fail(context.bot, sender, exc)
            return
        logger.info("%s /start, user saved to the database", log_prefix(sender))
        await self._reply(context.bot, sender, self._profile.strings.help_string)
        self._record_command(sender, "start")

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        if sender is None:
            return
        await self._reply(context.bot, sender, self._profile.strings.help_string)
        self._record_command(sender, "help")

    async def _cmd_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        if sender is None:
            return
        try:
            retired = self._messages.deactivate_chat(sender.chat_id)
        except PersistenceError as exc:
            await self._fail(context.bot, sender, exc)
            return
        logger.info("%s /reset, %s messages retired", log_prefix(sender), retired)
        await self._reply(context.bot, sender, self._profile.strings.reset_message)
        self._record_command(sender, "reset")

    async def _handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        message = update.effective_message
        if sender is None or message is None:
            return
        text = (message.text or "").strip()
        if not text:
            return
        logger.info("%s [NEW] text received", log_prefix(sender))
        fragment = Fragment(user_text(text, chat_id=sender.chat_id, user_id=sender.user_id), kind="text")
        self._buffer_fragment(sender, fragment, context.bot)

    async def _handle_voice(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        message = update.effective_message
        if sender is None or message is None:
            return
        logger.info("%s [NEW] voice received", log_prefix(sender))
        voice = message.voice
        if voice is None:
            await self._fail(context.bot, sender, InputValidationError("voice message without voice payload"))
            return
        duration = duration_seconds(voice.duration)
        try:
            transcript = await self._transcribe_file(context.bot, sender, voice.file_id, None, duration=duration)
        except Exception as exc:
            await self._fail(context.bot, sender, exc)
            return
        if transcript is None:
            return
        fragment = Fragment(
            user_text(VOICE_PREFIX + transcript, chat_id=sender.chat_id, user_id=sender.user_id),
            kind="voice",
            voice_duration=duration,
        )
        self._buffer_fragment(sender, fragment, context.bot)

    async def _handle_audio(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        message = update.effective_message
        if sender is None or message is None:
            return
        logger.info("%s [NEW] audio received", log_prefix(sender))
        if message.audio is None:
            await self._fail(context.bot, sender, InputValidationError("audio message without audio payload"))
            return
        await self._audio_fragment(context.bot, sender, message.audio.file_id, message.audio.mime_type)

    async def _handle_document(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        message = update.effective_message
        if sender is None or message is None or message.document is None:
            return
        document = message.document
        mime_type = document.mime_type or ""
        if mime_type.startswith("audio/"):
            logger.info("%s [NEW] audio document received", log_prefix(sender))
            await self._audio_fragment(context.bot, sender, document.file_id, mime_type)
            return
        logger.info("%s file received: %s (%s)", log_prefix(sender), document.file_name, mime_type)
        await self._reply(context.bot, sender, self._profile.strings.unsupported_file_error)
        self._events.record_user_message(sender, "document")

    async def _audio_fragment(self, bot: Bot, sender: Sender, file_id: str, mime_type: str | None) -> None:
        try:
            transcript = await self._transcribe_file(bot, sender, file_id, mime_type)
        except Exception as exc:
            await self._fail(bot, sender, exc)
            return
        if transcript is None:
            return
        formatted = format_audio_transcription(transcript)
        await self._reply(bot, sender, formatted)
        fragment = Fragment(user_text(formatted, chat_id=sender.chat_id, user_id=sender.user_id), kind="audio")
        self._buffer_fragment(sender, fragment, bot)

    async def _handle_photo(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        message = update.effective_message
        if sender is None or message is None:
            return
        logger.info("%s [NEW] photo received", log_prefix(sender))
        try:
            if not message.photo:
                raise InputValidationError("photo message without photo sizes")
            # Telegram lists sizes ascending; the last one is the original resolution.
            data_url = await self._download_photo(context.bot, message.photo[-1].file_id)
        except Exception as exc:
            await self._fail(context.bot, sender, exc, invalid_text=self._profile.strings.no_photo_error)
            return
        self._buffer_fragment(
            sender,
            Fragment(user_image(data_url, chat_id=sender.chat_id, user_id=sender.user_id), kind="photo"),
            context.bot,
        )
        caption = (message.caption or "").strip()
        if caption:
            self._buffer_fragment(
                sender,
                Fragment(user_text(caption, chat_id=sender.chat_id, user_id=sender.user_id), kind="text"),
                context.bot,
            )

    async def _handle_video(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        if sender is None:
            return
        logger.info("%s video received", log_prefix(sender))
        await self._reply(context.bot, sender, self._profile.strings.no_video_error)
        self._events.record_user_message(sender, "video")

    async def _handle_sticker(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        sender = sender_from_update(update)
        if sender is None:
            return
        logger.info("%s sticker received", log_prefix(sender))
        await self._reply(context.bot, sender, "👍")
        self._events.record_user_message(sender, "sticker")

    async def _fail(self, bot: Bot, sender: Sender, exc: Exception, *, invalid_text: str | None = None) -> None:
        if isinstance(exc, InputValidationError):
            logger.warning("%s invalid input: %s", log_prefix(sender), exc)
            text = invalid_text or self._profile.strings.error_string
        else:
            logger.error("%s [ERROR] error occurred: %s", log_prefix(sender), exc, exc_info=exc)
            text = self._profile.strings.error_string
        await self._reply(bot, sender, text)

    def _temp_path(self, name: str) -> Path:
        temp_dir = self._profile.paths.temp_dir
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir / name

    async def _download(self, bot: Bot, file_id: str, path: Path) -> Path:
        tg_file = await bot.get_file(file_id)
        await tg_file.download_to_drive(custom_path=path)
        if not path.exists():
            raise FileNotFoundError(f"File {path} does not exist after download")
        return path

    async def _download_photo(self, bot: Bot, file_id: str) -> str:
        original = self._temp_path(f"{file_id}.jpg")
        resized = self._temp_path(f"{file_id}_resized.jpg")
        try:
            await self._download(bot, file_id, original)
            await asyncio.to_thread(resize_image, original, resized)
            return image_to_data_url(resized)
        finally:
            original.unlink(missing_ok=True)
            resized.unlink(missing_ok=True)

    async def _transcribe_file(
        self,
        bot: Bot,
        sender: Sender,
        file_id: str,
        mime_type: str | None,
        *,
        duration: int | None = None,
    ) -> str | None:
        """Download, convert and transcribe an audio file; None if the user has no access."""
        decision = self._access.check(sender)
        if isinstance(decision, Denied):
            await self._reply(bot, sender, denial_message(decision.reason, self._profile.strings))
            return None
        api_key = decision.require_api_key()

        extension = mime_type.split("/")[1].replace("x-", "") if mime_type and "/" in mime_type else "oga"
        source = self._temp_path(f"{file_id}.{extension}")
        mp3 = source if extension in {"mp3", "mpeg"} else self._temp_path(f"{file_id}.mp3")
        try:
            await self._download(bot, file_id, source)
            if mp3 != source:
                await asyncio.to_thread(convert_audio_to_mp3, source, mp3)
            text = await invoke_with_retries(
                lambda: asyncio.to_thread(
                    self._transcribe,
                    mp3,
                    api_key,
                    base_url=self._secrets.llm_base_url,
                    timeout=self._profile.transcription_timeout_seconds,
                ),
                timeout_seconds=self._profile.transcription_timeout_seconds,
                max_attempts=self._profile.transcription_attempts,
                label="audio.transcriptions.create",
            )
        finally:
            source.unlink(missing_ok=True)
            mp3.unlink(missing_ok=True)
        if not text:
            raise InputValidationError("transcription is empty")
        logger.info("%s audio transcription received", log_prefix(sender))
        self._events.record_transcription(
            sender,
            content_length=len(text),
            model=DEFAULT_TRANSCRIPTION_MODEL,
            voice_duration=duration,
            api_key_source=decision.source.value,
        )
        return text
