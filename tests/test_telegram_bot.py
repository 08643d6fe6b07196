from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest import mock

from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest

from assistant.access import Authorized, Denied, DenialReason, KeySource
from assistant.conversation_buffer import BufferKey
from assistant.errors import PersistenceError
from assistant.messages import PartType, Role
from assistant.profile import BotSecrets
from assistant.telegram_bot import (
    AUDIO_PREFIX,
    MAX_TELEGRAM_MESSAGE_LEN,
    VOICE_PREFIX,
    TelegramBot,
    TelegramReplySink,
    format_audio_transcription,
    sender_from_update,
    split_message,
)

from fakes import make_profile


def make_update(**message_fields: Any) -> SimpleNamespace:
    fields: dict[str, Any] = {
        "text": None,
        "voice": None,
        "audio": None,
        "photo": [],
        "caption": None,
        "document": None,
    }
    fields.update(message_fields)
    return SimpleNamespace(
        effective_user=SimpleNamespace(id=1, username="ada", language_code="en", is_bot=False),
        effective_chat=SimpleNamespace(id=10, type="private"),
        effective_message=SimpleNamespace(**fields),
    )


def sent_texts(bot: mock.AsyncMock) -> list[str]:
    return [c.kwargs["text"] for c in bot.send_message.await_args_list]


class SplitMessageTests(unittest.TestCase):
    def test_long_reply_is_split_at_the_limit(self) -> None:
        text = "x" * (MAX_TELEGRAM_MESSAGE_LEN * 2 + 10)
        chunks = split_message(text)
        self.assertEqual([len(c) for c in chunks], [MAX_TELEGRAM_MESSAGE_LEN, MAX_TELEGRAM_MESSAGE_LEN, 10])
        self.assertEqual("".join(chunks), text)
        self.assertEqual(split_message(""), [])

    def test_audio_transcription_format(self) -> None:
        self.assertEqual(format_audio_transcription("hi"), AUDIO_PREFIX + "```\nhi\n```\n")

    def test_sender_from_update(self) -> None:
        sender = sender_from_update(make_update())
        assert sender is not None
        self.assertEqual((sender.user_id, sender.chat_id, sender.chat_type), (1, 10, "private"))
        self.assertIsNone(sender_from_update(SimpleNamespace(effective_user=None, effective_chat=None)))


class TelegramReplySinkTests(unittest.IsolatedAsyncioTestCase):
    async def test_sends_markdown_chunks(self) -> None:
        bot = mock.AsyncMock()
        await TelegramReplySink(bot, 10).send("a" * (MAX_TELEGRAM_MESSAGE_LEN + 1))
        self.assertEqual(bot.send_message.await_count, 2)
        self.assertEqual(bot.send_message.await_args_list[0].kwargs["parse_mode"], ParseMode.MARKDOWN)

    async def test_falls_back_to_plain_text(self) -> None:
        bot = mock.AsyncMock()
        bot.send_message.side_effect = [BadRequest("Can't parse entities"), None]
        await TelegramReplySink(bot, 10).send("*broken")
        self.assertEqual(bot.send_message.await_count, 2)
        self.assertNotIn("parse_mode", bot.send_message.await_args_list[1].kwargs)

    async def test_gives_up_after_two_attempts(self) -> None:
        bot = mock.AsyncMock()
        bot.send_message.side_effect = RuntimeError("network down")
        with self.assertLogs("assistant.telegram_bot", level="ERROR"):
            await TelegramReplySink(bot, 10).send("hello")
        self.assertEqual(bot.send_message.await_count, 2)

    async def test_keep_typing_sends_chat_action(self) -> None:
        bot = mock.AsyncMock()
        sink = TelegramReplySink(bot, 10)
        async with sink.keep_typing():
            await asyncio.sleep(0.01)
        bot.send_chat_action.assert_awaited_with(chat_id=10, action=ChatAction.TYPING)


class TelegramBotHandlerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.profile = make_profile(Path(self._tmp.name))
        self.buffer = mock.Mock()
        self.access = mock.Mock()
        self.access.check.return_value = Authorized("sk-test", KeySource.TRIAL)
        self.users = mock.Mock()
        self.messages = mock.Mock()
        self.events = mock.Mock()
        self.transcribe = mock.Mock(return_value="hello there")
        self.bot = TelegramBot(
            self.profile,
            BotSecrets(telegram_bot_token="123:abc", openai_api_key="sk-test", llm_base_url=None),
            buffer=self.buffer,
            access=self.access,
            users=self.users,
            messages=self.messages,
            events=self.events,
            transcribe_fn=self.transcribe,
        )
        self.tg = mock.AsyncMock()
        tg_file = mock.AsyncMock()
        tg_file.download_to_drive.side_effect = lambda custom_path: Path(custom_path).write_bytes(b"payload")
        self.tg.get_file.return_value = tg_file
        self.context = SimpleNamespace(bot=self.tg)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def buffered(self) -> list[Any]:
        return [c.args[1] for c in self.buffer.append.call_args_list]

    async def test_text_enters_the_buffer(self) -> None:
        await self.bot._handle_text(make_update(text="  hi  "), self.context)
        self.buffer.append.assert_called_once()
        key, fragment = self.buffer.append.call_args.args
        self.assertEqual(key, BufferKey(10, 1))
        self.assertEqual(fragment.message.content, "hi")
        self.assertEqual(fragment.message.role, Role.USER)

    async def test_voice_is_transcribed_with_prefix(self) -> None:
        update = make_update(voice=SimpleNamespace(file_id="v1", duration=3))
        with mock.patch(
            "assistant.telegram_bot.convert_audio_to_mp3",
            side_effect=lambda src, dst: dst.write_bytes(b"mp3"),
        ):
            await self.bot._handle_voice(update, self.context)

        [fragment] = self.buffered()
        self.assertEqual(fragment.message.content, VOICE_PREFIX + "hello there")
        self.assertEqual((fragment.kind, fragment.voice_duration), ("voice", 3))
        self.assertEqual(self.transcribe.call_args.args[1], "sk-test")
        self.events.record_transcription.assert_called_once()
        self.assertEqual(list(self.profile.paths.temp_dir.iterdir()), [])

    async def test_voice_denied_replies_without_buffering(self) -> None:
        self.access.check.return_value = Denied(DenialReason.TRIAL_ENDED, 500)
        await self.bot._handle_voice(make_update(voice=SimpleNamespace(file_id="v1", duration=3)), self.context)
        self.buffer.append.assert_not_called()
        self.transcribe.assert_not_called()
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.trial_ended_error])

    async def test_audio_document_replies_with_transcription(self) -> None:
        document = SimpleNamespace(file_id="a1", mime_type="audio/mpeg", file_name="talk.mp3")
        await self.bot._handle_document(make_update(document=document), self.context)

        expected = format_audio_transcription("hello there")
        self.assertEqual(sent_texts(self.tg), [expected])
        [fragment] = self.buffered()
        self.assertEqual(fragment.message.content, expected)

    async def test_photo_with_caption_becomes_two_fragments(self) -> None:
        update = make_update(
            photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")],
            caption="what is it?",
        )

        def fake_resize(src: Path, dst: Path) -> Path:
            dst.write_bytes(src.read_bytes())
            return dst

        with mock.patch("assistant.telegram_bot.resize_image", side_effect=fake_resize):
            await self.bot._handle_photo(update, self.context)

        self.tg.get_file.assert_awaited_once_with("large")
        image, caption = self.buffered()
        self.assertEqual(image.message.parts[0].type, PartType.IMAGE_URL)
        self.assertTrue(image.message.parts[0].image_url.startswith("data:image/jpeg;base64,"))
        self.assertEqual(caption.message.content, "what is it?")

    async def test_photo_message_without_photo(self) -> None:
        await self.bot._handle_photo(make_update(photo=[]), self.context)
        self.buffer.append.assert_not_called()
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.no_photo_error])

    async def test_unsupported_inputs_short_circuit(self) -> None:
        pdf = SimpleNamespace(file_id="d1", mime_type="application/pdf", file_name="a.pdf")
        await self.bot._handle_document(make_update(document=pdf), self.context)
        await self.bot._handle_video(make_update(), self.context)
        await self.bot._handle_sticker(make_update(), self.context)

        self.buffer.append.assert_not_called()
        self.assertEqual(
            sent_texts(self.tg),
            [self.profile.strings.unsupported_file_error, self.profile.strings.no_video_error, "👍"],
        )
        self.assertEqual(
            [c.args[1] for c in self.events.record_user_message.call_args_list],
            ["document", "video", "sticker"],
        )

    async def test_reset_retires_history(self) -> None:
        self.messages.deactivate_chat.return_value = 4
        await self.bot._cmd_reset(make_update(), self.context)
        self.messages.deactivate_chat.assert_called_once_with(10)
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.reset_message])
        self.assertEqual(self.events.record_command.call_args.args[1], "reset")

    async def test_start_registers_user(self) -> None:
        await self.bot._cmd_start(make_update(), self.context)
        self.users.upsert.assert_called_once_with(1, username="ada", language_code="en")
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.help_string])

    async def test_reset_storage_failure_replies_with_error(self) -> None:
        self.messages.deactivate_chat.side_effect = PersistenceError("database is locked")
        with self.assertLogs("assistant.telegram_bot", level="ERROR"):
            await self.bot._cmd_reset(make_update(), self.context)
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.error_string])
        self.events.record_command.assert_not_called()

    async def test_start_storage_failure_replies_with_error(self) -> None:
        self.users.upsert.side_effect = PersistenceError("disk full")
        with self.assertLogs("assistant.telegram_bot", level="ERROR"):
            await self.bot._cmd_start(make_update(), self.context)
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.error_string])

    async def test_command_audit_failure_does_not_affect_reply(self) -> None:
        self.events.record_command.side_effect = PersistenceError("disk full")
        with self.assertLogs("assistant.telegram_bot", level="ERROR"):
            await self.bot._cmd_help(make_update(), self.context)
        self.assertEqual(sent_texts(self.tg), [self.profile.strings.help_string])

    def test_handlers_need_a_built_application(self) -> None:
        with self.assertRaises(RuntimeError):
            self.bot._setup_handlers()


if __name__ == "__main__":
    unittest.main()
