"""Conversation message model shared by stores, reducer and transport."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class PartType(str, Enum):
    TEXT = "text"
    IMAGE_URL = "image_url"


@dataclass(frozen=True)
class ContentPart:
    type: PartType
    text: str = ""
    image_url: str = ""

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(PartType.TEXT, text=text)

    @classmethod
    def of_image(cls, url: str) -> ContentPart:
        return cls(PartType.IMAGE_URL, image_url=url)

    def is_empty(self) -> bool:
        if self.type == PartType.TEXT:
            return not self.text
        return not self.image_url

    def to_api(self) -> dict[str, Any]:
        if self.type == PartType.TEXT:
            return {"type": "text", "text": self.text}
        return {"type": "image_url", "image_url": {"url": self.image_url}}


Content = str | tuple[ContentPart, ...]


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model; ``arguments`` is the raw JSON string."""

    id: str
    name: str
    arguments: str = "{}"

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Message:
    role: Role
    content: Content
    chat_id: int | None = None
    user_id: int | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        if isinstance(self.content, str):
            return (ContentPart.of_text(self.content),)
        return self.content

    def is_empty(self) -> bool:
        if isinstance(self.content, str):
            return not self.content
        return all(part.is_empty() for part in self.content)

    def has_image(self) -> bool:
        return any(part.type == PartType.IMAGE_URL for part in self.parts)

    def text(self, separator: str = "\n") -> str:
        """Concatenated text parts; image parts are skipped."""
        return separator.join(
            part.text for part in self.parts if part.type == PartType.TEXT and part.text
        )

    def with_content(self, content: Content) -> Message:
        return replace(self, content=content)

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value}
        if isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [part.to_api() for part in self.content]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [call.to_api() for call in self.tool_calls]
        return data


def system_message(text: str) -> Message:
    return Message(Role.SYSTEM, text)


def user_text(text: str, *, chat_id: int, user_id: int | None) -> Message:
    return Message(Role.USER, text, chat_id=chat_id, user_id=user_id)


def user_image(url: str, *, chat_id: int, user_id: int | None) -> Message:
    return Message(Role.USER, (ContentPart.of_image(url),), chat_id=chat_id, user_id=user_id)


@dataclass(frozen=True)
class Sender:
    """Who sent an inbound update and from what kind of chat."""

    user_id: int
    chat_id: int
    username: str | None = None
    language_code: str | None = None
    is_bot: bool = False
    chat_type: str | None = None


def log_prefix(sender: Sender) -> str:
    return f"chat_id={sender.chat_id} user_id={sender.user_id} username={sender.username or ''}:"
