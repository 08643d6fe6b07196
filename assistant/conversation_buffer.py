"""Per-conversation debounce buffer that turns fragment bursts into single turns."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from assistant.messages import Message, Sender

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PERIOD_SECONDS = 4.0


@dataclass(frozen=True)
class BufferKey:
    chat_id: int
    user_id: int

    @classmethod
    def for_sender(cls, sender: Sender) -> BufferKey:
        return cls(sender.chat_id, sender.user_id)


@dataclass(frozen=True)
class Fragment:
    message: Message
    kind: str = "text"
    voice_duration: int | None = None


class ReplySink(Protocol):
    async def send(self, text: str) -> None: ...

    def keep_typing(self) -> AbstractAsyncContextManager[None]: ...


@dataclass
class TurnRequest:
    key: BufferKey
    sender: Sender
    fragments: list[Fragment]
    sink: ReplySink


Dispatcher = Callable[[TurnRequest], Awaitable[None]]


@dataclass
class ConversationSession:
    """Fragments waiting for one (chat, user) pair plus its single quiet-period timer.

    ``in_flight`` is set while a dispatch for the key runs. A quiet period that
    ends meanwhile only sets ``ready``; the follow-up starts when the dispatch
    completes, so a key never has two dispatches at once.
    """

    key: BufferKey
    fragments: list[Fragment] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None
    sender: Sender | None = None
    sink: ReplySink | None = None
    in_flight: bool = False
    ready: bool = False

    def append(self, fragment: Fragment, sender: Sender, sink: ReplySink) -> None:
        self.fragments.append(fragment)
        self.sender = sender
        self.sink = sink

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def take(self) -> TurnRequest | None:
        """Swap out the pending fragments, leaving an empty list for the next cycle."""
        self.cancel_timer()
        fragments, self.fragments = self.fragments, []
        if not fragments or self.sender is None or self.sink is None:
            return None
        return TurnRequest(self.key, self.sender, fragments, self.sink)


class ConversationBuffer:
    """Owns one session per key; all mutation happens on the event loop thread."""

    def __init__(
        self,
        dispatch: Dispatcher,
        *,
        quiet_period_seconds: float = DEFAULT_QUIET_PERIOD_SECONDS,
    ) -> None:
        self._dispatch = dispatch
        self._quiet_period = quiet_period_seconds
        self._sessions: dict[BufferKey, ConversationSession] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def _session(self, key: BufferKey) -> ConversationSession:
        session = self._sessions.get(key)
        if session is None:
            session = ConversationSession(key)
            self._sessions[key] = session
        return session

    def append(self, key: BufferKey, fragment: Fragment, *, sender: Sender, sink: ReplySink) -> None:
        loop = asyncio.get_running_loop()
        session = self._session(key)
        session.append(fragment, sender, sink)
        session.cancel_timer()
        session.timer = loop.call_later(self._quiet_period, self._on_quiet_period, key)
        logger.debug("Buffered %s fragment for %s, %s pending", fragment.kind, key, len(session.fragments))

    def pending(self, key: BufferKey) -> int:
        session = self._sessions.get(key)
        return len(session.fragments) if session else 0

    def _on_quiet_period(self, key: BufferKey) -> None:
        session = self._sessions.get(key)
        if session is None:
            return
        session.timer = None
        if session.in_flight:
            session.ready = True
            logger.debug("Quiet period over for %s while a dispatch runs, deferring", key)
            return
        self._start(session)

    def _start(self, session: ConversationSession) -> None:
        request = session.take()
        if request is None:
            return
        logger.info("Quiet period over for %s, dispatching %s fragments", session.key, len(request.fragments))
        session.in_flight = True
        task = asyncio.get_running_loop().create_task(self._run_session(session, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch_now(self, key: BufferKey) -> None:
        """Dispatch pending fragments without waiting for the quiet period.

        While a dispatch for ``key`` runs, the fragments are queued to follow it.
        """
        session = self._sessions.get(key)
        if session is None:
            return
        if session.in_flight:
            session.cancel_timer()
            session.ready = bool(session.fragments)
            return
        request = session.take()
        if request is not None:
            session.in_flight = True
            await self._run_session(session, request)

    async def _run_session(self, session: ConversationSession, request: TurnRequest) -> None:
        try:
            await self._run(request)
        finally:
            session.in_flight = False
            if session.ready:
                session.ready = False
                if session.timer is None:
                    self._start(session)

    async def _run(self, request: TurnRequest) -> None:
        try:
            await self._dispatch(request)
        except Exception:
            logger.exception("Dispatch for %s failed", request.key)

    async def wait_idle(self) -> None:
        """Wait for dispatches that already started; pending timers are not forced."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
