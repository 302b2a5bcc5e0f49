"""Shared pytest fixtures for channel agent bot tests."""

import asyncio
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from channelbot.channel import Button, DeliveryError, SentMessage
from channelbot.models import AgentResult, ChannelRef, Session
from channelbot.state_store import SessionStore


class FakeChannel:
    """
    In-memory stand-in for TelegramChannel.

    wait_for_click() pops scripted values from `clicks` (None = timeout).
    Listeners registered with on_click() can be triggered by tests.
    """

    def __init__(self, ref: Optional[ChannelRef] = None, clicks: Optional[list] = None):
        self.ref = ref or ChannelRef(chat_id=100)
        self.clicks = list(clicks or [])
        self.sent: list[SentMessage] = []
        self.send_calls: list[dict] = []
        self.edits: list[tuple[int, str]] = []
        self.button_sets: list[tuple[int, list[str]]] = []
        self.deleted: list[int] = []
        self.reactions: list[tuple[int, str]] = []
        self.pinned: list[int] = []
        self.unpinned: list[int] = []
        self.released: list[int] = []
        self.listeners: dict[int, object] = {}
        self.fail_send = False
        self._next_id = 1000

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def texts(self) -> list[str]:
        return [m.text for m in self.sent]

    async def send(self, text, *, reply_to=None, document=None, buttons=None, parse_mode=None):
        if self.fail_send:
            raise DeliveryError("send failed")
        self._next_id += 1
        message = SentMessage(
            chat_id=self.ref.chat_id,
            message_id=self._next_id,
            text=text,
            thread_id=self.ref.thread_id,
            token=f"tok-{self._next_id}" if buttons else None,
            parse_mode=parse_mode,
        )
        self.sent.append(message)
        self.send_calls.append({
            "text": text,
            "reply_to": reply_to,
            "document": document,
            "buttons": [b.label for b in buttons] if buttons else None,
            "parse_mode": parse_mode,
        })
        return message

    async def edit(self, message, text, buttons=None):
        self.edits.append((message.message_id, text))
        message.text = text
        return True

    async def set_buttons(self, message, buttons: list[Button]):
        if message.token is None:
            message.token = f"tok-{message.message_id}"
        self.button_sets.append((message.message_id, [b.label for b in buttons]))
        return True

    async def clear_buttons(self, message):
        return True

    async def wait_for_click(self, message, timeout):
        await asyncio.sleep(0)
        return self.clicks.pop(0) if self.clicks else None

    def on_click(self, message, handler):
        self.listeners[message.message_id] = handler

    def release(self, message):
        self.released.append(message.message_id)

    async def delete(self, message_id):
        self.deleted.append(message_id)
        return True

    async def pin(self, message_id):
        self.pinned.append(message_id)
        return True

    async def unpin(self, message_id):
        self.unpinned.append(message_id)
        return True

    async def react(self, message_id, emoji):
        self.reactions.append((message_id, emoji))
        return True

    async def clear_reaction(self, message_id):
        return True

    async def typing(self):
        return True


def fake_handle(result: Optional[AgentResult] = None) -> Mock:
    """
    A fake AgentRunHandle. With result=None the run stays pending until the
    test resolves handle.result itself.
    """
    future = asyncio.get_running_loop().create_future()
    if result is not None:
        future.set_result(result)
    handle = Mock()
    handle.result = future
    handle.cancel = Mock()
    return handle


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_channel():
    """Factory fixture: make_channel(clicks=[...]) builds a scripted FakeChannel."""
    return FakeChannel


@pytest.fixture
def make_handle():
    """Factory fixture for fake run handles, see fake_handle()."""
    return fake_handle


@pytest.fixture
def scripted_runner(make_handle):
    """Factory for a runner Mock whose invoke() returns the given results in order."""
    def build(*results: AgentResult) -> Mock:
        queue = list(results)
        runner = Mock()
        runner.invoke = Mock(side_effect=lambda *args, **kwargs: make_handle(queue.pop(0)))
        return runner
    return build


@pytest.fixture
def state_file(tmp_path) -> Path:
    return tmp_path / "state.json"


@pytest.fixture
def store(state_file) -> SessionStore:
    return SessionStore(str(state_file))


@pytest.fixture
def sample_session(tmp_path) -> Session:
    return Session(
        channel_id="100",
        project_path=str(tmp_path),
        topic_name="test-topic",
        session_id="11111111-2222-3333-4444-555555555555",
    )


@pytest.fixture
def mock_usage_tracker() -> Mock:
    tracker = Mock()
    tracker.check_thresholds = AsyncMock(return_value=[])
    tracker.usage = AsyncMock()
    tracker.enabled = False
    tracker.token_limit = 0
    return tracker
