"""Routing of inline-button clicks to whoever is waiting for them.

Every message that carries buttons gets a short random token. Button
callback data is "ia:<token>:<value>". A click either resolves a one-shot
wait (permission prompt, choice, confirmation) or is passed to a listener
that stays registered for the lifetime of the message (Stop button).
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "ia"

ClickHandler = Callable[[str, int], Awaitable[None]]


def callback_data(token: str, value: str) -> str:
    """Build the callback_data for one button (Telegram caps this at 64 bytes)."""
    return f"{CALLBACK_PREFIX}:{token}:{value}"


def parse_callback_data(data: str) -> Optional[tuple[str, str]]:
    """Split callback data into (token, value), or None if it is not ours."""
    parts = data.split(":", 2)
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
        return None
    return parts[1], parts[2]


class InteractionBroker:
    """Maps button tokens to pending waits and persistent listeners."""

    def __init__(self):
        self._waiters: dict[str, asyncio.Future] = {}
        self._listeners: dict[str, ClickHandler] = {}

    @staticmethod
    def new_token() -> str:
        return uuid.uuid4().hex[:12]

    def open(self, token: str):
        """Start accepting a single click for token. Clicks before wait() are kept."""
        if token not in self._waiters:
            self._waiters[token] = asyncio.get_running_loop().create_future()

    async def wait(self, token: str, timeout: float) -> Optional[str]:
        """
        Wait for the first click on token.

        Returns:
            The clicked button's value, or None on timeout.
        """
        self.open(token)
        future = self._waiters[token]
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._waiters.pop(token, None)

    def listen(self, token: str, handler: ClickHandler):
        """Call handler(value, user_id) for every click on token until release()."""
        self._listeners[token] = handler

    def release(self, token: str):
        """Forget token. Later clicks on its buttons are ignored."""
        self._listeners.pop(token, None)
        future = self._waiters.pop(token, None)
        if future is not None and not future.done():
            future.cancel()

    def is_active(self, token: str) -> bool:
        return token in self._waiters or token in self._listeners

    async def dispatch(self, data: str, user_id: int) -> bool:
        """
        Deliver a click.

        Returns:
            True if a waiter or listener consumed it, False if the buttons
            have expired or the data is not ours.
        """
        parsed = parse_callback_data(data)
        if parsed is None:
            return False
        token, value = parsed

        listener = self._listeners.get(token)
        if listener is not None:
            await listener(value, user_id)
            return True

        future = self._waiters.get(token)
        if future is not None and not future.done():
            logger.debug(f"Click {value!r} on {token} by user {user_id}")
            future.set_result(value)
            return True

        return False
