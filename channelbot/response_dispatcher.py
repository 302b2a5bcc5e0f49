"""Delivery of agent responses of any length."""

import logging
from typing import Optional

from .channel import SentMessage, TelegramChannel

logger = logging.getLogger(__name__)

MAX_LENGTH = 2000
SPLIT_LIMIT = 6000
ATTACHMENT_NOTICE = "\n\n... (full response attached)"
ATTACHMENT_NAME = "response.md"


def split_message(text: str, max_length: int = MAX_LENGTH) -> list[str]:
    """
    Split text into chunks of at most max_length characters.

    Each cut is made at the last newline before the limit, else the last
    space, else exactly at the limit when neither is past 30% of it.
    Leading whitespace of each following chunk is dropped.
    """
    chunks = []
    remaining = text
    min_split = max_length * 0.3

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, max_length + 1)
        if split_at < min_split:
            split_at = remaining.rfind(" ", 0, max_length + 1)
        if split_at < min_split:
            split_at = max_length
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()

    return chunks


class ResponseDispatcher:
    """Sends a response as one message, several messages, or a preview plus file."""

    def __init__(self, max_length: int = MAX_LENGTH, split_limit: int = SPLIT_LIMIT):
        self.max_length = max_length
        self.split_limit = split_limit

    async def dispatch(
        self,
        channel: TelegramChannel,
        text: str,
        reply_to: Optional[int] = None,
    ) -> list[SentMessage]:
        """
        Deliver text to the channel.

        Returns:
            The messages sent, in order. Raises DeliveryError if sending fails.
        """
        if len(text) <= self.max_length:
            return [await channel.send(text, reply_to=reply_to)]

        if len(text) <= self.split_limit:
            chunks = split_message(text, self.max_length)
            logger.debug(f"Splitting {len(text)} chars into {len(chunks)} messages for {channel.key}")
            sent = []
            for i, chunk in enumerate(chunks):
                sent.append(await channel.send(chunk, reply_to=reply_to if i == 0 else None))
            return sent

        preview = text[:self.max_length - 60] + ATTACHMENT_NOTICE
        logger.debug(f"Attaching {len(text)} char response as {ATTACHMENT_NAME} for {channel.key}")
        message = await channel.send(
            preview,
            reply_to=reply_to,
            document=(ATTACHMENT_NAME, text.encode("utf-8")),
        )
        return [message]
