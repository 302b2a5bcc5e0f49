"""Outbound Telegram I/O for one channel (a chat or a forum topic)."""

import io
import logging
from dataclasses import dataclass
from typing import Optional

from telegram import (
    Bot,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    InputFile,
    LinkPreviewOptions,
    ReactionTypeEmoji,
    ReplyParameters,
)
from telegram.constants import ChatAction
from telegram.error import BadRequest, TelegramError

from .interactions import ClickHandler, InteractionBroker, callback_data
from .models import ChannelRef

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 1024
BUTTONS_PER_ROW = 5

NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


class DeliveryError(Exception):
    """Raised when a message could not be sent to the channel."""


@dataclass
class Button:
    label: str
    value: str


@dataclass
class SentMessage:
    """A message the bot posted. token is set when it carries buttons."""
    chat_id: int
    message_id: int
    text: str
    thread_id: Optional[int] = None
    is_caption: bool = False
    token: Optional[str] = None
    parse_mode: Optional[str] = None


def build_keyboard(token: str, buttons: list[Button], per_row: int = BUTTONS_PER_ROW) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(b.label, callback_data=callback_data(token, b.value)) for b in buttons[i:i + per_row]]
        for i in range(0, len(buttons), per_row)
    ]
    return InlineKeyboardMarkup(rows)


def _is_not_modified(e: TelegramError) -> bool:
    return isinstance(e, BadRequest) and "not modified" in str(e).lower()


class TelegramChannel:
    """
    Send, edit and decorate messages in one chat or forum topic.

    send() raises DeliveryError. Everything else is best-effort: failures
    are logged and reported as False.
    """

    def __init__(self, bot: Bot, broker: InteractionBroker, ref: ChannelRef):
        self.bot = bot
        self.broker = broker
        self.ref = ref

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def chat_id(self) -> int:
        return self.ref.chat_id

    async def send(
        self,
        text: str,
        *,
        reply_to: Optional[int] = None,
        document: Optional[tuple[str, bytes]] = None,
        buttons: Optional[list[Button]] = None,
        parse_mode: Optional[str] = None,
    ) -> SentMessage:
        """
        Post a message.

        Args:
            text: Message text (or document caption)
            reply_to: Message ID to reply to
            document: Optional (filename, content) attachment
            buttons: Optional inline buttons; clicks are routed via the broker
            parse_mode: Optional Telegram parse mode, reused by later edits

        Returns:
            The sent message. When a document is attached to text longer than
            a caption allows, the text is sent first and the document as a
            reply to it; the text message is returned.
        """
        token = self.broker.new_token() if buttons else None
        markup = build_keyboard(token, buttons) if token else None
        reply = ReplyParameters(message_id=reply_to, allow_sending_without_reply=True) if reply_to else None
        if token:
            self.broker.open(token)

        try:
            if document is not None and len(text) <= CAPTION_LIMIT:
                filename, content = document
                msg = await self.bot.send_document(
                    chat_id=self.ref.chat_id,
                    document=InputFile(io.BytesIO(content), filename=filename),
                    caption=text,
                    parse_mode=parse_mode,
                    message_thread_id=self.ref.thread_id,
                    reply_parameters=reply,
                    reply_markup=markup,
                )
                is_caption = True
            else:
                msg = await self.bot.send_message(
                    chat_id=self.ref.chat_id,
                    text=text,
                    parse_mode=parse_mode,
                    message_thread_id=self.ref.thread_id,
                    reply_parameters=reply,
                    reply_markup=markup,
                    link_preview_options=NO_PREVIEW,
                )
                is_caption = False
                # Captions stop at 1024 chars, so a longer preview and its attachment
                # go out as two messages: the text, then the file replying to it.
                if document is not None:
                    filename, content = document
                    await self.bot.send_document(
                        chat_id=self.ref.chat_id,
                        document=InputFile(io.BytesIO(content), filename=filename),
                        message_thread_id=self.ref.thread_id,
                        reply_parameters=ReplyParameters(message_id=msg.message_id),
                    )
        except TelegramError as e:
            if token:
                self.broker.release(token)
            logger.error(f"Failed to send message to {self.key}: {e}")
            raise DeliveryError(str(e)) from e

        return SentMessage(
            chat_id=self.ref.chat_id,
            message_id=msg.message_id,
            text=text,
            thread_id=self.ref.thread_id,
            is_caption=is_caption,
            token=token,
            parse_mode=parse_mode,
        )

    async def edit(self, message: SentMessage, text: str, buttons: Optional[list[Button]] = None) -> bool:
        """Replace the message text (or caption). Buttons are removed unless given."""
        markup = build_keyboard(message.token, buttons) if buttons and message.token else None
        try:
            if message.is_caption:
                await self.bot.edit_message_caption(
                    chat_id=message.chat_id,
                    message_id=message.message_id,
                    caption=text[:CAPTION_LIMIT],
                    parse_mode=message.parse_mode,
                    reply_markup=markup,
                )
            else:
                await self.bot.edit_message_text(
                    chat_id=message.chat_id,
                    message_id=message.message_id,
                    text=text,
                    parse_mode=message.parse_mode,
                    reply_markup=markup,
                    link_preview_options=NO_PREVIEW,
                )
            message.text = text
            return True
        except TelegramError as e:
            if _is_not_modified(e):
                return True
            logger.warning(f"Failed to edit message {message.message_id} in {self.key}: {e}")
            return False

    async def set_buttons(self, message: SentMessage, buttons: list[Button]) -> bool:
        """Attach or replace buttons on an already-sent message."""
        fresh = message.token is None
        if fresh:
            message.token = self.broker.new_token()
            self.broker.open(message.token)
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=message.chat_id,
                message_id=message.message_id,
                reply_markup=build_keyboard(message.token, buttons),
            )
            return True
        except TelegramError as e:
            logger.warning(f"Failed to set buttons on message {message.message_id} in {self.key}: {e}")
            if fresh:
                self.broker.release(message.token)
                message.token = None
            return False

    async def clear_buttons(self, message: SentMessage) -> bool:
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=message.chat_id,
                message_id=message.message_id,
                reply_markup=None,
            )
            return True
        except TelegramError as e:
            if _is_not_modified(e):
                return True
            logger.warning(f"Failed to clear buttons on message {message.message_id} in {self.key}: {e}")
            return False

    async def wait_for_click(self, message: SentMessage, timeout: float) -> Optional[str]:
        """Wait for one click on the message's buttons. None on timeout or if it has none."""
        if message.token is None:
            return None
        return await self.broker.wait(message.token, timeout)

    def on_click(self, message: SentMessage, handler: ClickHandler):
        if message.token is not None:
            self.broker.listen(message.token, handler)

    def release(self, message: SentMessage):
        if message.token is not None:
            self.broker.release(message.token)

    async def delete(self, message_id: int) -> bool:
        try:
            await self.bot.delete_message(chat_id=self.ref.chat_id, message_id=message_id)
            return True
        except TelegramError as e:
            logger.warning(f"Failed to delete message {message_id} in {self.key}: {e}")
            return False

    async def pin(self, message_id: int) -> bool:
        try:
            await self.bot.pin_chat_message(
                chat_id=self.ref.chat_id,
                message_id=message_id,
                disable_notification=True,
            )
            return True
        except TelegramError as e:
            logger.warning(f"Failed to pin message {message_id} in {self.key}: {e}")
            return False

    async def unpin(self, message_id: int) -> bool:
        try:
            await self.bot.unpin_chat_message(chat_id=self.ref.chat_id, message_id=message_id)
            return True
        except TelegramError as e:
            logger.warning(f"Failed to unpin message {message_id} in {self.key}: {e}")
            return False

    async def react(self, message_id: int, emoji: str) -> bool:
        try:
            await self.bot.set_message_reaction(
                chat_id=self.ref.chat_id,
                message_id=message_id,
                reaction=[ReactionTypeEmoji(emoji)],
            )
            return True
        except TelegramError as e:
            logger.warning(f"Failed to react on message {message_id} in {self.key}: {e}")
            return False

    async def clear_reaction(self, message_id: int) -> bool:
        try:
            await self.bot.set_message_reaction(chat_id=self.ref.chat_id, message_id=message_id, reaction=[])
            return True
        except TelegramError as e:
            logger.warning(f"Failed to clear reaction on message {message_id} in {self.key}: {e}")
            return False

    async def typing(self) -> bool:
        try:
            await self.bot.send_chat_action(
                chat_id=self.ref.chat_id,
                action=ChatAction.TYPING,
                message_thread_id=self.ref.thread_id,
            )
            return True
        except TelegramError as e:
            logger.debug(f"Failed to send typing action to {self.key}: {e}")
            return False


@dataclass
class AppContext:
    """System chats resolved once at startup. Either may be None."""
    alert_channel: Optional[TelegramChannel] = None
    admin_channel: Optional[TelegramChannel] = None
