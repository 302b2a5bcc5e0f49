"""Telegram front end: commands, message routing and button callbacks."""

import asyncio
import html
import logging
import os
from dataclasses import dataclass
from typing import Optional

from telegram import Bot, BotCommand, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .channel import Button, DeliveryError, TelegramChannel
from .config import resolve_path, validate_cwd_path
from .interactions import CALLBACK_PREFIX, InteractionBroker
from .models import ChannelRef, InboundMessage, Session
from .orchestrator import SessionOrchestrator
from .state_store import SessionStore
from .usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

STATUS_TAG = "[agent-bot-status]"


@dataclass
class CommandSpec:
    name: str
    usage: str
    description: str
    category: str


COMMANDS = [
    CommandSpec("start", "/start", "Start an agent session in this chat", "Session"),
    CommandSpec("stop", "/stop", "End this chat's session", "Session"),
    CommandSpec("status", "/status", "Show session and token usage", "Session"),
    CommandSpec("cwd", "/cwd [path]", "Show or change the working directory", "Settings"),
    CommandSpec("help", "/help", "Show this message", "Other"),
]


def generate_help_text() -> str:
    """Help text grouped by category, built from COMMANDS."""
    sections = ["Agent bot commands:"]
    categories: dict[str, list[CommandSpec]] = {}
    for cmd in COMMANDS:
        categories.setdefault(cmd.category, []).append(cmd)
    for category, cmds in categories.items():
        sections.append(f"\n{category}")
        for cmd in cmds:
            sections.append(f"{cmd.usage} - {cmd.description}")
    sections.append("\nIn a chat with a session, every plain message is sent to the agent.")
    return "\n".join(sections)


def build_status_text(session: Session) -> str:
    return "\n".join([
        STATUS_TAG,
        f"Session: <code>{session.short_id}</code>",
        f"CWD: <code>{html.escape(session.project_path)}</code>",
        f"Started: {session.created_at.strftime('%Y-%m-%d %H:%M')}",
    ])


def channel_ref_from_update(update: Update) -> ChannelRef:
    message = update.effective_message
    thread_id = message.message_thread_id if message and message.is_topic_message else None
    return ChannelRef(chat_id=update.effective_chat.id, thread_id=thread_id)


class TelegramBot:
    """Telegram bot that binds chats to agent sessions."""

    def __init__(
        self,
        token: str,
        store: SessionStore,
        orchestrator: SessionOrchestrator,
        usage_tracker: UsageTracker,
        broker: Optional[InteractionBroker] = None,
        allowed_chat_ids: Optional[list[int]] = None,
        allowed_user_ids: Optional[list[int]] = None,
        default_cwd: Optional[str] = None,
        cwd_whitelist: Optional[list[str]] = None,
        cwd_blacklist: Optional[list[str]] = None,
        mkdir_timeout: float = 30.0,
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            store: Session state
            orchestrator: Runs agent turns for plain messages
            usage_tracker: Token usage lookup for /status
            broker: Button click routing (shared with outbound channels)
            allowed_chat_ids: Chats allowed to use the bot (None = allow all)
            allowed_user_ids: Users allowed to use the bot (None = allow all)
            default_cwd: Working directory for chats without one
            cwd_whitelist: Directories /cwd may point into (empty = anywhere)
            cwd_blacklist: Directories /cwd may never point into
            mkdir_timeout: Seconds to wait for the create-directory confirmation
        """
        self.token = token
        self.store = store
        self.orchestrator = orchestrator
        self.usage_tracker = usage_tracker
        self.broker = broker or InteractionBroker()
        self.allowed_chat_ids = set(allowed_chat_ids) if allowed_chat_ids else None
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.default_cwd = resolve_path(default_cwd or os.getcwd())
        self.cwd_whitelist = cwd_whitelist or []
        self.cwd_blacklist = cwd_blacklist or []
        self.mkdir_timeout = mkdir_timeout
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        # One lock per channel: turns in a channel run in receipt order
        self._channel_locks: dict[str, asyncio.Lock] = {}

    def channel_for(self, ref: ChannelRef) -> TelegramChannel:
        if not self.bot:
            raise RuntimeError("Bot not initialized")
        return TelegramChannel(self.bot, self.broker, ref)

    def _is_allowed(self, chat_id: int, user_id: Optional[int] = None) -> bool:
        """Check if a chat/user is allowed to use the bot."""
        if self.allowed_user_ids is not None:
            if user_id is None or user_id not in self.allowed_user_ids:
                return False

        if self.allowed_chat_ids is not None:
            if chat_id not in self.allowed_chat_ids:
                return False

        return True

    async def _check_allowed(self, update: Update) -> bool:
        user = update.effective_user
        if self._is_allowed(update.effective_chat.id, user.id if user else None):
            return True
        logger.warning(
            f"Unauthorized: chat_id={update.effective_chat.id}, user_id={user.id if user else None}"
        )
        await update.effective_message.reply_text("Unauthorized.")
        return False

    def _topic_name(self, update: Update) -> str:
        message = update.effective_message
        if message and message.is_topic_message and message.reply_to_message:
            created = message.reply_to_message.forum_topic_created
            if created:
                return created.name
        chat = update.effective_chat
        return chat.title or chat.full_name or str(chat.id)

    # -----------------------
    # Status pin
    # -----------------------

    async def _pin_status(self, channel: TelegramChannel, session: Session):
        """Replace the chat's pinned status message."""
        await self._remove_status(channel, session)
        try:
            message = await channel.send(build_status_text(session), parse_mode=ParseMode.HTML)
        except DeliveryError as e:
            logger.warning(f"Could not post status message in {channel.key}: {e}")
            return
        await channel.pin(message.message_id)
        self.store.update_status_message(session.channel_id, message.message_id)

    async def _remove_status(self, channel: TelegramChannel, session: Session):
        if session.status_message_id is None:
            return
        await channel.unpin(session.status_message_id)
        await channel.delete(session.status_message_id)
        self.store.update_status_message(session.channel_id, None)

    # -----------------------
    # Commands
    # -----------------------

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command."""
        if not await self._check_allowed(update):
            return

        ref = channel_ref_from_update(update)
        existing = self.store.get_session(ref.key)
        if existing:
            await update.effective_message.reply_text(
                "A session is already active.\n"
                f"Topic: {html.escape(existing.topic_name)}\n"
                f"Session: <code>{existing.short_id}</code>\n"
                f"CWD: <code>{html.escape(existing.project_path)}</code>\n"
                f"Messages: {existing.message_count}",
                parse_mode=ParseMode.HTML,
            )
            return

        session = Session(
            channel_id=ref.key,
            project_path=self.store.get_cwd(ref.key) or self.default_cwd,
            topic_name=self._topic_name(update),
        )
        self.store.add_session(session)
        logger.info(f"Started session {session.short_id} in {ref.key} at {session.project_path}")

        await update.effective_message.reply_text(
            f"Agent session started.\nTopic: {session.topic_name}\n"
            "Send a message to talk to the agent."
        )
        await self._pin_status(self.channel_for(ref), session)

    async def _cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /stop command."""
        if not await self._check_allowed(update):
            return

        ref = channel_ref_from_update(update)
        removed = self.store.remove_session(ref.key)
        if not removed:
            await update.effective_message.reply_text("No active session in this chat.")
            return

        self.orchestrator.forget(ref.key)
        await self._remove_status(self.channel_for(ref), removed)
        logger.info(f"Stopped session {removed.short_id} in {ref.key}")
        await update.effective_message.reply_text(
            f"Session ended.\nTopic: {removed.topic_name}\nMessages: {removed.message_count}"
        )

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /status command."""
        if not await self._check_allowed(update):
            return

        ref = channel_ref_from_update(update)
        session = self.store.get_session(ref.key)
        if not session:
            await update.effective_message.reply_text("No active session in this chat. Use /start.")
            return

        usage = await self.usage_tracker.usage(session.session_id, session.project_path)
        lines = [
            f"Session: <code>{session.short_id}</code>",
            f"CWD: <code>{html.escape(session.project_path)}</code>",
            f"Messages: {session.message_count}",
            f"Tokens: {usage.total_tokens:,} (in {usage.input_tokens:,} / out {usage.output_tokens:,})",
        ]
        if self.usage_tracker.enabled:
            percent = (100 * usage.total_tokens) // self.usage_tracker.token_limit
            lines.append(f"Limit: {self.usage_tracker.token_limit:,} ({percent}% used)")
        if usage.cost_usd:
            lines.append(f"Cost: ${usage.cost_usd:.4f}")
        await update.effective_message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /help command."""
        if not await self._check_allowed(update):
            return
        await update.effective_message.reply_text(generate_help_text())

    async def _cmd_cwd(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cwd [path] command."""
        if not await self._check_allowed(update):
            return

        ref = channel_ref_from_update(update)
        message = update.effective_message
        raw_path = " ".join(context.args or []).strip()

        if not raw_path:
            current = self.store.get_cwd(ref.key)
            if current:
                await message.reply_text(
                    f"Current working directory: <code>{html.escape(current)}</code>",
                    parse_mode=ParseMode.HTML,
                )
            else:
                await message.reply_text(
                    f"No working directory set (default: {self.default_cwd}). Usage: /cwd /path/to/project"
                )
            return

        dir_path = resolve_path(raw_path)

        denied = validate_cwd_path(dir_path, self.cwd_whitelist, self.cwd_blacklist)
        if denied:
            await message.reply_text(denied)
            return

        channel = self.channel_for(ref)
        if os.path.exists(dir_path):
            if not os.path.isdir(dir_path):
                await message.reply_text(f"Not a directory: {dir_path}")
                return
        elif not await self._confirm_mkdir(channel, message.message_id, dir_path):
            return

        self.store.set_cwd(ref.key, dir_path)

        session = self.store.move_session(ref.key, dir_path)
        if session:
            logger.info(f"Moved session in {ref.key} to {dir_path}, new id {session.short_id}")
            await self._pin_status(channel, session)
            await message.reply_text(
                f"Working directory changed to: <code>{html.escape(dir_path)}</code>\n"
                f"Starting a new session (<code>{session.short_id}</code>).",
                parse_mode=ParseMode.HTML,
            )
        else:
            await message.reply_text(
                f"Working directory set to: <code>{html.escape(dir_path)}</code>",
                parse_mode=ParseMode.HTML,
            )

    async def _confirm_mkdir(self, channel: TelegramChannel, reply_to: int, dir_path: str) -> bool:
        """Ask whether to create a missing directory. True once it exists."""
        try:
            prompt = await channel.send(
                f"Directory does not exist: {dir_path}\nCreate it?",
                reply_to=reply_to,
                buttons=[Button("Yes", "yes"), Button("No", "no")],
            )
        except DeliveryError:
            return False

        try:
            choice = await channel.wait_for_click(prompt, self.mkdir_timeout)
        finally:
            channel.release(prompt)

        if choice is None:
            await channel.edit(prompt, "Timed out, working directory not changed.")
            return False
        if choice != "yes":
            await channel.edit(prompt, "Working directory change cancelled.")
            return False

        try:
            os.makedirs(dir_path, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create {dir_path}: {e}")
            await channel.edit(prompt, f"Could not create directory: {e}")
            return False
        await channel.edit(prompt, f"Created directory: {dir_path}")
        return True

    # -----------------------
    # Messages and buttons
    # -----------------------

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route plain text in a chat with a session to the orchestrator."""
        message = update.effective_message
        user = update.effective_user
        if not message or not message.text or not user or user.is_bot:
            return
        if not self._is_allowed(update.effective_chat.id, user.id):
            return

        ref = channel_ref_from_update(update)
        if not self.store.get_session(ref.key):
            return

        inbound = InboundMessage(
            channel=ref,
            message_id=message.message_id,
            author_id=user.id,
            author_name=user.username or user.full_name,
            text=message.text,
            is_bot=user.is_bot,
        )
        lock = self._channel_locks.setdefault(ref.key, asyncio.Lock())
        async with lock:
            await self.orchestrator.handle_message(self.channel_for(ref), inbound)

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle inline button presses."""
        query = update.callback_query
        chat_id = query.message.chat.id if query.message else 0
        if not self._is_allowed(chat_id, query.from_user.id):
            await query.answer("Unauthorized.")
            return

        handled = await self.broker.dispatch(query.data or "", query.from_user.id)
        if handled:
            await query.answer()
        else:
            await query.answer("This button has expired.")

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        logger.error(f"Error while handling update: {context.error}", exc_info=context.error)

    async def send_notification(self, chat_id: int, message: str) -> Optional[int]:
        """
        Send a plain message to a chat.

        Returns:
            Message ID of sent message, or None on failure
        """
        try:
            sent = await self.channel_for(ChannelRef(chat_id)).send(message)
            return sent.message_id
        except (DeliveryError, RuntimeError) as e:
            logger.error(f"Failed to send notification to {chat_id}: {e}")
            return None

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .concurrent_updates(True)
            .build()
        )

        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("stop", self._cmd_stop))
        self.application.add_handler(CommandHandler("status", self._cmd_status))
        self.application.add_handler(CommandHandler("cwd", self._cmd_cwd))
        self.application.add_handler(CommandHandler("help", self._cmd_help))

        self.application.add_handler(
            CallbackQueryHandler(self._handle_callback, pattern=f"^{CALLBACK_PREFIX}:")
        )
        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))
        self.application.add_error_handler(self._on_error)

        await self.application.initialize()
        try:
            await self.bot.set_my_commands([BotCommand(c.name, c.description) for c in COMMANDS])
        except TelegramError as e:
            logger.warning(f"Could not register bot commands: {e}")
        await self.application.start()
        await self.application.updater.start_polling()

        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
