"""Per-channel turn loop: prompt in, agent run, response out, choices back in."""

import asyncio
import functools
import html
import logging
from dataclasses import dataclass
from typing import Optional

from telegram.constants import ParseMode

from .agent_runner import AgentRunHandle, AgentRunner, Gated, PermissionStrategy
from .channel import AppContext, Button, DeliveryError, SentMessage, TelegramChannel
from .choice_resolver import ChoiceResolver
from .models import AgentErrorKind, AgentResult, InboundMessage, Session
from .permission_gate import PermissionGate
from .response_dispatcher import ResponseDispatcher
from .state_store import SessionStore
from .usage_tracker import UsageTracker, format_alert

logger = logging.getLogger(__name__)

WAITING_TEXT = "⏳ Generating a response..."
STOPPED_TEXT = "⏹ Response was stopped."
FAILURE_TEXT = "❌ Something went wrong."
SEEN_REACTION = "👀"

STOP = "stop"
TOGGLE = "toggle"

THINKING_LIMIT = 1900
LOG_PREVIEW = 200
TYPING_INTERVAL = 4.0

AUTH_HELP = (
    "\n\nThe agent rejected its credentials. Set agent.api_key in config.yaml "
    "or the ANTHROPIC_API_KEY environment variable, then restart the bot."
)


def log_io(direction: str, channel_key: str, author: str, content: str):
    preview = content if len(content) <= LOG_PREVIEW else content[:LOG_PREVIEW] + "..."
    logger.info(f"[{direction}] {channel_key} @{author}: {preview}")


def format_thinking(thinking: str) -> str:
    """Render a thinking trace as an expandable HTML quote."""
    if len(thinking) > THINKING_LIMIT:
        thinking = thinking[:THINKING_LIMIT] + "..."
    return f"💭 <b>Thinking</b>\n<blockquote expandable>{html.escape(thinking)}</blockquote>"


@dataclass
class _Turn:
    """Mutable state shared between a running turn and its button handlers."""
    handle: Optional[AgentRunHandle] = None
    stopped: bool = False


class SessionOrchestrator:
    """Runs agent turns for channels that have a session."""

    def __init__(
        self,
        store: SessionStore,
        runner: AgentRunner,
        usage_tracker: UsageTracker,
        dispatcher: ResponseDispatcher,
        choice_resolver: ChoiceResolver,
        context: Optional[AppContext] = None,
        permission_timeout: float = 120.0,
    ):
        self.store = store
        self.runner = runner
        self.usage_tracker = usage_tracker
        self.dispatcher = dispatcher
        self.choice_resolver = choice_resolver
        self.context = context or AppContext()
        self.permission_timeout = permission_timeout
        self._gates: dict[str, PermissionGate] = {}

    def gate_for(self, channel_key: str) -> PermissionGate:
        gate = self._gates.get(channel_key)
        if gate is None:
            gate = PermissionGate(channel_key, timeout=self.permission_timeout)
            self._gates[channel_key] = gate
        return gate

    def forget(self, channel_key: str):
        """Drop per-channel in-memory state (called when a session is stopped)."""
        self._gates.pop(channel_key, None)

    async def handle_message(self, channel: TelegramChannel, inbound: InboundMessage):
        """
        Run turns for an inbound message until no further choice is selected.

        A selected choice becomes the next prompt; the loop never recurses.
        """
        current_prompt: Optional[str] = inbound.text.strip()
        while current_prompt:
            session = self.store.get_session(channel.key)
            if session is None:
                return
            current_prompt = await self._run_turn(channel, inbound, session, current_prompt)

    def _waiting_buttons(self, gate: PermissionGate) -> list[Button]:
        toggle_label = "🔒 Ask for every request" if gate.auto_approve else "🔓 Allow all requests"
        return [Button("⏹ Stop", STOP), Button(toggle_label, TOGGLE)]

    async def _keep_typing(self, channel: TelegramChannel):
        while True:
            await channel.typing()
            await asyncio.sleep(TYPING_INTERVAL)

    async def _run_turn(
        self,
        channel: TelegramChannel,
        inbound: InboundMessage,
        session: Session,
        prompt: str,
    ) -> Optional[str]:
        """Run one turn. Returns the next prompt if the user picked a choice."""
        log_io("IN", channel.key, inbound.author_name, prompt)
        await channel.react(inbound.message_id, SEEN_REACTION)
        gate = self.gate_for(channel.key)

        try:
            waiting = await channel.send(
                WAITING_TEXT,
                reply_to=inbound.message_id,
                buttons=self._waiting_buttons(gate),
            )
        except DeliveryError as e:
            logger.error(f"Could not start turn in {channel.key}: {e}")
            await channel.clear_reaction(inbound.message_id)
            return None

        turn = _Turn()

        async def on_waiting_click(value: str, user_id: int):
            if value == STOP and not turn.stopped:
                logger.info(f"Stop requested in {channel.key} by user {user_id}")
                turn.stopped = True
                if turn.handle is not None:
                    turn.handle.cancel()
                await channel.edit(waiting, STOPPED_TEXT)
            elif value == TOGGLE and not turn.stopped:
                gate.toggle()
                await channel.set_buttons(waiting, self._waiting_buttons(gate))

        channel.on_click(waiting, on_waiting_click)
        typing_task = asyncio.create_task(self._keep_typing(channel))

        try:
            return await self._complete_turn(channel, inbound, session, prompt, gate, turn, waiting)
        except Exception as e:
            logger.error(f"Error handling message in {channel.key}: {e}", exc_info=True)
            await channel.delete(waiting.message_id)
            try:
                await channel.send(FAILURE_TEXT)
            except DeliveryError as send_error:
                logger.warning(f"Could not report failure in {channel.key}: {send_error}")
            return None
        finally:
            typing_task.cancel()
            channel.release(waiting)
            await channel.clear_reaction(inbound.message_id)

    async def _invoke(
        self,
        turn: _Turn,
        prompt: str,
        session_id: str,
        is_resume: bool,
        working_dir: str,
        strategy: PermissionStrategy,
    ) -> AgentResult:
        turn.handle = self.runner.invoke(prompt, session_id, is_resume, working_dir, strategy)
        if turn.stopped:
            turn.handle.cancel()
        return await turn.handle.result

    async def _complete_turn(
        self,
        channel: TelegramChannel,
        inbound: InboundMessage,
        session: Session,
        prompt: str,
        gate: PermissionGate,
        turn: _Turn,
        waiting: SentMessage,
    ) -> Optional[str]:
        strategy = Gated(functools.partial(gate.request, channel))
        is_resume = session.message_count > 0

        result = await self._invoke(turn, prompt, session.session_id, is_resume, session.project_path, strategy)
        if turn.stopped:
            return None

        if not result.success and is_resume and result.error is not None and result.error.resumable:
            logger.warning(
                f"RESUME_FAIL {channel.key}: session {session.short_id} could not be resumed "
                f"({result.error.value}), starting a new one"
            )
            reset = self.store.reset_session(channel.key)
            if reset is not None:
                session = reset
                try:
                    await channel.send(
                        f"⚠️ Could not restore the previous session, starting a new one "
                        f"(<code>{session.short_id}</code>)",
                        parse_mode=ParseMode.HTML,
                    )
                except DeliveryError as e:
                    logger.warning(f"Could not announce session restart in {channel.key}: {e}")
                result = await self._invoke(turn, prompt, session.session_id, False, session.project_path, strategy)
                if turn.stopped:
                    return None

        await channel.delete(waiting.message_id)
        self.store.increment_message_count(channel.key)

        if result.success:
            response = result.output
        else:
            response = f"Error: {result.output}"
            if result.error == AgentErrorKind.AUTH_FAILURE:
                response += AUTH_HELP
        log_io("OUT", channel.key, "agent", response)

        if result.thinking:
            try:
                await channel.send(format_thinking(result.thinking), parse_mode=ParseMode.HTML)
            except DeliveryError as e:
                logger.warning(f"Could not send thinking trace in {channel.key}: {e}")

        sent = await self.dispatcher.dispatch(channel, response, reply_to=inbound.message_id)

        await self._check_usage(channel)

        if not result.success or not sent:
            return None
        return await self.choice_resolver.resolve(channel, response, sent[-1])

    async def _check_usage(self, channel: TelegramChannel):
        session = self.store.get_session(channel.key)
        if session is None:
            return
        alerts = await self.usage_tracker.check_thresholds(session)
        destination = self.context.alert_channel or channel
        for alert in alerts:
            try:
                await destination.send(format_alert(alert, session))
            except DeliveryError as e:
                logger.warning(f"Could not deliver usage alert for {channel.key}: {e}")
