"""Main entry point - wires all components together."""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import uvicorn

from .agent_runner import AgentRunner, AgentRunnerConfig
from .channel import AppContext, DeliveryError, TelegramChannel
from .choice_resolver import ChoiceResolver
from .config import ConfigError, load_config, require_token, resolve_path
from .interactions import InteractionBroker
from .models import ChannelRef
from .orchestrator import SessionOrchestrator
from .response_dispatcher import ResponseDispatcher
from .server import create_app
from .state_store import SessionStore
from .telegram_bot import TelegramBot
from .usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


class BotApp:
    """Main application: builds components from config and runs them."""

    def __init__(self, config: dict):
        self.config = config
        telegram = config.get("telegram", {})
        interaction = config.get("interaction", {})
        messages = config.get("messages", {})
        session_cfg = config.get("session", {})
        cwd_cfg = config.get("cwd", {})

        self.state_file = config.get("paths", {}).get("state_file", "~/.channel-agent-bot/state.json")
        self.default_cwd = resolve_path(cwd_cfg.get("default") or os.getcwd())

        self.store = SessionStore(
            state_file=self.state_file,
            flush_delay=config.get("state", {}).get("flush_delay_ms", 500) / 1000,
        )
        self.runner = AgentRunner(AgentRunnerConfig.from_config(config))
        self.usage_tracker = UsageTracker(
            store=self.store,
            data_dir=config.get("agent", {}).get("data_dir", "~/.claude"),
            token_limit=session_cfg.get("token_limit", 0),
            thresholds=session_cfg.get("alert_thresholds"),
        )
        self.context = AppContext()
        self.orchestrator = SessionOrchestrator(
            store=self.store,
            runner=self.runner,
            usage_tracker=self.usage_tracker,
            dispatcher=ResponseDispatcher(
                max_length=messages.get("max_length", 2000),
                split_limit=messages.get("split_limit", 6000),
            ),
            choice_resolver=ChoiceResolver(
                timeout=interaction.get("choice_timeout_ms", 120_000) / 1000,
            ),
            context=self.context,
            permission_timeout=interaction.get("permission_timeout_ms", 120_000) / 1000,
        )
        self.telegram_bot = TelegramBot(
            token=require_token(config),
            store=self.store,
            orchestrator=self.orchestrator,
            usage_tracker=self.usage_tracker,
            broker=InteractionBroker(),
            allowed_chat_ids=telegram.get("allowed_chat_ids"),
            allowed_user_ids=telegram.get("allowed_user_ids"),
            default_cwd=self.default_cwd,
            cwd_whitelist=cwd_cfg.get("whitelist"),
            cwd_blacklist=cwd_cfg.get("blacklist"),
            mkdir_timeout=interaction.get("mkdir_confirm_timeout_ms", 30_000) / 1000,
        )

        server_cfg = config.get("server", {})
        self.server_enabled = server_cfg.get("enabled", False)
        self.host = server_cfg.get("host", "127.0.0.1")
        self.port = server_cfg.get("port", 8421)
        self.app = create_app(
            store=self.store,
            usage_tracker=self.usage_tracker,
            orchestrator=self.orchestrator,
            config=config,
        )
        self._server: Optional[uvicorn.Server] = None
        self._stop_event = asyncio.Event()

    def _system_channel(self, key: str) -> Optional[TelegramChannel]:
        chat_id = self.config.get("telegram", {}).get(key)
        if not chat_id:
            return None
        return self.telegram_bot.channel_for(ChannelRef(chat_id=int(chat_id)))

    async def _report_cli_status(self):
        """Check the agent CLI and report the result to the admin and alert chats."""
        status = await self.runner.check_cli_status(self.default_cwd)
        admin = self.context.admin_channel
        alert = self.context.alert_channel

        if status.available:
            logger.info(f"Agent CLI OK ({status.version})")
            admin_text = f"✅ Agent CLI OK ({status.version})"
            alert_text = "Agent bot is online."
        else:
            logger.error(f"Agent CLI unavailable: {status.error}")
            admin_text = (
                f"⚠️ Agent CLI unavailable\n{status.error}\n\n"
                "Set agent.api_key in config.yaml or the ANTHROPIC_API_KEY environment variable, then restart."
            )
            alert_text = "⚠️ Agent CLI unavailable. See the admin chat."

        for channel, text in ((admin, admin_text), (alert, alert_text)):
            if channel is None:
                continue
            try:
                await channel.send(text)
            except DeliveryError as e:
                logger.warning(f"Could not post startup status to {channel.key}: {e}")

    async def start(self):
        """Start all components and run until stopped."""
        logger.info("Starting channel agent bot...")

        if not self.store.load():
            logger.error(f"State file {self.state_file} could not be read, starting empty")

        await self.telegram_bot.start()
        self.context.alert_channel = self._system_channel("alert_chat_id")
        self.context.admin_channel = self._system_channel("admin_chat_id")

        if self.config.get("agent", {}).get("startup_check", True):
            asyncio.create_task(self._report_cli_status())

        waiters = {asyncio.create_task(self._stop_event.wait())}
        if self.server_enabled:
            self._server = uvicorn.Server(uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_level="info",
            ))
            logger.info(f"Starting admin API on http://{self.host}:{self.port}")
            waiters.add(asyncio.create_task(self._server.serve()))

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

    def request_stop(self):
        """Signal-safe: persist state now, then let start() return."""
        self.store.flush()
        self._stop_event.set()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping channel agent bot...")

        if self._server:
            self._server.should_exit = True

        await self.telegram_bot.stop()
        self.store.flush()

        logger.info("Shutdown complete")


def setup_signal_handlers(app: BotApp):
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals):
        logger.info(f"Received signal {sig.name}, shutting down...")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)


async def main() -> int:
    """Main entry point."""
    config = load_config(os.environ.get("CHANNEL_AGENT_BOT_CONFIG", DEFAULT_CONFIG_PATH))

    logging.basicConfig(
        level=config.get("logging", {}).get("level", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every Telegram long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        app = BotApp(config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    setup_signal_handlers(app)

    try:
        await app.start()
    finally:
        await app.stop()
    return 0


def run():
    """Entry point for console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
