"""Human approval of agent tool use."""

import asyncio
import html
import json
import logging
from typing import Any

from telegram.constants import ParseMode

from .channel import Button, DeliveryError, TelegramChannel
from .models import PermissionRequest

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 800

ALLOW = "allow"
DENY = "deny"


def format_input_preview(tool_input: dict[str, Any]) -> str:
    """Pretty-print tool input, truncated for display."""
    text = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    if len(text) > PREVIEW_LIMIT:
        text = text[:PREVIEW_LIMIT] + "\n..."
    return text


class PermissionGate:
    """
    Approval checkpoint for one channel.

    In manual mode each request is posted with Allow/Deny buttons and waits
    for one click. In auto-approve mode requests are allowed and announced.
    The mode is read once when a request arrives, so flipping it does not
    affect a request already waiting.
    """

    def __init__(self, channel_key: str, timeout: float = 120.0, auto_approve: bool = False):
        self.channel_key = channel_key
        self.timeout = timeout
        self.auto_approve = auto_approve

    def toggle(self) -> bool:
        """Flip auto-approve. Returns the new value."""
        self.auto_approve = not self.auto_approve
        logger.info(f"Permission mode for {self.channel_key}: {'auto' if self.auto_approve else 'manual'}")
        return self.auto_approve

    async def request(self, channel: TelegramChannel, request: PermissionRequest) -> bool:
        auto = self.auto_approve
        body = (
            f"<code>{html.escape(request.tool_name)}</code>\n"
            f"<pre>{html.escape(format_input_preview(request.input))}</pre>"
        )
        logger.info(
            f"PERM_REQ {self.channel_key} tool={request.tool_name} "
            f"mode={'auto' if auto else 'manual'} id={request.request_id}"
        )

        if auto:
            try:
                await channel.send(f"🔓 Auto-approved: {body}", parse_mode=ParseMode.HTML)
            except DeliveryError as e:
                logger.warning(f"Could not announce auto-approval in {self.channel_key}: {e}")
            logger.info(f"PERM_RES {self.channel_key} tool={request.tool_name} allowed=True (auto)")
            return True

        text = f"🔐 Permission request: {body}"
        try:
            message = await channel.send(
                text,
                buttons=[Button("✅ Allow", ALLOW), Button("❌ Deny", DENY)],
                parse_mode=ParseMode.HTML,
            )
        except DeliveryError as e:
            logger.error(f"Could not post permission request in {self.channel_key}, denying: {e}")
            logger.info(f"PERM_RES {self.channel_key} tool={request.tool_name} allowed=False (undeliverable)")
            return False

        try:
            value = await channel.wait_for_click(message, self.timeout)
        except asyncio.CancelledError:
            await channel.edit(message, f"{text}\n\n⏹ Cancelled")
            raise

        if value is None:
            await channel.edit(message, f"{text}\n\n⏰ Timed out (denied)")
            logger.info(f"PERM_RES {self.channel_key} tool={request.tool_name} allowed=False (timeout)")
            return False

        allowed = value == ALLOW
        await channel.edit(message, f"{text}\n\n{'✅ Allowed' if allowed else '❌ Denied'}")
        logger.info(f"PERM_RES {self.channel_key} tool={request.tool_name} allowed={allowed}")
        return allowed
