"""Token usage accounting from agent transcripts, with one-shot threshold alerts."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import DEFAULT_ALERT_THRESHOLDS
from .models import Session, UsageRecord
from .state_store import SessionStore

logger = logging.getLogger(__name__)

NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def encode_project_path(dir_path: str) -> str:
    """
    Encode a working directory the way the agent names its project folders.

    Every character other than an ASCII letter or digit becomes "-", so
    "/home/me/my.proj" maps to "-home-me-my-proj".
    """
    return NON_ALNUM.sub("-", dir_path)


@dataclass
class ThresholdAlert:
    """A usage threshold crossed for the first time."""
    threshold: int
    percent: int
    usage: UsageRecord
    limit: int


class UsageTracker:
    """Sums transcript usage for a session and raises threshold alerts."""

    def __init__(
        self,
        store: SessionStore,
        data_dir: str = "~/.claude",
        token_limit: int = 0,
        thresholds: Optional[list[int]] = None,
    ):
        self.store = store
        self.data_dir = Path(data_dir).expanduser()
        self.token_limit = token_limit
        self.thresholds = sorted(thresholds or DEFAULT_ALERT_THRESHOLDS)

    @property
    def enabled(self) -> bool:
        return self.token_limit > 0

    def transcript_path(self, session_id: str, working_dir: str) -> Path:
        return self.data_dir / "projects" / encode_project_path(working_dir) / f"{session_id}.jsonl"

    def _read_usage(self, path: Path) -> UsageRecord:
        usage = UsageRecord()
        if not path.exists():
            return usage

        # Undecodable bytes from a torn append become U+FFFD and fail JSON parsing below
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict) or entry.get("type") != "assistant":
                    continue
                message = entry.get("message")
                counts = message.get("usage") if isinstance(message, dict) else None
                if not isinstance(counts, dict):
                    continue
                # Cache reads are excluded: they re-count the same context every turn
                usage.input_tokens += (
                    (counts.get("input_tokens") or 0)
                    + (counts.get("cache_creation_input_tokens") or 0)
                )
                usage.output_tokens += counts.get("output_tokens") or 0
                cost = entry.get("costUSD")
                if isinstance(cost, (int, float)):
                    usage.cost_usd += cost
        return usage

    async def usage(self, session_id: str, working_dir: str) -> UsageRecord:
        """Compute cumulative usage for a session from its transcript log."""
        path = self.transcript_path(session_id, working_dir)
        try:
            return await asyncio.to_thread(self._read_usage, path)
        except OSError as e:
            logger.warning(f"Could not read transcript {path}: {e}")
            return UsageRecord()

    async def check_thresholds(self, session: Session) -> list[ThresholdAlert]:
        """
        Return alerts for thresholds newly crossed by this session.

        The session's last_alert_percent is raised to the current percent so
        each threshold fires at most once.
        """
        if not self.enabled:
            return []

        usage = await self.usage(session.session_id, session.project_path)
        percent = (100 * usage.total_tokens) // self.token_limit
        previous = session.last_alert_percent

        alerts = [
            ThresholdAlert(threshold=t, percent=percent, usage=usage, limit=self.token_limit)
            for t in self.thresholds
            if percent >= t > previous
        ]

        if percent > previous:
            self.store.update_alert_percent(session.channel_id, percent)

        if alerts:
            logger.info(
                f"Session {session.short_id} at {percent}% of token limit, "
                f"alerts: {[a.threshold for a in alerts]}"
            )
        return alerts


def format_alert(alert: ThresholdAlert, session: Session) -> str:
    """Human-readable alert text."""
    return (
        f"⚠️ Token usage {alert.threshold}% reached\n"
        f"Topic: {session.topic_name or session.channel_id}\n"
        f"Session: {session.short_id}\n"
        f"Usage: {alert.usage.total_tokens:,} / {alert.limit:,} tokens ({alert.percent}%)"
    )
