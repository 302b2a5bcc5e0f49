"""Durable session and per-channel working directory state."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from .models import Session, new_session_id

logger = logging.getLogger(__name__)


class SessionStore:
    """
    JSON-file backed store keyed by channel.

    Mutations schedule a debounced flush (default 500ms). Call flush() to
    write immediately, e.g. on shutdown.
    """

    def __init__(self, state_file: str, flush_delay: float = 0.5):
        self.state_file = Path(state_file).expanduser()
        self.flush_delay = flush_delay
        self.sessions: dict[str, Session] = {}
        self.channel_cwd: dict[str, str] = {}
        self._flush_handle: Optional[asyncio.TimerHandle] = None

    def load(self) -> bool:
        """
        Load state from disk.

        Returns:
            True if state loaded successfully (or no state file exists),
            False if an error occurred during loading.
        """
        if not self.state_file.exists():
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            self.sessions = {
                key: Session.from_dict(raw)
                for key, raw in (data.get("sessions") or {}).items()
            }
            self.channel_cwd = dict(data.get("channel_cwd") or {})
            logger.info(f"Loaded {len(self.sessions)} sessions from {self.state_file}")
            return True
        except Exception as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return False

    def flush(self) -> bool:
        """
        Cancel any pending debounce and write state to disk now.

        Uses temp file + rename so a crash mid-write never leaves a
        truncated state file.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        temp_file = self.state_file.with_suffix(".tmp")
        try:
            data = {
                "sessions": {key: s.to_dict() for key, s in self.sessions.items()},
                "channel_cwd": self.channel_cwd,
            }
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.rename(self.state_file)
            return True
        except Exception as e:
            logger.error(f"CRITICAL: Failed to save state to {self.state_file}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False

    def _schedule_flush(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (CLI use, tests): write through
            self.flush()
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self.flush_delay, self.flush)

    # -----------------------
    # Sessions
    # -----------------------

    def add_session(self, session: Session):
        """Add or replace the session for session.channel_id."""
        self.sessions[session.channel_id] = session
        self._schedule_flush()

    def remove_session(self, channel_id: str) -> Optional[Session]:
        """Remove and return the channel's session. No-op returning None if absent."""
        session = self.sessions.pop(channel_id, None)
        if session is not None:
            self._schedule_flush()
        return session

    def get_session(self, channel_id: str) -> Optional[Session]:
        return self.sessions.get(channel_id)

    def list_sessions(self) -> list[Session]:
        return list(self.sessions.values())

    def update_message_count(self, channel_id: str, count: int):
        session = self.sessions.get(channel_id)
        if session:
            session.message_count = count
            self._schedule_flush()

    def increment_message_count(self, channel_id: str) -> int:
        """Bump the turn counter. Returns the new count (0 if no session)."""
        session = self.sessions.get(channel_id)
        if not session:
            return 0
        session.message_count += 1
        self._schedule_flush()
        return session.message_count

    def update_alert_percent(self, channel_id: str, percent: int):
        session = self.sessions.get(channel_id)
        if session:
            session.last_alert_percent = percent
            self._schedule_flush()

    def update_status_message(self, channel_id: str, message_id: Optional[int]):
        session = self.sessions.get(channel_id)
        if session:
            session.status_message_id = message_id
            self._schedule_flush()

    def reset_session(self, channel_id: str, session_id: Optional[str] = None) -> Optional[Session]:
        """Give the channel's session a fresh identity and a zero turn count."""
        session = self.sessions.get(channel_id)
        if not session:
            return None
        session.session_id = session_id or new_session_id()
        session.message_count = 0
        self._schedule_flush()
        return session

    def move_session(self, channel_id: str, project_path: str) -> Optional[Session]:
        """Rotate the channel's session to a new identity rooted at project_path."""
        session = self.sessions.get(channel_id)
        if not session:
            return None
        session.project_path = project_path
        session.session_id = new_session_id()
        session.message_count = 0
        session.last_alert_percent = 0
        self._schedule_flush()
        return session

    # -----------------------
    # Channel working directories
    # -----------------------

    def set_cwd(self, channel_id: str, path: str):
        self.channel_cwd[channel_id] = path
        self._schedule_flush()

    def get_cwd(self, channel_id: str) -> Optional[str]:
        return self.channel_cwd.get(channel_id)
