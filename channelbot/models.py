"""Data models for the channel agent bot."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid


def new_session_id() -> str:
    """Generate a fresh agent session identity."""
    return str(uuid.uuid4())


class AgentErrorKind(Enum):
    """Why an agent turn did not succeed."""
    SPAWN_FAILURE = "spawn_failure"    # Agent binary/runtime unreachable
    AUTH_FAILURE = "auth_failure"      # Agent reachable but rejects credentials
    TIMEOUT = "timeout"                # No result within the configured budget
    RESUME_FAILURE = "resume_failure"  # Stored session could not be continued
    ABORTED = "aborted"                # User pressed Stop
    AGENT_ERROR = "agent_error"        # Any other failure reported by the agent

    @property
    def resumable(self) -> bool:
        """True if a failed resume with this error is worth one fresh-session retry."""
        return self in (AgentErrorKind.RESUME_FAILURE, AgentErrorKind.AGENT_ERROR)


@dataclass(frozen=True)
class ChannelRef:
    """A chat, or one forum topic inside a supergroup."""
    chat_id: int
    thread_id: Optional[int] = None

    @property
    def key(self) -> str:
        if self.thread_id is None:
            return str(self.chat_id)
        return f"{self.chat_id}:{self.thread_id}"

    @classmethod
    def from_key(cls, key: str) -> "ChannelRef":
        chat, _, thread = key.partition(":")
        return cls(chat_id=int(chat), thread_id=int(thread) if thread else None)


@dataclass
class Session:
    """One ongoing agent conversation bound to a channel."""
    channel_id: str
    project_path: str
    topic_name: str = ""
    session_id: str = field(default_factory=new_session_id)
    created_at: datetime = field(default_factory=datetime.now)
    message_count: int = 0  # Turns completed under the current session_id
    last_alert_percent: int = 0  # Highest usage percent already announced
    status_message_id: Optional[int] = None  # Pinned status message

    @property
    def short_id(self) -> str:
        return self.session_id[:8]

    def to_dict(self) -> dict:
        """Convert session to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "channel_id": self.channel_id,
            "topic_name": self.topic_name,
            "project_path": self.project_path,
            "created_at": self.created_at.isoformat(),
            "message_count": self.message_count,
            "last_alert_percent": self.last_alert_percent,
            "status_message_id": self.status_message_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from dictionary."""
        return cls(
            session_id=data["session_id"],
            channel_id=data["channel_id"],
            topic_name=data.get("topic_name", ""),
            project_path=data["project_path"],
            created_at=datetime.fromisoformat(data["created_at"]),
            message_count=data.get("message_count", 0),
            last_alert_percent=data.get("last_alert_percent", 0),
            status_message_id=data.get("status_message_id"),
        )


@dataclass
class UsageRecord:
    """Token usage summed from a session transcript. Derived, never stored."""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class PermissionRequest:
    """A single tool-use approval request from the agent."""
    tool_name: str
    input: dict[str, Any]
    request_id: str = ""


@dataclass
class AgentResult:
    """Outcome of one agent invocation."""
    success: bool
    output: str
    thinking: Optional[str] = None
    error: Optional[AgentErrorKind] = None
    session_id: Optional[str] = None  # Session id reported by the agent
    cost_usd: Optional[float] = None  # total_cost_usd from the result record


@dataclass
class InboundMessage:
    """A plain text message received in a channel."""
    channel: ChannelRef
    message_id: int
    author_id: int
    author_name: str
    text: str
    is_bot: bool = False
