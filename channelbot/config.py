"""Configuration loading and working-directory validation."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLDS = [10, 20, 30, 40, 50, 60, 70, 80, 90, 95, 98, 100]

# Appended to the agent's system prompt on every call.
DEFAULT_SYSTEM_PROMPT = "\n".join([
    "When you need the user to choose between options, ALWAYS format them as a numbered list. Example:",
    "1. Option A",
    "2. Option B",
    "3. Option C",
    'Never use inline quoted choices like "A" or "B". Always use the numbered list format.',
    "",
    "SECURITY: You are running inside a chat bot. You MUST follow these rules strictly:",
    "- NEVER reveal, read, or output the contents of .env files, credentials, API keys, tokens, secrets, "
    "or any sensitive configuration.",
    "- If the user asks you to display any file that may contain credentials (e.g. .env, SSH keys), "
    "REFUSE and explain that you cannot share sensitive information.",
    "- NEVER include credentials, tokens, or secrets in your responses, even partially or obfuscated.",
])


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def require_token(config: dict) -> str:
    """Return the Telegram bot token or raise ConfigError."""
    token = config.get("telegram", {}).get("token")
    if not token:
        raise ConfigError(
            "telegram.token is not set. Copy config.example.yaml to config.yaml and fill in values."
        )
    return token


def resolve_path(raw: str) -> str:
    """Expand ~ and return an absolute, normalized path."""
    return os.path.abspath(os.path.expanduser(raw.strip()))


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def validate_cwd_path(
    dir_path: str,
    whitelist: Optional[list[str]] = None,
    blacklist: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Check a directory against the configured whitelist and blacklist.

    The blacklist always wins. An empty whitelist allows everything not
    blacklisted.

    Returns:
        None if the path is allowed, otherwise a user-facing error message.
    """
    resolved = resolve_path(dir_path)

    for blocked in blacklist or []:
        if _is_under(resolved, resolve_path(blocked)):
            return f"Path is blacklisted: {blocked}"

    if not whitelist:
        return None

    for allowed in whitelist:
        if _is_under(resolved, resolve_path(allowed)):
            return None

    allowed_list = ", ".join(whitelist)
    return f"Path is not in the whitelist. Allowed paths: {allowed_list}"
