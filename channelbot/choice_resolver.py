"""Numbered-choice detection in agent responses, resolved with inline buttons."""

import logging
import re
from typing import Optional

from .channel import Button, SentMessage, TelegramChannel

logger = logging.getLogger(__name__)

MIN_CHOICES = 2
MAX_CHOICES = 9

# "1. Foo", "2) Bar", "- 3. Baz", "**4.** Qux"
NUMBERED_LINE = re.compile(r"^\s*(?:[-*]\s*)?(?:\*{0,2})(\d+)[.)]\*{0,2}\s+(.+)$")


def parse_numbered_choices(text: str) -> list[tuple[int, str]]:
    """
    Return the last run of sequentially numbered lines (1, 2, 3, ...) as
    (displayed number, option) pairs.

    Blank lines inside a run are ignored. A "1." mid-run starts a new run;
    any other out-of-sequence number or non-blank text ends it. A repeated
    option keeps the number of its first occurrence. The result is empty
    unless the last run has between 2 and 9 distinct items.
    """
    blocks: list[list[tuple[int, str]]] = []
    current: list[tuple[int, str]] = []
    expected = 1

    for line in text.split("\n"):
        match = NUMBERED_LINE.match(line)
        if match:
            num = int(match.group(1))
            item = match.group(2).strip()
            if num == expected:
                current.append((num, item))
                expected += 1
            elif num == 1:
                if len(current) >= MIN_CHOICES:
                    blocks.append(current)
                current = [(num, item)]
                expected = 2
            else:
                if len(current) >= MIN_CHOICES:
                    blocks.append(current)
                current = []
                expected = 1
        else:
            if not line.strip() and current:
                continue
            if len(current) >= MIN_CHOICES:
                blocks.append(current)
            current = []
            expected = 1

    if len(current) >= MIN_CHOICES:
        blocks.append(current)
    if not blocks:
        return []

    first_numbers: dict[str, int] = {}
    for num, item in blocks[-1]:
        first_numbers.setdefault(item, num)
    if not MIN_CHOICES <= len(first_numbers) <= MAX_CHOICES:
        return []
    return [(num, item) for item, num in first_numbers.items()]


def parse_choices(text: str) -> list[str]:
    """The distinct options of the last numbered run, in order."""
    return [item for _, item in parse_numbered_choices(text)]


class ChoiceResolver:
    """Offers a response's numbered choices as buttons and waits for one click."""

    def __init__(self, timeout: float = 120.0):
        self.timeout = timeout

    async def resolve(self, channel: TelegramChannel, text: str, message: SentMessage) -> Optional[str]:
        """
        Returns:
            The selected option's text, or None if there is nothing to choose
            or no selection arrived in time.
        """
        numbered = parse_numbered_choices(text)
        if not numbered:
            return None

        # Buttons carry the numbers shown in the text, which skip repeated options
        choices = {str(num): item for num, item in numbered}
        logger.info(f"Offering {len(choices)} choices in {channel.key}")
        buttons = [Button(label, label) for label in choices]
        if not await channel.set_buttons(message, buttons):
            return None

        original = message.text
        try:
            value = await channel.wait_for_click(message, self.timeout)
        finally:
            channel.release(message)

        if value not in choices:
            await channel.edit(message, f"{original}\n\n⏰ Selection timed out")
            return None

        selected = choices[value]
        await channel.edit(message, f"{original}\n\n✅ Selected: {value}. {selected}")
        logger.info(f"Choice {value} selected in {channel.key}: {selected[:100]}")
        return selected
