"""Unit tests for response splitting and delivery."""

import pytest

from channelbot.channel import DeliveryError
from channelbot.response_dispatcher import (
    ATTACHMENT_NAME,
    ATTACHMENT_NOTICE,
    ResponseDispatcher,
    split_message,
)


def paragraph_text(n_lines: int, width: int = 70) -> str:
    return "\n".join(f"{i:04d} " + "x" * (width - 5) for i in range(n_lines))


class TestSplitMessage:

    def test_short_text_is_one_chunk(self):
        assert split_message("hello", 10) == ["hello"]

    def test_chunks_respect_limit(self):
        text = paragraph_text(60)
        chunks = split_message(text, 2000)
        assert len(chunks) > 1
        assert all(len(c) <= 2000 for c in chunks)

    def test_splits_at_newlines_and_loses_only_whitespace(self):
        text = paragraph_text(60)
        chunks = split_message(text, 2000)
        assert "\n".join(chunks) == text
        assert all(not c.startswith("\n") for c in chunks)

    def test_falls_back_to_space(self):
        text = " ".join(["word"] * 1000)
        chunks = split_message(text, 100)
        assert all(len(c) <= 100 for c in chunks)
        assert all(c.replace("word", "").strip() == "" for c in chunks)
        assert " ".join(chunks).split() == text.split()

    def test_hard_cut_without_whitespace(self):
        text = "a" * 250
        assert split_message(text, 100) == ["a" * 100, "a" * 100, "a" * 50]

    def test_early_newline_is_ignored(self):
        text = "ab\n" + "c" * 200
        chunks = split_message(text, 100)
        assert chunks[0] == ("ab\n" + "c" * 200)[:100]


@pytest.mark.asyncio
async def test_short_response_is_single_reply(make_channel):
    channel = make_channel()
    sent = await ResponseDispatcher().dispatch(channel, "Hi there", reply_to=7)

    assert len(sent) == 1
    assert channel.send_calls == [
        {"text": "Hi there", "reply_to": 7, "document": None, "buttons": None, "parse_mode": None}
    ]


@pytest.mark.asyncio
async def test_medium_response_is_split_with_only_first_reply(make_channel):
    channel = make_channel()
    text = paragraph_text(60)

    sent = await ResponseDispatcher().dispatch(channel, text, reply_to=7)

    assert len(sent) >= 2
    assert [c["reply_to"] for c in channel.send_calls] == [7] + [None] * (len(sent) - 1)
    assert "\n".join(channel.texts) == text


@pytest.mark.asyncio
async def test_long_response_is_attached(make_channel):
    channel = make_channel()
    text = paragraph_text(200)
    assert len(text) > 6000

    sent = await ResponseDispatcher().dispatch(channel, text, reply_to=9)

    assert len(sent) == 1
    call = channel.send_calls[0]
    assert call["reply_to"] == 9
    assert call["text"].endswith(ATTACHMENT_NOTICE)
    assert call["text"].startswith(text[:1940])
    assert len(call["text"]) <= 2000
    name, data = call["document"]
    assert name == ATTACHMENT_NAME
    assert data == text.encode("utf-8")


@pytest.mark.asyncio
async def test_delivery_errors_propagate(make_channel):
    channel = make_channel()
    channel.fail_send = True
    with pytest.raises(DeliveryError):
        await ResponseDispatcher().dispatch(channel, "hello")
