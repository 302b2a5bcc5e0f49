"""Unit tests for PermissionGate."""

import asyncio

import pytest
from telegram.constants import ParseMode

from channelbot.models import PermissionRequest
from channelbot.permission_gate import PREVIEW_LIMIT, PermissionGate, format_input_preview


def bash_request(command="ls -la") -> PermissionRequest:
    return PermissionRequest(tool_name="Bash", input={"command": command}, request_id="req-1")


def test_preview_is_pretty_json():
    assert format_input_preview({"a": 1}) == '{\n  "a": 1\n}'


def test_preview_is_truncated():
    preview = format_input_preview({"content": "x" * 5000})
    assert len(preview) == PREVIEW_LIMIT + len("\n...")
    assert preview.endswith("\n...")


def test_toggle_flips_mode():
    gate = PermissionGate("100")
    assert gate.toggle() is True
    assert gate.auto_approve
    assert gate.toggle() is False


@pytest.mark.asyncio
async def test_allow_click_allows(make_channel):
    channel = make_channel(clicks=["allow"])
    gate = PermissionGate("100", timeout=1)

    assert await gate.request(channel, bash_request()) is True

    call = channel.send_calls[0]
    assert call["text"].startswith("🔐 Permission request: <code>Bash</code>")
    assert call["buttons"] == ["✅ Allow", "❌ Deny"]
    assert call["parse_mode"] == ParseMode.HTML
    assert channel.edits[-1][1].endswith("✅ Allowed")


@pytest.mark.asyncio
async def test_deny_click_denies(make_channel):
    channel = make_channel(clicks=["deny"])
    assert await PermissionGate("100", timeout=1).request(channel, bash_request()) is False
    assert channel.edits[-1][1].endswith("❌ Denied")


@pytest.mark.asyncio
async def test_timeout_denies(make_channel):
    channel = make_channel(clicks=[None])
    assert await PermissionGate("100", timeout=1).request(channel, bash_request()) is False
    assert channel.edits[-1][1].endswith("⏰ Timed out (denied)")


@pytest.mark.asyncio
async def test_tool_input_is_escaped(make_channel):
    channel = make_channel(clicks=["allow"])
    await PermissionGate("100", timeout=1).request(channel, bash_request("echo <b>&</b>"))
    text = channel.send_calls[0]["text"]
    assert "&lt;b&gt;&amp;&lt;/b&gt;" in text
    assert "<b>" not in text


@pytest.mark.asyncio
async def test_auto_mode_announces_and_allows(make_channel):
    channel = make_channel()
    gate = PermissionGate("100", auto_approve=True)

    assert await gate.request(channel, bash_request()) is True

    call = channel.send_calls[0]
    assert call["text"].startswith("🔓 Auto-approved: ")
    assert call["buttons"] is None
    assert channel.edits == []


@pytest.mark.asyncio
async def test_auto_mode_allows_even_if_announcement_fails(make_channel):
    channel = make_channel()
    channel.fail_send = True
    assert await PermissionGate("100", auto_approve=True).request(channel, bash_request()) is True


@pytest.mark.asyncio
async def test_undeliverable_request_denies(make_channel):
    channel = make_channel()
    channel.fail_send = True
    assert await PermissionGate("100").request(channel, bash_request()) is False


@pytest.mark.asyncio
async def test_toggle_does_not_affect_waiting_request(make_channel):
    channel = make_channel()
    gate = PermissionGate("100", timeout=1)
    release = asyncio.Event()

    async def slow_click(message, timeout):
        await release.wait()
        return None

    channel.wait_for_click = slow_click
    pending = asyncio.create_task(gate.request(channel, bash_request()))
    await asyncio.sleep(0)
    gate.toggle()
    release.set()

    assert await pending is False
    assert channel.edits[-1][1].endswith("⏰ Timed out (denied)")


@pytest.mark.asyncio
async def test_cancelled_request_marks_message(make_channel):
    channel = make_channel()

    async def never(message, timeout):
        await asyncio.Event().wait()

    channel.wait_for_click = never
    pending = asyncio.create_task(PermissionGate("100").request(channel, bash_request()))
    await asyncio.sleep(0.01)
    pending.cancel()

    with pytest.raises(asyncio.CancelledError):
        await pending
    assert channel.edits[-1][1].endswith("⏹ Cancelled")
