"""Unit tests for SessionOrchestrator turn handling."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from telegram.constants import ParseMode

from channelbot.agent_runner import Gated
from channelbot.channel import AppContext
from channelbot.choice_resolver import ChoiceResolver
from channelbot.models import AgentErrorKind, AgentResult, ChannelRef, InboundMessage, UsageRecord
from channelbot.orchestrator import (
    AUTH_HELP,
    FAILURE_TEXT,
    SEEN_REACTION,
    STOPPED_TEXT,
    WAITING_TEXT,
    SessionOrchestrator,
    format_thinking,
)
from channelbot.response_dispatcher import ResponseDispatcher
from channelbot.usage_tracker import ThresholdAlert


def ok(text="Done.", thinking=None) -> AgentResult:
    return AgentResult(success=True, output=text, thinking=thinking)


def failed(kind: AgentErrorKind, text="boom") -> AgentResult:
    return AgentResult(success=False, output=text, error=kind)


def inbound(text="do the thing", message_id=55) -> InboundMessage:
    return InboundMessage(
        channel=ChannelRef(chat_id=100),
        message_id=message_id,
        author_id=7,
        author_name="alice",
        text=text,
    )


@pytest.fixture
def orchestrator_factory(store, mock_usage_tracker):
    def build(runner, **kwargs):
        return SessionOrchestrator(
            store=store,
            runner=runner,
            usage_tracker=mock_usage_tracker,
            dispatcher=ResponseDispatcher(),
            choice_resolver=ChoiceResolver(timeout=1),
            **kwargs,
        )
    return build


@pytest.mark.asyncio
async def test_first_turn_starts_new_session(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(ok("Hello back"))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound("hello"))

    prompt, session_id, is_resume, working_dir, strategy = runner.invoke.call_args.args
    assert prompt == "hello"
    assert session_id == sample_session.session_id
    assert is_resume is False
    assert working_dir == sample_session.project_path
    assert isinstance(strategy, Gated)

    assert channel.send_calls[0]["text"] == WAITING_TEXT
    assert channel.send_calls[0]["reply_to"] == 55
    assert channel.send_calls[0]["buttons"] == ["⏹ Stop", "🔓 Allow all requests"]
    waiting_id = channel.sent[0].message_id
    assert waiting_id in channel.deleted
    assert waiting_id in channel.released

    assert channel.send_calls[-1]["text"] == "Hello back"
    assert channel.send_calls[-1]["reply_to"] == 55
    assert (55, SEEN_REACTION) in channel.reactions
    assert store.get_session("100").message_count == 1


@pytest.mark.asyncio
async def test_later_turns_resume(store, sample_session, orchestrator_factory, make_channel, scripted_runner):
    sample_session.message_count = 3
    store.add_session(sample_session)
    runner = scripted_runner(ok())

    await orchestrator_factory(runner).handle_message(make_channel(), inbound())

    assert runner.invoke.call_args.args[2] is True
    assert store.get_session("100").message_count == 4


@pytest.mark.asyncio
async def test_failed_resume_retries_once_with_fresh_session(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    sample_session.message_count = 5
    store.add_session(sample_session)
    old_id = sample_session.session_id
    runner = scripted_runner(failed(AgentErrorKind.RESUME_FAILURE, "No conversation found"), ok("fresh answer"))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    assert runner.invoke.call_count == 2
    first, second = [c.args for c in runner.invoke.call_args_list]
    assert first[1] == old_id and first[2] is True
    assert second[1] != old_id and second[2] is False

    session = store.get_session("100")
    assert session.session_id == second[1]
    assert session.message_count == 1
    assert any("Could not restore the previous session" in t for t in channel.texts)
    assert channel.texts[-1] == "fresh answer"


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    sample_session.message_count = 2
    store.add_session(sample_session)
    runner = scripted_runner(failed(AgentErrorKind.AUTH_FAILURE, "Invalid API key"))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    assert runner.invoke.call_count == 1
    assert channel.texts[-1] == "Error: Invalid API key" + AUTH_HELP
    assert store.get_session("100").session_id == sample_session.session_id


@pytest.mark.asyncio
async def test_failure_on_new_session_is_reported_without_retry(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(failed(AgentErrorKind.TIMEOUT, "No response within 600s (timeout)."))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    assert runner.invoke.call_count == 1
    assert channel.texts[-1] == "Error: No response within 600s (timeout)."


@pytest.mark.asyncio
async def test_error_responses_do_not_offer_choices(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(failed(AgentErrorKind.AGENT_ERROR, "1. one\n2. two"))
    channel = make_channel(clicks=["1"])

    await orchestrator_factory(runner).handle_message(channel, inbound())

    assert runner.invoke.call_count == 1
    assert channel.button_sets == []


@pytest.mark.asyncio
async def test_selected_choice_becomes_next_prompt(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(ok("Which one?\n1. Red\n2. Blue"), ok("Blue it is"))
    channel = make_channel(clicks=["2"])

    await orchestrator_factory(runner).handle_message(channel, inbound("pick a color"))

    prompts = [c.args[0] for c in runner.invoke.call_args_list]
    assert prompts == ["pick a color", "Blue"]
    assert runner.invoke.call_args_list[1].args[2] is True
    assert channel.texts[-1] == "Blue it is"
    assert store.get_session("100").message_count == 2


@pytest.mark.asyncio
async def test_stop_button_aborts_turn(
    store, sample_session, orchestrator_factory, make_channel, make_handle
):
    store.add_session(sample_session)
    handle = make_handle()
    runner = Mock()
    runner.invoke = Mock(return_value=handle)
    channel = make_channel()

    task = asyncio.create_task(orchestrator_factory(runner).handle_message(channel, inbound()))
    while not runner.invoke.called:
        await asyncio.sleep(0)

    waiting = channel.sent[0]
    await channel.listeners[waiting.message_id]("stop", 7)
    handle.cancel.assert_called_once()
    handle.result.set_result(failed(AgentErrorKind.ABORTED, "Response was stopped."))
    await task

    assert (waiting.message_id, STOPPED_TEXT) in channel.edits
    assert waiting.message_id not in channel.deleted
    assert not any(t.startswith("Error:") for t in channel.texts)
    assert store.get_session("100").message_count == 0


@pytest.mark.asyncio
async def test_toggle_button_flips_gate_and_relabels(
    store, sample_session, orchestrator_factory, make_channel, make_handle
):
    store.add_session(sample_session)
    handle = make_handle()
    runner = Mock()
    runner.invoke = Mock(return_value=handle)
    channel = make_channel()
    orchestrator = orchestrator_factory(runner)

    task = asyncio.create_task(orchestrator.handle_message(channel, inbound()))
    while not runner.invoke.called:
        await asyncio.sleep(0)

    waiting = channel.sent[0]
    await channel.listeners[waiting.message_id]("toggle", 7)
    assert orchestrator.gate_for("100").auto_approve
    assert channel.button_sets[-1] == (waiting.message_id, ["⏹ Stop", "🔒 Ask for every request"])

    handle.result.set_result(ok())
    await task


@pytest.mark.asyncio
async def test_gate_survives_turns_until_forgotten(orchestrator_factory):
    orchestrator = orchestrator_factory(Mock())
    gate = orchestrator.gate_for("100")
    gate.toggle()
    assert orchestrator.gate_for("100") is gate

    orchestrator.forget("100")
    assert orchestrator.gate_for("100") is not gate
    assert not orchestrator.gate_for("100").auto_approve


@pytest.mark.asyncio
async def test_unexpected_error_reports_generic_failure(
    store, sample_session, orchestrator_factory, make_channel
):
    store.add_session(sample_session)
    runner = Mock()
    runner.invoke = Mock(side_effect=RuntimeError("kaboom"))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    assert channel.sent[0].message_id in channel.deleted
    assert channel.texts[-1] == FAILURE_TEXT


@pytest.mark.asyncio
async def test_waiting_message_failure_skips_turn(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(ok())
    channel = make_channel()
    channel.fail_send = True

    await orchestrator_factory(runner).handle_message(channel, inbound())

    runner.invoke.assert_not_called()


@pytest.mark.asyncio
async def test_thinking_is_sent_before_response(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner(ok("Answer", thinking="a < b"))
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    thinking_call, answer_call = channel.send_calls[-2:]
    assert thinking_call["text"] == format_thinking("a < b")
    assert "a &lt; b" in thinking_call["text"]
    assert thinking_call["parse_mode"] == ParseMode.HTML
    assert answer_call["text"] == "Answer"


def test_long_thinking_is_truncated():
    text = format_thinking("t" * 5000)
    assert "t" * 1900 + "..." in text
    assert "t" * 1901 not in text


@pytest.mark.asyncio
async def test_usage_alerts_go_to_alert_channel(
    store, sample_session, orchestrator_factory, mock_usage_tracker, make_channel, scripted_runner
):
    store.add_session(sample_session)
    alert = ThresholdAlert(threshold=50, percent=52, usage=UsageRecord(input_tokens=520), limit=1000)
    mock_usage_tracker.check_thresholds = AsyncMock(return_value=[alert])
    alert_channel = make_channel()
    channel = make_channel()

    orchestrator = orchestrator_factory(scripted_runner(ok()), context=AppContext(alert_channel=alert_channel))
    await orchestrator.handle_message(channel, inbound())

    assert len(alert_channel.sent) == 1
    assert "50% reached" in alert_channel.texts[0]
    assert not any("reached" in t for t in channel.texts)


@pytest.mark.asyncio
async def test_usage_alerts_fall_back_to_session_channel(
    store, sample_session, orchestrator_factory, mock_usage_tracker, make_channel, scripted_runner
):
    store.add_session(sample_session)
    alert = ThresholdAlert(threshold=10, percent=12, usage=UsageRecord(input_tokens=120), limit=1000)
    mock_usage_tracker.check_thresholds = AsyncMock(return_value=[alert])
    channel = make_channel()

    await orchestrator_factory(scripted_runner(ok())).handle_message(channel, inbound())

    assert "10% reached" in channel.texts[-1]


@pytest.mark.asyncio
async def test_blank_prompt_is_ignored(
    store, sample_session, orchestrator_factory, make_channel, scripted_runner
):
    store.add_session(sample_session)
    runner = scripted_runner()
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound("   \n "))

    runner.invoke.assert_not_called()
    assert channel.sent == []


@pytest.mark.asyncio
async def test_channel_without_session_is_ignored(orchestrator_factory, make_channel, scripted_runner):
    runner = scripted_runner()
    channel = make_channel()

    await orchestrator_factory(runner).handle_message(channel, inbound())

    runner.invoke.assert_not_called()
    assert channel.sent == []
