"""Unit tests for companion.conversation.core.ChatCore."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from companion.config import Settings
from companion.conversation.core import ChatCore, TurnState
from companion.conversation.messages import Message, Role, estimate_messages_tokens
from companion.conversation.providers import CompletionResult, UsageStats
from companion.conversation.storage import JsonHistoryStorage
from companion.errors import (
    ActionLoopError,
    BackendTimeoutError,
    CapabilityError,
    ConfigurationError,
    PluginError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_provider(*replies: str | BaseException, name: str = "fake", images: bool = False) -> MagicMock:
    """Return a mock LLMProvider that yields replies in sequence."""
    provider = MagicMock()
    provider.name = name
    provider.supports_images = images
    provider.complete = AsyncMock(
        side_effect=[r if isinstance(r, BaseException) else CompletionResult(content=r) for r in replies]
    )
    return provider


class FeedPlugin:
    name = "Feed"

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def function(self, arguments: str) -> str:
        self.calls.append(arguments)
        return "fed"


class LifecycleRecorder:
    def __init__(self, name: str = "Recorder", fail_on: str | None = None) -> None:
        self.name = name
        self.fail_on = fail_on
        self.events: list[tuple[str, Any]] = []

    async def on_processing_start(self, user_input: str) -> Any:
        self.events.append(("start", user_input))
        if self.fail_on == "start":
            raise RuntimeError("start failed")
        return {"turn_of": user_input}

    async def on_response_start(self, context: Any) -> None:
        self.events.append(("response", context))
        if self.fail_on == "response":
            raise RuntimeError("response failed")

    async def on_processing_complete(self, context: Any) -> None:
        self.events.append(("complete", context))

    async def on_processing_error(self, context: Any, error: BaseException) -> None:
        self.events.append(("error", error))

    def phases(self) -> list[str]:
        return [phase for phase, _ in self.events]


def _outbound(provider: MagicMock, call: int = -1) -> list[Message]:
    return provider.complete.call_args_list[call].args[0]


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_chat_returns_reply_and_updates_history_and_records() -> None:
    provider = _make_provider("Hello!")
    core = ChatCore(provider, system_prompt="Be a cat.")

    reply = await core.chat("Hi")

    assert reply == "Hello!"
    history = core.get_chat_history()
    assert [(m.role, m.content) for m in history] == [
        (Role.USER, "Hi"),
        (Role.ASSISTANT, "Hello!"),
    ]
    records = core.records.get_records()
    assert len(records) == 1
    assert (records[0].request, records[0].response, records[0].provider_name) == (
        "Hi",
        "Hello!",
        "fake",
    )
    assert core.state is TurnState.IDLE


@pytest.mark.anyio
async def test_outbound_request_includes_system_prompt_dynamic_info_and_history() -> None:
    class Mood:
        name = "Mood"

        def get_dynamic_info(self) -> str:
            return "The pet is sleepy."

    provider = _make_provider("one", "two")
    core = ChatCore(provider, system_prompt="Be a cat.")
    core.add_plugin(Mood())

    await core.chat("first")
    await core.chat("second")

    outbound = _outbound(provider)
    assert outbound[0].role is Role.SYSTEM
    assert outbound[0].content == "Be a cat.\n\nThe pet is sleepy."
    assert [m.content for m in outbound[1:]] == ["first", "one", "second"]


@pytest.mark.anyio
async def test_empty_prompt_rejected() -> None:
    core = ChatCore(_make_provider())
    with pytest.raises(ValueError):
        await core.chat("   ")


@pytest.mark.anyio
async def test_response_handler_receives_text_and_its_failure_is_contained() -> None:
    received: list[str] = []

    def handler(text: str) -> None:
        received.append(text)
        raise RuntimeError("UI gone")

    core = ChatCore(_make_provider("Meow"))
    core.set_response_handler(handler)

    assert await core.chat("Hi") == "Meow"
    assert received == ["Meow"]


# ---------------------------------------------------------------------------
# History round trip / tokens
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_history_round_trip_across_provider_swap() -> None:
    first = ChatCore(_make_provider("a", "b", name="openai"))
    await first.chat("one")
    await first.chat("two")
    first.update_history(
        first.get_history_for_editing()
        + [Message(role=Role.USER, content="pic", image=b"\x01\x02")]
    )

    second = ChatCore(_make_provider(name="ollama"))
    second.set_chat_history(first.get_chat_history())

    assert second.get_chat_history() == first.get_chat_history()
    assert second.get_current_token_count() == first.get_current_token_count()


@pytest.mark.anyio
async def test_token_count_is_monotonic_across_turns() -> None:
    core = ChatCore(_make_provider("short", "a much longer reply " * 10, "你好"))
    counts = [core.get_current_token_count()]
    for prompt in ["hi", "tell me more", "再见"]:
        await core.chat(prompt)
        counts.append(core.get_current_token_count())
    assert counts == sorted(counts)
    assert counts[-1] > counts[0]


@pytest.mark.anyio
async def test_clear_context_keeps_records() -> None:
    core = ChatCore(_make_provider("Hello"))
    await core.chat("Hi")

    core.clear_context()

    assert core.get_chat_history() == []
    assert core.get_current_token_count() == 0
    assert len(core.records) == 1


@pytest.mark.anyio
async def test_outbound_window_trims_but_history_is_kept() -> None:
    provider = _make_provider("x" * 40, "y" * 40, "z")
    core = ChatCore(provider, max_context_tokens=30)

    await core.chat("a" * 40)
    await core.chat("b" * 40)
    await core.chat("c")

    assert len(core.get_chat_history()) == 6
    contents = [m.content for m in _outbound(provider)]
    assert contents[-1] == "c"
    assert "a" * 40 not in contents


@pytest.mark.anyio
async def test_outbound_request_fits_budget_with_system_prompt() -> None:
    provider = _make_provider("ok")
    core = ChatCore(provider, system_prompt="s" * 80, max_context_tokens=50)
    core.set_chat_history(
        [
            Message(role=Role.USER, content="a" * 40),
            Message(role=Role.ASSISTANT, content="x" * 40),
        ]
    )

    await core.chat("c")

    outbound = _outbound(provider)
    assert estimate_messages_tokens(outbound) <= 50
    assert [m.content for m in outbound[1:]] == ["x" * 40, "c"]


@pytest.mark.anyio
async def test_usage_is_tracked_per_call_and_in_total() -> None:
    provider = _make_provider()
    provider.complete = AsyncMock(
        side_effect=[
            CompletionResult(content="one", usage=UsageStats(10, 2, 12)),
            CompletionResult(content="two"),
            CompletionResult(content="three", usage=UsageStats(5, 1, 6)),
        ]
    )
    core = ChatCore(provider)

    for prompt in ("a", "b", "c"):
        await core.chat(prompt)

    assert core.last_usage == UsageStats(5, 1, 6)
    assert core.usage == UsageStats(15, 3, 18)


# ---------------------------------------------------------------------------
# History compression
# ---------------------------------------------------------------------------


def _seeded_history() -> list[Message]:
    return [
        Message(role=Role.USER, content="my cat is Tom"),
        Message(role=Role.ASSISTANT, content="Hi Tom!"),
        Message(role=Role.USER, content="he likes fish"),
        Message(role=Role.ASSISTANT, content="Noted."),
    ]


@pytest.mark.anyio
async def test_history_compression_summarises_older_turns() -> None:
    provider = _make_provider("Tom is a cat.", "Fish it is.")
    core = ChatCore(provider, history_compression=True, compression_threshold=4)
    core.set_chat_history(_seeded_history())

    assert await core.chat("what does he eat?") == "Fish it is."

    summary_request = _outbound(provider, 0)
    assert len(summary_request) == 1
    assert "user: my cat is Tom\nassistant: Hi Tom!" in summary_request[0].content
    assert [(m.role, m.content) for m in core.get_chat_history()] == [
        (Role.SYSTEM, "Tom is a cat."),
        (Role.USER, "he likes fish"),
        (Role.ASSISTANT, "Noted."),
        (Role.USER, "what does he eat?"),
        (Role.ASSISTANT, "Fish it is."),
    ]
    assert len(core.records) == 1


@pytest.mark.anyio
async def test_history_compression_is_off_by_default() -> None:
    provider = _make_provider("reply")
    core = ChatCore(provider, compression_threshold=1)
    core.set_chat_history(_seeded_history())

    await core.chat("next")

    assert provider.complete.await_count == 1
    assert len(core.get_chat_history()) == 6


@pytest.mark.anyio
async def test_history_compression_waits_for_threshold() -> None:
    provider = _make_provider("reply")
    core = ChatCore(provider, history_compression=True, compression_threshold=5)
    core.set_chat_history(_seeded_history())

    await core.chat("next")

    assert provider.complete.await_count == 1


@pytest.mark.anyio
async def test_blank_summary_leaves_history_untouched() -> None:
    provider = _make_provider("   ", "reply")
    core = ChatCore(provider, history_compression=True, compression_threshold=4)
    core.set_chat_history(_seeded_history())

    await core.chat("next")

    assert [m.content for m in core.get_chat_history()[:4]] == [
        m.content for m in _seeded_history()
    ]


@pytest.mark.anyio
async def test_failed_summary_does_not_fail_the_turn() -> None:
    timeout = BackendTimeoutError("slow", backend="fake", phase="chat")
    core = ChatCore(
        _make_provider(timeout, "reply"), history_compression=True, compression_threshold=4
    )
    core.set_chat_history(_seeded_history())

    assert await core.chat("next") == "reply"
    assert len(core.get_chat_history()) == 6


# ---------------------------------------------------------------------------
# Action markers
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_feed_marker_invokes_plugin_once_and_splices_result() -> None:
    provider = _make_provider("Yum! [Feed:treat] Thanks!")
    core = ChatCore(provider)
    feed = FeedPlugin()
    core.add_plugin(feed)
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    reply = await core.chat("Here is a treat")

    assert feed.calls == ["treat"]
    assert reply == "Yum! fed Thanks!"
    # History keeps the raw backend text.
    assert core.get_chat_history()[-1].content == "Yum! [Feed:treat] Thanks!"
    assert recorder.phases() == ["start", "response", "complete"]
    assert provider.complete.await_count == 1


@pytest.mark.anyio
async def test_unknown_marker_is_left_literal() -> None:
    core = ChatCore(_make_provider("Look [Dance:fast] now"))
    assert await core.chat("dance") == "Look [Dance:fast] now"


@pytest.mark.anyio
async def test_failing_action_leaves_marker_and_notifies_error_hooks() -> None:
    class Broken:
        name = "Broken"

        async def function(self, arguments: str) -> str:
            raise RuntimeError("boom")

    core = ChatCore(_make_provider("Try [Broken:x] ok"))
    core.add_plugin(Broken())
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    reply = await core.chat("go")

    assert reply == "Try [Broken:x] ok"
    assert recorder.phases() == ["start", "response", "error", "complete"]
    error = recorder.events[2][1]
    assert isinstance(error, PluginError)
    assert error.plugin_name == "Broken"


@pytest.mark.anyio
async def test_action_results_fed_back_when_enabled() -> None:
    provider = _make_provider("[Feed:treat]", "The pet is full now.")
    core = ChatCore(provider, feed_action_results=True)
    core.add_plugin(FeedPlugin())

    reply = await core.chat("feed it")

    assert reply == "fed\nThe pet is full now."
    followup = _outbound(provider)[-1]
    assert followup.role is Role.FUNCTION
    assert followup.content == '[Plugin.Feed: "fed"]'
    assert len(core.records) == 1


@pytest.mark.anyio
async def test_action_loop_is_bounded() -> None:
    provider = _make_provider(*["[Feed:more]"] * 5)
    core = ChatCore(provider, feed_action_results=True, max_action_rounds=2)
    core.add_plugin(FeedPlugin())
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    with pytest.raises(ActionLoopError):
        await core.chat("feed forever")

    assert provider.complete.await_count == 3
    assert recorder.phases()[-1] == "error"
    assert "complete" not in recorder.phases()
    assert core.state is TurnState.IDLE


# ---------------------------------------------------------------------------
# Continuations
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_continuation_does_not_fire_start_and_reuses_context() -> None:
    core = ChatCore(_make_provider("first", "second"))
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    await core.chat("hello")
    await core.chat('[Plugin.Feed: "fed"]', is_function_call=True)

    assert recorder.phases() == ["start", "response", "complete", "response", "complete"]
    contexts = [ctx for phase, ctx in recorder.events if phase in ("response", "complete")]
    assert all(ctx is contexts[0] for ctx in contexts)
    assert core.get_chat_history()[2].role is Role.FUNCTION


@pytest.mark.anyio
async def test_action_plugin_can_continue_the_running_turn() -> None:
    provider = _make_provider("[Ask:weather]", "It is sunny.")
    core = ChatCore(provider)

    class Ask:
        name = "Ask"

        async def function(self, arguments: str) -> str:
            return await core.chat(f"{arguments} result", is_function_call=True)

    core.add_plugin(Ask())
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    reply = await asyncio.wait_for(core.chat("what's the weather"), timeout=5)

    assert reply == "It is sunny."
    assert recorder.phases() == ["start", "response", "response", "complete"]
    assert len(core.records) == 1
    assert core.records.get_records()[0].request == "what's the weather"
    assert [m.role for m in core.get_chat_history()] == [
        Role.USER,
        Role.ASSISTANT,
        Role.FUNCTION,
        Role.ASSISTANT,
    ]
    assert core.state is TurnState.IDLE


@pytest.mark.anyio
async def test_chained_plugin_continuations_share_the_round_budget() -> None:
    provider = _make_provider()
    provider.complete = AsyncMock(return_value=CompletionResult(content="[Ask:again]"))
    core = ChatCore(provider, max_action_rounds=3)

    class Ask:
        name = "Ask"

        async def function(self, arguments: str) -> str:
            return await core.chat(f"{arguments} result", is_function_call=True)

    core.add_plugin(Ask())
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    with pytest.raises(ActionLoopError):
        await asyncio.wait_for(core.chat("ask forever"), timeout=5)

    assert provider.complete.await_count == 4
    assert len(core.records) == 0
    assert recorder.phases() == ["start", "response", "response", "response", "response", "error"]
    assert isinstance(recorder.events[-1][1], ActionLoopError)
    assert core.state is TurnState.IDLE


@pytest.mark.anyio
async def test_spawned_continuation_waits_for_the_turn_lock() -> None:
    active = 0
    max_active = 0

    async def complete(messages: list[Message]) -> CompletionResult:
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        await asyncio.sleep(0.01)
        active -= 1
        return CompletionResult(content="[Spawn:x]" if messages[-1].content == "go" else "ok")

    provider = _make_provider()
    provider.complete = AsyncMock(side_effect=complete)
    core = ChatCore(provider)
    spawned: list[asyncio.Task] = []

    class Spawn:
        name = "Spawn"

        async def function(self, arguments: str) -> str:
            spawned.append(
                asyncio.create_task(core.chat(f"{arguments} result", is_function_call=True))
            )
            return "queued"

    core.add_plugin(Spawn())

    assert await core.chat("go") == "queued"
    assert await core.chat("another user turn") == "ok"
    assert await asyncio.wait_for(spawned[0], timeout=5) == "ok"

    assert max_active == 1
    assert provider.complete.await_count == 3
    assert len(core.records) == 3
    assert core.state is TurnState.IDLE


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_backend_timeout_propagates_after_error_hooks() -> None:
    timeout = BackendTimeoutError("too slow", backend="fake", phase="chat")
    core = ChatCore(_make_provider(timeout))
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    with pytest.raises(BackendTimeoutError):
        await core.chat("Hi")

    assert recorder.phases() == ["start", "error"]
    assert recorder.events[1][1] is timeout
    assert core.get_chat_history() == []
    assert len(core.records) == 0
    assert core.state is TurnState.IDLE


@pytest.mark.anyio
async def test_lifecycle_plugin_failure_does_not_abort_turn() -> None:
    core = ChatCore(_make_provider("ok"))
    failing = LifecycleRecorder("Failing", fail_on="response")
    healthy = LifecycleRecorder("Healthy")
    core.add_plugin(failing)
    core.add_plugin(healthy)

    assert await core.chat("Hi") == "ok"
    assert healthy.phases() == ["start", "response", "error", "complete"]
    assert failing.phases() == ["start", "response", "error", "complete"]


@pytest.mark.anyio
async def test_cancellation_fires_only_error_hook() -> None:
    started = asyncio.Event()

    async def slow_complete(messages: list[Message]) -> CompletionResult:
        started.set()
        await asyncio.sleep(10)
        return CompletionResult(content="never")

    provider = _make_provider()
    provider.complete = AsyncMock(side_effect=slow_complete)
    core = ChatCore(provider)
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    task = asyncio.create_task(core.chat("Hi"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert recorder.phases() == ["start", "error"]
    assert isinstance(recorder.events[1][1], asyncio.CancelledError)
    assert core.get_chat_history() == []
    assert core.state is TurnState.IDLE


@pytest.mark.anyio
async def test_image_on_text_only_backend_raises_before_any_hook() -> None:
    provider = _make_provider("unused", images=False)
    core = ChatCore(provider)
    recorder = LifecycleRecorder()
    core.add_plugin(recorder)

    with pytest.raises(CapabilityError):
        await core.chat_with_image("what is this", b"\x89PNG")

    assert recorder.events == []
    provider.complete.assert_not_awaited()


@pytest.mark.anyio
async def test_image_turn_attaches_image() -> None:
    provider = _make_provider("A cat.", images=True)
    core = ChatCore(provider)

    assert await core.chat_with_image("what is this", b"\x89PNG", "image/png") == "A cat."
    sent = _outbound(provider)[-1]
    assert sent.image == b"\x89PNG"
    assert core.get_chat_history()[0].has_image


@pytest.mark.anyio
async def test_turns_are_serialised() -> None:
    order: list[str] = []

    async def complete(messages: list[Message]) -> CompletionResult:
        order.append(f"begin {messages[-1].content}")
        await asyncio.sleep(0.01)
        order.append(f"end {messages[-1].content}")
        return CompletionResult(content="ok")

    provider = _make_provider()
    provider.complete = AsyncMock(side_effect=complete)
    core = ChatCore(provider)

    await asyncio.gather(core.chat("one"), core.chat("two"))

    assert order in (
        ["begin one", "end one", "begin two", "end two"],
        ["begin two", "end two", "begin one", "end one"],
    )


# ---------------------------------------------------------------------------
# Persistence / settings
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_save_and_load_history(tmp_path: Path) -> None:
    storage = JsonHistoryStorage(tmp_path)
    core = ChatCore(_make_provider("Hello", name="openai"), storage=storage)
    await core.chat("Hi")
    core.save_history()

    restored = ChatCore(_make_provider(name="openai"), storage=storage)
    restored.load_history()

    assert restored.get_chat_history() == core.get_chat_history()
    assert restored.records.get_records() == core.records.get_records()


@pytest.mark.anyio
async def test_autosave_after_turn(tmp_path: Path) -> None:
    storage = JsonHistoryStorage(tmp_path)
    core = ChatCore(_make_provider("Hello", name="openai"), storage=storage, autosave=True)

    await core.chat("Hi")

    messages, records = storage.load("openai")
    assert len(messages) == 2
    assert len(records) == 1


def test_save_without_storage_raises() -> None:
    with pytest.raises(ConfigurationError):
        ChatCore(_make_provider()).save_history()


def test_from_settings_wires_proxy_and_limits(tmp_path: Path) -> None:
    settings = Settings(
        system_prompt="Be brief.",
        proxy={"enabled": True, "for_chat": True, "address": "proxy:8080"},
        history={
            "max_context_tokens": 500,
            "data_dir": str(tmp_path),
            "compression": True,
            "compression_threshold": 8,
        },
        actions={"feed_action_results": True, "max_action_rounds": 5},
    )
    core = ChatCore.from_settings(settings, provider=_make_provider())

    assert core.system_prompt == "Be brief."
    assert core.get_proxy() == "http://proxy:8080"
    assert core.get_proxy("tts") is None
    assert core.max_context_tokens == 500
    assert core.max_action_rounds == 5
    assert core.history_compression is True
    assert core.compression_threshold == 8
    assert isinstance(core.storage, JsonHistoryStorage)


@pytest.mark.anyio
async def test_get_models_delegates_to_provider() -> None:
    provider = _make_provider()
    provider.list_models = AsyncMock(return_value=["m1", "m2"])
    assert await ChatCore(provider).get_models() == ["m1", "m2"]


def test_custom_modes_and_plugin_removal() -> None:
    from companion.plugins.base import ChannelModeDefinition

    class Game:
        name = "Game"

        def get_custom_modes(self) -> list[ChannelModeDefinition]:
            return [ChannelModeDefinition("Game:race", "Race")]

    core = ChatCore(_make_provider())
    core.add_plugin(Game())
    assert [m.mode_id for m in core.get_custom_modes()] == ["Game:race"]

    core.remove_plugin("Game")
    assert core.get_custom_modes() == []
