"""Tests for the streaming-update broker."""

import asyncio

import pytest

from branchchat.core.errors import ConflictError
from branchchat.core.schemas_conversation import TokenUsage
from branchchat.core.schemas_streaming import (
    Completed,
    Failed,
    ReasoningDelta,
    StreamStatus,
    TextDelta,
    ToolProgress,
)
from branchchat.core.stream_broker import (
    INTERRUPTED_NOTICE,
    CheckpointThrottle,
    StreamBroker,
)
from tests.fakes.fake_backends import ROOT_ID, append, make_message, scripted_events


@pytest.fixture
def broker():
    # Throttle wide open so only terminal writes persist unless a test opts in
    return StreamBroker(checkpoint_interval_ms=60_000, checkpoint_min_chars=10_000)


async def _add_turn(store, user_id="u1", assistant_id="a1"):
    result = await store.apply_updates(
        [
            append(make_message(user_id, content="What is recursion?")),
            append(make_message(assistant_id, role="assistant", content="")),
        ]
    )
    return result.version


async def _message(store, message_id):
    snapshot = await store.get_snapshot()
    return next(m for m in snapshot.messages[ROOT_ID] if m.id == message_id)


async def _collect(broker, stream_id):
    return [event async for event in broker.subscribe(stream_id)]


async def _until(predicate):
    for _ in range(1000):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestCheckpointThrottle:
    def test_min_chars_forces_checkpoint(self):
        throttle = CheckpointThrottle(interval_ms=150, min_chars=24, clock=lambda: 0.0)

        assert throttle.should_checkpoint(10) is False
        assert throttle.should_checkpoint(24) is True

    def test_interval_elapsed(self):
        now = [0.0]
        throttle = CheckpointThrottle(interval_ms=150, min_chars=24, clock=lambda: now[0])
        throttle.mark(5)

        now[0] = 0.1
        assert throttle.should_checkpoint(6) is False
        now[0] = 0.2
        assert throttle.should_checkpoint(6) is True

    def test_no_new_content_never_checkpoints(self):
        now = [0.0]
        throttle = CheckpointThrottle(interval_ms=150, min_chars=24, clock=lambda: now[0])
        throttle.mark(40)

        now[0] = 10.0
        assert throttle.should_checkpoint(40) is False


class TestCompletion:
    @pytest.mark.asyncio
    async def test_recursion_reply_persists_final_content(self, store, broker):
        version = await _add_turn(store)
        events = scripted_events(
            TextDelta("Recur"),
            TextDelta("sion is a function calling itself."),
            Completed(text="", usage=TokenUsage(prompt=12, completion=9)),
        )

        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        await broker.wait(generation.stream_id)

        assert generation.status == StreamStatus.COMPLETE
        assert generation.terminal_event.data["version"] == version + 1
        message = await _message(store, "a1")
        assert message.content == "Recursion is a function calling itself."
        assert message.token_usage.prompt == 12
        assert message.token_usage.completion == 9
        assert (await store.get_snapshot()).version == version + 1
        assert store.get_active_stream(ROOT_ID) is None

    @pytest.mark.asyncio
    async def test_subscriber_sees_ordered_events(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        events = scripted_events(
            ReasoningDelta("Thinking"),
            ToolProgress("web_search", "running", "ws_1"),
            TextDelta("Hi"),
            Completed(text="Hi there", usage=TokenUsage(prompt=1, completion=2)),
            gate=gate,
        )

        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        subscriber = asyncio.create_task(_collect(broker, generation.stream_id))
        await _until(lambda: generation.subscribers)
        gate.set()
        received = await subscriber

        names = [event.name for event in received]
        assert names[0] == "start"
        assert names[-1] == "complete"
        assert received[-1].data["content"] == "Hi there"
        assert received[-1].data["reasoningSummary"] == "Thinking"
        assert received[-1].data["usage"] == {"prompt": 1, "completion": 2, "cost": 0.0}

    @pytest.mark.asyncio
    async def test_checkpoints_partial_content(self, store):
        broker = StreamBroker(checkpoint_interval_ms=60_000, checkpoint_min_chars=5)
        version = await _add_turn(store)
        gate = asyncio.Event()
        events = scripted_events(TextDelta("Hello world"), Completed(text="Hello world!"), gate=gate)

        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        await _until(lambda: generation.checkpoints == 1)

        assert (await _message(store, "a1")).content == "Hello world"
        assert generation.status == StreamStatus.STREAMING

        gate.set()
        await broker.wait(generation.stream_id)
        assert (await _message(store, "a1")).content == "Hello world!"
        assert (await store.get_snapshot()).version == version + 2

    @pytest.mark.asyncio
    async def test_duplicate_stream_id_conflicts(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        events = scripted_events(Completed(text="done"), gate=gate)
        await broker.start_generation(store, ROOT_ID, "a1", events, stream_id="s-1")

        with pytest.raises(ConflictError):
            await broker.start_generation(store, ROOT_ID, "a1", events, stream_id="s-1")
        gate.set()
        await broker.wait("s-1")


class TestErrors:
    @pytest.mark.asyncio
    async def test_failure_keeps_buffered_content(self, store, broker):
        await _add_turn(store)
        events = scripted_events(TextDelta("Half an ans"), Failed("rate limited"))

        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        await broker.wait(generation.stream_id)

        assert generation.status == StreamStatus.ERROR
        assert generation.terminal_event.data["message"] == "rate limited"
        assert (await _message(store, "a1")).content == "Half an ans"
        assert store.get_active_stream(ROOT_ID) is None

    @pytest.mark.asyncio
    async def test_failure_without_content_writes_notice(self, store, broker):
        await _add_turn(store)

        async def exploding():
            raise RuntimeError("connection reset")
            yield  # pragma: no cover

        generation = await broker.start_generation(store, ROOT_ID, "a1", exploding)
        await broker.wait(generation.stream_id)

        assert generation.error == "connection reset"
        assert (await _message(store, "a1")).content == INTERRUPTED_NOTICE

    @pytest.mark.asyncio
    async def test_stream_ending_without_terminal_event_is_error(self, store, broker):
        await _add_turn(store)
        events = scripted_events(TextDelta("dangling"))

        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        await broker.wait(generation.stream_id)

        assert generation.status == StreamStatus.ERROR
        assert "ended unexpectedly" in generation.error
        assert (await _message(store, "a1")).content == "dangling"

    @pytest.mark.asyncio
    async def test_empty_completion_writes_notice(self, store, broker):
        await _add_turn(store)
        generation = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="  "))
        )
        await broker.wait(generation.stream_id)

        assert generation.status == StreamStatus.COMPLETE
        assert (await _message(store, "a1")).content == INTERRUPTED_NOTICE


class TestSupersession:
    @pytest.mark.asyncio
    async def test_newer_generation_replaces_older(self, store, broker):
        await _add_turn(store, "u1", "a1")
        await _add_turn(store, "u2", "a2")
        gate = asyncio.Event()

        first = await broker.start_generation(
            store,
            ROOT_ID,
            "a1",
            scripted_events(TextDelta("partial"), Completed(text="never"), gate=gate),
        )
        old_subscriber = asyncio.create_task(_collect(broker, first.stream_id))
        await _until(lambda: first.content == "partial" and first.subscribers)

        second = await broker.start_generation(
            store, ROOT_ID, "a2", scripted_events(Completed(text="fresh answer"))
        )
        assert store.get_active_stream(ROOT_ID) == second.stream_id

        await broker.wait(first.stream_id)
        await broker.wait(second.stream_id)

        assert first.superseded is True
        assert first.status == StreamStatus.ERROR
        assert (await _message(store, "a1")).content == "partial"
        assert (await _message(store, "a2")).content == "fresh answer"

        received = await old_subscriber
        assert received[-1].name == "error"
        assert received[-1].data["superseded"] is True

        # New viewers of the old stream get nothing
        assert await _collect(broker, first.stream_id) == []

    @pytest.mark.asyncio
    async def test_superseded_before_first_step_writes_notice(self, store, broker):
        await _add_turn(store, "u1", "a1")
        await _add_turn(store, "u2", "a2")

        first = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="never"))
        )
        second = await broker.start_generation(
            store, ROOT_ID, "a2", scripted_events(Completed(text="fresh answer"))
        )

        await broker.wait(first.stream_id)
        await broker.wait(second.stream_id)

        assert first.status == StreamStatus.ERROR
        assert (await _message(store, "a1")).content == INTERRUPTED_NOTICE
        assert (await _message(store, "a2")).content == "fresh answer"

    @pytest.mark.asyncio
    async def test_other_branches_are_independent(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        first = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="root reply"), gate=gate)
        )
        store.set_active_stream("other-branch", "s-other")

        assert store.get_active_stream(ROOT_ID) == first.stream_id
        assert first.superseded is False
        gate.set()
        await broker.wait(first.stream_id)


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_late_subscriber_catches_up(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        events = scripted_events(
            TextDelta("Hello "),
            ReasoningDelta("thinking"),
            Completed(text="Hello world"),
            gate=gate,
        )
        generation = await broker.start_generation(store, ROOT_ID, "a1", events)
        await _until(lambda: generation.reasoning_summary == "thinking")

        subscriber = asyncio.create_task(_collect(broker, generation.stream_id))
        await _until(lambda: generation.subscribers)
        gate.set()
        received = await subscriber

        assert [event.name for event in received] == [
            "start",
            "delta",
            "reasoning_summary",
            "complete",
        ]
        assert received[1].data == {"delta": "", "content": "Hello "}
        assert received[2].data["content"] == "thinking"

    @pytest.mark.asyncio
    async def test_fan_out_to_every_subscriber(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        events = scripted_events(TextDelta("a"), TextDelta("b"), Completed(text="ab"), gate=gate)
        generation = await broker.start_generation(store, ROOT_ID, "a1", events)

        subscribers = [
            asyncio.create_task(_collect(broker, generation.stream_id)) for _ in range(3)
        ]
        await _until(lambda: len(generation.subscribers) == 3)
        gate.set()
        results = await asyncio.gather(*subscribers)

        assert results[0] == results[1] == results[2]
        assert results[0][-1].data["content"] == "ab"

    @pytest.mark.asyncio
    async def test_finished_stream_replays_terminal_event(self, store, broker):
        await _add_turn(store)
        generation = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="done"))
        )
        await broker.wait(generation.stream_id)

        received = await _collect(broker, generation.stream_id)
        assert [event.name for event in received] == ["complete"]

    @pytest.mark.asyncio
    async def test_unknown_stream_yields_nothing(self, broker):
        assert await _collect(broker, "missing") == []

    @pytest.mark.asyncio
    async def test_idle_stream_sends_heartbeat(self, store):
        broker = StreamBroker(
            checkpoint_interval_ms=60_000, checkpoint_min_chars=10_000, heartbeat_seconds=0.01
        )
        await _add_turn(store)
        gate = asyncio.Event()
        generation = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="late"), gate=gate)
        )

        subscriber = asyncio.create_task(_collect(broker, generation.stream_id))
        await asyncio.sleep(0.05)
        gate.set()
        received = await subscriber

        assert "ping" in [event.name for event in received]
        assert received[-1].name == "complete"

    @pytest.mark.asyncio
    async def test_finished_generations_expire(self, store):
        broker = StreamBroker(
            checkpoint_interval_ms=60_000, checkpoint_min_chars=10_000, retained_generations=1
        )
        await _add_turn(store, "u1", "a1")
        await _add_turn(store, "u2", "a2")

        first = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="one"))
        )
        await broker.wait(first.stream_id)
        second = await broker.start_generation(
            store, ROOT_ID, "a2", scripted_events(Completed(text="two"))
        )
        await broker.wait(second.stream_id)

        assert broker.get_generation(first.stream_id) is None
        assert broker.get_generation(second.stream_id) is second

    @pytest.mark.asyncio
    async def test_sse_framing(self, store, broker):
        await _add_turn(store)
        generation = await broker.start_generation(
            store, ROOT_ID, "a1", scripted_events(Completed(text="done"))
        )
        await broker.wait(generation.stream_id)

        frame = generation.terminal_event.to_sse()
        assert frame.startswith("event: complete\ndata: {")
        assert frame.endswith("\n\n")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_keeps_buffered_content(self, store, broker):
        await _add_turn(store)
        gate = asyncio.Event()
        generation = await broker.start_generation(
            store,
            ROOT_ID,
            "a1",
            scripted_events(TextDelta("Stopped early"), Completed(text="never"), gate=gate),
        )
        await _until(lambda: generation.content == "Stopped early")

        assert broker.cancel(generation.stream_id) is True
        await broker.wait(generation.stream_id)

        assert generation.status == StreamStatus.ERROR
        assert generation.error == "Generation cancelled"
        assert generation.superseded is False
        assert (await _message(store, "a1")).content == "Stopped early"
        assert broker.cancel(generation.stream_id) is False

    def test_cancel_unknown_stream(self, broker):
        assert broker.cancel("missing") is False
