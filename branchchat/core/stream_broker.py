"""Streaming-update broker.

Runs one generation task per stream id, fans its events out to any number of
subscribers, and checkpoints partial assistant content into the conversation store.

Lifecycle per generation: connecting -> streaming -> complete | error.

Only one generation is active per (conversation, branch). Starting another retargets
the store's active-stream marker and cancels the previous task; the cancelled
generation still persists what it buffered (or the interrupted notice) before it
finishes. Subscribers each own an unbounded queue, so a slow or vanished viewer never
holds up the generation or its checkpoints.

Usage:
    broker = get_stream_broker()
    generation = await broker.start_generation(store, branch_id, message_id, events)
    async for event in broker.subscribe(generation.stream_id):
        yield event.to_sse()
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from functools import lru_cache

from branchchat.core.config import get_settings
from branchchat.core.errors import ConflictError, ConversationStoreError
from branchchat.core.graph_store import ConversationGraphStore
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.schemas_conversation import (
    Message,
    MessageUpdateUpdate,
    TokenUsage,
    utc_now_iso,
)
from branchchat.core.schemas_streaming import (
    EVENT_COMPLETE,
    EVENT_DELTA,
    EVENT_ERROR,
    EVENT_PING,
    EVENT_REASONING_SUMMARY,
    EVENT_START,
    EVENT_TOOL_PROGRESS,
    Completed,
    Failed,
    ProviderEvent,
    ReasoningDelta,
    Started,
    StreamEvent,
    StreamStatus,
    TextDelta,
    ToolProgress,
)

logger = get_logger(__name__)

INTERRUPTED_NOTICE = "Assistant response interrupted. Please try again."
SUPERSEDED_REASON = "Superseded by a newer generation"

EventSource = Callable[[], AsyncIterator[ProviderEvent]]


class CheckpointThrottle:
    """Decides when buffered content is worth persisting."""

    def __init__(
        self,
        interval_ms: int,
        min_chars: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval_ms = interval_ms
        self.min_chars = min_chars
        self._clock = clock
        self._last_time = clock()
        self._last_length = 0

    def should_checkpoint(self, length: int) -> bool:
        """True once enough time has passed or enough new characters are buffered."""
        new_chars = length - self._last_length
        if new_chars <= 0:
            return False
        if new_chars >= self.min_chars:
            return True
        return (self._clock() - self._last_time) * 1000 >= self.interval_ms

    def mark(self, length: int) -> None:
        self._last_length = length
        self._last_time = self._clock()


@dataclass
class Generation:
    """One assistant reply being streamed into a placeholder message."""

    stream_id: str
    conversation_id: str
    branch_id: str
    message_id: str
    status: StreamStatus = StreamStatus.CONNECTING
    content: str = ""
    reasoning_summary: str = ""
    usage: TokenUsage | None = None
    error: str | None = None
    superseded: bool = False
    checkpoints: int = 0
    terminal_event: StreamEvent | None = None
    subscribers: set[asyncio.Queue] = field(default_factory=set)
    task: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def start_event(self) -> StreamEvent:
        return StreamEvent(
            EVENT_START,
            {
                "streamId": self.stream_id,
                "conversationId": self.conversation_id,
                "branchId": self.branch_id,
                "messageId": self.message_id,
            },
        )


class StreamBroker:
    """Owns every in-flight and recently finished generation in the process."""

    def __init__(
        self,
        checkpoint_interval_ms: int | None = None,
        checkpoint_min_chars: int | None = None,
        heartbeat_seconds: float | None = None,
        retained_generations: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.checkpoint_interval_ms = (
            checkpoint_interval_ms
            if checkpoint_interval_ms is not None
            else settings.STREAM_CHECKPOINT_INTERVAL_MS
        )
        self.checkpoint_min_chars = (
            checkpoint_min_chars
            if checkpoint_min_chars is not None
            else settings.STREAM_CHECKPOINT_MIN_CHARS
        )
        self.heartbeat_seconds = heartbeat_seconds or settings.STREAM_HEARTBEAT_SECONDS
        self.retained_generations = retained_generations or settings.STREAM_RETAINED_GENERATIONS
        self._clock = clock
        self._generations: dict[str, Generation] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._finalizers: set[asyncio.Task] = set()

    # =======================
    # Lifecycle
    # =======================

    async def start_generation(
        self,
        store: ConversationGraphStore,
        branch_id: str,
        message_id: str,
        events: EventSource,
        stream_id: str | None = None,
    ) -> Generation:
        """
        Start streaming into an existing assistant placeholder.

        Args:
            store: Store owning the conversation
            branch_id: Branch holding the placeholder
            message_id: Assistant placeholder id
            events: Factory for the provider event stream
            stream_id: Client-chosen stream id (generated when omitted)

        Returns:
            The new generation (already running)

        Raises:
            ConflictError: If stream_id is already in use
        """
        stream_id = stream_id or uuid.uuid4().hex
        if stream_id in self._generations:
            raise ConflictError(f"Stream {stream_id} already exists")

        generation = Generation(
            stream_id=stream_id,
            conversation_id=store.conversation_id,
            branch_id=branch_id,
            message_id=message_id,
        )
        self._generations[stream_id] = generation

        # Marker swap and supersession happen without an await in between
        previous_id = store.set_active_stream(branch_id, stream_id)
        if previous_id is not None:
            self._supersede(previous_id)

        generation.task = asyncio.create_task(self._run(generation, store, events))
        generation.task.add_done_callback(
            lambda task: self._on_task_done(generation, store, task)
        )

        log_with_context(
            logger,
            logging.INFO,
            "Generation started",
            conversation_id=store.conversation_id,
            stream_id=stream_id,
            branch_id=branch_id,
            superseded=previous_id,
        )
        return generation

    def _supersede(self, stream_id: str) -> None:
        previous = self._generations.get(stream_id)
        if previous is None or previous.status.is_terminal:
            return
        previous.superseded = True
        if previous.task is not None:
            previous.task.cancel()

    def get_generation(self, stream_id: str) -> Generation | None:
        return self._generations.get(stream_id)

    async def wait(self, stream_id: str) -> Generation:
        """Wait until a generation reaches a terminal state."""
        generation = self._generations.get(stream_id)
        if generation is None:
            raise KeyError(stream_id)
        await generation.done.wait()
        return generation

    def cancel(self, stream_id: str) -> bool:
        generation = self._generations.get(stream_id)
        if generation is None or generation.status.is_terminal or generation.task is None:
            return False
        generation.task.cancel()
        return True

    # =======================
    # Generation task
    # =======================

    async def _run(
        self, generation: Generation, store: ConversationGraphStore, events: EventSource
    ) -> None:
        try:
            await self._consume(generation, store, events)
        except asyncio.CancelledError:
            reason = SUPERSEDED_REASON if generation.superseded else "Generation cancelled"
            await self._finish_error(generation, store, reason)
            raise
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Generation failed: {e}",
                conversation_id=generation.conversation_id,
                stream_id=generation.stream_id,
            )
            await self._finish_error(generation, store, str(e) or type(e).__name__)

    def _on_task_done(
        self, generation: Generation, store: ConversationGraphStore, task: asyncio.Task
    ) -> None:
        # A task cancelled before its first step never reaches _run's handlers
        if generation.status.is_terminal:
            return
        reason = SUPERSEDED_REASON if generation.superseded else "Generation cancelled"
        finalizer = asyncio.create_task(self._finish_error(generation, store, reason))
        self._finalizers.add(finalizer)
        finalizer.add_done_callback(self._finalizers.discard)

    async def _consume(
        self, generation: Generation, store: ConversationGraphStore, events: EventSource
    ) -> None:
        throttle = CheckpointThrottle(
            self.checkpoint_interval_ms, self.checkpoint_min_chars, clock=self._clock
        )
        source = events()
        try:
            async for event in source:
                if isinstance(event, Started):
                    self._mark_streaming(generation)

                elif isinstance(event, TextDelta):
                    self._mark_streaming(generation)
                    generation.content += event.text
                    self._publish(
                        generation,
                        StreamEvent(
                            EVENT_DELTA, {"delta": event.text, "content": generation.content}
                        ),
                    )
                    if throttle.should_checkpoint(len(generation.content)):
                        await self._checkpoint(generation, store)
                        throttle.mark(len(generation.content))

                elif isinstance(event, ReasoningDelta):
                    self._mark_streaming(generation)
                    generation.reasoning_summary += event.text
                    self._publish(
                        generation,
                        StreamEvent(
                            EVENT_REASONING_SUMMARY,
                            {"delta": event.text, "content": generation.reasoning_summary},
                        ),
                    )

                elif isinstance(event, ToolProgress):
                    self._publish(
                        generation,
                        StreamEvent(
                            EVENT_TOOL_PROGRESS,
                            {"tool": event.tool, "status": event.status, "callId": event.call_id},
                        ),
                    )

                elif isinstance(event, Completed):
                    await self._finish_complete(generation, store, event)
                    return

                elif isinstance(event, Failed):
                    await self._finish_error(generation, store, event.reason)
                    return

            await self._finish_error(generation, store, "Completion stream ended unexpectedly")
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    def _mark_streaming(self, generation: Generation) -> None:
        if generation.status != StreamStatus.CONNECTING:
            return
        generation.status = StreamStatus.STREAMING
        self._publish(generation, generation.start_event())

    async def _persist(
        self,
        generation: Generation,
        store: ConversationGraphStore,
        content: str,
        usage: TokenUsage | None = None,
    ) -> int | None:
        """Write content into the placeholder. Returns the new version, None on failure."""
        update = MessageUpdateUpdate(
            type="message:update",
            conversation_id=generation.conversation_id,
            message=Message(
                id=generation.message_id,
                branch_id=generation.branch_id,
                role="assistant",
                content=content,
                created_at=utc_now_iso(),
                token_usage=usage,
            ),
        )
        try:
            result = await store.apply_updates([update])
        except ConversationStoreError as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Failed to persist assistant content: {e.message}",
                conversation_id=generation.conversation_id,
                stream_id=generation.stream_id,
                status_code=e.status_code,
            )
            return None
        generation.checkpoints += 1
        return result.version

    async def _checkpoint(self, generation: Generation, store: ConversationGraphStore) -> None:
        version = await self._persist(generation, store, generation.content)
        log_with_context(
            logger,
            logging.DEBUG,
            "Checkpointed partial content",
            conversation_id=generation.conversation_id,
            stream_id=generation.stream_id,
            chars=len(generation.content),
            version=version,
        )

    async def _finish_complete(
        self, generation: Generation, store: ConversationGraphStore, event: Completed
    ) -> None:
        if generation.status.is_terminal:
            return

        content = event.text or generation.content
        if not content.strip():
            content = INTERRUPTED_NOTICE
        if event.reasoning_summary:
            generation.reasoning_summary = event.reasoning_summary

        generation.content = content
        generation.usage = event.usage
        version = await self._persist(generation, store, content, event.usage)

        generation.status = StreamStatus.COMPLETE
        store.clear_active_stream(generation.branch_id, generation.stream_id)
        self._publish(
            generation,
            StreamEvent(
                EVENT_COMPLETE,
                {
                    "content": content,
                    "reasoningSummary": generation.reasoning_summary or None,
                    "usage": event.usage.to_wire() if event.usage else None,
                    "version": version,
                },
            ),
        )
        log_with_context(
            logger,
            logging.INFO,
            "Generation complete",
            conversation_id=generation.conversation_id,
            stream_id=generation.stream_id,
            chars=len(content),
            checkpoints=generation.checkpoints,
        )

    async def _finish_error(
        self, generation: Generation, store: ConversationGraphStore, reason: str
    ) -> None:
        if generation.status.is_terminal:
            return

        # Never leave an empty assistant turn behind
        content = generation.content if generation.content.strip() else INTERRUPTED_NOTICE
        generation.content = content
        generation.error = reason
        version = await self._persist(generation, store, content)

        generation.status = StreamStatus.ERROR
        store.clear_active_stream(generation.branch_id, generation.stream_id)
        self._publish(
            generation,
            StreamEvent(
                EVENT_ERROR,
                {
                    "message": reason,
                    "content": content,
                    "superseded": generation.superseded,
                    "version": version,
                },
            ),
        )
        log_with_context(
            logger,
            logging.WARNING,
            f"Generation ended with error: {reason}",
            conversation_id=generation.conversation_id,
            stream_id=generation.stream_id,
            chars=len(content),
        )

    # =======================
    # Fan-out
    # =======================

    def _publish(self, generation: Generation, event: StreamEvent) -> None:
        for queue in generation.subscribers:
            queue.put_nowait(event)

        if event.is_terminal:
            generation.terminal_event = event
            generation.done.set()
            self._retain(generation.stream_id)

    def _retain(self, stream_id: str) -> None:
        self._finished[stream_id] = None
        while len(self._finished) > self.retained_generations:
            expired, _ = self._finished.popitem(last=False)
            self._generations.pop(expired, None)

    async def subscribe(self, stream_id: str) -> AsyncIterator[StreamEvent]:
        """
        Events for one stream, ending after the terminal event.

        A late subscriber first receives ``start`` and a ``delta`` carrying the content
        buffered so far. Subscribing to a finished stream yields only its terminal event;
        an unknown or superseded stream yields nothing. ``ping`` events are emitted while
        the stream is idle.
        """
        generation = self._generations.get(stream_id)
        if generation is None or generation.superseded:
            return

        if generation.terminal_event is not None:
            yield generation.terminal_event
            return

        queue: asyncio.Queue = asyncio.Queue()
        if generation.status == StreamStatus.STREAMING:
            queue.put_nowait(generation.start_event())
            if generation.content:
                queue.put_nowait(
                    StreamEvent(EVENT_DELTA, {"delta": "", "content": generation.content})
                )
            if generation.reasoning_summary:
                queue.put_nowait(
                    StreamEvent(
                        EVENT_REASONING_SUMMARY,
                        {"delta": "", "content": generation.reasoning_summary},
                    )
                )
        generation.subscribers.add(queue)

        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield StreamEvent(EVENT_PING)
                    continue
                yield event
                if event.is_terminal:
                    return
        finally:
            generation.subscribers.discard(queue)


@lru_cache(maxsize=1)
def get_stream_broker() -> StreamBroker:
    """Process-wide broker (cached singleton)."""
    return StreamBroker()
