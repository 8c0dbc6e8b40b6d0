"""Per-conversation graph store.

One ``ConversationGraphStore`` owns each conversation id for the lifetime of the process.
It loads the durable state once behind a shared initialization task, serves reads from
the warm cache, and serializes every mutation through a single ``asyncio.Lock``. Writers
build a new state object, persist it, and only then swap the cached reference, so a
reader always sees one whole version and a failed write leaves the cache untouched.

Usage:
    store = get_conversation_store(conversation_id)
    snapshot = await store.get_snapshot()
    result = await store.apply_updates(updates)
"""

import asyncio
import logging
from collections import OrderedDict

from pydantic import Field
from pydantic import ValidationError as SchemaValidationError

from branchchat.core.config import get_settings
from branchchat.core.errors import StorageError, ValidationError
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.schemas_conversation import (
    ApplyResult,
    AttachmentChunk,
    AttachmentChunkMatch,
    AttachmentIngestionRecord,
    Branch,
    Conversation,
    ConversationGraphSnapshot,
    ConversationGraphUpdate,
    ConversationSettings,
    IngestionStatus,
    RetrievalMatches,
    RetrievalQuery,
    WebSearchSnippet,
    WebSearchSnippetMatch,
    WireModel,
    utc_now_iso,
)
from branchchat.core.similarity import cosine_similarities
from branchchat.core.update_apply import apply_update_batch
from branchchat.db.conversation_state import StateBackend, get_state_backend

logger = get_logger(__name__)


class StoredState(WireModel):
    """Everything persisted for one conversation, as a single document."""

    snapshot: ConversationGraphSnapshot | None = None
    version: int = 0
    attachment_chunks: dict[str, AttachmentChunk] = Field(default_factory=dict)
    attachment_ingestions: dict[str, AttachmentIngestionRecord] = Field(default_factory=dict)
    web_search_snippets: dict[str, WebSearchSnippet] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utc_now_iso)


def root_branch_id_for(conversation_id: str) -> str:
    """Deterministic id of a conversation's root branch."""
    return f"{conversation_id}:root"


def build_initial_snapshot(conversation_id: str) -> ConversationGraphSnapshot:
    """Default snapshot for a conversation seen for the first time (version 1)."""
    settings = get_settings()
    now = utc_now_iso()
    root_id = root_branch_id_for(conversation_id)

    conversation = Conversation(
        id=conversation_id,
        root_branch_id=root_id,
        created_at=now,
        settings=ConversationSettings(
            model=settings.CHAT_MODEL,
            temperature=settings.CHAT_TEMPERATURE,
            system_prompt=settings.CHAT_SYSTEM_PROMPT,
        ),
    )
    root = Branch(id=root_id, parent_id=None, title=settings.ROOT_BRANCH_TITLE, created_at=now)

    return ConversationGraphSnapshot(
        conversation=conversation,
        branches={root_id: root},
        messages={root_id: []},
        version=1,
    )


class ConversationGraphStore:
    """Single owner of one conversation's durable state."""

    def __init__(self, conversation_id: str, backend: StateBackend | None = None):
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        self.conversation_id = conversation_id
        self._backend = backend or get_state_backend()
        self._state: StoredState | None = None
        self._loading: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        # branch_id -> stream_id of the generation currently writing to that branch
        self._active_streams: dict[str, str] = {}

    # =======================
    # Initialization barrier
    # =======================

    async def _ensure_loaded(self) -> StoredState:
        if self._state is not None:
            return self._state

        if self._loading is None:
            self._loading = asyncio.create_task(self._load())
        task = self._loading

        try:
            # Shield so a cancelled waiter does not cancel the load for everyone else
            return await asyncio.shield(task)
        except Exception:
            # Release the barrier so the next caller retries the load
            if self._loading is task:
                self._loading = None
            raise

    async def _load(self) -> StoredState:
        try:
            payload = await self._backend.load(self.conversation_id)
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Failed to load conversation state: {e}",
                conversation_id=self.conversation_id,
            )
            raise StorageError(f"Failed to load conversation {self.conversation_id}: {e}") from e

        if payload is None:
            state = StoredState()
        else:
            try:
                state = StoredState.model_validate(payload)
            except SchemaValidationError as e:
                raise StorageError(
                    f"Stored state for conversation {self.conversation_id} is corrupt: {e}"
                ) from e

        self._state = state
        log_with_context(
            logger,
            logging.DEBUG,
            "Loaded conversation state",
            conversation_id=self.conversation_id,
            version=state.version,
            chunks=len(state.attachment_chunks),
            snippets=len(state.web_search_snippets),
        )
        return state

    # =======================
    # Write path
    # =======================

    async def _commit(self, next_state: StoredState) -> StoredState:
        """Persist then swap. Caller must hold the write lock.

        Runs as its own task so cancelling the caller cannot land the write without the
        swap. A cancelled caller waits for the commit to settle, then re-raises, so the
        lock is never released with the cache behind the backend.
        """
        commit = asyncio.ensure_future(self._persist_and_swap(next_state))
        cancelled = False
        while True:
            try:
                result = await asyncio.shield(commit)
                break
            except asyncio.CancelledError:
                if commit.done():
                    raise
                cancelled = True
        if cancelled:
            raise asyncio.CancelledError()
        return result

    async def _persist_and_swap(self, next_state: StoredState) -> StoredState:
        try:
            await self._backend.save(self.conversation_id, next_state.to_wire())
        except Exception as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Failed to persist conversation state: {e}",
                conversation_id=self.conversation_id,
                version=next_state.version,
            )
            raise StorageError(
                f"Failed to persist conversation {self.conversation_id}: {e}"
            ) from e

        self._state = next_state
        return next_state

    async def _ensure_snapshot_locked(self) -> StoredState:
        """Loaded state with a snapshot, initializing the conversation if needed."""
        state = await self._ensure_loaded()
        if state.snapshot is not None:
            return state

        snapshot = build_initial_snapshot(self.conversation_id)
        state = await self._commit(
            state.model_copy(
                update={
                    "snapshot": snapshot,
                    "version": snapshot.version,
                    "updated_at": utc_now_iso(),
                }
            )
        )
        log_with_context(
            logger,
            logging.INFO,
            "Initialized conversation",
            conversation_id=self.conversation_id,
            root_branch_id=snapshot.conversation.root_branch_id,
        )
        return state

    # =======================
    # Graph operations
    # =======================

    async def get_snapshot(self) -> ConversationGraphSnapshot:
        """Current snapshot, creating the conversation on first access."""
        state = await self._ensure_loaded()
        if state.snapshot is not None:
            return state.snapshot

        async with self._write_lock:
            state = await self._ensure_snapshot_locked()
        return state.snapshot

    async def apply_updates(self, updates: list[ConversationGraphUpdate]) -> ApplyResult:
        """
        Apply an ordered batch atomically.

        Args:
            updates: Parsed update operations

        Returns:
            ApplyResult with the new snapshot and its version (previous + 1)

        Raises:
            ValidationError: Malformed or misaddressed batch
            NotFoundError: Referenced branch or message is missing
            ConflictError: Identity or immutability violation
            StorageError: Durable write failed (nothing committed)
        """
        async with self._write_lock:
            state = await self._ensure_snapshot_locked()
            next_snapshot = apply_update_batch(state.snapshot, updates)
            await self._commit(
                state.model_copy(
                    update={
                        "snapshot": next_snapshot,
                        "version": next_snapshot.version,
                        "updated_at": utc_now_iso(),
                    }
                )
            )

        log_with_context(
            logger,
            logging.DEBUG,
            f"Applied {len(updates)} update(s)",
            conversation_id=self.conversation_id,
            version=next_snapshot.version,
            types=",".join(update.type for update in updates),
        )
        return ApplyResult(snapshot=next_snapshot, version=next_snapshot.version)

    # =======================
    # Retrieval collections
    # =======================

    async def upsert_attachment_ingestion(
        self,
        attachment_id: str,
        status: IngestionStatus,
        summary: str | None = None,
        error: str | None = None,
        chunks: list[AttachmentChunk] | None = None,
    ) -> AttachmentIngestionRecord:
        """
        Replace an attachment's chunk set and record its ingestion status.

        Every chunk previously stored under the attachment id is removed before the new
        set is inserted, whether or not the new set is smaller.

        Raises:
            ValidationError: A chunk belongs to another attachment or conversation
            StorageError: Durable write failed
        """
        chunks = chunks or []
        for chunk in chunks:
            if chunk.attachment_id != attachment_id:
                raise ValidationError(
                    f"Chunk {chunk.id} belongs to attachment {chunk.attachment_id}, "
                    f"expected {attachment_id}"
                )
            if chunk.conversation_id != self.conversation_id:
                raise ValidationError(
                    f"Chunk {chunk.id} belongs to conversation {chunk.conversation_id}"
                )

        record = AttachmentIngestionRecord(
            attachment_id=attachment_id,
            conversation_id=self.conversation_id,
            status=status,
            chunk_ids=[chunk.id for chunk in chunks],
            summary=summary,
            error=error if status == "failed" else None,
        )

        async with self._write_lock:
            state = await self._ensure_loaded()

            stale_ids = {
                chunk_id
                for chunk_id, chunk in state.attachment_chunks.items()
                if chunk.attachment_id == attachment_id
            }
            previous = state.attachment_ingestions.get(attachment_id)
            if previous is not None:
                stale_ids.update(previous.chunk_ids)

            next_chunks = {
                chunk_id: chunk
                for chunk_id, chunk in state.attachment_chunks.items()
                if chunk_id not in stale_ids
            }
            for chunk in chunks:
                next_chunks[chunk.id] = chunk

            next_ingestions = dict(state.attachment_ingestions)
            next_ingestions[attachment_id] = record

            await self._commit(
                state.model_copy(
                    update={
                        "attachment_chunks": next_chunks,
                        "attachment_ingestions": next_ingestions,
                        "updated_at": utc_now_iso(),
                    }
                )
            )

        log_with_context(
            logger,
            logging.INFO,
            f"Recorded attachment ingestion ({status})",
            conversation_id=self.conversation_id,
            attachment_id=attachment_id,
            chunks=len(chunks),
            replaced=len(stale_ids),
        )
        return record

    async def list_attachment_ingestions(self) -> list[AttachmentIngestionRecord]:
        state = await self._ensure_loaded()
        return list(state.attachment_ingestions.values())

    async def upsert_web_search_snippets(self, snippets: list[WebSearchSnippet]) -> int:
        """
        Append snippets keyed by id. Ids already stored are left unchanged.

        Returns:
            Number of snippets newly inserted
        """
        if not snippets:
            return 0

        for snippet in snippets:
            if snippet.conversation_id != self.conversation_id:
                raise ValidationError(
                    f"Snippet {snippet.id} belongs to conversation {snippet.conversation_id}"
                )

        async with self._write_lock:
            state = await self._ensure_loaded()
            next_snippets = dict(state.web_search_snippets)
            inserted = 0
            for snippet in snippets:
                if snippet.id in next_snippets:
                    continue
                next_snippets[snippet.id] = snippet
                inserted += 1

            if inserted:
                await self._commit(
                    state.model_copy(
                        update={"web_search_snippets": next_snippets, "updated_at": utc_now_iso()}
                    )
                )

        log_with_context(
            logger,
            logging.DEBUG,
            f"Upserted {inserted} web snippet(s)",
            conversation_id=self.conversation_id,
            submitted=len(snippets),
        )
        return inserted

    async def query_retrieval(self, query: RetrievalQuery) -> RetrievalMatches:
        """
        Rank stored chunks and snippets against a query embedding.

        Reads a single state reference without taking the write lock, so the result
        reflects one point in time even while writers are active.
        """
        state = await self._ensure_loaded()
        dimension = len(query.embedding)
        allowed = set(query.allowed_attachment_ids) if query.allowed_attachment_ids else None

        chunks = [
            chunk
            for chunk in state.attachment_chunks.values()
            if chunk.conversation_id == self.conversation_id
            and (allowed is None or chunk.attachment_id in allowed)
            and len(chunk.embedding) == dimension
        ]
        chunk_scores = cosine_similarities(query.embedding, [c.embedding for c in chunks])
        attachment_matches = [
            AttachmentChunkMatch(
                chunk=chunk,
                similarity=score,
                ingestion=state.attachment_ingestions.get(chunk.attachment_id),
            )
            for chunk, score in zip(chunks, chunk_scores)
            if score >= query.min_score
        ]
        attachment_matches.sort(key=lambda m: (m.similarity, m.chunk.created_at), reverse=True)

        snippets = [
            snippet
            for snippet in state.web_search_snippets.values()
            if snippet.conversation_id == self.conversation_id
            and len(snippet.embedding) == dimension
        ]
        snippet_scores = cosine_similarities(query.embedding, [s.embedding for s in snippets])
        web_matches = [
            WebSearchSnippetMatch(snippet=snippet, similarity=score)
            for snippet, score in zip(snippets, snippet_scores)
            if score >= query.min_score
        ]
        web_matches.sort(key=lambda m: (m.similarity, m.snippet.created_at), reverse=True)

        return RetrievalMatches(
            attachments=attachment_matches[: query.max_attachment_chunks],
            web_snippets=web_matches[: query.max_web_snippets],
        )

    # =======================
    # Active-stream marker
    # =======================

    def set_active_stream(self, branch_id: str, stream_id: str) -> str | None:
        """Point the branch's marker at stream_id. Returns the stream it replaced."""
        previous = self._active_streams.get(branch_id)
        self._active_streams[branch_id] = stream_id
        return previous if previous != stream_id else None

    def get_active_stream(self, branch_id: str) -> str | None:
        return self._active_streams.get(branch_id)

    def clear_active_stream(self, branch_id: str, stream_id: str) -> bool:
        """Clear the marker only if it still references stream_id."""
        if self._active_streams.get(branch_id) != stream_id:
            return False
        del self._active_streams[branch_id]
        return True

    def is_idle(self) -> bool:
        """No load in flight, no writer holding the lock and no generation streaming."""
        loading = self._loading is not None and not self._loading.done()
        return not loading and not self._write_lock.locked() and not self._active_streams


# Least recently used first
_stores: OrderedDict[str, ConversationGraphStore] = OrderedDict()


def get_conversation_store(conversation_id: str) -> ConversationGraphStore:
    """Get the single store owning conversation_id (created on first use).

    Keeps at most STORE_MAX_CACHED_CONVERSATIONS owners. Past the bound, the least
    recently used idle owners are dropped; busy owners are never evicted, so the bound
    can be exceeded while many conversations are mid-write or streaming.
    """
    store = _stores.get(conversation_id)
    if store is None:
        store = ConversationGraphStore(conversation_id)
        _stores[conversation_id] = store
        _evict_idle_stores(get_settings().STORE_MAX_CACHED_CONVERSATIONS, keep=conversation_id)
    else:
        _stores.move_to_end(conversation_id)
    return store


def _evict_idle_stores(limit: int, keep: str) -> None:
    excess = len(_stores) - max(limit, 1)
    if excess <= 0:
        return
    for conversation_id, store in list(_stores.items()):
        if excess <= 0:
            break
        if conversation_id != keep and store.is_idle():
            del _stores[conversation_id]
            excess -= 1
            logger.debug(f"Evicted idle conversation store {conversation_id}")


def cached_conversation_ids() -> list[str]:
    """Ids of the owners currently cached, least recently used first."""
    return list(_stores)


def reset_conversation_stores() -> None:
    """Drop every cached store. The next access reloads from the backend."""
    _stores.clear()

