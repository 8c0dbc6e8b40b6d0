"""Conversation operations composed from the store, retrieval and the stream broker."""

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from branchchat.core.branch_tree import build_response_input
from branchchat.core.completion import stream_completion
from branchchat.core.config import get_settings
from branchchat.core.errors import NotFoundError, ValidationError
from branchchat.core.graph_store import get_conversation_store
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.retrieval import (
    RetrievalOptions,
    build_retrieval_context,
    format_retrieved_context_for_prompt,
)
from branchchat.core.schemas_conversation import (
    ApplyResult,
    Branch,
    BranchCreateUpdate,
    BranchCreationSource,
    BranchSpan,
    BranchUpdateUpdate,
    ConversationGraphSnapshot,
    ConversationSettings,
    ConversationUpdateUpdate,
    Message,
    MessageAppendUpdate,
    utc_now_iso,
)
from branchchat.core.schemas_streaming import ProviderEvent
from branchchat.core.stream_broker import StreamBroker, get_stream_broker

logger = get_logger(__name__)

CompletionFn = Callable[[ConversationSettings, list[dict[str, str]]], AsyncIterator[ProviderEvent]]


@dataclass
class SendMessageResult:
    stream_id: str
    user_message: Message
    assistant_message: Message
    snapshot: ConversationGraphSnapshot
    version: int


async def ensure_conversation(conversation_id: str) -> ConversationGraphSnapshot:
    """Snapshot of a conversation, creating it with a root branch on first access."""
    return await get_conversation_store(conversation_id).get_snapshot()


async def send_message(
    conversation_id: str,
    content: str,
    branch_id: str | None = None,
    attachment_ids: list[str] | None = None,
    stream_id: str | None = None,
    broker: StreamBroker | None = None,
    completion: CompletionFn | None = None,
) -> SendMessageResult:
    """
    Append a user turn plus an empty assistant placeholder, then start generating.

    Both messages land in one batch, so readers never see the user turn without its
    placeholder. Retrieval runs inside the generation task before the model call.

    Raises:
        ValidationError: Empty content or too many attachments
        NotFoundError: Unknown branch
    """
    settings = get_settings()
    text = content.strip()
    if not text:
        raise ValidationError("Message content must not be empty")
    if attachment_ids and len(attachment_ids) > settings.MAX_ATTACHMENTS_PER_MESSAGE:
        raise ValidationError(
            f"At most {settings.MAX_ATTACHMENTS_PER_MESSAGE} attachments per message"
        )

    store = get_conversation_store(conversation_id)
    snapshot = await store.get_snapshot()
    branch_id = branch_id or snapshot.conversation.root_branch_id
    if branch_id not in snapshot.branches:
        raise NotFoundError(f"Branch {branch_id} not found")

    now = utc_now_iso()
    user_message = Message(
        id=uuid.uuid4().hex, branch_id=branch_id, role="user", content=text, created_at=now
    )
    assistant_message = Message(
        id=uuid.uuid4().hex, branch_id=branch_id, role="assistant", content="", created_at=now
    )

    result = await store.apply_updates(
        [
            MessageAppendUpdate(
                type="message:append", conversation_id=conversation_id, message=user_message
            ),
            MessageAppendUpdate(
                type="message:append", conversation_id=conversation_id, message=assistant_message
            ),
        ]
    )

    completion = completion or stream_completion
    appended = result.snapshot

    async def events() -> AsyncIterator[ProviderEvent]:
        context = await build_retrieval_context(
            store, text, RetrievalOptions(allowed_attachment_ids=attachment_ids or None)
        )
        model_input = build_response_input(
            appended, branch_id, format_retrieved_context_for_prompt(context.blocks)
        )
        async for event in completion(appended.conversation.settings, model_input):
            yield event

    broker = broker or get_stream_broker()
    generation = await broker.start_generation(
        store, branch_id, assistant_message.id, events, stream_id=stream_id
    )

    log_with_context(
        logger,
        logging.INFO,
        "Message sent",
        conversation_id=conversation_id,
        stream_id=generation.stream_id,
        branch_id=branch_id,
        version=result.version,
    )

    return SendMessageResult(
        stream_id=generation.stream_id,
        user_message=user_message,
        assistant_message=assistant_message,
        snapshot=result.snapshot,
        version=result.version,
    )


async def create_branch_from_message(
    conversation_id: str,
    parent_branch_id: str,
    message_id: str,
    title: str | None = None,
    span: BranchSpan | None = None,
    excerpt: str | None = None,
) -> tuple[Branch, ApplyResult]:
    """Fork a new branch from a message in parent_branch_id."""
    branch_id = uuid.uuid4().hex
    branch = Branch(
        id=branch_id,
        parent_id=parent_branch_id,
        title=(title or "").strip() or f"Branch {branch_id[:6]}",
        created_from=BranchCreationSource(message_id=message_id, span=span, excerpt=excerpt),
        created_at=utc_now_iso(),
    )

    result = await get_conversation_store(conversation_id).apply_updates(
        [BranchCreateUpdate(type="branch:create", conversation_id=conversation_id, branch=branch)]
    )

    log_with_context(
        logger,
        logging.INFO,
        "Branch created",
        conversation_id=conversation_id,
        branch_id=branch_id,
        parent_branch_id=parent_branch_id,
    )
    return branch, result


async def rename_branch(conversation_id: str, branch_id: str, title: str) -> ApplyResult:
    """Change a branch title (the only mutable branch field)."""
    title = title.strip()
    if not title:
        raise ValidationError("Branch title must not be empty")

    store = get_conversation_store(conversation_id)
    snapshot = await store.get_snapshot()
    existing = snapshot.branches.get(branch_id)
    if existing is None:
        raise NotFoundError(f"Branch {branch_id} not found")

    return await store.apply_updates(
        [
            BranchUpdateUpdate(
                type="branch:update",
                conversation_id=conversation_id,
                branch=existing.model_copy(update={"title": title}),
            )
        ]
    )


async def update_conversation_settings(
    conversation_id: str, changes: dict[str, Any]
) -> ApplyResult:
    """
    Merge settings changes into the conversation.

    Args:
        conversation_id: Conversation to update
        changes: Snake-case setting fields to replace (unset fields are kept)

    Raises:
        ValidationError: The merged settings are invalid
    """
    store = get_conversation_store(conversation_id)
    snapshot = await store.get_snapshot()
    current = snapshot.conversation

    merged = current.settings.model_dump()
    merged.update(changes)
    try:
        settings = ConversationSettings.model_validate(merged)
    except ValueError as e:
        raise ValidationError(f"Invalid conversation settings: {e}") from e

    return await store.apply_updates(
        [
            ConversationUpdateUpdate(
                type="conversation:update",
                conversation=current.model_copy(update={"settings": settings}),
            )
        ]
    )


def get_active_stream(conversation_id: str, branch_id: str) -> str | None:
    """Stream id currently generating on a branch, if any."""
    return get_conversation_store(conversation_id).get_active_stream(branch_id)
