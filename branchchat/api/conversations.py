"""Conversation API endpoints."""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import Field

from branchchat.api.errors import http_error
from branchchat.core.attachment_ingest import AttachmentDescriptor, ingest_attachment
from branchchat.core.branch_tree import build_branch_tree, find_orphaned_branches, serialize_tree
from branchchat.core.conversation_service import (
    create_branch_from_message,
    ensure_conversation,
    get_active_stream,
    rename_branch,
    send_message,
    update_conversation_settings,
)
from branchchat.core.errors import ConversationStoreError
from branchchat.core.graph_store import get_conversation_store
from branchchat.core.logging import get_logger
from branchchat.core.retrieval import WebSearchResult, persist_web_search_snippets
from branchchat.core.schemas_conversation import (
    BranchSpan,
    ReasoningEffort,
    RetrievalQuery,
    WireModel,
)
from branchchat.core.update_apply import parse_update_batch

logger = get_logger(__name__)

router = APIRouter()


class ApplyUpdatesRequest(WireModel):
    """Ordered batch of graph operations."""

    updates: Any = Field(..., description="List of update operations")


class CreateBranchRequest(WireModel):
    parent_branch_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    title: str | None = None
    span: BranchSpan | None = None
    excerpt: str | None = None


class RenameBranchRequest(WireModel):
    title: str = Field(..., min_length=1)


class UpdateSettingsRequest(WireModel):
    model: str | None = Field(None, min_length=1)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    system_prompt: str | None = None
    reasoning_effort: ReasoningEffort | None = None


class SendMessageRequest(WireModel):
    branch_id: str | None = None
    content: str = Field(..., min_length=1)
    attachment_ids: list[str] | None = None
    stream_id: str | None = None


class WebSnippetsRequest(WireModel):
    results: list[WebSearchResult] = Field(default_factory=list)
    provider: str | None = None


@router.get("/conversations/{conversation_id}/snapshot")
async def get_snapshot(conversation_id: str) -> dict[str, Any]:
    """
    Get the current conversation snapshot (created on first access).

    Returns:
        {conversation, branches, messages, version}
    """
    try:
        snapshot = await ensure_conversation(conversation_id)
    except ConversationStoreError as e:
        raise http_error(e) from e
    return snapshot.to_wire()


@router.post("/conversations/{conversation_id}/updates")
async def apply_updates(conversation_id: str, request: ApplyUpdatesRequest) -> dict[str, Any]:
    """
    Apply an ordered batch of operations atomically.

    Returns:
        {snapshot, version}

    Raises:
        HTTPException 400: Malformed batch
        HTTPException 404: Referenced branch or message missing
        HTTPException 409: Identity or immutability conflict
        HTTPException 503: Durable write failed
    """
    try:
        updates = parse_update_batch(request.updates)
        result = await get_conversation_store(conversation_id).apply_updates(updates)
    except ConversationStoreError as e:
        logger.warning(f"Update batch rejected for {conversation_id}: {e.message}")
        raise http_error(e) from e
    return result.to_wire()


@router.get("/conversations/{conversation_id}/tree")
async def get_tree(conversation_id: str) -> dict[str, Any]:
    """Branch tree plus ids of branches that could not be placed in it."""
    try:
        snapshot = await ensure_conversation(conversation_id)
        tree = build_branch_tree(snapshot)
    except ConversationStoreError as e:
        raise http_error(e) from e
    return {
        "tree": serialize_tree(tree),
        "orphanedBranchIds": find_orphaned_branches(snapshot),
        "version": snapshot.version,
    }


@router.post("/conversations/{conversation_id}/branches", status_code=201)
async def create_branch(conversation_id: str, request: CreateBranchRequest) -> dict[str, Any]:
    """Fork a branch from a message."""
    try:
        branch, result = await create_branch_from_message(
            conversation_id,
            parent_branch_id=request.parent_branch_id,
            message_id=request.message_id,
            title=request.title,
            span=request.span,
            excerpt=request.excerpt,
        )
    except ConversationStoreError as e:
        raise http_error(e) from e
    return {"branch": branch.to_wire(), **result.to_wire()}


@router.patch("/conversations/{conversation_id}/branches/{branch_id}")
async def patch_branch(
    conversation_id: str, branch_id: str, request: RenameBranchRequest
) -> dict[str, Any]:
    """Rename a branch."""
    try:
        result = await rename_branch(conversation_id, branch_id, request.title)
    except ConversationStoreError as e:
        raise http_error(e) from e
    return result.to_wire()


@router.patch("/conversations/{conversation_id}/settings")
async def patch_settings(conversation_id: str, request: UpdateSettingsRequest) -> dict[str, Any]:
    """Update model settings. Omitted fields are kept."""
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No settings provided")
    try:
        result = await update_conversation_settings(conversation_id, changes)
    except ConversationStoreError as e:
        raise http_error(e) from e
    return result.to_wire()


@router.post("/conversations/{conversation_id}/messages", status_code=202)
async def post_message(conversation_id: str, request: SendMessageRequest) -> dict[str, Any]:
    """
    Send a user message and start the assistant reply.

    The reply streams on ``GET /streams/{streamId}/events``.

    Returns:
        {streamId, userMessage, assistantMessage, snapshot, version}
    """
    try:
        result = await send_message(
            conversation_id,
            request.content,
            branch_id=request.branch_id,
            attachment_ids=request.attachment_ids,
            stream_id=request.stream_id,
        )
    except ConversationStoreError as e:
        raise http_error(e) from e

    return {
        "streamId": result.stream_id,
        "userMessage": result.user_message.to_wire(),
        "assistantMessage": result.assistant_message.to_wire(),
        "snapshot": result.snapshot.to_wire(),
        "version": result.version,
    }


@router.get("/conversations/{conversation_id}/branches/{branch_id}/active-stream")
async def get_branch_active_stream(conversation_id: str, branch_id: str) -> dict[str, Any]:
    """Stream currently generating on a branch, for reconnecting viewers."""
    return {"streamId": get_active_stream(conversation_id, branch_id)}


@router.post("/conversations/{conversation_id}/retrieval/query")
async def query_retrieval(conversation_id: str, query: RetrievalQuery) -> dict[str, Any]:
    """Similarity search over the conversation's attachment chunks and web snippets."""
    try:
        matches = await get_conversation_store(conversation_id).query_retrieval(query)
    except ConversationStoreError as e:
        raise http_error(e) from e
    return matches.to_wire()


@router.post("/conversations/{conversation_id}/retrieval/web-snippets")
async def post_web_snippets(conversation_id: str, request: WebSnippetsRequest) -> dict[str, Any]:
    """Embed and store web search results for later retrieval."""
    try:
        inserted = await persist_web_search_snippets(
            get_conversation_store(conversation_id), request.results, request.provider
        )
    except ConversationStoreError as e:
        raise http_error(e) from e
    return {"inserted": inserted}


async def _run_ingestion(conversation_id: str, attachment: AttachmentDescriptor) -> None:
    # Failure is already recorded on the ingestion record; nothing may escape the task
    try:
        await ingest_attachment(get_conversation_store(conversation_id), attachment)
    except ConversationStoreError as e:
        logger.error(f"Background ingestion of {attachment.id} failed: {e.message}")
    except Exception as e:
        logger.error(
            f"Background ingestion of {attachment.id} failed: {str(e) or type(e).__name__}",
            exc_info=True,
        )


@router.post("/conversations/{conversation_id}/attachments/ingest", status_code=202)
async def post_attachment_ingest(
    conversation_id: str,
    attachment: AttachmentDescriptor,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """Queue ingestion of an uploaded attachment."""
    background_tasks.add_task(_run_ingestion, conversation_id, attachment)
    return {"attachmentId": attachment.id, "status": "pending"}


@router.get("/conversations/{conversation_id}/attachments")
async def list_attachments(conversation_id: str) -> dict[str, Any]:
    """Ingestion records for the conversation's attachments."""
    try:
        records = await get_conversation_store(conversation_id).list_attachment_ingestions()
    except ConversationStoreError as e:
        raise http_error(e) from e
    return {"ingestions": [record.to_wire() for record in records]}
