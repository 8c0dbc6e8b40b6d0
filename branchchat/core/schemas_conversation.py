"""Pydantic schemas for the conversation graph, retrieval collections and store results.

Wire shapes use camelCase keys (``rootBranchId``, ``branchId``); Python attributes are
snake_case. Models accept either form on input and serialize with aliases.
"""

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

# =======================
# Shared types
# =======================

MessageRole = Literal["user", "assistant"]
ReasoningEffort = Literal["low", "medium", "high"]
IngestionStatus = Literal["pending", "ready", "failed"]
ChunkKind = Literal["text", "image"]


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    """Current UTC time in the canonical ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form every createdAt uses."""
    return _format_timestamp(datetime.now(timezone.utc))


def _normalize_timestamp(value: str) -> str:
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"'{value}' is not an ISO-8601 timestamp") from e
    if parsed.tzinfo is None:
        raise ValueError(f"'{value}' has no UTC offset")
    return _format_timestamp(parsed)


# Normalized to UTC so lexical order is chronological order
Timestamp = Annotated[str, AfterValidator(_normalize_timestamp)]


class WireModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON wire shape."""
        return self.model_dump(mode="json", by_alias=True)


def _validate_embedding(value: list[float]) -> list[float]:
    if not value:
        raise ValueError("embedding must not be empty")
    for index, item in enumerate(value):
        if not math.isfinite(item):
            raise ValueError(f"embedding[{index}] must be a finite number")
    return value


Embedding = Annotated[list[float], AfterValidator(_validate_embedding)]


# =======================
# Conversation graph
# =======================


class ConversationSettings(WireModel):
    """Per-conversation model settings."""

    model: str = Field(..., min_length=1, description="Completion model id")
    temperature: float = Field(0.2, ge=0.0, le=2.0, description="Sampling temperature")
    system_prompt: str | None = Field(None, description="System prompt prepended to model input")
    # Only applies to reasoning models; ignored for chat-tuned models
    reasoning_effort: ReasoningEffort | None = Field(None, description="Reasoning effort")


class Conversation(WireModel):
    """Conversation metadata."""

    id: str = Field(..., min_length=1)
    root_branch_id: str = Field(..., min_length=1)
    created_at: Timestamp
    settings: ConversationSettings


class BranchSpan(WireModel):
    """Character span of the origin message a branch was forked from."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)


class BranchCreationSource(WireModel):
    """Where a branch was forked from."""

    message_id: str = Field(..., min_length=1)
    span: BranchSpan | None = None
    excerpt: str | None = None


class Branch(WireModel):
    """A node in the conversation forest."""

    id: str = Field(..., min_length=1)
    parent_id: str | None = None
    title: str = Field(..., min_length=1)
    created_from: BranchCreationSource | None = None
    created_at: Timestamp


class TokenUsage(WireModel):
    """Token accounting attached to a finalized assistant message."""

    prompt: int = Field(0, ge=0)
    completion: int = Field(0, ge=0)
    cost: float = Field(0.0, ge=0.0)


class Message(WireModel):
    """A single turn within a branch."""

    id: str = Field(..., min_length=1)
    branch_id: str = Field(..., min_length=1)
    role: MessageRole
    content: str = ""
    created_at: Timestamp
    token_usage: TokenUsage | None = None


class ConversationGraphSnapshot(WireModel):
    """Full materialized state of a conversation at a version."""

    conversation: Conversation
    branches: dict[str, Branch] = Field(default_factory=dict)
    messages: dict[str, list[Message]] = Field(
        default_factory=dict, description="Ordered messages keyed by branch id"
    )
    version: int = Field(0, ge=0)


class ApplyResult(WireModel):
    """Result of applying an update batch."""

    snapshot: ConversationGraphSnapshot
    version: int


# =======================
# Update operations
# =======================


class MessageAppendUpdate(WireModel):
    type: Literal["message:append"]
    conversation_id: str = Field(..., min_length=1)
    message: Message


class MessageUpdateUpdate(WireModel):
    type: Literal["message:update"]
    conversation_id: str = Field(..., min_length=1)
    message: Message


class BranchCreateUpdate(WireModel):
    type: Literal["branch:create"]
    conversation_id: str = Field(..., min_length=1)
    branch: Branch


class BranchUpdateUpdate(WireModel):
    type: Literal["branch:update"]
    conversation_id: str = Field(..., min_length=1)
    branch: Branch


class ConversationUpdateUpdate(WireModel):
    type: Literal["conversation:update"]
    conversation: Conversation


ConversationGraphUpdate = Annotated[
    Union[
        MessageAppendUpdate,
        MessageUpdateUpdate,
        BranchCreateUpdate,
        BranchUpdateUpdate,
        ConversationUpdateUpdate,
    ],
    Field(discriminator="type"),
]

UPDATE_BATCH_ADAPTER = TypeAdapter(list[ConversationGraphUpdate])


# =======================
# Retrieval collections
# =======================


class AttachmentChunkMetadata(WireModel):
    file_name: str = Field(..., min_length=1)
    content_type: str = "application/octet-stream"
    size: int = Field(0, ge=0)
    page_number: int | None = None
    language: str | None = None
    summary: str | None = None


class AttachmentChunk(WireModel):
    """A bounded, independently embedded slice of an attachment."""

    id: str = Field(..., min_length=1)
    attachment_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    kind: ChunkKind = "text"
    content: str = Field(..., min_length=1)
    token_count: int = Field(..., gt=0)
    embedding: Embedding
    metadata: AttachmentChunkMetadata
    created_at: Timestamp = Field(default_factory=utc_now_iso)


class AttachmentIngestionRecord(WireModel):
    """Ingestion status of one attachment."""

    attachment_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    status: IngestionStatus
    chunk_ids: list[str] = Field(default_factory=list)
    summary: str | None = None
    error: str | None = None
    updated_at: Timestamp = Field(default_factory=utc_now_iso)


class WebSearchSnippet(WireModel):
    """An embedded web search result."""

    id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    title: str = "Untitled source"
    url: str = ""
    snippet: str = ""
    embedding: Embedding
    provider: str | None = None
    created_at: Timestamp = Field(default_factory=utc_now_iso)


class RetrievalQuery(WireModel):
    """Similarity search request against the store's collections."""

    embedding: Embedding
    max_attachment_chunks: int = Field(6, ge=0)
    max_web_snippets: int = Field(4, ge=0)
    allowed_attachment_ids: list[str] | None = None
    min_score: float = 0.15


class AttachmentChunkMatch(WireModel):
    chunk: AttachmentChunk
    similarity: float
    ingestion: AttachmentIngestionRecord | None = None


class WebSearchSnippetMatch(WireModel):
    snippet: WebSearchSnippet
    similarity: float


class RetrievalMatches(WireModel):
    attachments: list[AttachmentChunkMatch] = Field(default_factory=list)
    web_snippets: list[WebSearchSnippetMatch] = Field(default_factory=list)


class RetrievedContextBlock(WireModel):
    """A truncated retrieval match ready to be folded into prompt context."""

    id: str
    type: Literal["attachment", "web"]
    title: str
    content: str
    relevance: float
    attachment_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
