"""Attachment ingestion pipeline.

Flow: record ``pending`` -> fetch bytes from the blob store -> build chunks (plain text
is chunked and embedded, images are described and embedded as one chunk) -> record
``ready`` with the chunk set. Any failure records ``failed`` with the error and re-raises.
"""

import base64
import logging

from pydantic import Field

from branchchat.core.chunking import approximate_token_count, chunk_text
from branchchat.core.config import get_settings
from branchchat.core.embeddings import embed_texts_async
from branchchat.core.errors import NotFoundError, UpstreamError, ValidationError
from branchchat.core.graph_store import ConversationGraphStore
from branchchat.core.llm import get_llm
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.schemas_conversation import (
    AttachmentChunk,
    AttachmentChunkMetadata,
    AttachmentIngestionRecord,
    WireModel,
)
from branchchat.db.blob_store import BlobStore, get_blob_store

logger = get_logger(__name__)

SUMMARY_INPUT_CHARS = 10_000
IMAGE_SUMMARY_CHARS = 400

PLAIN_TEXT_TYPES = {
    "application/json",
    "application/javascript",
    "application/x-yaml",
    "application/xml",
    "application/sql",
    "application/csv",
}

SUMMARY_SYSTEM_PROMPT = (
    "You summarize user-provided documents into short, high-signal blurbs. "
    "Keep summaries under 120 words."
)

IMAGE_PROMPT = (
    "Provide a detailed description of this image. Mention key objects, relationships, "
    "text, and any data shown."
)


class AttachmentDescriptor(WireModel):
    """An uploaded file waiting to be ingested."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    content_type: str = "application/octet-stream"
    size: int = Field(0, ge=0)
    storage_key: str = Field(..., min_length=1)


def is_plain_text_type(content_type: str) -> bool:
    return content_type.startswith("text/") or content_type in PLAIN_TEXT_TYPES


def is_image_type(content_type: str) -> bool:
    return content_type.startswith("image/")


async def summarize_text(text: str) -> str | None:
    """Short summary of a document, or None if the model call fails."""
    trimmed = text.strip()
    if not trimmed:
        return None

    llm = get_llm(model=get_settings().SUMMARY_MODEL, temperature=0.2)
    messages = [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                "Summarize this document excerpt as bullet points:\n\n"
                f"{trimmed[:SUMMARY_INPUT_CHARS]}"
            ),
        },
    ]

    try:
        response = await llm.ainvoke(messages)
    except Exception as e:
        logger.warning(f"Attachment summary failed: {e}")
        return None

    content = response.content if isinstance(response.content, str) else ""
    return content.strip() or None


async def describe_image(data: bytes, content_type: str) -> str:
    """
    Describe an image with the vision model.

    Raises:
        UpstreamError: If the call fails or returns no description
    """
    llm = get_llm(model=get_settings().IMAGE_DESCRIPTION_MODEL, temperature=0.2)
    encoded = base64.b64encode(data).decode("ascii")
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": IMAGE_PROMPT},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{content_type};base64,{encoded}"},
                },
            ],
        }
    ]

    try:
        response = await llm.ainvoke(messages)
    except Exception as e:
        raise UpstreamError(f"Image description failed: {e}") from e

    description = response.content.strip() if isinstance(response.content, str) else ""
    if not description:
        raise UpstreamError("Image description missing from model response")
    return description


def _metadata(attachment: AttachmentDescriptor, **extra) -> AttachmentChunkMetadata:
    return AttachmentChunkMetadata(
        file_name=attachment.name,
        content_type=attachment.content_type,
        size=attachment.size,
        **extra,
    )


async def build_text_chunks(
    conversation_id: str, attachment: AttachmentDescriptor, text: str
) -> tuple[list[AttachmentChunk], str | None]:
    """Chunk, embed and summarize plain text. Returns (chunks, summary)."""
    settings = get_settings()
    capped = text[: settings.MAX_ATTACHMENT_TEXT_CHARS]
    pieces = chunk_text(capped, max_chars=settings.CHUNK_CHAR_LIMIT, overlap=settings.CHUNK_OVERLAP)
    if not pieces:
        raise ValidationError(f"Attachment {attachment.id} contains no text")

    embeddings = await embed_texts_async([piece["content"] for piece in pieces])

    chunks = [
        AttachmentChunk(
            id=f"{attachment.id}:chunk-{piece['chunk_index']}",
            attachment_id=attachment.id,
            conversation_id=conversation_id,
            kind="text",
            content=piece["content"],
            token_count=approximate_token_count(piece["content"]),
            embedding=embedding,
            metadata=_metadata(attachment),
        )
        for piece, embedding in zip(pieces, embeddings)
    ]

    summary = await summarize_text(capped)
    return chunks, summary


async def build_image_chunks(
    conversation_id: str, attachment: AttachmentDescriptor, data: bytes
) -> tuple[list[AttachmentChunk], str | None]:
    """Describe and embed an image as a single chunk. Returns (chunks, summary)."""
    description = await describe_image(data, attachment.content_type)
    [embedding] = await embed_texts_async([description])

    chunk = AttachmentChunk(
        id=f"{attachment.id}:image",
        attachment_id=attachment.id,
        conversation_id=conversation_id,
        kind="image",
        content=description,
        token_count=approximate_token_count(description),
        embedding=embedding,
        metadata=_metadata(attachment),
    )
    return [chunk], description[:IMAGE_SUMMARY_CHARS]


async def ingest_attachment(
    store: ConversationGraphStore,
    attachment: AttachmentDescriptor,
    blob_store: BlobStore | None = None,
) -> AttachmentIngestionRecord:
    """
    Ingest one attachment into the conversation's retrieval collection.

    Re-ingesting the same attachment id replaces its previous chunk set.

    Args:
        store: Conversation store receiving the chunks
        attachment: Uploaded file descriptor
        blob_store: Source of the raw bytes (configured store by default)

    Returns:
        The ``ready`` ingestion record

    Raises:
        NotFoundError: The object is missing from the blob store
        ValidationError: Unsupported content type or empty text
        UpstreamError: Embedding or vision call failed
    """
    blob_store = blob_store or get_blob_store()
    conversation_id = store.conversation_id

    log_with_context(
        logger,
        logging.INFO,
        "Attachment ingestion started",
        conversation_id=conversation_id,
        attachment_id=attachment.id,
        content_type=attachment.content_type,
        size=attachment.size,
    )

    await store.upsert_attachment_ingestion(attachment.id, "pending")

    try:
        data = await blob_store.get(attachment.storage_key)
        if data is None:
            raise NotFoundError(f"Uploaded file {attachment.storage_key} not found in storage")

        if is_plain_text_type(attachment.content_type):
            text = data.decode("utf-8", errors="replace")
            chunks, summary = await build_text_chunks(conversation_id, attachment, text)
        elif is_image_type(attachment.content_type):
            chunks, summary = await build_image_chunks(conversation_id, attachment, data)
        else:
            raise ValidationError(f"Unsupported attachment type: {attachment.content_type}")

        record = await store.upsert_attachment_ingestion(
            attachment.id, "ready", summary=summary, chunks=chunks
        )
    except Exception as e:
        message = getattr(e, "message", None) or str(e) or type(e).__name__
        log_with_context(
            logger,
            logging.ERROR,
            f"Attachment ingestion failed: {message}",
            conversation_id=conversation_id,
            attachment_id=attachment.id,
        )
        await store.upsert_attachment_ingestion(attachment.id, "failed", error=message)
        raise

    log_with_context(
        logger,
        logging.INFO,
        "Attachment ingestion complete",
        conversation_id=conversation_id,
        attachment_id=attachment.id,
        chunks=len(chunks),
    )
    return record
