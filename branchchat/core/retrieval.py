"""Retrieval context for assistant generations.

Embeds the user's turn, asks the conversation store for the closest attachment chunks
and web snippets, and folds the matches into bounded prompt context. Retrieval never
blocks sending a message: any failure yields an empty result.
"""

import logging
import uuid
from dataclasses import dataclass, field

from pydantic import Field

from branchchat.core.config import get_settings
from branchchat.core.embeddings import embed_query, embed_texts_async
from branchchat.core.graph_store import ConversationGraphStore
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.schemas_conversation import (
    AttachmentChunkMatch,
    RetrievalQuery,
    RetrievedContextBlock,
    WebSearchSnippet,
    WebSearchSnippetMatch,
    WireModel,
)

logger = get_logger(__name__)


class WebSearchResult(WireModel):
    """A search result as returned by a web search tool, before embedding."""

    id: str | None = None
    title: str = ""
    url: str = ""
    snippet: str = ""


@dataclass
class RetrievalContextResult:
    blocks: list[RetrievedContextBlock] = field(default_factory=list)
    attachments: list[AttachmentChunkMatch] = field(default_factory=list)
    web_snippets: list[WebSearchSnippetMatch] = field(default_factory=list)


class RetrievalOptions(WireModel):
    """Caps and filters for one retrieval pass (defaults come from settings)."""

    max_attachment_chunks: int | None = Field(None, ge=0)
    max_web_snippets: int | None = Field(None, ge=0)
    allowed_attachment_ids: list[str] | None = None
    min_score: float | None = None


def truncate_content(content: str, max_chars: int | None = None) -> str:
    """Cut content to the context budget, marking the cut with an ellipsis."""
    limit = max_chars if max_chars is not None else get_settings().RETRIEVAL_MAX_CONTEXT_CHARS
    if len(content) <= limit:
        return content
    return f"{content[:limit]}…"


def attachment_match_to_block(match: AttachmentChunkMatch) -> RetrievedContextBlock:
    chunk = match.chunk
    file_name = chunk.metadata.file_name or chunk.attachment_id
    return RetrievedContextBlock(
        id=chunk.id,
        type="attachment",
        title=file_name,
        content=truncate_content(chunk.content),
        relevance=match.similarity,
        attachment_id=chunk.attachment_id,
        metadata={"fileName": file_name, "pageNumber": chunk.metadata.page_number},
    )


def web_match_to_block(match: WebSearchSnippetMatch) -> RetrievedContextBlock:
    snippet = match.snippet
    title = snippet.title or snippet.url or "Web result"
    return RetrievedContextBlock(
        id=snippet.id,
        type="web",
        title=title,
        content=truncate_content(snippet.snippet or title),
        relevance=match.similarity,
        metadata={
            "url": snippet.url,
            "provider": snippet.provider,
            "createdAt": snippet.created_at,
        },
    )


async def build_retrieval_context(
    store: ConversationGraphStore,
    query: str,
    options: RetrievalOptions | None = None,
) -> RetrievalContextResult:
    """
    Build context blocks for a query.

    Args:
        store: Conversation store to search
        query: User text to embed
        options: Optional caps, allow-list and threshold overrides

    Returns:
        Attachment blocks first, then web blocks, each in ranked order. Empty when
        the query is blank or anything fails.
    """
    normalized = query.strip()
    if not normalized:
        return RetrievalContextResult()

    settings = get_settings()
    options = options or RetrievalOptions()

    try:
        embedding = await embed_query(normalized)
        matches = await store.query_retrieval(
            RetrievalQuery(
                embedding=embedding,
                max_attachment_chunks=(
                    options.max_attachment_chunks
                    if options.max_attachment_chunks is not None
                    else settings.RETRIEVAL_MAX_ATTACHMENT_CHUNKS
                ),
                max_web_snippets=(
                    options.max_web_snippets
                    if options.max_web_snippets is not None
                    else settings.RETRIEVAL_MAX_WEB_SNIPPETS
                ),
                allowed_attachment_ids=options.allowed_attachment_ids,
                min_score=(
                    options.min_score
                    if options.min_score is not None
                    else settings.RETRIEVAL_MIN_SCORE
                ),
            )
        )
    except Exception as e:
        log_with_context(
            logger,
            logging.WARNING,
            f"Retrieval failed, continuing without context: {e}",
            conversation_id=store.conversation_id,
        )
        return RetrievalContextResult()

    blocks = [attachment_match_to_block(match) for match in matches.attachments]
    blocks.extend(web_match_to_block(match) for match in matches.web_snippets)

    log_with_context(
        logger,
        logging.DEBUG,
        f"Retrieved {len(blocks)} context block(s)",
        conversation_id=store.conversation_id,
        attachments=len(matches.attachments),
        web_snippets=len(matches.web_snippets),
    )

    return RetrievalContextResult(
        blocks=blocks,
        attachments=matches.attachments,
        web_snippets=matches.web_snippets,
    )


def format_retrieved_context_for_prompt(blocks: list[RetrievedContextBlock]) -> str | None:
    """Render blocks as numbered prompt sections, or None when there are none."""
    if not blocks:
        return None

    sections = []
    for index, block in enumerate(blocks, start=1):
        label = "Attachment" if block.type == "attachment" else "Web"
        sections.append(f"Context {index} ({label} - {block.title}):\n{block.content}")
    return "\n\n".join(sections)


def _snippet_id(result: WebSearchResult) -> str:
    if result.id:
        return result.id
    # Deterministic from url and title
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{result.url}\n{result.title}"))


async def persist_web_search_snippets(
    store: ConversationGraphStore,
    results: list[WebSearchResult],
    provider: str | None = None,
) -> int:
    """
    Embed web search results and store them as snippets.

    Returns:
        Number of snippets newly stored

    Raises:
        UpstreamError: If embedding fails
    """
    results = [r for r in results if r.title or r.snippet or r.url]
    if not results:
        return 0

    texts = ["\n".join(part for part in (r.title, r.snippet, r.url) if part) for r in results]
    embeddings = await embed_texts_async(texts)

    snippets = [
        WebSearchSnippet(
            id=_snippet_id(result),
            conversation_id=store.conversation_id,
            title=result.title or "Untitled source",
            url=result.url,
            snippet=result.snippet,
            embedding=embedding,
            provider=provider,
        )
        for result, embedding in zip(results, embeddings)
    ]
    return await store.upsert_web_search_snippets(snippets)
