"""Text chunking utilities for attachment ingestion."""

from typing import Any

# A boundary is only used when it falls past this share of the window
BOUNDARY_MIN_RATIO = 0.4

_BOUNDARIES = ("\n\n", ". ", "\n")


def approximate_token_count(text: str) -> int:
    """Rough token estimate (4 characters per token, at least 1)."""
    return max(1, round(len(text.strip()) / 4))


def _find_break(window: str, max_chars: int) -> int | None:
    """Offset just past the last usable boundary in window, or None for a hard cut."""
    best = max(window.rfind(boundary) for boundary in _BOUNDARIES)
    if best > max_chars * BOUNDARY_MIN_RATIO:
        return best + 1
    return None


def chunk_text(
    text: str,
    max_chars: int = 2400,
    overlap: int = 240,
    metadata: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Split text into overlapping chunks.

    Greedy fixed window: each chunk ends at the last paragraph, sentence or line break
    inside the window when that break lies past 40% of it, otherwise at the window
    edge. The next chunk starts ``overlap`` characters before the previous end.

    Args:
        text: Text to chunk (CRLF is normalized, surrounding whitespace trimmed)
        max_chars: Maximum characters per chunk
        overlap: Number of characters to overlap between chunks
        metadata: Optional metadata to include in each chunk

    Returns:
        List of chunk dicts with:
            - chunk_index: int (0-based)
            - content: str (trimmed, never empty)
            - start_char: int
            - end_char: int
            - metadata: dict (if provided)

    Raises:
        ValueError: If max_chars <= overlap
    """
    if max_chars <= overlap:
        raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")

    normalized = text.replace("\r\n", "\n").strip() if text else ""
    if not normalized:
        return []

    chunks = []
    start = 0
    text_length = len(normalized)

    while start < text_length:
        end = min(start + max_chars, text_length)

        if end < text_length:
            cut = _find_break(normalized[start:end], max_chars)
            if cut is not None:
                end = start + cut

        content = normalized[start:end].strip()
        if content:
            chunks.append(
                {
                    "chunk_index": len(chunks),
                    "content": content,
                    "start_char": start,
                    "end_char": end,
                    "metadata": metadata or {},
                }
            )

        if end >= text_length:
            break

        # Always move forward, even when a break lands inside the overlap
        start = max(end - overlap, start + 1)

    return chunks
