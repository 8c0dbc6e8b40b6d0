"""Streaming completions over the OpenAI Responses API.

Provider stream events are adapted into the internal ``ProviderEvent`` union here, so the
broker never depends on the provider's payload shapes.
"""

from collections.abc import AsyncIterator
from typing import Any

from branchchat.core.llm import get_async_openai_client
from branchchat.core.logging import get_logger
from branchchat.core.schemas_conversation import ConversationSettings, TokenUsage
from branchchat.core.schemas_streaming import (
    Completed,
    Failed,
    ProviderEvent,
    ReasoningDelta,
    Started,
    TextDelta,
    ToolProgress,
)

logger = get_logger(__name__)

TEMPERATURE_UNSUPPORTED_MODELS = {"gpt-5-nano", "gpt-5-mini"}

_TOOL_STATUS = {
    "in_progress": "running",
    "searching": "running",
    "completed": "succeeded",
    "failed": "failed",
}


def supports_reasoning_effort(model: str) -> bool:
    normalized = model.lower()
    return normalized.startswith("gpt-5-") and "chat" not in normalized


def build_response_options(settings: ConversationSettings) -> dict[str, Any]:
    """Request options for a conversation's model settings."""
    options: dict[str, Any] = {"model": settings.model}

    if settings.model not in TEMPERATURE_UNSUPPORTED_MODELS:
        options["temperature"] = settings.temperature

    if settings.reasoning_effort and supports_reasoning_effort(settings.model):
        options["reasoning"] = {"effort": settings.reasoning_effort, "summary": "auto"}

    if settings.model.startswith("gpt-5-"):
        options["text"] = {"verbosity": "low"}

    return options


def adapt_provider_event(event: Any) -> ProviderEvent | None:
    """
    Map one Responses stream event to the internal union.

    Returns:
        The adapted event, or None for event types the broker does not consume
    """
    event_type = getattr(event, "type", None)

    if event_type == "response.created":
        response = getattr(event, "response", None)
        return Started(response_id=getattr(response, "id", None))

    if event_type == "response.output_text.delta":
        delta = getattr(event, "delta", None)
        return TextDelta(text=delta) if isinstance(delta, str) and delta else None

    if event_type == "response.reasoning_summary_text.delta":
        delta = getattr(event, "delta", None)
        return ReasoningDelta(text=delta) if isinstance(delta, str) and delta else None

    if event_type and event_type.startswith("response.web_search_call."):
        phase = event_type.rsplit(".", 1)[-1]
        return ToolProgress(
            tool="web_search",
            status=_TOOL_STATUS.get(phase, "pending"),
            call_id=getattr(event, "item_id", None),
        )

    if event_type == "response.failed":
        response = getattr(event, "response", None)
        error = getattr(response, "error", None)
        return Failed(reason=getattr(error, "message", None) or "Response failed")

    if event_type == "error":
        return Failed(reason=getattr(event, "message", None) or "Provider error")

    return None


def _extract_reasoning_summary(response: Any) -> str:
    parts: list[str] = []
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "reasoning":
            continue
        for part in getattr(item, "summary", None) or []:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
    return "\n".join(parts)


def _extract_usage(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    return TokenUsage(
        prompt=getattr(usage, "input_tokens", 0) or 0,
        completion=getattr(usage, "output_tokens", 0) or 0,
        cost=0.0,
    )


async def stream_completion(
    settings: ConversationSettings,
    input_messages: list[dict[str, str]],
) -> AsyncIterator[ProviderEvent]:
    """
    Stream one assistant reply.

    Yields adapted events and always ends with exactly one ``Completed`` or ``Failed``.
    Provider exceptions become ``Failed``; cancellation propagates.
    """
    client = get_async_openai_client()
    options = build_response_options(settings)
    buffered = ""

    try:
        async with client.responses.stream(input=input_messages, **options) as stream:
            async for raw in stream:
                event = adapt_provider_event(raw)
                if event is None:
                    continue
                if isinstance(event, TextDelta):
                    buffered += event.text
                yield event
                if isinstance(event, Failed):
                    return

            final = await stream.get_final_response()
    except Exception as e:
        logger.error(f"Completion stream failed: {e}", extra={"model": settings.model})
        yield Failed(reason=str(e) or type(e).__name__)
        return

    output_text = getattr(final, "output_text", None) or ""
    # Whitespace-only finals fall back to the streamed deltas
    text = output_text if output_text.strip() else buffered
    yield Completed(
        text=text,
        usage=_extract_usage(final),
        reasoning_summary=_extract_reasoning_summary(final),
    )
