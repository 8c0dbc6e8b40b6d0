"""LLM client utilities.

Two clients are handed out here: a LangChain ``ChatOpenAI`` for one-shot completions
(attachment summaries, image descriptions) and a raw ``AsyncOpenAI`` client for the
Responses streaming API that drives assistant generations.
"""

from langchain_openai import ChatOpenAI
from openai import AsyncOpenAI

from branchchat.core.config import get_settings


def get_llm(model: str | None = None, temperature: float = 0.1) -> ChatOpenAI:
    """
    Get configured LLM instance for one-shot completions.

    Args:
        model: Model name override (defaults to SUMMARY_MODEL)
        temperature: Temperature for generation (default 0.1)

    Returns:
        ChatOpenAI instance configured with API key and model
    """
    settings = get_settings()

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model or settings.SUMMARY_MODEL,
        temperature=temperature,
    )


def get_async_openai_client() -> AsyncOpenAI:
    """Get an AsyncOpenAI client for streaming completions."""
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
