"""Configuration management for the branchchat service."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Environment
    BRANCHCHAT_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Conversation store
    STORE_BACKEND: str = Field(
        default="supabase", description="Durable state backend: supabase or memory"
    )
    STORE_STATE_TABLE: str = Field(
        default="conversation_store_state", description="Table holding one state row per conversation"
    )
    STORE_MAX_CACHED_CONVERSATIONS: int = Field(
        default=1000, description="Idle conversation stores kept warm before the oldest are evicted"
    )
    UPLOADS_BUCKET: str = Field(
        default="conversation-uploads", description="Storage bucket for raw attachment bytes"
    )

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Conversation defaults
    CHAT_MODEL: str = Field(default="gpt-4o-mini", description="Default model for new conversations")
    CHAT_TEMPERATURE: float = Field(default=0.2, description="Default sampling temperature")
    CHAT_SYSTEM_PROMPT: str = Field(
        default=(
            "You are a branching conversation assistant. Provide concise, structured replies "
            "to help users explore alternatives."
        ),
        description="Default system prompt for new conversations",
    )
    ROOT_BRANCH_TITLE: str = Field(default="Main Branch", description="Title of the root branch")

    # Attachment ingestion
    SUMMARY_MODEL: str = Field(default="gpt-4.1-mini", description="Model for attachment summaries")
    IMAGE_DESCRIPTION_MODEL: str = Field(
        default="gpt-4.1-mini", description="Vision model for image attachment descriptions"
    )
    CHUNK_CHAR_LIMIT: int = Field(default=2_400, description="Chunk window in characters")
    CHUNK_OVERLAP: int = Field(default=240, description="Overlap between consecutive chunks")
    MAX_ATTACHMENT_TEXT_CHARS: int = Field(
        default=120_000, description="Plain-text attachments are capped at this many characters"
    )
    MAX_ATTACHMENTS_PER_MESSAGE: int = Field(default=10, description="Attachments per message")

    # Retrieval
    RETRIEVAL_MIN_SCORE: float = Field(default=0.15, description="Minimum cosine similarity")
    RETRIEVAL_MAX_ATTACHMENT_CHUNKS: int = Field(
        default=6, description="Attachment chunks surfaced per query"
    )
    RETRIEVAL_MAX_WEB_SNIPPETS: int = Field(default=4, description="Web snippets surfaced per query")
    RETRIEVAL_MAX_CONTEXT_CHARS: int = Field(
        default=1_200, description="Character budget per retrieved context block"
    )

    # Streaming
    STREAM_CHECKPOINT_INTERVAL_MS: int = Field(
        default=150, description="Minimum milliseconds between partial-content checkpoints"
    )
    STREAM_CHECKPOINT_MIN_CHARS: int = Field(
        default=24, description="Newly buffered characters that force a checkpoint"
    )
    STREAM_HEARTBEAT_SECONDS: float = Field(
        default=15.0, description="Idle interval before an SSE keep-alive comment"
    )
    STREAM_RETAINED_GENERATIONS: int = Field(
        default=256, description="Finished generations kept for late subscribers"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
