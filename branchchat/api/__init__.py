"""API router for v1 endpoints."""

from fastapi import APIRouter

from branchchat.api import conversations, streams

router = APIRouter()

# Conversation graph, branches, messages, retrieval and attachments
router.include_router(conversations.router, tags=["conversations"])

# Server-Sent Events for in-flight generations
router.include_router(streams.router, tags=["streams"])
