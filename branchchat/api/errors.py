"""Mapping from core errors to HTTP errors."""

from fastapi import HTTPException

from branchchat.core.errors import ConversationStoreError


def http_error(error: ConversationStoreError) -> HTTPException:
    """HTTPException carrying the error's status code and message."""
    return HTTPException(status_code=error.status_code, detail=error.message)
