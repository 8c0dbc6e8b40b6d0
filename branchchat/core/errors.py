"""Error taxonomy shared by the conversation store, broker and retrieval engine."""


class ConversationStoreError(Exception):
    """Base class for errors surfaced by the conversation core."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ConversationStoreError):
    """A referenced conversation, branch or message does not exist."""

    status_code = 404


class ValidationError(ConversationStoreError):
    """A batch, operation or payload is malformed. Raised before anything is applied."""

    status_code = 400


class ConflictError(ConversationStoreError):
    """The operation would violate a single-writer, identity or immutability invariant."""

    status_code = 409


class UpstreamError(ConversationStoreError):
    """The embedding or completion provider failed."""

    status_code = 502


class StorageError(ConversationStoreError):
    """A durable read or write failed. Nothing was committed."""

    status_code = 503
