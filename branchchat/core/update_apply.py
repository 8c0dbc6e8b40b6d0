"""Safe, all-or-nothing application of update batches to a conversation snapshot.

A batch is applied to a structural copy of the current snapshot. Any failure raises
before the copy is returned, so the caller's snapshot is never partially modified and
the version only moves when the whole batch lands.
"""

from typing import Any

from pydantic import ValidationError as SchemaValidationError

from branchchat.core.errors import ConflictError, NotFoundError, ValidationError
from branchchat.core.schemas_conversation import (
    UPDATE_BATCH_ADAPTER,
    Branch,
    BranchCreateUpdate,
    BranchUpdateUpdate,
    ConversationGraphSnapshot,
    ConversationGraphUpdate,
    ConversationUpdateUpdate,
    Message,
    MessageAppendUpdate,
    MessageUpdateUpdate,
)


def parse_update_batch(payload: Any) -> list[ConversationGraphUpdate]:
    """
    Parse a raw wire batch into typed update operations.

    Args:
        payload: List of ``{type, conversationId, message|branch|conversation}`` dicts

    Returns:
        Typed operations in submission order

    Raises:
        ValidationError: If the payload is not a list or any operation is malformed
    """
    if not isinstance(payload, list):
        raise ValidationError("updates must be an array")

    try:
        return UPDATE_BATCH_ADAPTER.validate_python(payload)
    except SchemaValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Malformed update batch ({e.error_count()} error(s)); "
            f"first at {location}: {first.get('msg')}"
        ) from e


def validate_update_batch(conversation_id: str, updates: list[ConversationGraphUpdate]) -> None:
    """
    Check batch-level invariants before anything is applied.

    Raises:
        ValidationError: Empty batch, or an operation addressed to another conversation
    """
    if not updates:
        raise ValidationError("Update batch must contain at least one operation")

    for index, update in enumerate(updates):
        target = (
            update.conversation.id
            if isinstance(update, ConversationUpdateUpdate)
            else update.conversation_id
        )
        if target != conversation_id:
            raise ValidationError(
                f"Update at index {index} targets conversation {target}, "
                f"expected {conversation_id}"
            )


def apply_update_batch(
    snapshot: ConversationGraphSnapshot,
    updates: list[ConversationGraphUpdate],
) -> ConversationGraphSnapshot:
    """
    Apply an ordered batch and return the next snapshot with version + 1.

    Args:
        snapshot: Current snapshot (left untouched)
        updates: Validated operations in submission order

    Returns:
        New snapshot reflecting every operation

    Raises:
        NotFoundError: A referenced branch or message does not exist
        ConflictError: An operation would break identity or immutability rules
        ValidationError: An operation is structurally invalid for this snapshot
    """
    validate_update_batch(snapshot.conversation.id, updates)

    # Messages and branches are replaced, never mutated, so copying the containers
    # is enough to keep the previous version intact.
    next_snapshot = ConversationGraphSnapshot(
        conversation=snapshot.conversation,
        branches=dict(snapshot.branches),
        messages={branch_id: list(items) for branch_id, items in snapshot.messages.items()},
        version=snapshot.version + 1,
    )

    for update in updates:
        if isinstance(update, MessageAppendUpdate):
            _append_message(next_snapshot, update.message)
        elif isinstance(update, MessageUpdateUpdate):
            _update_message(next_snapshot, update.message)
        elif isinstance(update, BranchCreateUpdate):
            _create_branch(next_snapshot, update.branch)
        elif isinstance(update, BranchUpdateUpdate):
            _rename_branch(next_snapshot, update.branch)
        elif isinstance(update, ConversationUpdateUpdate):
            _update_settings(next_snapshot, update)
        else:
            raise ValidationError(f"Unsupported update type {getattr(update, 'type', None)}")

    return next_snapshot


def find_message(
    snapshot: ConversationGraphSnapshot, message_id: str
) -> tuple[str, int] | None:
    """Locate a message by id. Returns (branch_id, index) or None."""
    for branch_id, items in snapshot.messages.items():
        for index, item in enumerate(items):
            if item.id == message_id:
                return branch_id, index
    return None


def _append_message(snapshot: ConversationGraphSnapshot, message: Message) -> None:
    if message.branch_id not in snapshot.branches:
        raise NotFoundError(f"Branch {message.branch_id} missing for message {message.id}")

    location = find_message(snapshot, message.id)
    if location is not None:
        owner, index = location
        if owner != message.branch_id:
            raise ConflictError(
                f"Message {message.id} already belongs to branch {owner}, "
                f"cannot append to {message.branch_id}"
            )
        # Re-append with a known id is a retry: overwrite in place
        snapshot.messages[owner][index] = message
        return

    snapshot.messages.setdefault(message.branch_id, []).append(message)


def _update_message(snapshot: ConversationGraphSnapshot, message: Message) -> None:
    items = snapshot.messages.get(message.branch_id, [])
    for index, existing in enumerate(items):
        if existing.id != message.id:
            continue
        if existing.role == "user":
            raise ConflictError(f"User message {message.id} is immutable")
        items[index] = existing.model_copy(
            update={
                "content": message.content,
                "token_usage": message.token_usage
                if message.token_usage is not None
                else existing.token_usage,
            }
        )
        return

    raise NotFoundError(f"Cannot update missing message {message.id} in branch {message.branch_id}")


def _create_branch(snapshot: ConversationGraphSnapshot, branch: Branch) -> None:
    if branch.id in snapshot.branches:
        raise ConflictError(f"Branch {branch.id} already exists")
    if not branch.parent_id:
        raise ValidationError(f"Branch {branch.id} must reference a parent branch")
    if branch.parent_id not in snapshot.branches:
        raise NotFoundError(f"Parent branch {branch.parent_id} not found")
    if branch.created_from is None:
        raise ValidationError(f"Branch {branch.id} must record the message it was forked from")

    origin = branch.created_from.message_id
    if not any(item.id == origin for item in snapshot.messages.get(branch.parent_id, [])):
        raise NotFoundError(f"Origin message {origin} not found in branch {branch.parent_id}")

    snapshot.branches[branch.id] = branch
    snapshot.messages[branch.id] = []


def _rename_branch(snapshot: ConversationGraphSnapshot, branch: Branch) -> None:
    existing = snapshot.branches.get(branch.id)
    if existing is None:
        raise NotFoundError(f"Branch {branch.id} not found")
    # Branches are append-only; the title is the only mutable field
    snapshot.branches[branch.id] = existing.model_copy(update={"title": branch.title})


def _update_settings(snapshot: ConversationGraphSnapshot, update: ConversationUpdateUpdate) -> None:
    incoming = update.conversation
    if incoming.root_branch_id != snapshot.conversation.root_branch_id:
        raise ConflictError("Conversation root branch cannot change")
    snapshot.conversation = snapshot.conversation.model_copy(
        update={"settings": incoming.settings}
    )
