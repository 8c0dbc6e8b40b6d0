"""Tree views over a flat conversation snapshot.

Pure functions: nothing here touches the store. The tree drives navigation, and the
ancestor helpers assemble model input along a branch's fork chain.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from branchchat.core.errors import NotFoundError
from branchchat.core.logging import get_logger, log_with_context
from branchchat.core.schemas_conversation import (
    Branch,
    ConversationGraphSnapshot,
    Message,
)

logger = get_logger(__name__)


@dataclass
class BranchTreeNode:
    """A branch with its ordered children."""

    branch: Branch
    children: list["BranchTreeNode"] = field(default_factory=list)
    depth: int = 0


def _sort_key(branch: Branch) -> tuple[str, str]:
    return (branch.created_at, branch.id)


def build_branch_tree(snapshot: ConversationGraphSnapshot) -> BranchTreeNode:
    """
    Build the ordered branch tree rooted at the conversation's root branch.

    Children are sorted by createdAt ascending with id as tie-break. Branches that do
    not reach the root through existing parents are left out and logged.

    Args:
        snapshot: Conversation snapshot

    Returns:
        Root node (depth 0)

    Raises:
        NotFoundError: If the root branch is missing from the snapshot
    """
    root_id = snapshot.conversation.root_branch_id
    root = snapshot.branches.get(root_id)
    if root is None:
        raise NotFoundError(f"Root branch {root_id} missing from snapshot")

    children_by_parent: dict[str, list[Branch]] = {}
    for branch in snapshot.branches.values():
        if branch.id == root_id or not branch.parent_id:
            continue
        children_by_parent.setdefault(branch.parent_id, []).append(branch)

    visited: set[str] = set()

    def build_node(branch: Branch, depth: int) -> BranchTreeNode:
        visited.add(branch.id)
        node = BranchTreeNode(branch=branch, depth=depth)
        for child in sorted(children_by_parent.get(branch.id, []), key=_sort_key):
            if child.id in visited:
                continue
            node.children.append(build_node(child, depth + 1))
        return node

    tree = build_node(root, 0)

    orphaned = [branch_id for branch_id in snapshot.branches if branch_id not in visited]
    if orphaned:
        log_with_context(
            logger,
            logging.WARNING,
            f"Excluded {len(orphaned)} orphaned branch(es) from tree",
            conversation_id=snapshot.conversation.id,
            branch_ids=",".join(sorted(orphaned)),
        )

    return tree


def find_orphaned_branches(snapshot: ConversationGraphSnapshot) -> list[str]:
    """Ids of branches that cannot reach the root through their parent links."""
    reachable: set[str] = set()
    orphaned: list[str] = []

    for branch_id in snapshot.branches:
        chain: list[str] = []
        current: str | None = branch_id
        while current is not None and current not in reachable:
            if current in chain or current not in snapshot.branches:
                current = None
                break
            chain.append(current)
            if current == snapshot.conversation.root_branch_id:
                break
            current = snapshot.branches[current].parent_id

        if current is not None:
            reachable.update(chain)
        else:
            orphaned.append(branch_id)

    return sorted(orphaned)


def get_branch_ancestors(snapshot: ConversationGraphSnapshot, branch_id: str) -> list[Branch]:
    """
    Branches from the root down to branch_id (inclusive).

    Raises:
        NotFoundError: If branch_id is not in the snapshot
    """
    if branch_id not in snapshot.branches:
        raise NotFoundError(f"Branch {branch_id} not found")

    chain: list[Branch] = []
    seen: set[str] = set()
    current = snapshot.branches.get(branch_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(current)
        current = snapshot.branches.get(current.parent_id) if current.parent_id else None

    chain.reverse()
    return chain


def get_branch_messages(snapshot: ConversationGraphSnapshot, branch_id: str) -> list[Message]:
    return list(snapshot.messages.get(branch_id, []))


def build_branch_context(snapshot: ConversationGraphSnapshot, branch_id: str) -> list[Message]:
    """
    Messages the model sees when replying on branch_id.

    Each ancestor contributes its messages up to and including the message its child
    was forked from; the branch itself contributes all of its messages.
    """
    ancestors = get_branch_ancestors(snapshot, branch_id)
    context: list[Message] = []

    for index, branch in enumerate(ancestors):
        messages = get_branch_messages(snapshot, branch.id)
        if index == len(ancestors) - 1:
            context.extend(messages)
            break

        child = ancestors[index + 1]
        origin_id = child.created_from.message_id if child.created_from else None
        for message in messages:
            context.append(message)
            if message.id == origin_id:
                break

    return context


def build_response_input(
    snapshot: ConversationGraphSnapshot,
    branch_id: str,
    retrieval_context: str | None = None,
) -> list[dict[str, str]]:
    """
    Model input for the next assistant turn on branch_id.

    Empty messages (such as the assistant placeholder being generated) are skipped.
    """
    inputs: list[dict[str, str]] = []

    system_prompt = snapshot.conversation.settings.system_prompt
    if system_prompt and system_prompt.strip():
        inputs.append({"role": "system", "content": system_prompt})

    if retrieval_context:
        inputs.append(
            {
                "role": "system",
                "content": f"Additional context from uploads & searches:\n\n{retrieval_context}",
            }
        )

    for message in build_branch_context(snapshot, branch_id):
        if not message.content.strip():
            continue
        inputs.append({"role": message.role, "content": message.content})

    return inputs


def serialize_tree(node: BranchTreeNode) -> dict[str, Any]:
    """Wire shape of a tree node."""
    return {
        "branch": node.branch.to_wire(),
        "depth": node.depth,
        "children": [serialize_tree(child) for child in node.children],
    }
