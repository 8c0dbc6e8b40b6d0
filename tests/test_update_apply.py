"""Tests for atomic update batch application."""

import pytest

from branchchat.core.errors import ConflictError, NotFoundError, ValidationError
from branchchat.core.graph_store import build_initial_snapshot
from branchchat.core.schemas_conversation import (
    Branch,
    BranchCreateUpdate,
    BranchCreationSource,
    BranchUpdateUpdate,
    ConversationUpdateUpdate,
    TokenUsage,
)
from branchchat.core.update_apply import apply_update_batch, find_message, parse_update_batch
from tests.fakes.fake_backends import CONV_ID, ROOT_ID, append, make_message, update


@pytest.fixture
def snapshot():
    return build_initial_snapshot(CONV_ID)


def _branch(branch_id: str, parent_id: str | None, origin: str = "u1") -> Branch:
    return Branch(
        id=branch_id,
        parent_id=parent_id,
        title=f"Branch {branch_id}",
        created_from=BranchCreationSource(message_id=origin),
        created_at="2025-01-02T00:00:00+00:00",
    )


def test_initial_snapshot_has_root_branch(snapshot):
    assert snapshot.version == 1
    assert snapshot.conversation.root_branch_id == ROOT_ID
    assert snapshot.branches[ROOT_ID].title == "Main Branch"
    assert snapshot.branches[ROOT_ID].parent_id is None
    assert snapshot.messages[ROOT_ID] == []


def test_batch_bumps_version_once(snapshot):
    result = apply_update_batch(
        snapshot,
        [
            append(make_message("u1")),
            append(make_message("a1", role="assistant", content="")),
            update(make_message("a1", role="assistant", content="Hi there")),
        ],
    )

    assert result.version == snapshot.version + 1
    assert [m.id for m in result.messages[ROOT_ID]] == ["u1", "a1"]
    assert result.messages[ROOT_ID][1].content == "Hi there"


def test_failed_batch_leaves_snapshot_untouched(snapshot):
    with pytest.raises(NotFoundError):
        apply_update_batch(
            snapshot,
            [append(make_message("u1")), append(make_message("u2", branch_id="missing"))],
        )

    assert snapshot.version == 1
    assert snapshot.messages[ROOT_ID] == []


def test_reappend_same_id_overwrites(snapshot):
    first = apply_update_batch(snapshot, [append(make_message("u1", content="draft"))])
    second = apply_update_batch(first, [append(make_message("u1", content="final"))])

    assert len(second.messages[ROOT_ID]) == 1
    assert second.messages[ROOT_ID][0].content == "final"
    assert second.version == 3


def test_append_id_from_other_branch_conflicts(snapshot):
    with_branch = apply_update_batch(
        snapshot,
        [
            append(make_message("u1")),
            BranchCreateUpdate(
                type="branch:create", conversation_id=CONV_ID, branch=_branch("b1", ROOT_ID)
            ),
        ],
    )

    with pytest.raises(ConflictError, match="already belongs"):
        apply_update_batch(with_branch, [append(make_message("u1", branch_id="b1"))])


def test_update_preserves_identity_fields(snapshot):
    created = apply_update_batch(
        snapshot, [append(make_message("a1", role="assistant", content=""))]
    )
    original = created.messages[ROOT_ID][0]

    changed = make_message("a1", role="assistant", content="done")
    changed = changed.model_copy(update={"created_at": "2030-01-01T00:00:00+00:00"})
    usage = TokenUsage(prompt=10, completion=5, cost=0.0)
    updated = apply_update_batch(
        created, [update(changed.model_copy(update={"token_usage": usage}))]
    )

    message = updated.messages[ROOT_ID][0]
    assert message.content == "done"
    assert message.token_usage == usage
    assert message.created_at == original.created_at
    assert message.role == "assistant"


def test_update_without_usage_keeps_existing_usage(snapshot):
    usage = TokenUsage(prompt=3, completion=4)
    created = apply_update_batch(
        snapshot, [append(make_message("a1", role="assistant", content="x", usage=usage))]
    )
    updated = apply_update_batch(
        created, [update(make_message("a1", role="assistant", content="y"))]
    )

    assert updated.messages[ROOT_ID][0].token_usage == usage


def test_update_missing_message_not_found(snapshot):
    with pytest.raises(NotFoundError):
        apply_update_batch(snapshot, [update(make_message("nope", role="assistant"))])


def test_update_user_message_conflicts(snapshot):
    created = apply_update_batch(snapshot, [append(make_message("u1"))])
    with pytest.raises(ConflictError, match="immutable"):
        apply_update_batch(created, [update(make_message("u1", content="edited"))])


def test_empty_batch_rejected(snapshot):
    with pytest.raises(ValidationError, match="at least one"):
        apply_update_batch(snapshot, [])


def test_batch_for_other_conversation_rejected(snapshot):
    with pytest.raises(ValidationError, match="targets conversation"):
        apply_update_batch(snapshot, [append(make_message("u1"), conversation_id="other")])


def test_branch_create_requires_origin_in_parent(snapshot):
    with pytest.raises(NotFoundError, match="Origin message"):
        apply_update_batch(
            snapshot,
            [
                BranchCreateUpdate(
                    type="branch:create", conversation_id=CONV_ID, branch=_branch("b1", ROOT_ID)
                )
            ],
        )


def test_branch_create_missing_parent(snapshot):
    with pytest.raises(NotFoundError, match="Parent branch"):
        apply_update_batch(
            snapshot,
            [
                BranchCreateUpdate(
                    type="branch:create", conversation_id=CONV_ID, branch=_branch("b1", "ghost")
                )
            ],
        )


def test_branch_create_duplicate_conflicts(snapshot):
    created = apply_update_batch(
        snapshot,
        [
            append(make_message("u1")),
            BranchCreateUpdate(
                type="branch:create", conversation_id=CONV_ID, branch=_branch("b1", ROOT_ID)
            ),
        ],
    )
    assert created.messages["b1"] == []

    with pytest.raises(ConflictError):
        apply_update_batch(
            created,
            [
                BranchCreateUpdate(
                    type="branch:create", conversation_id=CONV_ID, branch=_branch("b1", ROOT_ID)
                )
            ],
        )


def test_branch_update_only_renames(snapshot):
    renamed = _branch(ROOT_ID, "somewhere-else").model_copy(update={"title": "Renamed"})
    result = apply_update_batch(
        snapshot,
        [BranchUpdateUpdate(type="branch:update", conversation_id=CONV_ID, branch=renamed)],
    )

    root = result.branches[ROOT_ID]
    assert root.title == "Renamed"
    assert root.parent_id is None


def test_conversation_update_cannot_move_root(snapshot):
    moved = snapshot.conversation.model_copy(update={"root_branch_id": "other"})
    with pytest.raises(ConflictError):
        apply_update_batch(
            snapshot, [ConversationUpdateUpdate(type="conversation:update", conversation=moved)]
        )


def test_parse_update_batch_reads_wire_shape():
    updates = parse_update_batch(
        [
            {
                "type": "message:append",
                "conversationId": CONV_ID,
                "message": {
                    "id": "u1",
                    "branchId": ROOT_ID,
                    "role": "user",
                    "content": "hi",
                    "createdAt": "2025-01-01T00:00:00Z",
                },
            }
        ]
    )

    assert len(updates) == 1
    assert updates[0].message.branch_id == ROOT_ID


def test_parse_update_batch_rejects_unknown_type():
    with pytest.raises(ValidationError, match="Malformed update batch"):
        parse_update_batch([{"type": "message:delete", "conversationId": CONV_ID}])


def test_parse_update_batch_rejects_non_list():
    with pytest.raises(ValidationError, match="array"):
        parse_update_batch({"type": "message:append"})


def test_find_message(snapshot):
    created = apply_update_batch(snapshot, [append(make_message("u1"))])
    assert find_message(created, "u1") == (ROOT_ID, 0)
    assert find_message(created, "missing") is None


@pytest.mark.parametrize("created_at", ["not-a-date", "2025-01-01T00:00:00", ""])
def test_parse_update_batch_rejects_bad_timestamps(created_at):
    with pytest.raises(ValidationError, match="Malformed update batch"):
        parse_update_batch(
            [
                {
                    "type": "message:append",
                    "conversationId": CONV_ID,
                    "message": {
                        "id": "u1",
                        "branchId": ROOT_ID,
                        "role": "user",
                        "createdAt": created_at,
                    },
                }
            ]
        )


def test_parse_update_batch_normalizes_timestamps_to_utc():
    updates = parse_update_batch(
        [
            {
                "type": "message:append",
                "conversationId": CONV_ID,
                "message": {
                    "id": "u1",
                    "branchId": ROOT_ID,
                    "role": "user",
                    "createdAt": "2025-01-01T02:00:00.500+02:00",
                },
            }
        ]
    )

    assert updates[0].message.created_at == "2025-01-01T00:00:00.500Z"
