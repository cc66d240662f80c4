"""
Contract tests run against every version store backend.

The in-memory store and the SQLAlchemy store (on in-memory SQLite) must
agree on uniqueness, compare-and-swap semantics and ordering.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from asset_vcs.core.cancellation import Deadline
from asset_vcs.core.exceptions import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)
from asset_vcs.models.version_control import (
    Approval,
    ApprovalStatus,
    ApprovalWorkflow,
    Branch,
    Conflict,
    ConflictType,
    MergeComment,
    MergeRequest,
    MergeRequestStatus,
    ModelVersion,
    Resolution,
    ResolutionStrategy,
    Reviewer,
    Transform,
    TransformPayload,
    VersionStatus,
    VersionTag,
    WorkflowStatus,
)
from asset_vcs.services.sql_version_store import SqlVersionStore
from asset_vcs.services.version_store import InMemoryVersionStore

from factories import ASSET_ID

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Create a version store for each backend."""
    if request.param == "memory":
        yield InMemoryVersionStore()
    else:
        sql_store = SqlVersionStore.from_url("sqlite://")
        yield sql_store
        sql_store.engine.dispose()


def _version(number: str, minute: int, parent=None, branch: str = "main", author: str = "alice", **kwargs):
    return ModelVersion(
        asset_id=kwargs.pop("asset_id", ASSET_ID),
        version=number,
        parent_version_id=parent.id if parent else None,
        branch_name=branch,
        commit_message=f"Commit {number}",
        content_hash=f"{minute:064x}",
        author_id=author,
        size_bytes=100 + minute,
        created_at=T0 + timedelta(minutes=minute),
        storage_path=f"{minute:02x}/blob",
        scene_path=f"{minute:02x}/blob",
        **kwargs,
    )


def _initial(store, branch_name: str = "main"):
    version = _version("1.0.0", 0, branch=branch_name)
    branch = store.commit_version(
        version,
        expected_head=None,
        new_branch=Branch(
            asset_id=ASSET_ID,
            name=branch_name,
            is_default=True,
            head_version_id=version.id,
            base_version_id=version.id,
            created_by="alice",
        ),
    )
    return version, branch


def _feature_branch(store, base: ModelVersion, name: str = "feature") -> Branch:
    return store.create_branch(Branch(
        asset_id=ASSET_ID,
        name=name,
        head_version_id=base.id,
        base_version_id=base.id,
        created_by="bob",
    ))


class TestVersions:
    def test_initial_commit_creates_default_branch(self, store):
        version, branch = _initial(store)

        assert branch.head_version_id == version.id
        assert branch.base_version_id == version.id
        assert branch.contributors == ["alice"]
        stored = store.get_version(version.id)
        assert stored.version == "1.0.0"
        assert stored.created_at == version.created_at

    def test_commit_advances_head_and_records_contributor(self, store):
        root, _ = _initial(store)
        child = _version("1.0.1", 1, parent=root, author="bob")

        branch = store.commit_version(child, expected_head=root.id)

        assert branch.head_version_id == child.id
        assert sorted(branch.contributors) == ["alice", "bob"]
        assert store.get_branch(ASSET_ID, "main").head_version_id == child.id

    def test_commit_with_stale_head_is_refused(self, store):
        root, _ = _initial(store)
        store.commit_version(_version("1.0.1", 1, parent=root), expected_head=root.id)

        stale = _version("1.0.2", 2, parent=root)
        with pytest.raises(ConcurrencyConflictError):
            store.commit_version(stale, expected_head=root.id)
        with pytest.raises(NotFoundError):
            store.get_version(stale.id)

    def test_losing_insert_race_is_a_conflict(self, monkeypatch):
        # Both writers pass validation before either commits; the loser trips the unique key
        sql_store = SqlVersionStore.from_url("sqlite://")
        root, _ = _initial(sql_store)
        winner = _version("1.0.1", 1, parent=root)
        sql_store.commit_version(winner, expected_head=root.id)
        monkeypatch.setattr(
            SqlVersionStore, "_validate_new_version", staticmethod(lambda session, version: None)
        )

        loser = _version("1.0.1", 2, parent=winner)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            sql_store.commit_version(loser, expected_head=winner.id)

        assert exc_info.value.details["version"] == "1.0.1"
        assert sql_store.get_branch(ASSET_ID, "main").head_version_id == winner.id
        sql_store.engine.dispose()

    def test_concurrent_branch_creation_is_a_conflict(self, store):
        _initial(store)
        with pytest.raises(ConcurrencyConflictError):
            _initial(store)

    def test_version_numbers_are_unique_per_branch(self, store):
        root, _ = _initial(store)
        with pytest.raises(AlreadyExistsError):
            store.create_version(_version("1.0.0", 5, parent=root))

    def test_parent_must_exist_and_share_asset(self, store):
        root, _ = _initial(store)
        with pytest.raises(ValidationError):
            store.create_version(_version("2.0.0", 1, parent=_version("9.9.9", 9)))
        with pytest.raises(ValidationError):
            store.create_version(_version("1.0.0", 2, parent=root, asset_id="other-asset"))

    def test_list_is_newest_first_with_paging(self, store):
        root, _ = _initial(store)
        previous = root
        for minute in range(1, 5):
            nxt = _version(f"1.0.{minute}", minute, parent=previous)
            store.commit_version(nxt, expected_head=previous.id)
            previous = nxt

        versions = store.list_versions(ASSET_ID, limit=2, offset=1)

        assert [v.version for v in versions] == ["1.0.3", "1.0.2"]
        assert store.count_versions(ASSET_ID) == 5
        assert store.list_versions("unknown") == []

    def test_update_status(self, store):
        root, _ = _initial(store)
        assert store.update_version_status(root.id, VersionStatus.ARCHIVED).status == VersionStatus.ARCHIVED
        assert store.get_version(root.id).status == VersionStatus.ARCHIVED

    def test_delete_refuses_branch_head(self, store):
        root, _ = _initial(store)
        with pytest.raises(ValidationError):
            store.delete_version(root.id)

    def test_delete_unlinks_children_tags_and_workflows(self, store):
        root, _ = _initial(store)
        middle = _version("1.0.1", 1, parent=root)
        store.commit_version(middle, expected_head=root.id)
        tip = _version("1.0.2", 2, parent=middle)
        store.commit_version(tip, expected_head=middle.id)
        store.create_tag(VersionTag(name="draft", version_id=middle.id, created_by="alice"))
        workflow = store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID, version_id=middle.id, approvals=[Approval(approver_id="bob")]
        ))

        store.delete_version(middle.id)

        assert store.get_version(tip.id).parent_version_id is None
        assert store.list_tags(middle.id) == []
        with pytest.raises(NotFoundError):
            store.get_approval_workflow(workflow.id)
        assert store.is_blob_referenced(tip.storage_path)
        assert not store.is_blob_referenced(middle.storage_path)

    def test_expired_deadline_is_a_timeout(self, store):
        with pytest.raises(OperationTimeoutError):
            store.get_version(uuid4(), deadline=Deadline(0))


class TestBranches:
    def test_create_and_list(self, store):
        root, _ = _initial(store)
        _feature_branch(store, root, "zeta")
        _feature_branch(store, root, "alpha")

        names = [b.name for b in store.list_branches(ASSET_ID)]

        assert names == ["main", "alpha", "zeta"]

    def test_duplicate_branch(self, store):
        root, _ = _initial(store)
        _feature_branch(store, root)
        with pytest.raises(AlreadyExistsError):
            _feature_branch(store, root)

    def test_branch_must_point_at_asset_versions(self, store):
        _initial(store)
        with pytest.raises(ValidationError):
            store.create_branch(Branch(
                asset_id=ASSET_ID, name="bad", head_version_id=uuid4(), base_version_id=uuid4(), created_by="bob"
            ))

    def test_missing_branch(self, store):
        with pytest.raises(NotFoundError):
            store.get_branch(ASSET_ID, "nope")
        with pytest.raises(NotFoundError):
            store.get_branch_by_id(uuid4())

    def test_cas_update_head(self, store):
        root, _ = _initial(store)
        feature = _feature_branch(store, root)
        child = _version("1.0.1", 1, parent=root, branch="feature")
        store.create_version(child)

        updated = store.cas_update_branch_head(feature.id, expected_head=root.id, new_head=child.id)
        assert updated.head_version_id == child.id

        with pytest.raises(ConcurrencyConflictError):
            store.cas_update_branch_head(feature.id, expected_head=root.id, new_head=root.id)


class TestMergeRequests:
    def test_roundtrip_with_conflicts_comments_and_reviewers(self, store):
        root, main = _initial(store)
        feature = _feature_branch(store, root)
        conflict = Conflict(
            type=ConflictType.TRANSFORM_CONFLICT,
            path="meshes/body/transform",
            description="Transform changed on both branches",
            source_value=TransformPayload(transform=Transform(position=(1.0, 0.0, 0.0))),
            target_value=TransformPayload(transform=Transform(position=(0.0, 0.0, 3.0))),
        )
        mr = store.create_merge_request(MergeRequest(
            asset_id=ASSET_ID,
            source_branch_id=feature.id,
            target_branch_id=main.id,
            title="Move body",
            author_id="bob",
            status=MergeRequestStatus.CONFLICT,
            reviewers=[Reviewer(user_id="carol")],
            conflicts=[conflict],
        ))

        mr.conflicts[0].resolution = Resolution(strategy=ResolutionStrategy.USE_SOURCE, resolved_by="carol")
        mr.comments.append(MergeComment(user_id="carol", content="Source position is right"))
        mr.status = MergeRequestStatus.OPEN
        store.update_merge_request(mr)

        stored = store.get_merge_request(mr.id)
        assert stored.status == MergeRequestStatus.OPEN
        assert stored.conflicts[0].id == conflict.id
        assert stored.conflicts[0].source_value.transform.position == (1.0, 0.0, 0.0)
        assert stored.conflicts[0].resolution.strategy == ResolutionStrategy.USE_SOURCE
        assert [c.content for c in stored.comments] == ["Source position is right"]
        assert stored.reviewers[0].user_id == "carol"
        assert store.get_branch_by_id(feature.id).merge_request_count == 1

    def test_list_filters_by_status(self, store):
        root, main = _initial(store)
        feature = _feature_branch(store, root)
        for status in (MergeRequestStatus.OPEN, MergeRequestStatus.CLOSED):
            store.create_merge_request(MergeRequest(
                asset_id=ASSET_ID,
                source_branch_id=feature.id,
                target_branch_id=main.id,
                title=f"MR {status.value}",
                author_id="bob",
                status=status,
            ))

        assert len(store.list_merge_requests(ASSET_ID)) == 2
        closed = store.list_merge_requests(ASSET_ID, status=MergeRequestStatus.CLOSED)
        assert [mr.title for mr in closed] == ["MR closed"]

    def test_unknown_merge_request(self, store):
        with pytest.raises(NotFoundError):
            store.get_merge_request(uuid4())


class TestWorkflowsAndTags:
    def test_workflow_revision_cas(self, store):
        root, _ = _initial(store)
        workflow = store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID,
            version_id=root.id,
            approvals=[Approval(approver_id="bob"), Approval(approver_id="carol")],
        ))

        workflow.approvals[0].status = ApprovalStatus.APPROVED
        first = store.update_approval_workflow(workflow, expected_revision=0)
        assert first.revision == 1
        assert first.get_approval("bob").status == ApprovalStatus.APPROVED

        with pytest.raises(ConcurrencyConflictError):
            store.update_approval_workflow(workflow, expected_revision=0)

    def test_workflow_requires_version(self, store):
        with pytest.raises(NotFoundError):
            store.create_approval_workflow(ApprovalWorkflow(asset_id=ASSET_ID, version_id=uuid4()))

    def test_find_pending_workflows(self, store):
        root, _ = _initial(store)
        due = store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID, version_id=root.id, deadline=T0 + timedelta(hours=1),
        ))
        store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID, version_id=root.id, deadline=T0 + timedelta(hours=10),
        ))
        auto = store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID, version_id=root.id, auto_approve_at=T0 + timedelta(hours=2),
        ))

        now = T0 + timedelta(hours=3)
        assert [w.id for w in store.find_pending_workflows(deadline_before=now)] == [due.id]
        assert [w.id for w in store.find_pending_workflows(auto_approve_before=now)] == [auto.id]
        assert store.find_pending_workflows() == []

    def test_list_workflows_by_status(self, store):
        root, _ = _initial(store)
        store.create_approval_workflow(ApprovalWorkflow(asset_id=ASSET_ID, version_id=root.id))
        store.create_approval_workflow(ApprovalWorkflow(
            asset_id=ASSET_ID, version_id=root.id, status=WorkflowStatus.APPROVED
        ))

        pending = store.list_approval_workflows(asset_id=ASSET_ID, status=WorkflowStatus.PENDING)
        assert len(pending) == 1
        assert len(store.list_approval_workflows()) == 2

    def test_tags(self, store):
        root, _ = _initial(store)
        store.create_tag(VersionTag(name="v1", version_id=root.id, created_by="alice", is_release=True))

        with pytest.raises(AlreadyExistsError):
            store.create_tag(VersionTag(name="v1", version_id=root.id, created_by="bob"))
        with pytest.raises(NotFoundError):
            store.create_tag(VersionTag(name="v1", version_id=uuid4(), created_by="bob"))

        tags = store.list_tags(root.id)
        assert [(t.name, t.is_release) for t in tags] == [("v1", True)]
