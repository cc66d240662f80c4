"""
HTTP tests for the version control API.
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from asset_vcs.main import create_app

from factories import ASSET_ID, base_scene, mesh

API = "/api/v1"


@pytest.fixture
def client(service):
    """Create a test client bound to the in-memory service."""
    with TestClient(create_app(service=service)) as test_client:
        yield test_client


def _scene_json(with_gripper: bool = False, roughness: float = 0.3, position=(0.0, 0.0, 0.0)):
    snapshot = base_scene()
    snapshot.materials[0] = snapshot.materials[0].model_copy(update={"roughness": roughness})
    snapshot.meshes[0] = mesh("body", 1000, position=position, material="steel")
    if with_gripper:
        snapshot.meshes.append(mesh("gripper", 200))
    return snapshot.model_dump(mode="json")


def _commit(client, branch="main", message="Update model", **scene_kwargs):
    response = client.post(
        f"{API}/assets/{ASSET_ID}/versions",
        json={
            "branch_name": branch,
            "author_id": "alice",
            "message": message,
            "scene": _scene_json(**scene_kwargs),
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def _branch(client, base_id, name="feature"):
    response = client.post(
        f"{API}/assets/{ASSET_ID}/branches",
        json={"name": name, "base_version_id": base_id, "creator_id": "bob"},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestVersionEndpoints:
    def test_create_and_read_version(self, client):
        created = _commit(client, message="Initial model")

        assert created["version"] == "1.0.0"
        assert created["status"] == "approved"
        assert created["metadata"]["triangle_count"] == 1000

        fetched = client.get(f"{API}/versions/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["content_hash"] == created["content_hash"]

        content = client.get(f"{API}/versions/{created['id']}/content").json()
        assert content["scene"] == _scene_json()
        assert content["payload_base64"] is None

    def test_history_is_newest_first(self, client):
        _commit(client)
        _commit(client, with_gripper=True)

        response = client.get(f"{API}/assets/{ASSET_ID}/versions", params={"limit": 1})

        assert response.status_code == 200
        assert [v["version"] for v in response.json()] == ["1.0.1"]

    def test_payload_round_trips_as_base64(self, client):
        response = client.post(
            f"{API}/assets/{ASSET_ID}/versions",
            json={
                "author_id": "alice",
                "message": "Upload glb",
                "scene": _scene_json(),
                "payload_base64": "Z2xURgIAAAA=",
                "format": "model/gltf-binary",
            },
        )
        assert response.status_code == 201, response.text

        content = client.get(f"{API}/versions/{response.json()['id']}/content").json()
        assert content["payload_base64"] == "Z2xURgIAAAA="
        assert content["format"] == "model/gltf-binary"

    def test_invalid_base64_is_a_bad_request(self, client):
        response = client.post(
            f"{API}/assets/{ASSET_ID}/versions",
            json={"author_id": "alice", "message": "Broken", "payload_base64": "not base64!"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "vcs.validation_error"

    def test_unknown_version_is_404(self, client):
        response = client.get(f"{API}/versions/{uuid4()}")

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "vcs.not_found"
        assert "not found" in detail["message"]

    def test_invalid_branch_name_is_422(self, client):
        root = _commit(client)
        response = client.post(
            f"{API}/assets/{ASSET_ID}/branches",
            json={"name": "bad..name", "base_version_id": root["id"], "creator_id": "bob"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "vcs.validation_failed"

    def test_diff_and_compare(self, client):
        first = _commit(client)
        second = _commit(client, with_gripper=True)

        diff = client.get(f"{API}/versions/{first['id']}/diff/{second['id']}").json()
        assert [c["type"] for c in diff["changes"]] == ["geometry_added"]
        assert diff["statistics"]["added_triangles"] == 200

        comparison = client.get(
            f"{API}/versions/{first['id']}/compare/{second['id']}", params={"include_visual": "false"}
        ).json()
        assert comparison["identical"] is False
        assert comparison["visual_diff"] is None

    def test_rollback_and_tags(self, client):
        first = _commit(client)
        _commit(client, with_gripper=True)

        response = client.post(
            f"{API}/assets/{ASSET_ID}/rollback",
            json={"target_version_id": first["id"], "actor_id": "alice", "reason": "regression"},
        )
        assert response.status_code == 201
        assert response.json()["content_hash"] == first["content_hash"]

        tag = client.post(
            f"{API}/versions/{first['id']}/tags",
            json={"name": "v1.0", "creator_id": "alice", "is_release": True},
        )
        assert tag.status_code == 201
        duplicate = client.post(f"{API}/versions/{first['id']}/tags", json={"name": "v1.0", "creator_id": "bob"})
        assert duplicate.status_code == 409
        assert [t["name"] for t in client.get(f"{API}/versions/{first['id']}/tags").json()] == ["v1.0"]


class TestMergeRequestEndpoints:
    def test_clean_merge_flow(self, client):
        root = _commit(client, message="Initial model")
        _branch(client, root["id"])
        _commit(client, branch="feature", with_gripper=True)
        _commit(client, roughness=0.8)

        created = client.post(
            f"{API}/assets/{ASSET_ID}/merge-requests",
            json={"source_branch": "feature", "target_branch": "main", "title": "Add gripper", "author_id": "bob"},
        )
        assert created.status_code == 201, created.text
        merge_request = created.json()
        assert merge_request["status"] == "open"

        merged = client.post(f"{API}/merge-requests/{merge_request['id']}/merge", json={"actor_id": "carol"})
        assert merged.status_code == 200, merged.text
        assert merged.json()["version"] == "1.1.0"
        assert merged.json()["commit_message"] == "Merge: Add gripper"

        stored = client.get(f"{API}/merge-requests/{merge_request['id']}").json()
        assert stored["status"] == "merged"
        listed = client.get(f"{API}/assets/{ASSET_ID}/merge-requests", params={"status": "merged"}).json()
        assert [m["id"] for m in listed] == [merge_request["id"]]

    def test_conflicting_merge_needs_resolution(self, client):
        root = _commit(client, message="Initial model")
        _branch(client, root["id"])
        _commit(client, branch="feature", position=(1.0, 0.0, 0.0))
        _commit(client, position=(0.0, 0.0, 3.0))

        merge_request = client.post(
            f"{API}/assets/{ASSET_ID}/merge-requests",
            json={"source_branch": "feature", "target_branch": "main", "title": "Move body", "author_id": "bob"},
        ).json()
        assert merge_request["status"] == "conflict"

        blocked = client.post(f"{API}/merge-requests/{merge_request['id']}/merge", json={"actor_id": "carol"})
        assert blocked.status_code == 409
        assert blocked.json()["detail"]["code"] == "vcs.unresolved_conflicts"

        conflict_id = merge_request["conflicts"][0]["id"]
        resolved = client.post(
            f"{API}/merge-requests/{merge_request['id']}/conflicts/{conflict_id}/resolve",
            json={
                "strategy": "manual",
                "resolver_id": "carol",
                "custom_payload": {"kind": "transform", "transform": {"position": [2.0, 0.0, 0.0]}},
            },
        )
        assert resolved.status_code == 200, resolved.text
        assert resolved.json()["status"] == "open"

        merged = client.post(
            f"{API}/merge-requests/{merge_request['id']}/merge", json={"actor_id": "carol", "strategy": "squash"}
        )
        assert merged.status_code == 200, merged.text
        assert merged.json()["merge_parent_id"] is None

    def test_reviews_comments_and_close(self, client):
        root = _commit(client)
        _branch(client, root["id"])
        _commit(client, branch="feature", with_gripper=True)

        merge_request = client.post(
            f"{API}/assets/{ASSET_ID}/merge-requests",
            json={
                "source_branch": "feature",
                "target_branch": "main",
                "title": "Add gripper",
                "author_id": "bob",
                "reviewers": ["carol"],
            },
        ).json()
        mr_url = f"{API}/merge-requests/{merge_request['id']}"

        review = client.post(f"{mr_url}/reviews", json={"reviewer_id": "carol", "decision": "commented"})
        assert review.json()["reviewers"][0]["status"] == "commented"

        comment = client.post(f"{mr_url}/comments", json={"user_id": "carol", "content": "Check scale"})
        assert comment.status_code == 201
        assert comment.json()["content"] == "Check scale"

        approvals = client.get(f"{mr_url}/approvals").json()
        assert approvals["is_approved"] is False

        closed = client.post(f"{mr_url}/close", json={"actor_id": "bob"})
        assert closed.json()["status"] == "closed"


class TestOperationalEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics_exposes_commit_counter(self, client):
        _commit(client)
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "asset_vcs_commits_total" in response.text

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_storage_cleanup_and_sweeps(self, client):
        _commit(client)

        stats = client.get(f"{API}/assets/{ASSET_ID}/storage").json()
        assert stats["total_versions"] == 1
        assert stats["branch_count"] == 1

        cleanup = client.post(f"{API}/assets/{ASSET_ID}/cleanup", json={"retention_days": 30}).json()
        assert cleanup == {"asset_id": ASSET_ID, "deleted_versions": 0}

        sweeps = client.post(f"{API}/maintenance/approval-sweeps").json()
        assert sweeps == {"expired": 0, "auto_approved": 0}

    def test_unexpected_failure_is_hidden_behind_500(self, client, service, monkeypatch):
        async def broken(version_id):
            raise RuntimeError("disk controller on fire")

        monkeypatch.setattr(service, "get_version", broken)
        response = client.get(f"{API}/versions/{uuid4()}")

        assert response.status_code == 500
        assert response.json()["detail"] == {
            "code": "vcs.internal_error",
            "message": "An unexpected error occurred",
        }

    def test_cleanup_accepts_zero_retention(self, client):
        response = client.post(f"{API}/assets/{ASSET_ID}/cleanup", json={"retention_days": 0})

        assert response.status_code == 200
        assert response.json()["deleted_versions"] == 0

    def test_missing_service_is_503(self, settings):
        # Without entering the client the lifespan never attaches a service
        client = TestClient(create_app(settings=settings))
        response = client.get(f"{API}/versions/{uuid4()}")

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "vcs.unavailable"
