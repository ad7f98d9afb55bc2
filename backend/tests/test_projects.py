"""
Tests for project endpoints and the access control evaluator.

Tests cover:
- Effective role resolution (owner / editor / viewer / none)
- Opaque 404 for users without access
- Owner-only settings and deletion
- Project listing with role annotations
"""

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.permissions import (
    Permission,
    ProjectRole,
    authorize_project,
    evaluate_project_access,
    require_project_owner,
)
from errors import AccessDenied, NotFound

logger = logging.getLogger(__name__)


# ============== Access evaluation ==============


def test_effective_roles(
    test_db: Session,
    team_project: models.Project,
    owner_user: models.User,
    editor_user: models.User,
    viewer_user: models.User,
    outsider_user: models.User,
):
    """Every user has exactly one effective role, and only owner/editor can write."""
    expected = {
        owner_user.id: (ProjectRole.owner, True),
        editor_user.id: (ProjectRole.editor, True),
        viewer_user.id: (ProjectRole.viewer, False),
        outsider_user.id: (ProjectRole.none, False),
    }
    for user_id, (role, can_write) in expected.items():
        access = evaluate_project_access(user_id, team_project.id, test_db)
        assert access.role == role
        assert access.can_write is can_write
        assert access.can_read is (role != ProjectRole.none)


def test_missing_project_has_no_access(test_db: Session, owner_user: models.User):
    assert evaluate_project_access(owner_user.id, 9999, test_db).role == ProjectRole.none


def test_authorize_distinguishes_missing_from_denied(
    test_db: Session, team_project: models.Project, outsider_user: models.User, viewer_user: models.User
):
    with pytest.raises(NotFound):
        authorize_project(outsider_user.id, 9999, Permission.read, test_db)

    with pytest.raises(AccessDenied) as no_role:
        authorize_project(outsider_user.id, team_project.id, Permission.read, test_db)
    assert no_role.value.role == "none"

    with pytest.raises(AccessDenied) as read_only:
        authorize_project(viewer_user.id, team_project.id, Permission.write, test_db)
    assert read_only.value.role == "viewer"


def test_require_owner_rejects_editor(test_db: Session, team_project: models.Project, editor_user: models.User):
    with pytest.raises(AccessDenied) as denied:
        require_project_owner(editor_user.id, team_project.id, test_db)
    assert denied.value.role == "editor"


# ============== HTTP ==============


def test_create_and_get_project(client: TestClient, owner_headers, owner_user: models.User):
    response = client.post("/api/projects", json={"name": "Website"}, headers=owner_headers)

    assert response.status_code == 201, response.json()
    created = response.json()
    assert created["name"] == "Website"
    assert created["description"] is None
    assert created["owner_user_id"] == owner_user.id
    assert created["role"] == "owner"
    assert created["can_write"] is True

    response = client.get(f"/api/projects/{created['id']}", headers=owner_headers)
    assert response.status_code == 200
    assert response.json()["name"] == "Website"


@pytest.mark.parametrize("payload", [{}, {"name": ""}, {"name": "x" * 101}, {"name": "ok", "description": "d" * 501}])
def test_create_project_validation(client: TestClient, owner_headers, payload):
    response = client.post("/api/projects", json=payload, headers=owner_headers)
    assert response.status_code == 400


def test_outsider_gets_same_404_as_missing_project(
    client: TestClient, project: models.Project, outsider_headers
):
    """A project the caller cannot see is indistinguishable from one that does not exist."""
    hidden = client.get(f"/api/projects/{project.id}", headers=outsider_headers)
    missing = client.get("/api/projects/9999", headers=outsider_headers)

    assert hidden.status_code == 404
    assert missing.status_code == 404
    assert hidden.json() == missing.json()


def test_collaborators_can_read(client: TestClient, team_project: models.Project, editor_headers, viewer_headers):
    editor_view = client.get(f"/api/projects/{team_project.id}", headers=editor_headers)
    viewer_view = client.get(f"/api/projects/{team_project.id}", headers=viewer_headers)

    assert editor_view.status_code == 200
    assert editor_view.json()["role"] == "editor"
    assert editor_view.json()["can_write"] is True
    assert viewer_view.json()["role"] == "viewer"
    assert viewer_view.json()["can_write"] is False
    assert viewer_view.json()["name"] == "Launch Board"


def test_owner_updates_project(client: TestClient, project: models.Project, owner_headers):
    response = client.patch(
        f"/api/projects/{project.id}",
        json={"description": "New plan"},
        headers=owner_headers,
    )

    assert response.status_code == 200, response.json()
    assert response.json()["name"] == "Launch Board"
    assert response.json()["description"] == "New plan"


def test_update_project_rejects_null_name(client: TestClient, project: models.Project, owner_headers):
    response = client.patch(f"/api/projects/{project.id}", json={"name": None}, headers=owner_headers)
    assert response.status_code == 400


@pytest.mark.parametrize("headers_fixture", ["editor_headers", "viewer_headers"])
def test_only_owner_updates_or_deletes(
    client: TestClient, team_project: models.Project, headers_fixture, request
):
    headers = request.getfixturevalue(headers_fixture)

    update = client.patch(f"/api/projects/{team_project.id}", json={"name": "Hijacked"}, headers=headers)
    delete = client.delete(f"/api/projects/{team_project.id}", headers=headers)

    assert update.status_code == 403
    assert delete.status_code == 403


def test_owner_deletes_project_with_tasks_and_team(
    client: TestClient,
    test_db: Session,
    team_project: models.Project,
    task: models.Task,
    owner_headers,
):
    project_id = team_project.id

    response = client.delete(f"/api/projects/{project_id}", headers=owner_headers)

    assert response.status_code == 200
    assert test_db.query(models.Project).filter(models.Project.id == project_id).count() == 0
    assert test_db.query(models.Task).filter(models.Task.project_id == project_id).count() == 0
    assert test_db.query(models.ProjectCollaborator).filter(
        models.ProjectCollaborator.project_id == project_id
    ).count() == 0


def test_list_projects_includes_owned_and_shared(
    client: TestClient,
    team_project: models.Project,
    editor_user: models.User,
    editor_headers,
):
    own = client.post("/api/projects", json={"name": "Editor's own"}, headers=editor_headers).json()

    response = client.get("/api/projects", headers=editor_headers)

    assert response.status_code == 200
    listed = {item["id"]: item for item in response.json()}
    assert set(listed) == {own["id"], team_project.id}
    assert listed[own["id"]]["role"] == "owner"
    assert listed[team_project.id]["role"] == "editor"
    # Most recently updated first
    assert response.json()[0]["id"] == own["id"]


def test_list_projects_hides_unrelated_projects(
    client: TestClient, test_db: Session, project: models.Project, outsider_headers
):
    response = client.get("/api/projects", headers=outsider_headers)

    assert response.status_code == 200
    assert response.json() == []
