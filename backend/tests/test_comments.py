"""
Tests for task comments.

Reading follows project read access, writing needs write access, editing is
author-only and deleting is allowed for the author or the project owner.
"""

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


@pytest.fixture
def editor_comment(test_db: Session, task: models.Task, editor_user: models.User) -> models.TaskComment:
    comment = models.TaskComment(task_id=task.id, user_id=editor_user.id, content="Needs a changelog section")
    test_db.add(comment)
    test_db.commit()
    test_db.refresh(comment)
    return comment


def test_editor_comments_and_everyone_reads(
    client: TestClient, task: models.Task, editor_user: models.User, editor_headers, viewer_headers
):
    created = client.post(f"/api/tasks/{task.id}/comments", json={"content": "On it"}, headers=editor_headers)

    assert created.status_code == 201, created.json()
    assert created.json()["user_id"] == editor_user.id
    assert created.json()["author"]["email"] == editor_user.email

    listed = client.get(f"/api/tasks/{task.id}/comments", headers=viewer_headers)
    assert listed.status_code == 200
    assert [c["content"] for c in listed.json()] == ["On it"]


def test_comments_listed_oldest_first(client: TestClient, task: models.Task, owner_headers):
    for content in ("first", "second", "third"):
        client.post(f"/api/tasks/{task.id}/comments", json={"content": content}, headers=owner_headers)

    listed = client.get(f"/api/tasks/{task.id}/comments", headers=owner_headers).json()
    assert [c["content"] for c in listed] == ["first", "second", "third"]


def test_viewer_cannot_comment(client: TestClient, task: models.Task, viewer_headers):
    response = client.post(f"/api/tasks/{task.id}/comments", json={"content": "hi"}, headers=viewer_headers)
    assert response.status_code == 403


def test_outsider_cannot_read_comments(client: TestClient, task: models.Task, outsider_headers):
    assert client.get(f"/api/tasks/{task.id}/comments", headers=outsider_headers).status_code == 404


def test_empty_comment_is_rejected(client: TestClient, task: models.Task, owner_headers):
    response = client.post(f"/api/tasks/{task.id}/comments", json={"content": ""}, headers=owner_headers)
    assert response.status_code == 400


def test_author_edits_comment(client: TestClient, editor_comment: models.TaskComment, editor_headers):
    response = client.patch(
        f"/api/comments/{editor_comment.id}",
        json={"content": "Added the changelog"},
        headers=editor_headers,
    )

    assert response.status_code == 200, response.json()
    assert response.json()["content"] == "Added the changelog"


def test_owner_cannot_edit_someone_elses_comment(
    client: TestClient, editor_comment: models.TaskComment, owner_headers
):
    response = client.patch(f"/api/comments/{editor_comment.id}", json={"content": "edited"}, headers=owner_headers)
    assert response.status_code == 403


def test_owner_deletes_any_comment(
    client: TestClient, test_db: Session, editor_comment: models.TaskComment, owner_headers
):
    comment_id = editor_comment.id

    response = client.delete(f"/api/comments/{comment_id}", headers=owner_headers)

    assert response.status_code == 200
    assert test_db.query(models.TaskComment).filter(models.TaskComment.id == comment_id).count() == 0


def test_editor_cannot_delete_others_comment(
    client: TestClient,
    test_db: Session,
    task: models.Task,
    owner_user: models.User,
    editor_headers,
):
    owner_comment = models.TaskComment(task_id=task.id, user_id=owner_user.id, content="Owner's note")
    test_db.add(owner_comment)
    test_db.commit()

    response = client.delete(f"/api/comments/{owner_comment.id}", headers=editor_headers)
    assert response.status_code == 403


def test_author_deletes_own_comment(client: TestClient, editor_comment: models.TaskComment, editor_headers):
    assert client.delete(f"/api/comments/{editor_comment.id}", headers=editor_headers).status_code == 200


def test_removed_collaborator_loses_comment_rights(
    client: TestClient,
    test_db: Session,
    editor_comment: models.TaskComment,
    editor_user: models.User,
    editor_headers,
):
    test_db.query(models.ProjectCollaborator).filter(
        models.ProjectCollaborator.user_id == editor_user.id
    ).delete()
    test_db.commit()

    response = client.patch(f"/api/comments/{editor_comment.id}", json={"content": "still mine?"}, headers=editor_headers)
    assert response.status_code == 404


def test_missing_comment_is_404(client: TestClient, owner_headers):
    assert client.delete("/api/comments/9999", headers=owner_headers).status_code == 404
