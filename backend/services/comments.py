"""Task comments. Reading follows project read access; writing needs project write access."""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session, joinedload

import models
from auth.permissions import (
    Permission,
    authorize_comment_delete,
    authorize_comment_update,
    authorize_project,
)
from errors import NotFound, ValidationError
from services.tasks import user_summary
from time_utils import utc_now

logger = logging.getLogger(__name__)


def comment_to_dict(comment: models.TaskComment) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "task_id": comment.task_id,
        "user_id": comment.user_id,
        "content": comment.content,
        "author": user_summary(comment.author),
        "created_at": comment.created_at,
        "updated_at": comment.updated_at,
    }


def _load_task(db: Session, task_id: int) -> models.Task:
    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise NotFound("Task not found")
    return task


def _load_comment(db: Session, comment_id: int) -> models.TaskComment:
    comment = db.query(models.TaskComment)\
        .options(joinedload(models.TaskComment.task))\
        .filter(models.TaskComment.id == comment_id)\
        .first()
    if not comment:
        raise NotFound("Comment not found")
    return comment


def _require_content(content: str) -> str:
    if content is None or not content.strip():
        raise ValidationError("Comment content cannot be empty")
    return content


def list_comments(db: Session, user: models.User, task_id: int) -> List[Dict[str, Any]]:
    """Comments of a task, oldest first."""
    logger.debug(f"User {user.id} listing comments for task {task_id}")

    task = _load_task(db, task_id)
    authorize_project(user.id, task.project_id, Permission.read, db)

    comments = db.query(models.TaskComment)\
        .options(joinedload(models.TaskComment.author))\
        .filter(models.TaskComment.task_id == task_id)\
        .order_by(models.TaskComment.created_at.asc(), models.TaskComment.id.asc())\
        .all()

    return [comment_to_dict(comment) for comment in comments]


def create_comment(db: Session, user: models.User, task_id: int, content: str) -> Dict[str, Any]:
    logger.debug(f"User {user.id} creating comment on task {task_id}")

    task = _load_task(db, task_id)
    authorize_project(user.id, task.project_id, Permission.write, db)

    # Author is always the caller
    comment = models.TaskComment(task_id=task_id, user_id=user.id, content=_require_content(content))
    db.add(comment)
    db.commit()
    db.refresh(comment)

    logger.info(f"Comment {comment.id} added to task {task_id} by user {user.id}")
    return comment_to_dict(comment)


def update_comment(db: Session, user: models.User, comment_id: int, content: str) -> Dict[str, Any]:
    logger.debug(f"User {user.id} updating comment {comment_id}")

    comment = _load_comment(db, comment_id)
    authorize_comment_update(user.id, comment, comment.task.project_id, db)

    comment.content = _require_content(content)
    comment.updated_at = utc_now()
    db.commit()
    db.refresh(comment)

    return comment_to_dict(comment)


def delete_comment(db: Session, user: models.User, comment_id: int) -> None:
    logger.debug(f"User {user.id} deleting comment {comment_id}")

    comment = _load_comment(db, comment_id)
    authorize_comment_delete(user.id, comment, comment.task.project_id, db)

    db.delete(comment)
    db.commit()

    logger.info(f"Comment {comment_id} deleted by user {user.id}")
