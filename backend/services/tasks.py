"""
Task repository and the optimistic-concurrency update protocol.

Every successful write to a task increments its `version` and stamps
`updated_by`. A writer that sends the version it last saw gets its change
applied only if nobody else wrote in between; otherwise it receives a
VersionConflict describing the current state of the task, and nothing is
changed. The check and the increment happen in a single conditional UPDATE,
so two writers holding the same version can never both succeed.

Bulk operations (bulk update, reorder, bulk delete) are all-or-nothing: the
whole id set is validated against the project first, and a mismatch at write
time rolls the transaction back.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

import config
import models
from auth.permissions import Permission, authorize_project
from encryption import TASK_FIELDS, EncryptionCodec
from errors import BatchNotFound, NotFound, ValidationError, VersionConflict
from time_utils import utc_now

logger = logging.getLogger(__name__)

# Fields that may not be cleared with an explicit null
NON_NULLABLE_FIELDS = ("title", "status", "priority", "position")

UPDATABLE_FIELDS = ("title", "description", "status", "priority", "position", "custom_fields")

BULK_UPDATABLE_FIELDS = ("status", "priority")


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def user_summary(user: Optional[models.User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "email": user.email, "name": user.name}


def task_to_dict(task: models.Task, codec: EncryptionCodec) -> Dict[str, Any]:
    decoded = TASK_FIELDS.load(task, codec)
    return {
        "id": task.id,
        "project_id": task.project_id,
        "title": decoded["title"],
        "description": decoded["description"],
        "status": _enum_value(task.status),
        "priority": _enum_value(task.priority),
        "position": task.position,
        "custom_fields": task.custom_fields,
        "version": task.version,
        "updated_by": task.updated_by,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def _load_task(db: Session, task_id: int) -> models.Task:
    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        logger.info(f"Task {task_id} not found")
        raise NotFound("Task not found")
    return task


def _validate_patch(patch: Dict[str, Any]) -> None:
    for field in NON_NULLABLE_FIELDS:
        if field in patch and patch[field] is None:
            raise ValidationError(f"Field '{field}' cannot be null")

    if "title" in patch and not patch["title"].strip():
        raise ValidationError("Task title cannot be empty")

    if "position" in patch and patch["position"] < 0:
        raise ValidationError("Task position must be >= 0")

    unknown = set(patch) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown task field(s): {sorted(unknown)}")


# ============== Reads ==============

def list_tasks(db: Session, user: models.User, project_id: int, codec: EncryptionCodec) -> List[Dict[str, Any]]:
    """Tasks of a project in board order (position, then insertion order)."""
    authorize_project(user.id, project_id, Permission.read, db)

    tasks = db.query(models.Task)\
        .filter(models.Task.project_id == project_id)\
        .order_by(models.Task.position.asc(), models.Task.id.asc())\
        .all()

    logger.debug(f"Listing {len(tasks)} tasks of project {project_id} for user {user.id}")
    return [task_to_dict(task, codec) for task in tasks]


def get_task(db: Session, user: models.User, task_id: int, codec: EncryptionCodec) -> Dict[str, Any]:
    task = _load_task(db, task_id)
    authorize_project(user.id, task.project_id, Permission.read, db)
    return task_to_dict(task, codec)


# ============== Single-task writes ==============

def create_task(
    db: Session, user: models.User, project_id: int, values: Dict[str, Any], codec: EncryptionCodec
) -> Dict[str, Any]:
    """
    Create a task in a project (requires write access).

    When no position is given the task is appended at the end of the board.
    The new task starts at version 1, attributed to the creator.
    """
    logger.debug(f"User {user.id} creating task in project {project_id}")

    authorize_project(user.id, project_id, Permission.write, db)

    values = {key: value for key, value in values.items() if value is not None}
    _validate_patch(values)
    if "title" not in values:
        raise ValidationError("Task title is required")

    if "position" not in values:
        max_position = db.query(func.max(models.Task.position))\
            .filter(models.Task.project_id == project_id)\
            .scalar()
        values["position"] = 0 if max_position is None else max_position + 1

    task = models.Task(
        project_id=project_id,
        status=models.TaskStatus.not_started,
        priority=models.TaskPriority.none,
        version=1,
        updated_by=user.id,
    )
    TASK_FIELDS.store(task, values, codec)

    db.add(task)
    db.commit()
    db.refresh(task)

    logger.info(f"Task {task.id} created in project {project_id} by user {user.id}")
    return task_to_dict(task, codec)


def update_task(
    db: Session,
    user: models.User,
    task_id: int,
    patch: Dict[str, Any],
    codec: EncryptionCodec,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Apply a partial update to a task.

    Args:
        db: Database session
        user: The writing user (requires write access to the task's project)
        task_id: ID of the task
        patch: Fields to change; absent fields are untouched, an explicit None
            clears description/custom_fields
        codec: Field encryption codec
        expected_version: Version the caller last saw. When given, the update
            only applies if the task is still at that version.

    Returns:
        The updated task

    Raises:
        NotFound: the task does not exist (or vanished during the update)
        AccessDenied: the user cannot write to the project
        ValidationError: the patch nulls a required field
        VersionConflict: expected_version is stale
    """
    logger.debug(
        f"User {user.id} updating task {task_id} (expected version {expected_version}): {sorted(patch)}"
    )

    task = _load_task(db, task_id)
    authorize_project(user.id, task.project_id, Permission.write, db)
    _validate_patch(patch)
    if not patch:
        raise ValidationError("No fields to update")

    values = TASK_FIELDS.encode_values(patch, codec)
    values.update(
        version=models.Task.version + 1,
        updated_by=user.id,
        updated_at=utc_now(),
    )

    stmt = update(models.Task).where(models.Task.id == task_id)
    if expected_version is not None:
        stmt = stmt.where(models.Task.version == expected_version)

    result = db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        db.rollback()
        current = db.query(models.Task).filter(models.Task.id == task_id).first()
        if current is None:
            logger.info(f"Task {task_id} was deleted during update")
            raise NotFound("Task not found")

        logger.info(
            f"Version conflict on task {task_id}: expected {expected_version}, "
            f"current {current.version} (last updated by {current.updated_by})"
        )
        raise VersionConflict(
            task_id=task_id,
            expected_version=expected_version,
            current_version=current.version,
            last_updated_by=user_summary(current.last_editor),
            current_task=task_to_dict(current, codec),
        )

    db.commit()
    db.refresh(task)

    logger.info(f"Task {task_id} updated to version {task.version} by user {user.id}")
    return task_to_dict(task, codec)


def update_task_priority(
    db: Session,
    user: models.User,
    task_id: int,
    priority: models.TaskPriority,
    codec: EncryptionCodec,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    return update_task(db, user, task_id, {"priority": priority}, codec, expected_version=expected_version)


def delete_task(db: Session, user: models.User, task_id: int) -> None:
    """Delete a task and its comments (requires write access)."""
    task = _load_task(db, task_id)
    authorize_project(user.id, task.project_id, Permission.write, db)

    db.delete(task)
    db.commit()

    logger.info(f"Task {task_id} deleted by user {user.id}")


# ============== Bulk operations ==============

def _normalize_ids(task_ids: Iterable[int]) -> List[int]:
    # De-duplicate (preserves order)
    unique_ids = list(dict.fromkeys(task_ids))
    if len(unique_ids) > config.MAX_BULK_TASKS:
        logger.info(f"Batch size {len(unique_ids)} exceeds limit of {config.MAX_BULK_TASKS}")
        raise ValidationError(f"Maximum {config.MAX_BULK_TASKS} tasks per bulk operation")
    return unique_ids


def _load_batch(db: Session, project_id: int, task_ids: List[int]) -> Dict[int, models.Task]:
    tasks = db.query(models.Task)\
        .filter(models.Task.project_id == project_id, models.Task.id.in_(task_ids))\
        .all()
    found = {task.id: task for task in tasks}

    missing = [task_id for task_id in task_ids if task_id not in found]
    if missing:
        logger.info(f"Bulk operation on project {project_id} rejected, missing tasks: {missing}")
        raise BatchNotFound(missing)
    return found


def _abort_batch(db: Session, project_id: int, expected: int, affected: int) -> None:
    db.rollback()
    logger.warning(
        f"Bulk write on project {project_id} affected {affected} of {expected} tasks, rolled back"
    )
    raise NotFound("One or more tasks were removed during the operation")


def bulk_update_tasks(
    db: Session,
    user: models.User,
    project_id: int,
    task_ids: List[int],
    updates: Dict[str, Any],
    codec: EncryptionCodec,
) -> List[Dict[str, Any]]:
    """
    Set status and/or priority on a set of tasks of one project.

    All tasks must exist in the project or nothing is changed. Each touched
    task gets version + 1 and is attributed to the caller.
    """
    logger.info(f"User {user.id} bulk updating {len(task_ids)} tasks in project {project_id}")

    authorize_project(user.id, project_id, Permission.write, db)
    task_ids = _normalize_ids(task_ids)

    updates = {key: value for key, value in updates.items() if value is not None}
    unknown = set(updates) - set(BULK_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Bulk update only supports {', '.join(BULK_UPDATABLE_FIELDS)}")
    if not task_ids or not updates:
        logger.info("Nothing to update in bulk request")
        return []

    _load_batch(db, project_id, task_ids)

    result = db.execute(
        update(models.Task)
        .where(models.Task.project_id == project_id, models.Task.id.in_(task_ids))
        .values(
            **updates,
            version=models.Task.version + 1,
            updated_by=user.id,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(task_ids):
        _abort_batch(db, project_id, len(task_ids), result.rowcount)

    db.commit()

    tasks = _load_batch(db, project_id, task_ids)
    logger.info(f"Bulk updated {len(task_ids)} tasks in project {project_id}")
    return [task_to_dict(tasks[task_id], codec) for task_id in task_ids]


def reorder_tasks(
    db: Session,
    user: models.User,
    project_id: int,
    positions: List[Dict[str, int]],
    codec: EncryptionCodec,
) -> List[Dict[str, Any]]:
    """
    Assign new positions to tasks of one project in a single transaction.

    Args:
        positions: [{"id": task_id, "position": new_position}, ...]; when an
            id appears more than once the last position wins

    Returns:
        The project's tasks in their new board order
    """
    logger.info(f"User {user.id} reordering {len(positions)} tasks in project {project_id}")

    authorize_project(user.id, project_id, Permission.write, db)

    new_positions: Dict[int, int] = {}
    for item in positions:
        if item["position"] < 0:
            raise ValidationError("Task position must be >= 0")
        new_positions[item["id"]] = item["position"]

    task_ids = _normalize_ids(new_positions)
    if task_ids:
        _load_batch(db, project_id, task_ids)

        now = utc_now()
        for task_id in task_ids:
            result = db.execute(
                update(models.Task)
                .where(models.Task.id == task_id, models.Task.project_id == project_id)
                .values(
                    position=new_positions[task_id],
                    version=models.Task.version + 1,
                    updated_by=user.id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                _abort_batch(db, project_id, len(task_ids), result.rowcount)

        db.commit()

    return list_tasks(db, user, project_id, codec)


def bulk_delete_tasks(db: Session, user: models.User, project_id: int, task_ids: List[int]) -> int:
    """
    Delete a set of tasks of one project (with their comments).

    Returns:
        Number of tasks deleted
    """
    logger.info(f"User {user.id} bulk deleting {len(task_ids)} tasks in project {project_id}")

    authorize_project(user.id, project_id, Permission.write, db)
    task_ids = _normalize_ids(task_ids)
    if not task_ids:
        return 0

    tasks = _load_batch(db, project_id, task_ids)
    for task in tasks.values():
        db.delete(task)
    db.flush()

    remaining = db.query(func.count(models.Task.id))\
        .filter(models.Task.id.in_(task_ids))\
        .scalar()
    if remaining:
        _abort_batch(db, project_id, len(task_ids), len(task_ids) - remaining)

    db.commit()

    logger.info(f"Bulk deleted {len(task_ids)} tasks in project {project_id}")
    return len(task_ids)
