"""
Project repository: CRUD over projects with name/description encryption.

Access is always checked through auth.permissions before a project is read
or changed. Returned dictionaries carry decrypted fields plus the caller's
role so the HTTP layer never touches envelopes.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

import models
from auth.permissions import (
    Permission,
    ProjectRole,
    authorize_project,
    list_accessible_projects,
    require_project_owner,
)
from encryption import PROJECT_FIELDS, EncryptionCodec
from errors import ValidationError
from time_utils import utc_now

logger = logging.getLogger(__name__)


def project_to_dict(project: models.Project, codec: EncryptionCodec, role: ProjectRole) -> Dict[str, Any]:
    decoded = PROJECT_FIELDS.load(project, codec)
    return {
        "id": project.id,
        "name": decoded["name"],
        "description": decoded["description"],
        "owner_user_id": project.owner_user_id,
        "role": role.value,
        "can_write": role in (ProjectRole.owner, ProjectRole.editor),
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }


def list_projects(db: Session, user: models.User, codec: EncryptionCodec) -> List[Dict[str, Any]]:
    """All projects the user owns or collaborates on, most recently updated first."""
    return [
        project_to_dict(project, codec, access.role)
        for project, access in list_accessible_projects(user.id, db)
    ]


def create_project(db: Session, user: models.User, values: Dict[str, Any], codec: EncryptionCodec) -> Dict[str, Any]:
    """
    Create a project owned by the caller.

    Args:
        db: Database session
        user: The creating (and owning) user
        values: {"name": ..., "description": ...}
        codec: Field encryption codec

    Returns:
        Project dictionary with role "owner"
    """
    logger.debug(f"User {user.id} creating project")

    if not (values.get("name") or "").strip():
        raise ValidationError("Project name is required")

    project = models.Project(owner_user_id=user.id)
    PROJECT_FIELDS.store(project, {
        "name": values["name"],
        "description": values.get("description"),
    }, codec)

    db.add(project)
    db.commit()
    db.refresh(project)

    logger.info(f"Project {project.id} created by user {user.id}")
    return project_to_dict(project, codec, ProjectRole.owner)


def get_project(db: Session, user: models.User, project_id: int, codec: EncryptionCodec) -> Dict[str, Any]:
    project, role = authorize_project(user.id, project_id, Permission.read, db)
    return project_to_dict(project, codec, role)


def update_project(
    db: Session, user: models.User, project_id: int, changes: Dict[str, Any], codec: EncryptionCodec
) -> Dict[str, Any]:
    """Owner-only partial update of name/description."""
    logger.debug(f"User {user.id} updating project {project_id}: {sorted(changes)}")

    project = require_project_owner(user.id, project_id, db, action="update project settings")

    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("Project name cannot be empty")

    PROJECT_FIELDS.store(project, {
        key: value for key, value in changes.items() if key in PROJECT_FIELDS
    }, codec)
    project.updated_at = utc_now()

    db.commit()
    db.refresh(project)

    logger.info(f"Project {project_id} updated by user {user.id}")
    return project_to_dict(project, codec, ProjectRole.owner)


def delete_project(db: Session, user: models.User, project_id: int) -> None:
    """Owner-only delete; tasks, comments, collaborators and invitations go with it."""
    project = require_project_owner(user.id, project_id, db, action="delete this project")

    db.delete(project)
    db.commit()

    logger.info(f"Project {project_id} deleted by user {user.id}")
