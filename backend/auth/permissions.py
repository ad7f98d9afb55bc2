"""
Project-level permission checking.

A user's effective role on a project is exactly one of:
- owner: the user is Project.owner_user_id (checked first, short-circuits)
- editor / viewer: the user has a ProjectCollaborator row with that role
- none: neither of the above

Only owners and editors can write. Project settings, deletion and team
management are reserved to the owner.
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Tuple

from sqlalchemy.orm import Session

from models import Project, ProjectCollaborator, TaskComment
from errors import AccessDenied, NotFound

logger = logging.getLogger(__name__)


class ProjectRole(str, enum.Enum):
    owner = "owner"
    editor = "editor"
    viewer = "viewer"
    none = "none"


class Permission(str, enum.Enum):
    read = "read"
    write = "write"


@dataclass(frozen=True)
class ProjectAccess:
    role: ProjectRole
    can_write: bool

    @property
    def can_read(self) -> bool:
        return self.role != ProjectRole.none


NO_ACCESS = ProjectAccess(role=ProjectRole.none, can_write=False)


def _access_for(project: Project, user_id: int, db: Session) -> ProjectAccess:
    if project.owner_user_id == user_id:
        return ProjectAccess(role=ProjectRole.owner, can_write=True)

    collaborator = (
        db.query(ProjectCollaborator)
        .filter(
            ProjectCollaborator.project_id == project.id,
            ProjectCollaborator.user_id == user_id,
        )
        .first()
    )
    if collaborator is None:
        return NO_ACCESS

    role = ProjectRole(collaborator.role)
    return ProjectAccess(role=role, can_write=role == ProjectRole.editor)


def evaluate_project_access(user_id: int, project_id: int, db: Session) -> ProjectAccess:
    """
    Compute a user's effective role and write capability on a project.

    Args:
        user_id: ID of the user
        project_id: ID of the project
        db: Database session

    Returns:
        ProjectAccess; role "none" if the project does not exist or the user
        has no relationship to it

    Example:
        >>> access = evaluate_project_access(user.id, 42, db)
        >>> access.role, access.can_write
        (<ProjectRole.editor: 'editor'>, True)
    """
    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        return NO_ACCESS
    return _access_for(project, user_id, db)


def authorize_project(
    user_id: int, project_id: int, permission: Permission, db: Session
) -> Tuple[Project, ProjectRole]:
    """
    Require a permission on a project, or raise.

    Args:
        user_id: ID of the user
        project_id: ID of the project
        permission: Permission.read or Permission.write
        db: Database session

    Returns:
        (project, resolved role)

    Raises:
        NotFound: the project does not exist
        AccessDenied: the user's role does not grant the permission (role
            "none" included; the HTTP layer renders that case as 404 so
            project existence is not leaked)
    """
    logger.debug(f"Requiring {permission.value} on project {project_id} for user {user_id}")

    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        logger.info(f"Project {project_id} not found")
        raise NotFound("Project not found")

    access = _access_for(project, user_id, db)

    if not access.can_read:
        logger.info(f"User {user_id} has no access to project {project_id}")
        raise AccessDenied("Project not found or access denied", role=access.role.value)

    if permission == Permission.write and not access.can_write:
        logger.info(
            f"User {user_id} has role '{access.role.value}' in project {project_id}, "
            f"but write access is required"
        )
        raise AccessDenied(
            f"Write permission required. Your role: {access.role.value}",
            role=access.role.value,
        )

    logger.debug(f"Permission check passed for user {user_id} on project {project_id}")
    return project, access.role


def require_project_owner(user_id: int, project_id: int, db: Session, action: str = "manage this project") -> Project:
    """
    Require the user to own the project.

    Raises:
        NotFound / AccessDenied as authorize_project; AccessDenied (403) for
        editors and viewers
    """
    project, role = authorize_project(user_id, project_id, Permission.read, db)
    if role != ProjectRole.owner:
        logger.info(f"User {user_id} ({role.value}) tried to {action} on project {project_id}")
        raise AccessDenied(f"Only project owners can {action}", role=role.value)
    return project


def list_accessible_projects(user_id: int, db: Session) -> List[Tuple[Project, ProjectAccess]]:
    """
    Get every project the user owns or collaborates on.

    Ownership and collaboration never overlap on a project, so the two
    sources are concatenated without de-duplication.

    Returns:
        (project, access) pairs sorted by most recent update first
    """
    logger.debug(f"Getting projects for user {user_id}")

    owned = db.query(Project).filter(Project.owner_user_id == user_id).all()

    collaborated = (
        db.query(Project, ProjectCollaborator.role)
        .join(ProjectCollaborator, ProjectCollaborator.project_id == Project.id)
        .filter(ProjectCollaborator.user_id == user_id)
        .all()
    )

    results = [(project, ProjectAccess(role=ProjectRole.owner, can_write=True)) for project in owned]
    for project, collaborator_role in collaborated:
        role = ProjectRole(collaborator_role)
        results.append((project, ProjectAccess(role=role, can_write=role == ProjectRole.editor)))

    results.sort(key=lambda pair: (pair[0].updated_at, pair[0].id), reverse=True)

    logger.debug(f"User {user_id} owns {len(owned)} and collaborates on {len(collaborated)} projects")
    return results


# ============== Comments ==============

def authorize_comment_update(user_id: int, comment: TaskComment, project_id: int, db: Session) -> None:
    """Only the author may edit a comment, whatever their project role."""
    authorize_project(user_id, project_id, Permission.read, db)

    if comment.user_id != user_id:
        logger.info(f"User {user_id} tried to edit comment {comment.id} by user {comment.user_id}")
        raise AccessDenied("You can only edit your own comments")


def authorize_comment_delete(user_id: int, comment: TaskComment, project_id: int, db: Session) -> None:
    """The author or the project owner may delete a comment. Editors may not delete others' comments."""
    _, role = authorize_project(user_id, project_id, Permission.read, db)

    if comment.user_id != user_id and role != ProjectRole.owner:
        logger.info(f"User {user_id} ({role.value}) tried to delete comment {comment.id} by user {comment.user_id}")
        raise AccessDenied("You can only delete your own comments", role=role.value)
