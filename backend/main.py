from fastapi import FastAPI, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List
import logging

import config
from database import get_db
import models
import schemas
from auth.dependencies import get_current_user
from encryption import EncryptionCodec
from errors import AccessDenied, RateLimited, ServiceError, Unauthenticated
from rate_limit import RateLimiter, rate_limit
from services import comments as comment_service
from services import invitations as invitation_service
from services import projects as project_service
from services import tasks as task_service
from services import users as user_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Kanban API",
    description="Multi-tenant Kanban boards with projects, tasks, comments and team collaboration",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Startup ==============

@app.on_event("startup")
async def build_shared_services():
    """
    Build the process-wide codec and rate limiter.

    The encryption key is validated here so a misconfigured deployment fails
    at boot instead of on the first write.
    """
    app.state.codec = EncryptionCodec.from_hex(config.ENCRYPTION_KEY, config.ENCRYPTION_KDF_ITERATIONS)
    app.state.rate_limiter = RateLimiter.from_settings(
        config.RATE_LIMITS, config.RATE_LIMIT_STORAGE_URI
    )
    logger.info(
        f"Started in {config.ENVIRONMENT} mode with rate limits: "
        + ", ".join(f"{name}={limit[0]}/{limit[1]}s" for name, limit in config.RATE_LIMITS.items())
    )


def get_codec(request: Request) -> EncryptionCodec:
    return request.app.state.codec


# ============== Error handling ==============

@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, exc: ServiceError):
    if isinstance(exc, AccessDenied) and exc.role == "none":
        # No relationship to the project: indistinguishable from a missing one
        return JSONResponse(status_code=404, content={"detail": "Project not found"})

    headers = {}
    if isinstance(exc, Unauthenticated):
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()), headers=headers)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    logger.info(f"Invalid request to {request.url.path}: {exc.errors()}")
    errors = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": errors})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ============== Health ==============

@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============== Users ==============

@app.get("/api/users/me", response_model=schemas.User)
def get_me(current_user: models.User = Depends(get_current_user)):
    """Get the profile of the authenticated user."""
    return current_user


@app.patch("/api/users/me", response_model=schemas.User)
def update_me(
    profile: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update the caller's display name. Email always comes from the token claims."""
    return user_service.update_profile(db, current_user, profile.model_dump(exclude_unset=True))


@app.get("/api/users/me/invitations", response_model=List[schemas.ReceivedInvitation])
def list_my_invitations(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """List pending invitations addressed to the caller."""
    return invitation_service.list_received_invitations(db, current_user, codec)


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.Project])
def list_projects(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """List projects the caller owns or collaborates on, with their role in each."""
    logger.debug(f"User {current_user.id} listing projects")
    return project_service.list_projects(db, current_user, codec)


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    _: None = Depends(rate_limit("projects")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Create a project owned by the caller."""
    return project_service.create_project(db, current_user, project.model_dump(), codec)


@app.get("/api/projects/{project_id}", response_model=schemas.Project)
def get_project(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Get a project (requires read access)."""
    return project_service.get_project(db, current_user, project_id, codec)


@app.patch("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(
    project_id: int,
    project_update: schemas.ProjectUpdate,
    _: None = Depends(rate_limit("projects")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Update project settings (owner only)."""
    return project_service.update_project(
        db, current_user, project_id, project_update.model_dump(exclude_unset=True), codec
    )


@app.delete("/api/projects/{project_id}", response_model=schemas.Message)
def delete_project(
    project_id: int,
    _: None = Depends(rate_limit("projects")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a project with all its tasks and team data (owner only)."""
    project_service.delete_project(db, current_user, project_id)
    return {"message": "Project deleted"}


# ============== Tasks ==============

@app.get("/api/projects/{project_id}/tasks", response_model=List[schemas.Task])
def list_project_tasks(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """List a project's tasks in board order (requires read access)."""
    return task_service.list_tasks(db, current_user, project_id, codec)


@app.post("/api/projects/{project_id}/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    project_id: int,
    task: schemas.TaskCreate,
    _: None = Depends(rate_limit("tasks")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Create a task (requires write access)."""
    return task_service.create_task(db, current_user, project_id, task.model_dump(), codec)


@app.put("/api/projects/{project_id}/tasks/reorder", response_model=List[schemas.Task])
def reorder_tasks(
    project_id: int,
    reorder: schemas.TaskReorder,
    _: None = Depends(rate_limit("bulk")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Move tasks to new positions in one transaction (requires write access)."""
    return task_service.reorder_tasks(
        db, current_user, project_id, [item.model_dump() for item in reorder.tasks], codec
    )


@app.put("/api/projects/{project_id}/tasks/bulk", response_model=List[schemas.Task])
def bulk_update_tasks(
    project_id: int,
    bulk_update: schemas.BulkTaskUpdate,
    _: None = Depends(rate_limit("bulk")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """
    Set status and/or priority on many tasks with all-or-nothing semantics.

    If any id does not belong to the project, nothing is changed and the
    missing ids are reported.
    """
    return task_service.bulk_update_tasks(
        db, current_user, project_id, bulk_update.task_ids,
        bulk_update.updates.model_dump(exclude_unset=True), codec
    )


@app.post("/api/projects/{project_id}/tasks/bulk-delete", response_model=schemas.BulkDeleteResult)
def bulk_delete_tasks(
    project_id: int,
    bulk_delete: schemas.BulkTaskDelete,
    _: None = Depends(rate_limit("bulk")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete many tasks of a project with all-or-nothing semantics."""
    task_ids = list(dict.fromkeys(bulk_delete.task_ids))
    deleted = task_service.bulk_delete_tasks(db, current_user, project_id, task_ids)
    return schemas.BulkDeleteResult(success=True, deleted_count=deleted, deleted_task_ids=task_ids)


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Get a task (requires read access to its project)."""
    return task_service.get_task(db, current_user, task_id, codec)


@app.patch("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    _: None = Depends(rate_limit("tasks")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """
    Update a task (requires write access).

    Send expected_version to guard against lost updates: if the task has
    changed since that version, the response is 409 with the current task
    and who last changed it.
    """
    patch = task_update.model_dump(exclude_unset=True)
    expected_version = patch.pop("expected_version", None)
    return task_service.update_task(db, current_user, task_id, patch, codec, expected_version=expected_version)


@app.patch("/api/tasks/{task_id}/priority", response_model=schemas.Task)
def update_task_priority(
    task_id: int,
    priority_update: schemas.TaskPriorityUpdate,
    _: None = Depends(rate_limit("tasks")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    codec: EncryptionCodec = Depends(get_codec)
):
    """Change only the priority of a task (requires write access)."""
    return task_service.update_task_priority(
        db, current_user, task_id, priority_update.priority, codec,
        expected_version=priority_update.expected_version
    )


@app.delete("/api/tasks/{task_id}", response_model=schemas.Message)
def delete_task(
    task_id: int,
    _: None = Depends(rate_limit("tasks")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a task (requires write access)."""
    task_service.delete_task(db, current_user, task_id)
    return {"message": "Task deleted"}


# ============== Comments ==============

@app.get("/api/tasks/{task_id}/comments", response_model=List[schemas.Comment])
def list_comments(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List comments for a task (requires read access)."""
    return comment_service.list_comments(db, current_user, task_id)


@app.post("/api/tasks/{task_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a comment on a task (requires write access)."""
    return comment_service.create_comment(db, current_user, task_id, comment.content)


@app.patch("/api/comments/{comment_id}", response_model=schemas.Comment)
def update_comment(
    comment_id: int,
    comment_update: schemas.CommentUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit a comment (author only)."""
    return comment_service.update_comment(db, current_user, comment_id, comment_update.content)


@app.delete("/api/comments/{comment_id}", response_model=schemas.Message)
def delete_comment(
    comment_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a comment (author or project owner)."""
    comment_service.delete_comment(db, current_user, comment_id)
    return {"message": "Comment deleted"}


# ============== Invitations ==============

@app.post(
    "/api/projects/{project_id}/invitations",
    response_model=schemas.Invitation,
    status_code=status.HTTP_201_CREATED
)
def create_invitation(
    project_id: int,
    invitation: schemas.InvitationCreate,
    _: None = Depends(rate_limit("invitations")),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Invite someone to the project by email (owner only)."""
    return invitation_service.create_invitation(
        db, current_user, project_id, invitation.email, invitation.role
    )


@app.get("/api/projects/{project_id}/invitations", response_model=List[schemas.Invitation])
def list_project_invitations(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the project's pending invitations (owner only)."""
    return invitation_service.list_project_invitations(db, current_user, project_id)


@app.post("/api/invitations/{token}/accept", response_model=schemas.InvitationAccepted)
def accept_invitation(
    token: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Join a project through an invitation addressed to the caller."""
    return invitation_service.accept_invitation(db, current_user, token)


@app.delete("/api/invitations/{invitation_id}", response_model=schemas.Message)
def decline_invitation(
    invitation_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Decline a pending invitation addressed to the caller."""
    invitation_service.decline_invitation(db, current_user, invitation_id)
    return {"message": "Invitation declined"}


# ============== Team ==============

@app.get("/api/projects/{project_id}/collaborators", response_model=List[schemas.TeamMember])
def list_collaborators(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the project team, owner first (requires read access)."""
    return invitation_service.list_collaborators(db, current_user, project_id)


@app.delete("/api/projects/{project_id}/collaborators/{user_id}", response_model=schemas.Message)
def remove_collaborator(
    project_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a member from the project (owner only)."""
    invitation_service.remove_collaborator(db, current_user, project_id, user_id)
    return {"message": "Team member removed"}


@app.put("/api/projects/{project_id}/collaborators/{user_id}/role", response_model=schemas.TeamMember)
def update_collaborator_role(
    project_id: int,
    user_id: int,
    role_update: schemas.MemberRoleUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Change a member's role (owner only)."""
    return invitation_service.update_collaborator_role(db, current_user, project_id, user_id, role_update.role)
