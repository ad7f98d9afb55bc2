"""
Invitation workflow and project team management.

An invitation moves from pending to exactly one of accepted, declined or
expired, and never leaves a terminal state. Expiry is applied lazily: every
listing, creation and acceptance first flips overdue pending invitations to
expired, so no background job is needed.

At most one pending invitation may exist per (project, email). The service
checks this up front, and the partial unique index uq_pending_invitation
catches two owners racing past the check.
"""

import logging
import secrets
from typing import Any, Dict, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

import config
import models
from auth.permissions import Permission, authorize_project, require_project_owner
from encryption import PROJECT_FIELDS, EncryptionCodec
from errors import NotFound, ValidationError
from services.tasks import user_summary
from time_utils import invitation_expiry, is_expired, utc_now

logger = logging.getLogger(__name__)

INVITABLE_ROLES = (models.CollaboratorRole.editor, models.CollaboratorRole.viewer)


def generate_invitation_token() -> str:
    """32 random bytes, hex encoded (64 characters)."""
    return secrets.token_hex(32)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _role(value) -> models.CollaboratorRole:
    try:
        role = models.CollaboratorRole(getattr(value, "value", value))
    except ValueError:
        raise ValidationError("Role must be editor or viewer") from None
    if role not in INVITABLE_ROLES:
        raise ValidationError("Role must be editor or viewer")
    return role


def sweep_expired(db: Session) -> int:
    """
    Mark every overdue pending invitation as expired.

    Runs inside the caller's transaction; the caller commits.

    Returns:
        Number of invitations expired
    """
    result = db.execute(
        update(models.ProjectInvitation)
        .where(
            models.ProjectInvitation.status == models.InvitationStatus.pending,
            models.ProjectInvitation.expires_at < utc_now(),
        )
        .values(status=models.InvitationStatus.expired)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Expired {result.rowcount} pending invitation(s)")
    return result.rowcount


def invitation_to_dict(invitation: models.ProjectInvitation) -> Dict[str, Any]:
    return {
        "id": invitation.id,
        "project_id": invitation.project_id,
        "receiver_email": invitation.receiver_email,
        "role": invitation.role.value,
        "status": invitation.status.value,
        "expires_at": invitation.expires_at,
        "created_at": invitation.created_at,
    }


def received_invitation_to_dict(invitation: models.ProjectInvitation, codec: EncryptionCodec) -> Dict[str, Any]:
    data = invitation_to_dict(invitation)
    project = PROJECT_FIELDS.load(invitation.project, codec)
    data.update(
        token=invitation.token,
        project_name=project["name"],
        project_description=project["description"],
        sender=user_summary(invitation.sender),
    )
    return data


# ============== Invitations ==============

def create_invitation(
    db: Session, user: models.User, project_id: int, email: str, role
) -> Dict[str, Any]:
    """
    Invite an email address to a project (owner only).

    Args:
        db: Database session
        user: The inviting user, who must own the project
        project_id: ID of the project
        email: Receiver address (compared case-insensitively)
        role: "editor" or "viewer"

    Returns:
        The new pending invitation

    Raises:
        ValidationError: bad role, the owner's own email, an existing
            collaborator, or an already pending invitation
    """
    logger.debug(f"User {user.id} inviting {email} to project {project_id}")

    role = _role(role)
    project = require_project_owner(user.id, project_id, db, action="invite team members")

    receiver_email = _normalize_email(email)
    if not receiver_email:
        raise ValidationError("Email is required")

    sweep_expired(db)

    if receiver_email == _normalize_email(project.owner.email):
        raise ValidationError("You cannot invite yourself to your own project")

    existing_collaborator = db.query(models.ProjectCollaborator)\
        .join(models.User, models.User.id == models.ProjectCollaborator.user_id)\
        .filter(
            models.ProjectCollaborator.project_id == project_id,
            models.User.email == receiver_email,
        )\
        .first()
    if existing_collaborator:
        logger.info(f"{receiver_email} is already a member of project {project_id}")
        raise ValidationError("User is already a team member")

    existing_invitation = db.query(models.ProjectInvitation)\
        .filter(
            models.ProjectInvitation.project_id == project_id,
            models.ProjectInvitation.receiver_email == receiver_email,
            models.ProjectInvitation.status == models.InvitationStatus.pending,
        )\
        .first()
    if existing_invitation:
        logger.info(f"{receiver_email} already has a pending invitation to project {project_id}")
        raise ValidationError("User already has a pending invitation")

    invitation = models.ProjectInvitation(
        project_id=project_id,
        sender_user_id=user.id,
        receiver_email=receiver_email,
        role=role,
        token=generate_invitation_token(),
        status=models.InvitationStatus.pending,
        expires_at=invitation_expiry(config.INVITATION_TTL_DAYS),
    )
    db.add(invitation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Concurrent invitation for {receiver_email} to project {project_id}")
        raise ValidationError("User already has a pending invitation") from None
    db.refresh(invitation)

    logger.info(f"Invitation {invitation.id} sent to {receiver_email} for project {project_id}")
    return invitation_to_dict(invitation)


def list_received_invitations(db: Session, user: models.User, codec: EncryptionCodec) -> List[Dict[str, Any]]:
    """Pending invitations addressed to the caller, newest first."""
    sweep_expired(db)
    db.commit()

    invitations = db.query(models.ProjectInvitation)\
        .options(
            joinedload(models.ProjectInvitation.project),
            joinedload(models.ProjectInvitation.sender),
        )\
        .filter(
            models.ProjectInvitation.receiver_email == _normalize_email(user.email),
            models.ProjectInvitation.status == models.InvitationStatus.pending,
        )\
        .order_by(models.ProjectInvitation.created_at.desc(), models.ProjectInvitation.id.desc())\
        .all()

    logger.debug(f"User {user.id} has {len(invitations)} pending invitation(s)")
    return [received_invitation_to_dict(invitation, codec) for invitation in invitations]


def list_project_invitations(db: Session, user: models.User, project_id: int) -> List[Dict[str, Any]]:
    """Pending invitations of a project (owner only)."""
    require_project_owner(user.id, project_id, db, action="view invitations")

    sweep_expired(db)
    db.commit()

    invitations = db.query(models.ProjectInvitation)\
        .filter(
            models.ProjectInvitation.project_id == project_id,
            models.ProjectInvitation.status == models.InvitationStatus.pending,
        )\
        .order_by(models.ProjectInvitation.created_at.desc(), models.ProjectInvitation.id.desc())\
        .all()

    return [invitation_to_dict(invitation) for invitation in invitations]


def accept_invitation(db: Session, user: models.User, token: str) -> Dict[str, Any]:
    """
    Join a project through an invitation token.

    The invitation must be pending, unexpired and addressed to the caller's
    email; anything else is reported as not found. Clearing old accepted
    invitations, creating (or re-roling) the membership and marking the
    invitation accepted happen in one transaction.

    Returns:
        {"project_id", "role"}
    """
    logger.debug(f"User {user.id} accepting an invitation")

    sweep_expired(db)

    invitation = db.query(models.ProjectInvitation)\
        .filter(
            models.ProjectInvitation.token == token,
            models.ProjectInvitation.status == models.InvitationStatus.pending,
        )\
        .first()

    if invitation is None or is_expired(invitation.expires_at):
        db.commit()
        logger.info(f"User {user.id} tried to accept an unknown or expired invitation")
        raise NotFound("Invitation not found or expired")

    if invitation.receiver_email != _normalize_email(user.email):
        db.commit()
        logger.info(f"User {user.id} tried to accept invitation {invitation.id} addressed to someone else")
        raise NotFound("Invitation not found or expired")

    project = invitation.project
    if project.owner_user_id == user.id:
        db.commit()
        raise ValidationError("You already own this project")

    db.query(models.ProjectInvitation)\
        .filter(
            models.ProjectInvitation.project_id == invitation.project_id,
            models.ProjectInvitation.receiver_email == invitation.receiver_email,
            models.ProjectInvitation.status == models.InvitationStatus.accepted,
        )\
        .delete(synchronize_session=False)

    collaborator = db.query(models.ProjectCollaborator)\
        .filter(
            models.ProjectCollaborator.project_id == invitation.project_id,
            models.ProjectCollaborator.user_id == user.id,
        )\
        .first()
    if collaborator:
        collaborator.role = invitation.role
    else:
        db.add(models.ProjectCollaborator(
            project_id=invitation.project_id,
            user_id=user.id,
            role=invitation.role,
        ))

    invitation.status = models.InvitationStatus.accepted
    db.commit()

    logger.info(
        f"User {user.id} joined project {invitation.project_id} as {invitation.role.value} "
        f"via invitation {invitation.id}"
    )
    return {"project_id": invitation.project_id, "role": invitation.role.value}


def decline_invitation(db: Session, user: models.User, invitation_id: int) -> None:
    sweep_expired(db)
    db.commit()

    invitation = db.query(models.ProjectInvitation)\
        .filter(
            models.ProjectInvitation.id == invitation_id,
            models.ProjectInvitation.receiver_email == _normalize_email(user.email),
            models.ProjectInvitation.status == models.InvitationStatus.pending,
        )\
        .first()
    if not invitation:
        raise NotFound("Invitation not found")

    invitation.status = models.InvitationStatus.declined
    db.commit()

    logger.info(f"User {user.id} declined invitation {invitation_id}")


# ============== Team ==============

def _member_to_dict(member: models.User, role: str, joined_at) -> Dict[str, Any]:
    return {
        "id": member.id,
        "email": member.email,
        "name": member.name,
        "role": role,
        "joined_at": joined_at,
    }


def list_collaborators(db: Session, user: models.User, project_id: int) -> List[Dict[str, Any]]:
    """The project team: owner first, then collaborators in the order they joined."""
    project, _ = authorize_project(user.id, project_id, Permission.read, db)

    collaborators = db.query(models.ProjectCollaborator)\
        .options(joinedload(models.ProjectCollaborator.user))\
        .filter(models.ProjectCollaborator.project_id == project_id)\
        .order_by(models.ProjectCollaborator.joined_at.asc(), models.ProjectCollaborator.id.asc())\
        .all()

    team = [_member_to_dict(project.owner, "owner", project.created_at)]
    team.extend(
        _member_to_dict(collaborator.user, collaborator.role.value, collaborator.joined_at)
        for collaborator in collaborators
    )
    return team


def _load_member(db: Session, project: models.Project, member_user_id: int, action: str) -> models.ProjectCollaborator:
    if member_user_id == project.owner_user_id:
        raise ValidationError(f"Cannot {action} the project owner")

    collaborator = db.query(models.ProjectCollaborator)\
        .filter(
            models.ProjectCollaborator.project_id == project.id,
            models.ProjectCollaborator.user_id == member_user_id,
        )\
        .first()
    if not collaborator:
        raise NotFound("Team member not found")
    return collaborator


def remove_collaborator(db: Session, user: models.User, project_id: int, member_user_id: int) -> None:
    project = require_project_owner(user.id, project_id, db, action="remove team members")
    collaborator = _load_member(db, project, member_user_id, "remove")

    db.delete(collaborator)
    db.commit()

    logger.info(f"User {member_user_id} removed from project {project_id} by user {user.id}")


def update_collaborator_role(
    db: Session, user: models.User, project_id: int, member_user_id: int, role
) -> Dict[str, Any]:
    role = _role(role)
    project = require_project_owner(user.id, project_id, db, action="update member roles")
    collaborator = _load_member(db, project, member_user_id, "change the role of")

    collaborator.role = role
    db.commit()
    db.refresh(collaborator)

    logger.info(f"User {member_user_id} is now {role.value} on project {project_id}")
    return _member_to_dict(collaborator.user, collaborator.role.value, collaborator.joined_at)
