"""
Identity resolution: mapping external claims onto local users.

Users are never registered explicitly. The first authenticated request for an
unseen subject creates the row; the unique constraint on external_auth_id
makes concurrent first requests converge on a single user.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert as generic_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
import models
from errors import Unauthenticated
from time_utils import utc_now

logger = logging.getLogger(__name__)


def resolve_email(claims: Dict[str, Any], header_email: Optional[str] = None) -> str:
    """
    Pick the email address for a set of token claims.

    Order: "email" claim, X-User-Email header (only when
    EMAIL_HEADER_FALLBACK_ENABLED), "<AUTH_AUDIENCE>/email" claim, then an
    address derived from the subject.
    """
    subject = claims.get("sub")
    if not subject:
        raise Unauthenticated("Invalid authentication token")

    email = claims.get("email")

    if not email and header_email and config.EMAIL_HEADER_FALLBACK_ENABLED:
        logger.debug("Using email from X-User-Email header")
        email = header_email

    if not email and config.AUTH_AUDIENCE:
        email = claims.get(f"{config.AUTH_AUDIENCE}/email")

    if not email:
        email = f"{str(subject).replace('|', '_', 1)}@{config.SYNTHETIC_EMAIL_DOMAIN}"
        logger.debug(f"No email claim for subject {subject}, using derived address")

    return email.strip().lower()


def _insert_ignoring_conflict(db: Session, values: Dict[str, Any]) -> None:
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        insert = None

    if insert is not None:
        stmt = insert(models.User).values(**values).on_conflict_do_nothing(
            index_elements=["external_auth_id"]
        )
        db.execute(stmt)
        db.commit()
        return

    # Other dialects: rely on the unique constraint and treat a violation as "already created"
    try:
        db.execute(generic_insert(models.User).values(**values))
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("User row created concurrently by another request")


def resolve_user(db: Session, external_auth_id: Optional[str], email: str) -> models.User:
    """
    Find the user for an external identity, creating it on first sight.

    Args:
        db: Database session
        external_auth_id: Subject claim of the bearer token
        email: Email to store if the user has to be created

    Returns:
        The (possibly new) User

    Raises:
        Unauthenticated: if there is no subject
    """
    if not external_auth_id:
        raise Unauthenticated("Invalid authentication token")

    user = db.query(models.User).filter(models.User.external_auth_id == external_auth_id).first()
    if user is not None:
        return user

    logger.info(f"First request for subject {external_auth_id}, creating user")
    now = utc_now()
    _insert_ignoring_conflict(db, {
        "external_auth_id": external_auth_id,
        "email": email,
        "created_at": now,
        "updated_at": now,
    })

    user = db.query(models.User).filter(models.User.external_auth_id == external_auth_id).one()
    logger.info(f"Resolved subject {external_auth_id} to user {user.id}")
    return user


def update_profile(db: Session, user: models.User, changes: Dict[str, Any]) -> models.User:
    """
    Update the caller's display name.

    The email is not editable here: it is resolved from the token claims and
    is what invitations are matched against.
    """
    logger.debug(f"Updating profile of user {user.id}: {sorted(changes)}")

    if "name" in changes:
        user.name = changes["name"]

    db.commit()
    db.refresh(user)

    logger.info(f"User {user.id} updated their profile")
    return user
