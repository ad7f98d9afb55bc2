"""
Service-level error taxonomy.

Services raise these instead of HTTPException so that the same code paths can
be exercised directly from tests and other callers. main.py registers one
exception handler that renders each error with its status code.
"""

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for errors that map onto a client-facing HTTP status."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail}


class Unauthenticated(ServiceError):
    status_code = 401


class NotFound(ServiceError):
    status_code = 404


class AccessDenied(ServiceError):
    """
    The caller lacks the role required for an operation.

    `role` carries the resolved project role ("none" when the caller has no
    access at all) so log lines can tell the two cases apart.
    """

    status_code = 403

    def __init__(self, detail: str, role: Optional[str] = None):
        super().__init__(detail)
        self.role = role


class ValidationError(ServiceError):
    status_code = 400


class VersionConflict(ServiceError):
    """A task update carried a stale expected version."""

    status_code = 409

    def __init__(
        self,
        task_id: int,
        expected_version: int,
        current_version: int,
        last_updated_by: Optional[Dict[str, Any]],
        current_task: Dict[str, Any],
    ):
        super().__init__(
            f"Task {task_id} was modified by someone else "
            f"(expected version {expected_version}, current version {current_version})"
        )
        self.task_id = task_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.last_updated_by = last_updated_by
        self.current_task = current_task

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.detail,
            "conflict": {
                "task_id": self.task_id,
                "expected_version": self.expected_version,
                "current_version": self.current_version,
                "last_updated_by": self.last_updated_by,
                "current_task": self.current_task,
            },
        }


class RateLimited(ServiceError):
    status_code = 429

    def __init__(self, detail: str, retry_after: int):
        super().__init__(detail)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "retry_after": self.retry_after}


class BatchNotFound(NotFound):
    """Some ids of a bulk request do not exist in the target project."""

    def __init__(self, missing_ids: List[int]):
        super().__init__(f"Tasks not found in project: {sorted(missing_ids)}")
        self.missing_ids = sorted(missing_ids)
