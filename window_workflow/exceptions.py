"""
Errors raised by the workflow core.

The HTTP layer maps each of them to a status code in ``main.py``.
"""
from typing import List, Optional


class WorkflowError(Exception):
    """Base class for workflow failures."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class InvalidTransition(WorkflowError):
    """The requested status is not reachable from the current one."""
    status_code = 400

    def __init__(self, current_status: str, requested_status: str, valid_next_statuses: List[str]):
        super().__init__("Invalid status transition")
        self.current_status = current_status
        self.requested_status = requested_status
        self.valid_next_statuses = list(valid_next_statuses)

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "valid_next_statuses": self.valid_next_statuses,
        }


class NotFound(WorkflowError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message or f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class AuthorizationDenied(WorkflowError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class PersistenceFailure(WorkflowError):
    """A database write failed; the transaction was rolled back."""
    status_code = 500
