"""
Error kinds raised by the requisition domain and its adapters.

Every transition failure surfaces as one of these; the HTTP layer maps the
``code`` attribute to a response status.
"""


class RequisitionError(Exception):
    """Base class for requisition failures."""

    def __init__(self, message: str, code: str = "requisition_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidStateTransition(RequisitionError):
    """Raised when a transition is attempted from a status outside its guard list."""

    def __init__(self, action: str, current_status: str, message: str | None = None):
        self.action = action
        self.current_status = current_status
        if message is None:
            message = f"Cannot {action} a requisition with status {current_status}."
        super().__init__(message, code="invalid_transition")


class MissingPermission(RequisitionError):
    """Raised when an authorization check fails."""

    def __init__(self, right_name: str, status: str | None = None, message: str | None = None):
        self.right_name = right_name
        self.status = status
        if message is None:
            if status:
                message = (
                    f"Missing right {right_name} to update a requisition "
                    f"with status {status}."
                )
            else:
                message = f"Missing right {right_name}."
        super().__init__(message, code="no_permission")


class ValidationFailure(RequisitionError):
    """Raised for malformed or missing identifiers and arguments."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message, code="validation_failed")


class VersionMismatch(RequisitionError):
    """
    Raised when a requisition was modified by another transaction
    between the time it was read and when it is being saved.
    """

    def __init__(self, requisition_id, expected_version: int, message: str | None = None):
        self.requisition_id = requisition_id
        self.expected_version = expected_version
        if message is None:
            message = (
                f"Requisition {requisition_id} was modified by another transaction "
                f"(expected version {expected_version}). Please refresh and try again."
            )
        super().__init__(message, code="version_mismatch")


class RequisitionNotFound(RequisitionError):
    def __init__(self, requisition_id):
        self.requisition_id = requisition_id
        super().__init__(f"Requisition {requisition_id} not found.", code="not_found")
