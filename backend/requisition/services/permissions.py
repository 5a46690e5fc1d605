"""
Authorization gate evaluated before every requisition transition.

Two strategies answer "does the caller hold right X here?":

* ``RightAssignmentValidator`` checks a right against an explicit scope
  (program + facility, or a warehouse, or no scope at all).
* ``RoleAssignmentValidator`` checks a right against a requisition, matching
  either its facility or its current supervisory node.

Both are side-effect free. ``PermissionService`` combines them into the
per-operation checks and returns a ``ValidationResult``; callers raise with
``throw_if_error()`` before mutating anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from api.rbac import (
    RIGHT_ORDERS_EDIT,
    RIGHT_REQUISITION_APPROVE,
    RIGHT_REQUISITION_AUTHORIZE,
    RIGHT_REQUISITION_CREATE,
    RIGHT_REQUISITION_DELETE,
    RIGHT_REQUISITION_TEMPLATES_MANAGE,
    RIGHT_REQUISITION_VIEW,
    RoleAssignment,
    resolve_role_assignments,
)
from requisition import rules
from requisition.domain import Requisition
from requisition.exceptions import MissingPermission

logger = logging.getLogger(__name__)

# Right required to edit a requisition, by its current status.
UPDATE_RIGHT_BY_STATUS = {
    rules.INITIATED: RIGHT_REQUISITION_CREATE,
    rules.REJECTED: RIGHT_REQUISITION_CREATE,
    rules.SUBMITTED: RIGHT_REQUISITION_AUTHORIZE,
    rules.AUTHORIZED: RIGHT_REQUISITION_APPROVE,
    rules.IN_APPROVAL: RIGHT_REQUISITION_APPROVE,
}

# Second right required to delete, by status.
DELETE_RIGHT_BY_STATUS = {
    rules.INITIATED: RIGHT_REQUISITION_CREATE,
    rules.REJECTED: RIGHT_REQUISITION_CREATE,
    rules.SKIPPED: RIGHT_REQUISITION_CREATE,
    rules.SUBMITTED: RIGHT_REQUISITION_AUTHORIZE,
}


@dataclass(frozen=True)
class ValidationResult:
    right_name: str | None = None
    status: str | None = None

    @classmethod
    def success(cls) -> ValidationResult:
        return cls()

    @classmethod
    def failure(cls, right_name: str, status: str | None = None) -> ValidationResult:
        return cls(right_name=right_name, status=status)

    def is_success(self) -> bool:
        return self.right_name is None

    def throw_if_error(self) -> None:
        if not self.is_success():
            raise MissingPermission(self.right_name, status=self.status)


def _matches(scope_value: str | None, target: str | None) -> bool:
    return scope_value is None or scope_value == target


class _AssignmentValidator:
    def __init__(self, assignments: Iterable[RoleAssignment], role_rights: Dict[str, set[str]]):
        self._assignments = list(assignments)
        self._role_rights = {str(role).upper(): set(rights) for role, rights in role_rights.items()}

    def _granting(self, right_name: str) -> list[RoleAssignment]:
        return [
            assignment
            for assignment in self._assignments
            if right_name in self._role_rights.get(assignment.role_code.upper(), set())
        ]


class RightAssignmentValidator(_AssignmentValidator):
    def has_right(
        self,
        right_name: str,
        program_id: str | None = None,
        facility_id: str | None = None,
        warehouse_id: str | None = None,
    ) -> ValidationResult:
        for assignment in self._granting(right_name):
            if (
                _matches(assignment.program_id, program_id)
                and _matches(assignment.facility_id, facility_id)
                and _matches(assignment.warehouse_id, warehouse_id)
                and assignment.supervisory_node_id is None
            ):
                return ValidationResult.success()
        return ValidationResult.failure(right_name)

    def warehouse_ids(self, right_name: str) -> List[str] | None:
        """Warehouses the right is held at; ``None`` when it is held at all of them."""
        warehouses: List[str] = []
        for assignment in self._granting(right_name):
            if (
                assignment.program_id is not None
                or assignment.facility_id is not None
                or assignment.supervisory_node_id is not None
            ):
                continue
            if assignment.warehouse_id is None:
                return None
            if assignment.warehouse_id not in warehouses:
                warehouses.append(assignment.warehouse_id)
        return warehouses


class RoleAssignmentValidator(_AssignmentValidator):
    def has_right(self, right_name: str, requisition: Requisition) -> ValidationResult:
        for assignment in self._granting(right_name):
            if assignment.warehouse_id is not None:
                continue
            if not _matches(assignment.program_id, requisition.program_id):
                continue
            if assignment.supervisory_node_id is not None:
                if assignment.supervisory_node_id == requisition.supervisory_node_id:
                    return ValidationResult.success()
                continue
            if _matches(assignment.facility_id, requisition.facility_id):
                return ValidationResult.success()
        return ValidationResult.failure(right_name)

    def scopes(self, right_name: str) -> List[Dict[str, str]]:
        """Requisition column filters under which ``has_right`` succeeds."""
        scopes: List[Dict[str, str]] = []
        for assignment in self._granting(right_name):
            if assignment.warehouse_id is not None:
                continue
            scope = {}
            if assignment.program_id is not None:
                scope["program_id"] = assignment.program_id
            if assignment.supervisory_node_id is not None:
                scope["supervisory_node_id"] = assignment.supervisory_node_id
            elif assignment.facility_id is not None:
                scope["facility_id"] = assignment.facility_id
            if scope not in scopes:
                scopes.append(scope)
        return scopes


class PermissionService:
    def __init__(
        self,
        right_validator: RightAssignmentValidator,
        role_validator: RoleAssignmentValidator,
        user_id: str | None = None,
    ):
        self.right_validator = right_validator
        self.role_validator = role_validator
        self.user_id = user_id

    @classmethod
    def for_request(cls, request) -> PermissionService:
        assignments, role_rights = resolve_role_assignments(request, request.user)
        return cls(
            RightAssignmentValidator(assignments, role_rights),
            RoleAssignmentValidator(assignments, role_rights),
            user_id=getattr(request.user, "user_id", None),
        )

    def _log_denied(self, result: ValidationResult, operation: str) -> ValidationResult:
        if not result.is_success():
            logger.info(
                "Permission denied for %s: user=%s right=%s status=%s",
                operation,
                self.user_id,
                result.right_name,
                result.status,
            )
        return result

    def _has_facility_right(self, right_name: str, requisition: Requisition) -> ValidationResult:
        return self.right_validator.has_right(
            right_name,
            program_id=requisition.program_id,
            facility_id=requisition.facility_id,
        )

    def can_init_requisition(self, program_id: str, facility_id: str) -> ValidationResult:
        result = self.right_validator.has_right(
            RIGHT_REQUISITION_CREATE, program_id=program_id, facility_id=facility_id
        )
        return self._log_denied(result, "initiate")

    def can_update_requisition(self, requisition: Requisition) -> ValidationResult:
        right_name = UPDATE_RIGHT_BY_STATUS.get(requisition.status)
        if right_name is None:
            # No right edits a requisition in this status.
            return self._log_denied(
                ValidationResult.failure(RIGHT_REQUISITION_CREATE, requisition.status), "update"
            )
        result = self.role_validator.has_right(right_name, requisition)
        if not result.is_success():
            result = ValidationResult.failure(right_name, requisition.status)
        return self._log_denied(result, "update")

    def can_submit_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self._has_facility_right(RIGHT_REQUISITION_CREATE, requisition), "submit"
        )

    def can_authorize_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self._has_facility_right(RIGHT_REQUISITION_AUTHORIZE, requisition), "authorize"
        )

    def can_approve_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self.role_validator.has_right(RIGHT_REQUISITION_APPROVE, requisition), "approve"
        )

    def can_reject_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self.role_validator.has_right(RIGHT_REQUISITION_APPROVE, requisition), "reject"
        )

    def can_skip_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self._has_facility_right(RIGHT_REQUISITION_CREATE, requisition), "skip"
        )

    def can_delete_requisition(self, requisition: Requisition) -> ValidationResult:
        result = self._has_facility_right(RIGHT_REQUISITION_DELETE, requisition)
        if result.is_success():
            second_right = DELETE_RIGHT_BY_STATUS.get(requisition.status)
            if second_right is not None:
                result = self._has_facility_right(second_right, requisition)
        return self._log_denied(result, "delete")

    def can_view_requisition(self, requisition: Requisition) -> ValidationResult:
        return self._log_denied(
            self.role_validator.has_right(RIGHT_REQUISITION_VIEW, requisition), "view"
        )

    def can_release_requisition(self, requisition: Requisition) -> ValidationResult:
        if not requisition.supplying_facility_id:
            return self._log_denied(ValidationResult.failure(RIGHT_ORDERS_EDIT), "release")
        return self._log_denied(
            self.right_validator.has_right(
                RIGHT_ORDERS_EDIT, warehouse_id=requisition.supplying_facility_id
            ),
            "release",
        )

    def can_convert_to_order(self, warehouse_ids: Sequence[str]) -> ValidationResult:
        for warehouse_id in warehouse_ids:
            result = self.right_validator.has_right(RIGHT_ORDERS_EDIT, warehouse_id=warehouse_id)
            if not result.is_success():
                return self._log_denied(result, "convert_to_order")
        return ValidationResult.success()

    def approval_scopes(self) -> List[Dict[str, str]]:
        return self.role_validator.scopes(RIGHT_REQUISITION_APPROVE)

    def order_warehouse_ids(self) -> List[str] | None:
        return self.right_validator.warehouse_ids(RIGHT_ORDERS_EDIT)

    def can_manage_requisition_template(self) -> ValidationResult:
        return self._log_denied(
            self.right_validator.has_right(RIGHT_REQUISITION_TEMPLATES_MANAGE),
            "manage_template",
        )
