"""
Requisition workflow service.

Each operation loads the aggregate, checks the caller's rights, resolves the
reference data the transition needs, applies the transition, saves with an
optimistic version check and writes one audit record. A failed permission
check raises before anything is mutated.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from django.db import transaction
from django.utils import timezone

from requisition import repository, rules
from requisition.domain import Requisition
from requisition.exceptions import ValidationFailure, VersionMismatch
from requisition.services import data_access
from requisition.services.permissions import PermissionService
from requisition.status_change import StatusChange

logger = logging.getLogger("lmis.audit")


def _audit(action: str, requisition: Requisition, actor_id: str, from_status: str | None) -> None:
    logger.info(
        "requisition_%s",
        action,
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": actor_id,
            "requisition_id": requisition.id,
            "from_status": from_status,
            "to_status": requisition.status,
        },
    )


def _load(requisition_id: str, expected_version: int | None = None) -> Requisition:
    requisition = repository.get(requisition_id)
    if expected_version is not None and expected_version != requisition.version:
        raise VersionMismatch(requisition_id, expected_version)
    return requisition


def _require_reference_data(warnings: List[str], what: str) -> None:
    if data_access.DB_UNAVAILABLE in warnings:
        raise ValidationFailure(
            f"{what} could not be loaded; line items were not recalculated.",
            field="reference_data",
        )


def _load_stock_adjustment_reasons(program_id: str) -> Tuple[list, List[str]]:
    reasons, warnings = data_access.get_stock_adjustment_reasons(program_id)
    _require_reference_data(warnings, "Stock adjustment reasons")
    return list(reasons), warnings


def _load_recalculation_inputs(requisition: Requisition) -> Tuple[list, List[str]]:
    reasons, reason_warnings = _load_stock_adjustment_reasons(requisition.program_id)
    requisition.stock_adjustment_reasons = reasons
    products, product_warnings = data_access.get_approved_products(
        requisition.facility_id, requisition.program_id
    )
    _require_reference_data(product_warnings, "Approved products")
    return products, reason_warnings + product_warnings


@transaction.atomic
def initiate_requisition(
    permissions: PermissionService,
    actor_id: str,
    program_id: str,
    facility_id: str,
    period_id: str,
    emergency: bool = False,
) -> Tuple[Requisition, List[str]]:
    permissions.can_init_requisition(program_id, facility_id).throw_if_error()

    if not emergency:
        _, existing = repository.search(
            facility_id=facility_id,
            program_id=program_id,
            period_id=period_id,
            emergency=False,
            page_size=1,
        )
        if existing:
            raise ValidationFailure(
                "A regular requisition already exists for this facility, program and period.",
                field="period_id",
            )

    template = repository.find_template(program_id)
    if not template.columns:
        raise ValidationFailure(
            f"No requisition template is configured for program {program_id}.",
            field="program_id",
        )

    warnings: List[str] = []
    months_in_period, period_warnings = data_access.get_months_in_period(period_id)
    warnings.extend(period_warnings)
    previous = repository.find_previous(
        facility_id, program_id, timezone.now(), max(rules.get_periods_to_average(), 1)
    )

    products: list = []
    if not emergency:
        products, product_warnings = data_access.get_approved_products(facility_id, program_id)
        warnings.extend(product_warnings)

    proof_of_delivery, pod_warnings = data_access.get_proof_of_delivery(
        previous[-1].id if previous else None
    )
    ideal_stock_amounts, ideal_warnings = data_access.get_ideal_stock_amounts(
        facility_id, period_id
    )
    stock_on_hand, stock_warnings = data_access.get_stock_on_hand(facility_id, program_id)
    supervisory_node_id, node_warnings = data_access.get_home_supervisory_node(
        facility_id, program_id
    )
    warnings.extend(pod_warnings + ideal_warnings + stock_warnings + node_warnings)

    requisition = Requisition(
        program_id=program_id,
        facility_id=facility_id,
        processing_period_id=period_id,
        emergency=emergency,
        supervisory_node_id=supervisory_node_id,
    )
    requisition.initiate(
        template,
        products,
        previous,
        months_in_period,
        proof_of_delivery,
        ideal_stock_amounts,
        actor_id,
        stock_on_hand,
    )
    requisition.set_previous_adjusted_consumptions(rules.get_periods_to_average())
    repository.save(requisition, actor_id)

    _audit("initiated", requisition, actor_id, None)
    return requisition, sorted(set(warnings))


def get_requisition(permissions: PermissionService, requisition_id: str) -> Requisition:
    requisition = repository.get(requisition_id)
    permissions.can_view_requisition(requisition).throw_if_error()
    return requisition


@transaction.atomic
def update_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    incoming: Requisition,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_update_requisition(requisition).throw_if_error()

    reasons, warnings = _load_stock_adjustment_reasons(requisition.program_id)
    requisition.update_from(incoming, reasons, rules.stock_count_date_enabled())
    repository.save(requisition, actor_id)

    _audit("updated", requisition, actor_id, requisition.status)
    return requisition, warnings


@transaction.atomic
def submit_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_submit_requisition(requisition).throw_if_error()

    from_status = requisition.status
    products, warnings = _load_recalculation_inputs(requisition)
    requisition.submit(products, actor_id, rules.skip_authorization_enabled())
    repository.save(requisition, actor_id)

    _audit("submitted", requisition, actor_id, from_status)
    return requisition, warnings


@transaction.atomic
def authorize_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_authorize_requisition(requisition).throw_if_error()

    from_status = requisition.status
    products, warnings = _load_recalculation_inputs(requisition)
    requisition.authorize(products, actor_id)
    repository.save(requisition, actor_id)

    _audit("authorized", requisition, actor_id, from_status)
    return requisition, warnings


@transaction.atomic
def approve_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_approve_requisition(requisition).throw_if_error()

    from_status = requisition.status
    products, warnings = _load_recalculation_inputs(requisition)
    parent_node_id, node_warnings = data_access.get_supervisory_parent_node(
        requisition.supervisory_node_id
    )
    supply_lines, supply_warnings = data_access.get_supply_lines(
        requisition.program_id, requisition.supervisory_node_id
    )
    requisition.approve(parent_node_id, products, supply_lines, actor_id)
    repository.save(requisition, actor_id)

    _audit("approved", requisition, actor_id, from_status)
    return requisition, warnings + node_warnings + supply_warnings


@transaction.atomic
def reject_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_reject_requisition(requisition).throw_if_error()

    from_status = requisition.status
    products, warnings = _load_recalculation_inputs(requisition)
    requisition.reject(products, actor_id)
    repository.save(requisition, actor_id)

    _audit("rejected", requisition, actor_id, from_status)
    return requisition, warnings


@transaction.atomic
def release_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_release_requisition(requisition).throw_if_error()

    from_status = requisition.status
    requisition.release(actor_id)
    repository.save(requisition, actor_id)

    _audit("released", requisition, actor_id, from_status)
    return requisition, []


@transaction.atomic
def skip_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
    expected_version: int | None = None,
) -> Tuple[Requisition, List[str]]:
    requisition = _load(requisition_id, expected_version)
    permissions.can_skip_requisition(requisition).throw_if_error()

    from_status = requisition.status
    skippable, warnings = data_access.is_period_skippable(requisition.program_id)
    requisition.skip(skippable, actor_id)
    repository.save(requisition, actor_id)

    _audit("skipped", requisition, actor_id, from_status)
    return requisition, warnings


@transaction.atomic
def delete_requisition(
    permissions: PermissionService,
    actor_id: str,
    requisition_id: str,
) -> None:
    requisition = repository.get(requisition_id, with_template=False)
    permissions.can_delete_requisition(requisition).throw_if_error()
    repository.delete(requisition)

    logger.info(
        "requisition_deleted",
        extra={
            "event_type": "DELETE",
            "user_id": actor_id,
            "requisition_id": requisition.id,
            "from_status": requisition.status,
        },
    )


def list_status_changes(permissions: PermissionService, requisition_id: str) -> List[StatusChange]:
    requisition = repository.get(requisition_id, with_template=False)
    permissions.can_view_requisition(requisition).throw_if_error()
    return sorted(requisition.status_changes, key=lambda change: change.created_date)


def search_requisitions(
    permissions: PermissionService, filters: Dict[str, Any]
) -> Tuple[List[Requisition], int]:
    requisitions, total_count = repository.search(**filters)
    visible = [
        requisition
        for requisition in requisitions
        if permissions.can_view_requisition(requisition).is_success()
    ]
    return visible, total_count


def requisitions_for_approval(
    permissions: PermissionService, page: int = 1, page_size: int | None = None
) -> Tuple[List[Requisition], int]:
    """Authorized and in-approval requisitions the caller may approve."""
    return repository.search_for_approval(
        permissions.approval_scopes(), page=page, page_size=page_size
    )


def approved_requisitions(
    permissions: PermissionService,
    facility_id: str | None = None,
    program_id: str | None = None,
    warehouse_ids: List[str] | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> Tuple[List[Requisition], int]:
    """
    Approved requisitions the caller may convert to orders.

    Without ``warehouse_ids`` the caller's own warehouses are used.
    """
    if warehouse_ids:
        permissions.can_convert_to_order(warehouse_ids).throw_if_error()
    else:
        warehouse_ids = permissions.order_warehouse_ids()
    return repository.search_approved(
        facility_id=facility_id,
        program_id=program_id,
        supplying_facility_ids=warehouse_ids,
        page=page,
        page_size=page_size,
    )
