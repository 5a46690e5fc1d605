from datetime import datetime, time
from typing import Any, Dict, List

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import LmisAuthentication
from api.permissions import RequisitionPermission
from api.rbac import (
    RIGHT_ORDERS_EDIT,
    RIGHT_REQUISITION_APPROVE,
    RIGHT_REQUISITION_AUTHORIZE,
    RIGHT_REQUISITION_CREATE,
    RIGHT_REQUISITION_DELETE,
    RIGHT_REQUISITION_VIEW,
)
from requisition import rules
from requisition.domain import Requisition
from requisition.exceptions import RequisitionError, ValidationFailure
from requisition.line_item import RequisitionLineItem, StockAdjustment
from requisition.money import Money
from requisition.services import workflow
from requisition.services.permissions import PermissionService
from requisition.status_change import StatusChange

_ERROR_STATUS = {
    "validation_failed": 400,
    "no_permission": 403,
    "not_found": 404,
    "invalid_transition": 409,
    "version_mismatch": 409,
}

# Line item fields a client may send on update.
_EDITABLE_INT_FIELDS = (
    "requested_quantity",
    "approved_quantity",
    "beginning_balance",
    "total_received_quantity",
    "total_consumed_quantity",
    "stock_on_hand",
    "total_stockout_days",
)


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None) or getattr(request.user, "username", None)


def _error_response(exc: RequisitionError) -> Response:
    key = getattr(exc, "field", None) or exc.code
    return Response({"errors": {key: exc.message}}, status=_ERROR_STATUS.get(exc.code, 400))


def _parse_int(data: Dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationFailure(f"{key} must be an integer.", field=key)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"{key} must be an integer.", field=key) from exc


def _parse_version(request) -> int | None:
    data = request.data if isinstance(request.data, dict) else {}
    return _parse_int(data, "version")


def _parse_bool(value: object) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValidationFailure(f"Invalid boolean value: {value!r}.")


def _parse_datetime_param(value: str | None, end_of_day: bool = False) -> datetime | None:
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        parsed_date = parse_date(value)
        if parsed_date is None:
            raise ValidationFailure(f"Invalid date: {value!r}.")
        parsed = datetime.combine(parsed_date, time.max if end_of_day else time.min)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _parse_line_item(data: Dict[str, Any]) -> RequisitionLineItem:
    product_id = str(data.get("product_id") or "").strip()
    if not product_id:
        raise ValidationFailure("Each line item needs a product_id.", field="product_id")

    item = RequisitionLineItem(product_id=product_id)
    if data.get("id"):
        item.id = str(data["id"])
    for key in _EDITABLE_INT_FIELDS:
        setattr(item, key, _parse_int(data, key))
    item.requested_quantity_explanation = data.get("requested_quantity_explanation")
    item.remarks = data.get("remarks")
    item.skipped = bool(_parse_bool(data.get("skipped")))
    item.non_full_supply = bool(_parse_bool(data.get("non_full_supply")))
    adjustments = data.get("stock_adjustments") or []
    if not isinstance(adjustments, list):
        raise ValidationFailure("stock_adjustments must be a list.", field="stock_adjustments")
    for adjustment in adjustments:
        reason_id = str((adjustment or {}).get("reason_id") or "").strip()
        if not reason_id:
            raise ValidationFailure("Stock adjustment needs a reason_id.", field="reason_id")
        item.stock_adjustments.append(
            StockAdjustment(reason_id=reason_id, quantity=_parse_int(adjustment, "quantity") or 0)
        )
    return item


def _parse_incoming(data: Dict[str, Any]) -> Requisition:
    lines = data.get("line_items") or []
    if not isinstance(lines, list):
        raise ValidationFailure("line_items must be a list.", field="line_items")

    stock_count_date = None
    raw_date = data.get("date_physical_stock_count_completed")
    if raw_date:
        stock_count_date = parse_date(str(raw_date))
        if stock_count_date is None:
            raise ValidationFailure(
                "Invalid date.", field="date_physical_stock_count_completed"
            )

    return Requisition(
        program_id=str(data.get("program_id") or ""),
        facility_id=str(data.get("facility_id") or ""),
        processing_period_id=str(data.get("processing_period_id") or ""),
        line_items=[_parse_line_item(line or {}) for line in lines],
        date_physical_stock_count_completed=stock_count_date,
    )


def _serialize_money(value: Money | None) -> Dict[str, str] | None:
    if value is None:
        return None
    return {"amount": str(value.amount), "currency": value.currency}


def _serialize_line_item(item: RequisitionLineItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "requested_quantity": item.requested_quantity,
        "requested_quantity_explanation": item.requested_quantity_explanation,
        "approved_quantity": item.approved_quantity,
        "calculated_order_quantity": item.calculated_order_quantity,
        "beginning_balance": item.beginning_balance,
        "total_received_quantity": item.total_received_quantity,
        "total_consumed_quantity": item.total_consumed_quantity,
        "total_losses_and_adjustments": item.total_losses_and_adjustments,
        "stock_on_hand": item.stock_on_hand,
        "total": item.total,
        "total_stockout_days": item.total_stockout_days,
        "adjusted_consumption": item.adjusted_consumption,
        "average_consumption": item.average_consumption,
        "maximum_stock_quantity": item.maximum_stock_quantity,
        "previous_adjusted_consumptions": list(item.previous_adjusted_consumptions),
        "packs_to_ship": item.packs_to_ship,
        "price_per_pack": _serialize_money(item.price_per_pack),
        "total_cost": _serialize_money(item.total_cost),
        "ideal_stock_amount": item.ideal_stock_amount,
        "remarks": item.remarks,
        "skipped": item.skipped,
        "non_full_supply": item.non_full_supply,
        "stock_adjustments": [
            {"reason_id": adjustment.reason_id, "quantity": adjustment.quantity}
            for adjustment in item.stock_adjustments
        ],
    }


def _serialize_status_change(change: StatusChange) -> Dict[str, Any]:
    return {
        "id": change.id,
        "status": change.status,
        "author_id": change.author_id,
        "created_date": change.created_date.isoformat() if change.created_date else None,
        "previous_status_change_id": change.previous_status_change_id,
    }


def _serialize_requisition(requisition: Requisition, include_lines: bool = True) -> Dict[str, Any]:
    response = {
        "id": requisition.id,
        "program_id": requisition.program_id,
        "facility_id": requisition.facility_id,
        "processing_period_id": requisition.processing_period_id,
        "emergency": requisition.emergency,
        "status": requisition.status,
        "months_in_period": requisition.months_in_period,
        "supervisory_node_id": requisition.supervisory_node_id,
        "supplying_facility_id": requisition.supplying_facility_id,
        "date_physical_stock_count_completed": (
            requisition.date_physical_stock_count_completed.isoformat()
            if requisition.date_physical_stock_count_completed
            else None
        ),
        "created_date": requisition.created_date.isoformat() if requisition.created_date else None,
        "version": requisition.version,
        "deletable": requisition.is_deletable(),
        "total_cost": _serialize_money(requisition.get_total_cost()),
        "full_supply_total_cost": _serialize_money(requisition.get_full_supply_total_cost()),
        "non_full_supply_total_cost": _serialize_money(
            requisition.get_non_full_supply_total_cost()
        ),
    }
    latest = requisition.get_latest_status_change()
    response["latest_status_change"] = _serialize_status_change(latest) if latest else None
    if include_lines:
        response["line_items"] = [_serialize_line_item(item) for item in requisition.line_items]
    return response


def _transition_response(requisition: Requisition, warnings: List[str]) -> Response:
    response = _serialize_requisition(requisition)
    response["warnings"] = warnings
    return Response(response)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_initiate(request):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    program_id = str(payload.get("program_id") or "").strip()
    facility_id = str(payload.get("facility_id") or "").strip()
    period_id = str(payload.get("period_id") or "").strip()
    if not program_id:
        errors["program_id"] = "Program is required."
    if not facility_id:
        errors["facility_id"] = "Facility is required."
    if not period_id:
        errors["period_id"] = "Processing period is required."
    if errors:
        return Response({"errors": errors}, status=400)

    try:
        emergency = bool(_parse_bool(payload.get("emergency")))
        requisition, warnings = workflow.initiate_requisition(
            PermissionService.for_request(request),
            _actor_id(request),
            program_id,
            facility_id,
            period_id,
            emergency=emergency,
        )
    except RequisitionError as exc:
        return _error_response(exc)

    response = _serialize_requisition(requisition)
    response["warnings"] = warnings
    return Response(response, status=201)


@api_view(["GET", "PUT", "DELETE"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_detail(request, requisition_id: str):
    permissions = PermissionService.for_request(request)
    try:
        if request.method == "GET":
            requisition = workflow.get_requisition(permissions, requisition_id)
            return Response(_serialize_requisition(requisition))

        if request.method == "DELETE":
            workflow.delete_requisition(permissions, _actor_id(request), requisition_id)
            return Response(status=204)

        payload = request.data if isinstance(request.data, dict) else {}
        incoming = _parse_incoming(payload)
        requisition, warnings = workflow.update_requisition(
            permissions,
            _actor_id(request),
            requisition_id,
            incoming,
            expected_version=_parse_version(request),
        )
    except RequisitionError as exc:
        return _error_response(exc)

    return _transition_response(requisition, warnings)


def _run_transition(request, requisition_id: str, operation) -> Response:
    try:
        requisition, warnings = operation(
            PermissionService.for_request(request),
            _actor_id(request),
            requisition_id,
            expected_version=_parse_version(request),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return _transition_response(requisition, warnings)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_submit(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.submit_requisition)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_authorize(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.authorize_requisition)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_approve(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.approve_requisition)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_reject(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.reject_requisition)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_release(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.release_requisition)


@api_view(["POST"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_skip(request, requisition_id: str):
    return _run_transition(request, requisition_id, workflow.skip_requisition)


@api_view(["GET"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_status_changes(request, requisition_id: str):
    try:
        changes = workflow.list_status_changes(
            PermissionService.for_request(request), requisition_id
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(
        {
            "requisition_id": requisition_id,
            "status_changes": [_serialize_status_change(change) for change in changes],
        }
    )


def _page_response(requisitions, total_count: int, page: int) -> Response:
    return Response(
        {
            "results": [
                _serialize_requisition(requisition, include_lines=False)
                for requisition in requisitions
            ],
            "count": total_count,
            "page": page,
        }
    )


@api_view(["GET"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_search(request):
    params = request.query_params
    try:
        page = _parse_int(params, "page") or 1
        page_size = _parse_int(params, "page_size")
        filters = {
            "facility_id": params.get("facility_id") or None,
            "program_id": params.get("program_id") or None,
            "created_from": _parse_datetime_param(params.get("created_from")),
            "created_to": _parse_datetime_param(params.get("created_to"), end_of_day=True),
            "period_id": params.get("period_id") or None,
            "supervisory_node_id": params.get("supervisory_node_id") or None,
            "statuses": [
                status.upper() for status in params.getlist("status") if status.strip()
            ],
            "emergency": _parse_bool(params.get("emergency")),
            "page": page,
            "page_size": page_size,
        }
        unknown = [status for status in filters["statuses"] if status not in rules.STATUSES]
        if unknown:
            raise ValidationFailure(f"Unknown status: {', '.join(unknown)}.", field="status")
        requisitions, total_count = workflow.search_requisitions(
            PermissionService.for_request(request), filters
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return _page_response(requisitions, total_count, page)


@api_view(["GET"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_for_approval(request):
    params = request.query_params
    try:
        page = _parse_int(params, "page") or 1
        requisitions, total_count = workflow.requisitions_for_approval(
            PermissionService.for_request(request),
            page=page,
            page_size=_parse_int(params, "page_size"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return _page_response(requisitions, total_count, page)


@api_view(["GET"])
@authentication_classes([LmisAuthentication])
@permission_classes([RequisitionPermission])
def requisition_approved(request):
    params = request.query_params
    try:
        page = _parse_int(params, "page") or 1
        warehouse_ids = [value for value in params.getlist("warehouse_id") if value.strip()]
        requisitions, total_count = workflow.approved_requisitions(
            PermissionService.for_request(request),
            facility_id=params.get("facility_id") or None,
            program_id=params.get("program_id") or None,
            warehouse_ids=warehouse_ids or None,
            page=page,
            page_size=_parse_int(params, "page_size"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return _page_response(requisitions, total_count, page)


# api_view returns a function; the permission class reads the attribute
# from the generated view class.
requisition_initiate.cls.required_permission = RIGHT_REQUISITION_CREATE
requisition_detail.cls.required_permission = {
    "GET": RIGHT_REQUISITION_VIEW,
    "PUT": [RIGHT_REQUISITION_CREATE, RIGHT_REQUISITION_AUTHORIZE, RIGHT_REQUISITION_APPROVE],
    "DELETE": RIGHT_REQUISITION_DELETE,
}
requisition_submit.cls.required_permission = RIGHT_REQUISITION_CREATE
requisition_authorize.cls.required_permission = RIGHT_REQUISITION_AUTHORIZE
requisition_approve.cls.required_permission = RIGHT_REQUISITION_APPROVE
requisition_reject.cls.required_permission = RIGHT_REQUISITION_APPROVE
requisition_release.cls.required_permission = RIGHT_ORDERS_EDIT
requisition_skip.cls.required_permission = RIGHT_REQUISITION_CREATE
requisition_status_changes.cls.required_permission = RIGHT_REQUISITION_VIEW
requisition_search.cls.required_permission = RIGHT_REQUISITION_VIEW
requisition_for_approval.cls.required_permission = RIGHT_REQUISITION_APPROVE
requisition_approved.cls.required_permission = RIGHT_ORDERS_EDIT
