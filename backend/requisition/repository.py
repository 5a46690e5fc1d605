"""
Persistence adapter for the requisition aggregate.

Aggregates are loaded whole (line items, stock adjustments, status history and
the program template) and saved whole. ``save`` performs an optimistic version
check on the header row so concurrent writers fail with ``VersionMismatch``
instead of overwriting each other.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Mapping, Sequence, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from requisition import rules
from requisition.domain import Requisition
from requisition.exceptions import RequisitionNotFound, ValidationFailure, VersionMismatch
from requisition.line_item import RequisitionLineItem, StockAdjustment
from requisition.models import Requisition as RequisitionRow
from requisition.models import (
    RequisitionLineItem as LineItemRow,
    RequisitionStatusChange as StatusChangeRow,
    RequisitionStockAdjustment as StockAdjustmentRow,
    RequisitionTemplateColumn,
)
from requisition.money import Money
from requisition.status_change import StatusChange
from requisition.template import SOURCE_CALCULATED, Column, ColumnSettings, RequisitionTemplate

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25


def _page_size() -> int:
    value = getattr(settings, "REQUISITION_PAGE_SIZE", DEFAULT_PAGE_SIZE)
    try:
        return max(int(value), 1)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE


def _money_or_none(amount, currency: str) -> Money | None:
    if amount is None:
        return None
    return Money(amount, currency or rules.get_currency_code())


def _line_item_from_row(row: LineItemRow) -> RequisitionLineItem:
    currency = row.currency_code
    return RequisitionLineItem(
        product_id=row.product_id,
        id=row.line_item_id,
        requisition_id=row.requisition_id,
        requested_quantity=row.requested_qty,
        requested_quantity_explanation=row.requested_qty_explanation,
        approved_quantity=row.approved_qty,
        calculated_order_quantity=row.calculated_order_qty,
        beginning_balance=row.beginning_balance,
        total_received_quantity=row.total_received_qty,
        total_consumed_quantity=row.total_consumed_qty,
        total_losses_and_adjustments=row.total_losses_and_adjustments,
        stock_on_hand=row.stock_on_hand,
        total=row.total_qty,
        total_stockout_days=row.total_stockout_days,
        adjusted_consumption=row.adjusted_consumption,
        average_consumption=row.average_consumption,
        maximum_stock_quantity=row.maximum_stock_qty,
        max_periods_of_stock=row.max_periods_of_stock,
        packs_to_ship=row.packs_to_ship,
        price_per_pack=_money_or_none(row.price_per_pack, currency),
        total_cost=_money_or_none(row.total_cost, currency),
        ideal_stock_amount=row.ideal_stock_amount,
        remarks=row.remarks_text,
        skipped=row.skipped_flag,
        non_full_supply=row.non_full_supply_flag,
        stock_adjustments=[
            StockAdjustment(reason_id=adjustment.reason_id, quantity=adjustment.quantity)
            for adjustment in row.stock_adjustments.all()
        ],
        previous_adjusted_consumptions=[int(value) for value in row.previous_adjusted_consumptions or []],
    )


def _status_change_from_row(row: StatusChangeRow) -> StatusChange:
    return StatusChange(
        requisition_id=row.requisition_id,
        status=row.status_code,
        author_id=row.author_id,
        created_date=row.created_dtime,
        previous_status_change_id=row.previous_status_change_id,
        id=row.status_change_id,
    )


def _to_domain(row: RequisitionRow, template: RequisitionTemplate | None = None) -> Requisition:
    return Requisition(
        program_id=row.program_id,
        facility_id=row.facility_id,
        processing_period_id=row.processing_period_id,
        emergency=row.emergency_flag,
        id=row.requisition_id,
        status=row.status_code,
        line_items=[_line_item_from_row(item) for item in row.line_items.all()],
        template=template,
        months_in_period=row.months_in_period,
        supervisory_node_id=row.supervisory_node_id,
        supplying_facility_id=row.supplying_facility_id,
        status_changes=[_status_change_from_row(change) for change in row.status_changes.all()],
        date_physical_stock_count_completed=row.stock_count_date,
        created_date=row.initiated_dtime,
        version=row.version_nbr,
    )


def _aggregate_queryset():
    return RequisitionRow.objects.prefetch_related(
        "line_items__stock_adjustments", "status_changes"
    )


def get(requisition_id: str, with_template: bool = True) -> Requisition:
    row = _aggregate_queryset().filter(requisition_id=requisition_id).first()
    if row is None:
        raise RequisitionNotFound(requisition_id)
    template = find_template(row.program_id) if with_template else None
    return _to_domain(row, template)


def _header_fields(requisition: Requisition) -> dict:
    return {
        "program_id": requisition.program_id,
        "facility_id": requisition.facility_id,
        "processing_period_id": requisition.processing_period_id,
        "emergency_flag": requisition.emergency,
        "status_code": requisition.status,
        "months_in_period": requisition.months_in_period,
        "supervisory_node_id": requisition.supervisory_node_id,
        "supplying_facility_id": requisition.supplying_facility_id,
        "stock_count_date": requisition.date_physical_stock_count_completed,
    }


def _replace_line_items(requisition: Requisition) -> None:
    LineItemRow.objects.filter(requisition_id=requisition.id).delete()

    currency = rules.get_currency_code()
    rows: List[LineItemRow] = []
    adjustments: List[StockAdjustmentRow] = []
    for order, item in enumerate(requisition.line_items):
        rows.append(
            LineItemRow(
                line_item_id=item.id,
                requisition_id=requisition.id,
                line_order=order,
                product_id=item.product_id,
                requested_qty=item.requested_quantity,
                requested_qty_explanation=item.requested_quantity_explanation,
                approved_qty=item.approved_quantity,
                calculated_order_qty=item.calculated_order_quantity,
                beginning_balance=item.beginning_balance,
                total_received_qty=item.total_received_quantity,
                total_consumed_qty=item.total_consumed_quantity,
                total_losses_and_adjustments=item.total_losses_and_adjustments,
                stock_on_hand=item.stock_on_hand,
                total_qty=item.total,
                total_stockout_days=item.total_stockout_days,
                adjusted_consumption=item.adjusted_consumption,
                average_consumption=item.average_consumption,
                maximum_stock_qty=item.maximum_stock_quantity,
                max_periods_of_stock=item.max_periods_of_stock,
                packs_to_ship=item.packs_to_ship,
                price_per_pack=item.price_per_pack.amount if item.price_per_pack else None,
                total_cost=item.total_cost.amount if item.total_cost else None,
                currency_code=currency,
                ideal_stock_amount=item.ideal_stock_amount,
                remarks_text=item.remarks,
                skipped_flag=item.skipped,
                non_full_supply_flag=item.non_full_supply,
                previous_adjusted_consumptions=list(item.previous_adjusted_consumptions),
            )
        )
        for adjustment in item.stock_adjustments:
            adjustments.append(
                StockAdjustmentRow(
                    line_item_id=item.id,
                    reason_id=adjustment.reason_id,
                    quantity=adjustment.quantity,
                )
            )

    LineItemRow.objects.bulk_create(rows)
    if adjustments:
        StockAdjustmentRow.objects.bulk_create(adjustments)


def _append_status_changes(requisition: Requisition) -> None:
    stored_ids = set(
        StatusChangeRow.objects.filter(requisition_id=requisition.id).values_list(
            "status_change_id", flat=True
        )
    )
    new_rows = [
        StatusChangeRow(
            status_change_id=change.id,
            requisition_id=requisition.id,
            status_code=change.status,
            author_id=change.author_id,
            created_dtime=change.created_date,
            previous_status_change_id=change.previous_status_change_id,
            seq_nbr=index,
        )
        for index, change in enumerate(requisition.status_changes)
        if change.id not in stored_ids
    ]
    if new_rows:
        StatusChangeRow.objects.bulk_create(new_rows)


@transaction.atomic
def save(requisition: Requisition, actor_id: str) -> Requisition:
    """
    Insert or update the aggregate.

    The header row is updated only when its ``version_nbr`` still equals the
    version the aggregate was loaded at. On success ``requisition.version``
    holds the new version.
    """
    if requisition.version is None:
        RequisitionRow.objects.create(
            requisition_id=requisition.id,
            initiated_dtime=requisition.created_date,
            create_by_id=actor_id,
            update_by_id=actor_id,
            version_nbr=1,
            **_header_fields(requisition),
        )
        requisition.version = 1
    else:
        updated = RequisitionRow.objects.filter(
            requisition_id=requisition.id,
            version_nbr=requisition.version,
        ).update(
            update_by_id=actor_id,
            update_dtime=timezone.now(),
            version_nbr=F("version_nbr") + 1,
            **_header_fields(requisition),
        )
        if updated == 0:
            if not RequisitionRow.objects.filter(requisition_id=requisition.id).exists():
                raise RequisitionNotFound(requisition.id)
            raise VersionMismatch(requisition.id, requisition.version)
        requisition.version += 1

    _replace_line_items(requisition)
    _append_status_changes(requisition)
    return requisition


@transaction.atomic
def delete(requisition: Requisition) -> None:
    if not requisition.is_deletable():
        raise ValidationFailure(
            f"Requisition with status {requisition.status} cannot be deleted.",
            field="status",
        )
    deleted, _ = RequisitionRow.objects.filter(requisition_id=requisition.id).delete()
    if not deleted:
        raise RequisitionNotFound(requisition.id)


def find_previous(
    facility_id: str,
    program_id: str,
    before: datetime,
    limit: int,
    exclude_id: str | None = None,
) -> List[Requisition]:
    """Regular requisitions created before ``before``, oldest first."""
    if limit <= 0:
        return []
    queryset = _aggregate_queryset().filter(
        facility_id=facility_id,
        program_id=program_id,
        emergency_flag=False,
        initiated_dtime__lt=before,
    )
    if exclude_id:
        queryset = queryset.exclude(requisition_id=exclude_id)
    rows = list(queryset.order_by("-initiated_dtime")[:limit])
    rows.reverse()
    return [_to_domain(row) for row in rows]


def get_last_regular(facility_id: str | None, program_id: str | None) -> Requisition | None:
    if not facility_id:
        raise ValidationFailure("facility_id is required.", field="facility_id")
    if not program_id:
        raise ValidationFailure("program_id is required.", field="program_id")
    row = (
        _aggregate_queryset()
        .filter(facility_id=facility_id, program_id=program_id, emergency_flag=False)
        .order_by("-initiated_dtime")
        .first()
    )
    return _to_domain(row) if row is not None else None


def search(
    facility_id: str | None = None,
    program_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    period_id: str | None = None,
    supervisory_node_id: str | None = None,
    statuses: Iterable[str] | None = None,
    emergency: bool | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> Tuple[List[Requisition], int]:
    queryset = _aggregate_queryset()
    if facility_id:
        queryset = queryset.filter(facility_id=facility_id)
    if program_id:
        queryset = queryset.filter(program_id=program_id)
    if created_from:
        queryset = queryset.filter(initiated_dtime__gte=created_from)
    if created_to:
        queryset = queryset.filter(initiated_dtime__lte=created_to)
    if period_id:
        queryset = queryset.filter(processing_period_id=period_id)
    if supervisory_node_id:
        queryset = queryset.filter(supervisory_node_id=supervisory_node_id)
    status_list = [str(status).upper() for status in statuses or [] if status]
    if status_list:
        queryset = queryset.filter(status_code__in=status_list)
    if emergency is not None:
        queryset = queryset.filter(emergency_flag=emergency)

    return _paged(queryset, page, page_size)


def search_for_approval(
    scopes: Sequence[Mapping[str, str]],
    page: int = 1,
    page_size: int | None = None,
) -> Tuple[List[Requisition], int]:
    """
    Requisitions awaiting approval within any of ``scopes``.

    Each scope is a set of column filters (``program_id``, ``facility_id``,
    ``supervisory_node_id``); an empty scope matches every requisition.
    """
    scopes = list(scopes or ())
    if not scopes:
        return [], 0
    queryset = _aggregate_queryset().filter(
        status_code__in=sorted(rules.TRANSITION_GUARDS["approve"])
    )
    if all(scopes):
        condition = Q()
        for scope in scopes:
            condition |= Q(**scope)
        queryset = queryset.filter(condition)
    return _paged(queryset, page, page_size)


def search_approved(
    facility_id: str | None = None,
    program_id: str | None = None,
    supplying_facility_ids: Iterable[str] | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> Tuple[List[Requisition], int]:
    """Approved requisitions ready for conversion to orders."""
    queryset = _aggregate_queryset().filter(status_code=rules.APPROVED)
    if facility_id:
        queryset = queryset.filter(facility_id=facility_id)
    if program_id:
        queryset = queryset.filter(program_id=program_id)
    if supplying_facility_ids is not None:
        queryset = queryset.filter(supplying_facility_id__in=list(supplying_facility_ids))
    return _paged(queryset, page, page_size)


def _paged(queryset, page: int, page_size: int | None) -> Tuple[List[Requisition], int]:
    size = page_size or _page_size()
    page = max(int(page or 1), 1)
    offset = (page - 1) * size
    total_count = queryset.count()
    rows = queryset.order_by("-initiated_dtime")[offset : offset + size]
    return [_to_domain(row) for row in rows], total_count


def find_template(program_id: str) -> RequisitionTemplate:
    columns = {}
    for row in RequisitionTemplateColumn.objects.filter(program_id=program_id):
        column = Column.from_name(row.column_name)
        if column is None:
            logger.warning(
                "Ignoring unknown template column %s for program %s",
                row.column_name,
                program_id,
            )
            continue
        columns[column] = ColumnSettings(
            displayed=row.is_displayed,
            calculated=row.source_code == SOURCE_CALCULATED,
            label=row.label,
        )
    return RequisitionTemplate(columns=columns, template_id=program_id)
