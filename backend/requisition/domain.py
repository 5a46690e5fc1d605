from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from django.utils import timezone

from requisition import calculator, rules
from requisition.exceptions import InvalidStateTransition, ValidationFailure
from requisition.line_item import RequisitionLineItem
from requisition.money import Money, total
from requisition.status_change import StatusChange, latest
from requisition.template import Column, RequisitionTemplate


@dataclass(frozen=True)
class ApprovedProduct:
    """Catalog entry a facility may requisition for a program."""

    product_id: str
    program_id: str | None = None
    net_content: int = 1
    pack_rounding_threshold: int = 0
    round_to_zero: bool = False
    commodity_type_id: str | None = None
    price_per_pack: Money | None = None
    max_periods_of_stock: Decimal | None = None


@dataclass(frozen=True)
class ProofOfDeliveryLine:
    product_id: str
    quantity_accepted: int | None = None


@dataclass(frozen=True)
class ProofOfDelivery:
    status: str
    lines: Tuple[ProofOfDeliveryLine, ...] = ()

    def is_confirmed(self) -> bool:
        return str(self.status or "").upper() == rules.PROOF_OF_DELIVERY_CONFIRMED

    def find_line(self, product_id: str) -> ProofOfDeliveryLine | None:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None


@dataclass(frozen=True)
class StockAdjustmentReason:
    reason_id: str
    additive: bool
    name: str | None = None


@dataclass(frozen=True)
class SupplyLine:
    supervisory_node_id: str | None
    program_id: str
    supplying_facility_id: str


def _require(value: object, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationFailure(f"{name} is required.", field=name)


@dataclass
class Requisition:
    """
    Aggregate root of one facility/program/period requisition.

    Transitions mutate the aggregate in place and append exactly one
    ``StatusChange``. Previous requisitions are read-only references
    supplied by the caller; they are never persisted through this object.
    ``version`` is the persisted row version the aggregate was loaded at
    (``None`` until first saved).
    """

    program_id: str
    facility_id: str
    processing_period_id: str
    emergency: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = rules.INITIATED
    line_items: List[RequisitionLineItem] = field(default_factory=list)
    template: RequisitionTemplate | None = None
    months_in_period: int = 1
    supervisory_node_id: str | None = None
    supplying_facility_id: str | None = None
    status_changes: List[StatusChange] = field(default_factory=list)
    previous_requisitions: Tuple[Requisition, ...] = ()
    stock_adjustment_reasons: List[StockAdjustmentReason] = field(default_factory=list)
    date_physical_stock_count_completed: date | None = None
    created_date: datetime = field(default_factory=timezone.now)
    version: int | None = None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initiate(
        self,
        template: RequisitionTemplate,
        approved_products: Iterable[ApprovedProduct],
        previous_requisitions: Sequence[Requisition],
        months_in_period: int,
        proof_of_delivery: ProofOfDelivery | None,
        ideal_stock_amounts: Mapping[str, int] | None,
        initiator_id: str,
        stock_on_hand_by_product: Mapping[str, int] | None = None,
    ) -> None:
        if self.status != rules.INITIATED or self.line_items or self.status_changes:
            raise InvalidStateTransition(
                "initiate", self.status, "Requisition has already been initiated."
            )
        _require(initiator_id, "initiator_id")
        _require(template, "template")

        if months_in_period is None or int(months_in_period) < 1:
            raise ValidationFailure(
                "months_in_period must be at least 1.", field="months_in_period"
            )

        self.template = template
        self.months_in_period = int(months_in_period)
        self.previous_requisitions = tuple(previous_requisitions or ())
        ideal_stock_amounts = ideal_stock_amounts or {}
        stock_on_hand_by_product = stock_on_hand_by_product or {}

        if not self.emergency:
            most_recent = self.previous_requisitions[-1] if self.previous_requisitions else None
            seed_beginning_balance = most_recent is not None and template.is_column_displayed(
                Column.BEGINNING_BALANCE
            )
            pod_confirmed = proof_of_delivery is not None and proof_of_delivery.is_confirmed()

            for product in approved_products:
                item = RequisitionLineItem(
                    product_id=product.product_id,
                    requisition_id=self.id,
                    price_per_pack=product.price_per_pack,
                    max_periods_of_stock=product.max_periods_of_stock,
                )
                if seed_beginning_balance:
                    item.beginning_balance = calculator.calculate_beginning_balance(
                        most_recent.find_line_by_product_id(product.product_id)
                    )
                if product.product_id in stock_on_hand_by_product:
                    item.stock_on_hand = stock_on_hand_by_product[product.product_id]
                if product.commodity_type_id and product.commodity_type_id in ideal_stock_amounts:
                    item.ideal_stock_amount = ideal_stock_amounts[product.commodity_type_id]
                if pod_confirmed:
                    pod_line = proof_of_delivery.find_line(product.product_id)
                    if pod_line is not None:
                        item.total_received_quantity = pod_line.quantity_accepted
                self.line_items.append(item)

        self.status = rules.INITIATED
        self._record_status_change(initiator_id)

    def submit(
        self,
        full_supply_products: Iterable[ApprovedProduct],
        submitter_id: str,
        skip_authorize: bool = False,
    ) -> None:
        self._guard("submit")
        _require(submitter_id, "submitter_id")

        self._recalculate(full_supply_products)
        if skip_authorize:
            self._populate_approved_quantities()
            self.status = rules.AUTHORIZED
        else:
            self.status = rules.SUBMITTED
        self._record_status_change(submitter_id)

    def authorize(self, full_supply_products: Iterable[ApprovedProduct], authorizer_id: str) -> None:
        self._guard("authorize")
        _require(authorizer_id, "authorizer_id")

        self._recalculate(full_supply_products)
        self._populate_approved_quantities()
        self.status = rules.AUTHORIZED
        self._record_status_change(authorizer_id)

    def approve(
        self,
        parent_node_id: str | None,
        full_supply_products: Iterable[ApprovedProduct],
        supply_lines: Iterable[SupplyLine],
        approver_id: str,
    ) -> None:
        self._guard("approve")
        _require(approver_id, "approver_id")

        self._recalculate(full_supply_products)
        if parent_node_id is not None:
            self.status = rules.IN_APPROVAL
            self.supervisory_node_id = parent_node_id
        else:
            self.status = rules.APPROVED
            supply_line = self._find_supply_line(supply_lines)
            if supply_line is not None:
                self.supplying_facility_id = supply_line.supplying_facility_id
        self._record_status_change(approver_id)

    def reject(self, full_supply_products: Iterable[ApprovedProduct], rejector_id: str) -> None:
        self._guard("reject")
        _require(rejector_id, "rejector_id")

        self._recalculate(full_supply_products)
        self.status = rules.REJECTED
        self._record_status_change(rejector_id)

    def release(self, releaser_id: str) -> None:
        self._guard("release")
        _require(releaser_id, "releaser_id")

        self.status = rules.RELEASED
        self._record_status_change(releaser_id)

    def skip(self, skippable: bool, skipper_id: str) -> None:
        self._guard("skip")
        _require(skipper_id, "skipper_id")
        if not skippable:
            raise ValidationFailure("The processing period cannot be skipped.", field="skippable")
        if self.emergency:
            raise ValidationFailure("Emergency requisitions cannot be skipped.", field="emergency")

        self.status = rules.SKIPPED
        self._record_status_change(skipper_id)

    def update_from(
        self,
        incoming: Requisition,
        stock_adjustment_reasons: Iterable[StockAdjustmentReason],
        update_stock_date: bool,
    ) -> None:
        """
        Merge an edited copy into this aggregate.

        Existing lines are matched by id and an id may appear only once.
        Lines added here get a fresh id. On a regular requisition, full
        supply lines missing from ``incoming`` are kept and unknown full
        supply lines are ignored; non-full-supply lines follow ``incoming``.
        An emergency requisition keeps only the incoming non-full-supply lines.
        """
        if self.status not in rules.EDITABLE_STATUSES:
            raise InvalidStateTransition("update", self.status)

        incoming_ids = [candidate.id for candidate in incoming.line_items if candidate.id]
        if len(incoming_ids) != len(set(incoming_ids)):
            raise ValidationFailure("Line item ids must be unique.", field="line_items")

        self.stock_adjustment_reasons = list(stock_adjustment_reasons or ())
        if update_stock_date:
            self.date_physical_stock_count_completed = incoming.date_physical_stock_count_completed

        existing_by_id: Dict[str, RequisitionLineItem] = {item.id: item for item in self.line_items}
        merged: List[RequisitionLineItem] = []
        seen_ids = set()

        for candidate in incoming.line_items:
            existing = existing_by_id.get(candidate.id)
            if self.emergency and not candidate.non_full_supply:
                continue
            if existing is not None:
                existing.update_from(candidate)
                merged.append(existing)
                seen_ids.add(existing.id)
            elif candidate.non_full_supply or self.emergency:
                item = RequisitionLineItem(product_id=candidate.product_id, non_full_supply=True)
                item.update_from(candidate)
                merged.append(item)

        if not self.emergency:
            for item in self.line_items:
                if item.id not in seen_ids and not item.non_full_supply:
                    merged.append(item)

        for item in merged:
            item.requisition_id = self.id
        self.line_items = merged

        self._recalculate(None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_deletable(self) -> bool:
        return self.status in rules.DELETABLE_STATUSES

    def find_line_by_product_id(self, product_id: str) -> RequisitionLineItem | None:
        for item in self.line_items:
            if item.product_id == product_id:
                return item
        return None

    def non_skipped_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if not item.skipped]

    def skipped_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if item.skipped]

    def non_skipped_full_supply_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if not item.skipped and not item.non_full_supply]

    def non_skipped_non_full_supply_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if not item.skipped and item.non_full_supply]

    def skipped_full_supply_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if item.skipped and not item.non_full_supply]

    def skipped_non_full_supply_line_items(self) -> List[RequisitionLineItem]:
        return [item for item in self.line_items if item.skipped and item.non_full_supply]

    def get_total_cost(self) -> Money:
        return total(item.total_cost for item in self.non_skipped_line_items())

    def get_full_supply_total_cost(self) -> Money:
        return total(item.total_cost for item in self.non_skipped_full_supply_line_items())

    def get_non_full_supply_total_cost(self) -> Money:
        return total(item.total_cost for item in self.non_skipped_non_full_supply_line_items())

    def set_previous_adjusted_consumptions(self, count: int) -> None:
        previous = list(self.previous_requisitions)
        walked = previous[-count:] if count > 0 else []
        for item in self.line_items:
            values: List[int] = []
            for requisition in walked:
                for line in requisition.line_items:
                    if line.product_id != item.product_id:
                        continue
                    if line.skipped or line.adjusted_consumption is None:
                        continue
                    values.append(line.adjusted_consumption)
            item.previous_adjusted_consumptions = values

    def get_latest_status_change(self) -> StatusChange | None:
        return latest(self.status_changes)

    @property
    def previous_requisition_ids(self) -> List[str]:
        return [requisition.id for requisition in self.previous_requisitions]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guard(self, action: str) -> None:
        if self.status not in rules.TRANSITION_GUARDS[action]:
            raise InvalidStateTransition(action, self.status)

    def _template(self) -> RequisitionTemplate:
        return self.template if self.template is not None else RequisitionTemplate()

    def _record_status_change(self, author_id: str) -> None:
        previous = self.get_latest_status_change()
        self.status_changes.append(
            StatusChange(
                requisition_id=self.id,
                status=self.status,
                author_id=author_id,
                previous_status_change_id=previous.id if previous is not None else None,
            )
        )

    def _find_supply_line(self, supply_lines: Iterable[SupplyLine]) -> SupplyLine | None:
        for line in supply_lines or ():
            if line.program_id != self.program_id:
                continue
            if line.supervisory_node_id not in (None, self.supervisory_node_id):
                continue
            return line
        return None

    def _populate_approved_quantities(self) -> None:
        template = self._template()
        use_calculated = template.is_column_displayed(Column.CALCULATED_ORDER_QUANTITY)
        for item in self.non_skipped_line_items():
            if use_calculated and item.requested_quantity is None:
                item.approved_quantity = item.calculated_order_quantity
            else:
                item.approved_quantity = item.requested_quantity

    def _recalculate(self, products: Iterable[ApprovedProduct] | None) -> None:
        template = self._template()
        products_by_id = (
            {product.product_id: product for product in products}
            if products is not None
            else None
        )

        def displayed_and_calculated(column: Column) -> bool:
            return template.is_column_displayed(column) and template.is_column_calculated(column)

        for item in self.non_skipped_line_items():
            item.total_losses_and_adjustments = calculator.calculate_total_losses_and_adjustments(
                item, self.stock_adjustment_reasons
            )
            if displayed_and_calculated(Column.TOTAL_CONSUMED_QUANTITY):
                item.total_consumed_quantity = calculator.calculate_total_consumed_quantity(item)
            if displayed_and_calculated(Column.STOCK_ON_HAND):
                item.stock_on_hand = calculator.calculate_stock_on_hand(item)
            if template.is_column_displayed(Column.TOTAL):
                item.total = calculator.calculate_total(item)

            item.adjusted_consumption = calculator.calculate_adjusted_consumption(
                item, self.months_in_period
            )
            if template.is_column_displayed(Column.AVERAGE_CONSUMPTION):
                item.average_consumption = calculator.calculate_average_consumption(
                    list(item.previous_adjusted_consumptions) + [item.adjusted_consumption]
                )
            if template.is_column_displayed(Column.MAXIMUM_STOCK_QUANTITY):
                item.maximum_stock_quantity = calculator.calculate_maximum_stock_quantity(item)
            if template.is_column_displayed(Column.CALCULATED_ORDER_QUANTITY):
                item.calculated_order_quantity = calculator.calculate_calculated_order_quantity(
                    item
                )

            if products_by_id is not None:
                product = products_by_id.get(item.product_id)
                if product is not None:
                    item.packs_to_ship = calculator.calculate_packs_to_ship(
                        calculator.order_quantity_for_packs(item, self.status),
                        product.net_content,
                        product.pack_rounding_threshold,
                        product.round_to_zero,
                    )
                    if item.price_per_pack is None:
                        item.price_per_pack = product.price_per_pack
            item.total_cost = calculator.calculate_total_cost(item)

        for item in self.line_items:
            item.reset_hidden_columns(template)
