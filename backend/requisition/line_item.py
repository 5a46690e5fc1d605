from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from requisition.money import Money
from requisition.template import Column, RequisitionTemplate


@dataclass
class StockAdjustment:
    reason_id: str
    quantity: int

    def copy(self) -> StockAdjustment:
        return StockAdjustment(reason_id=self.reason_id, quantity=self.quantity)


@dataclass
class RequisitionLineItem:
    """
    Per-commodity row of a requisition.

    Quantities are plain ints (``None`` when not entered); ``price_per_pack``
    and ``total_cost`` are ``Money`` values.
    """

    product_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    requisition_id: str | None = None
    requested_quantity: int | None = None
    requested_quantity_explanation: str | None = None
    approved_quantity: int | None = None
    calculated_order_quantity: int | None = None
    beginning_balance: int | None = None
    total_received_quantity: int | None = None
    total_consumed_quantity: int | None = None
    total_losses_and_adjustments: int | None = None
    stock_on_hand: int | None = None
    total: int | None = None
    total_stockout_days: int | None = None
    adjusted_consumption: int | None = None
    average_consumption: int | None = None
    maximum_stock_quantity: int | None = None
    max_periods_of_stock: Decimal | None = None
    packs_to_ship: int | None = None
    price_per_pack: Money | None = None
    total_cost: Money | None = None
    ideal_stock_amount: int | None = None
    remarks: str | None = None
    skipped: bool = False
    non_full_supply: bool = False
    stock_adjustments: List[StockAdjustment] = field(default_factory=list)
    previous_adjusted_consumptions: List[int] = field(default_factory=list)

    def update_from(self, other: RequisitionLineItem) -> None:
        """Copy the user-entered fields of an edited copy onto this line."""
        self.requested_quantity = other.requested_quantity
        self.requested_quantity_explanation = other.requested_quantity_explanation
        self.approved_quantity = other.approved_quantity
        self.beginning_balance = other.beginning_balance
        self.total_received_quantity = other.total_received_quantity
        self.total_consumed_quantity = other.total_consumed_quantity
        self.stock_on_hand = other.stock_on_hand
        self.total_stockout_days = other.total_stockout_days
        self.remarks = other.remarks
        self.skipped = other.skipped
        self.stock_adjustments = [adjustment.copy() for adjustment in other.stock_adjustments]

    def reset_hidden_columns(self, template: RequisitionTemplate) -> None:
        for column in template.hidden_columns():
            attribute = COLUMN_FIELDS.get(column)
            if attribute is not None:
                setattr(self, attribute, None)


# Column to line item attribute.
COLUMN_FIELDS: Dict[Column, str] = {
    Column.REQUESTED_QUANTITY: "requested_quantity",
    Column.REQUESTED_QUANTITY_EXPLANATION: "requested_quantity_explanation",
    Column.BEGINNING_BALANCE: "beginning_balance",
    Column.TOTAL_RECEIVED_QUANTITY: "total_received_quantity",
    Column.TOTAL_CONSUMED_QUANTITY: "total_consumed_quantity",
    Column.TOTAL_LOSSES_AND_ADJUSTMENTS: "total_losses_and_adjustments",
    Column.STOCK_ON_HAND: "stock_on_hand",
    Column.TOTAL: "total",
    Column.TOTAL_STOCKOUT_DAYS: "total_stockout_days",
    Column.ADJUSTED_CONSUMPTION: "adjusted_consumption",
    Column.AVERAGE_CONSUMPTION: "average_consumption",
    Column.MAXIMUM_STOCK_QUANTITY: "maximum_stock_quantity",
    Column.CALCULATED_ORDER_QUANTITY: "calculated_order_quantity",
    Column.APPROVED_QUANTITY: "approved_quantity",
    Column.PACKS_TO_SHIP: "packs_to_ship",
    Column.PRICE_PER_PACK: "price_per_pack",
    Column.TOTAL_COST: "total_cost",
    Column.IDEAL_STOCK_AMOUNT: "ideal_stock_amount",
    Column.REMARKS: "remarks",
}
