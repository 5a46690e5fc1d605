from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable, Mapping, Sequence

from requisition import rules
from requisition.money import Money

if TYPE_CHECKING:
    from requisition.domain import StockAdjustmentReason
    from requisition.line_item import RequisitionLineItem


def _zero_if_none(value: int | None) -> int:
    return 0 if value is None else int(value)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_beginning_balance(previous: RequisitionLineItem | None) -> int:
    if previous is None:
        return 0
    return _zero_if_none(previous.stock_on_hand) + _zero_if_none(previous.approved_quantity)


def calculate_total_consumed_quantity(item: RequisitionLineItem) -> int:
    return (
        _zero_if_none(item.beginning_balance)
        + _zero_if_none(item.total_received_quantity)
        + _zero_if_none(item.total_losses_and_adjustments)
        - _zero_if_none(item.stock_on_hand)
    )


def calculate_total(item: RequisitionLineItem) -> int:
    return _zero_if_none(item.beginning_balance) + _zero_if_none(item.total_received_quantity)


def calculate_stock_on_hand(item: RequisitionLineItem) -> int:
    return (
        _zero_if_none(item.beginning_balance)
        + _zero_if_none(item.total_received_quantity)
        + _zero_if_none(item.total_losses_and_adjustments)
        - _zero_if_none(item.total_consumed_quantity)
    )


def calculate_total_losses_and_adjustments(
    item: RequisitionLineItem, reasons: Iterable[StockAdjustmentReason]
) -> int:
    additive_by_reason: Mapping[str, bool] = {
        str(reason.reason_id): bool(reason.additive) for reason in reasons
    }
    total = 0
    for adjustment in item.stock_adjustments:
        additive = additive_by_reason.get(str(adjustment.reason_id))
        if additive is None:
            continue
        quantity = _zero_if_none(adjustment.quantity)
        total += quantity if additive else -quantity
    return total


def calculate_total_cost(item: RequisitionLineItem, currency: str | None = None) -> Money:
    currency = currency or rules.get_currency_code()
    if item.packs_to_ship is None:
        return Money.zero(currency)
    price = item.price_per_pack
    if price is None:
        price = Money.of(rules.get_default_price_per_pack(), currency)
    return price.mul(item.packs_to_ship)


def calculate_adjusted_consumption(item: RequisitionLineItem, months_in_period: int) -> int:
    """
    Consumption scaled up for the days the commodity was stocked out.

    The day ratio is ceiling-divided before it is multiplied into the
    consumed quantity, so 100 consumed over 30 days with 15 stockout days
    gives 200.
    """
    consumed = _zero_if_none(item.total_consumed_quantity)
    if consumed == 0:
        return 0

    total_days = rules.DAYS_PER_MONTH * _zero_if_none(months_in_period)
    stockout_days = _zero_if_none(item.total_stockout_days)
    non_stockout_days = total_days - stockout_days
    if non_stockout_days == 0:
        return consumed

    multiplier = math.ceil(Decimal(total_days) / Decimal(non_stockout_days))
    return consumed * int(multiplier)


def calculate_average_consumption(series: Sequence[int]) -> int:
    if not series:
        raise ValueError("Average consumption needs at least one value.")
    values = [_zero_if_none(value) for value in series]
    return _round_half_up(Decimal(sum(values)) / Decimal(len(values)))


def calculate_maximum_stock_quantity(item: RequisitionLineItem) -> int:
    if item.max_periods_of_stock is None or item.average_consumption is None:
        return 0
    product = Decimal(str(item.max_periods_of_stock)) * Decimal(item.average_consumption)
    return _round_half_up(product)


def calculate_calculated_order_quantity(item: RequisitionLineItem) -> int:
    maximum = _zero_if_none(item.maximum_stock_quantity)
    return max(0, maximum - _zero_if_none(item.stock_on_hand))


def calculate_packs_to_ship(
    order_quantity: int | None,
    net_content: int | None,
    pack_rounding_threshold: int | None = 0,
    round_to_zero: bool = False,
) -> int:
    quantity = _zero_if_none(order_quantity)
    content = _zero_if_none(net_content)
    if quantity <= 0 or content == 0:
        return 0

    packs, remainder = divmod(quantity, content)
    if remainder > 0 and remainder > _zero_if_none(pack_rounding_threshold):
        packs += 1
    if packs == 0 and not round_to_zero:
        packs = 1
    return packs


def order_quantity_for_packs(item: RequisitionLineItem, status: str) -> int:
    if status not in rules.PRE_AUTHORIZE_STATUSES and item.approved_quantity is not None:
        return item.approved_quantity
    if item.requested_quantity is not None:
        return item.requested_quantity
    if item.calculated_order_quantity is not None:
        return item.calculated_order_quantity
    return 0
