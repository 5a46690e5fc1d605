from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping

from requisition.exceptions import ValidationFailure


class Column(str, Enum):
    """Known requisition template columns, keyed by their wire name."""

    REQUESTED_QUANTITY = "requestedQuantity"
    REQUESTED_QUANTITY_EXPLANATION = "requestedQuantityExplanation"
    BEGINNING_BALANCE = "beginningBalance"
    TOTAL_RECEIVED_QUANTITY = "totalReceivedQuantity"
    TOTAL_CONSUMED_QUANTITY = "totalConsumedQuantity"
    TOTAL_LOSSES_AND_ADJUSTMENTS = "totalLossesAndAdjustments"
    STOCK_ON_HAND = "stockOnHand"
    TOTAL = "total"
    TOTAL_STOCKOUT_DAYS = "totalStockoutDays"
    ADJUSTED_CONSUMPTION = "adjustedConsumption"
    AVERAGE_CONSUMPTION = "averageConsumption"
    MAXIMUM_STOCK_QUANTITY = "maximumStockQuantity"
    CALCULATED_ORDER_QUANTITY = "calculatedOrderQuantity"
    APPROVED_QUANTITY = "approvedQuantity"
    PACKS_TO_SHIP = "packsToShip"
    PRICE_PER_PACK = "pricePerPack"
    TOTAL_COST = "totalCost"
    IDEAL_STOCK_AMOUNT = "idealStockAmount"
    REMARKS = "remarks"

    @classmethod
    def from_name(cls, name: object) -> Column | None:
        text = str(name or "").strip()
        for column in cls:
            if column.value == text or column.name == text.upper():
                return column
        return None


SOURCE_USER_INPUT = "USER_INPUT"
SOURCE_CALCULATED = "CALCULATED"
SOURCE_REFERENCE_DATA = "REFERENCE_DATA"
COLUMN_SOURCES = (SOURCE_USER_INPUT, SOURCE_CALCULATED, SOURCE_REFERENCE_DATA)

_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9 ]+$")


def validate_column_label(label: object) -> str:
    text = str(label or "")
    if not text.strip() or not _LABEL_PATTERN.fullmatch(text):
        raise ValidationFailure(
            "Column label may contain only letters, digits and spaces.",
            field="label",
        )
    return text


@dataclass(frozen=True)
class ColumnSettings:
    displayed: bool = False
    calculated: bool = False
    label: str | None = None


@dataclass(frozen=True)
class RequisitionTemplate:
    """
    Read-only column configuration consulted by the state machine.

    A column missing from ``columns`` is treated as not in the template:
    it is neither displayed nor calculated and is left untouched on save.
    """

    columns: Mapping[Column, ColumnSettings] = field(default_factory=dict)
    template_id: str | None = None

    @classmethod
    def build(
        cls,
        displayed: Iterable[Column] = (),
        calculated: Iterable[Column] = (),
        hidden: Iterable[Column] = (),
        template_id: str | None = None,
    ) -> RequisitionTemplate:
        calculated_set = set(calculated)
        columns: Dict[Column, ColumnSettings] = {}
        for column in displayed:
            columns[column] = ColumnSettings(displayed=True, calculated=column in calculated_set)
        for column in hidden:
            columns[column] = ColumnSettings(displayed=False, calculated=column in calculated_set)
        return cls(columns=columns, template_id=template_id)

    def is_column_in_template(self, column: Column) -> bool:
        return column in self.columns

    def is_column_displayed(self, column: Column) -> bool:
        settings = self.columns.get(column)
        return bool(settings and settings.displayed)

    def is_column_calculated(self, column: Column) -> bool:
        settings = self.columns.get(column)
        return bool(settings and settings.calculated)

    def is_column_in_template_and_displayed(self, column: Column) -> bool:
        return self.is_column_in_template(column) and self.is_column_displayed(column)

    def hidden_columns(self) -> list[Column]:
        return [column for column, settings in self.columns.items() if not settings.displayed]
