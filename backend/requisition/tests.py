from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db import connection as db_connection
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from api.rbac import RoleAssignment
from requisition import calculator, repository, rules
from requisition.domain import (
    ApprovedProduct,
    ProofOfDelivery,
    ProofOfDeliveryLine,
    Requisition,
    StockAdjustmentReason,
    SupplyLine,
)
from requisition.exceptions import (
    InvalidStateTransition,
    MissingPermission,
    RequisitionNotFound,
    ValidationFailure,
    VersionMismatch,
)
from requisition.line_item import RequisitionLineItem, StockAdjustment
from requisition.models import RequisitionTemplateColumn
from requisition.money import Money, total
from requisition.services import data_access
from requisition.services.permissions import (
    PermissionService,
    RightAssignmentValidator,
    RoleAssignmentValidator,
)
from requisition.status_change import StatusChange, latest
from requisition.template import (
    SOURCE_CALCULATED,
    SOURCE_USER_INPUT,
    Column,
    RequisitionTemplate,
    validate_column_label,
)


def _line(product_id: str = "p1", **fields) -> RequisitionLineItem:
    return RequisitionLineItem(product_id=product_id, **fields)


def _requisition(**fields) -> Requisition:
    values = {
        "program_id": "prog",
        "facility_id": "fac",
        "processing_period_id": "period-1",
        "supervisory_node_id": "sn1",
    }
    values.update(fields)
    return Requisition(**values)


class CalculatorTests(SimpleTestCase):
    def test_beginning_balance_from_previous_line(self) -> None:
        self.assertEqual(calculator.calculate_beginning_balance(None), 0)
        previous = _line(stock_on_hand=10, approved_quantity=5)
        self.assertEqual(calculator.calculate_beginning_balance(previous), 15)
        self.assertEqual(calculator.calculate_beginning_balance(_line(stock_on_hand=7)), 7)

    def test_consumed_and_stock_on_hand_treat_missing_as_zero(self) -> None:
        item = _line(beginning_balance=100, total_received_quantity=50, stock_on_hand=30)
        self.assertEqual(calculator.calculate_total_consumed_quantity(item), 120)

        item = _line(beginning_balance=100, total_losses_and_adjustments=-10, total_consumed_quantity=60)
        self.assertEqual(calculator.calculate_stock_on_hand(item), 30)
        self.assertEqual(calculator.calculate_total(_line(beginning_balance=4)), 4)

    def test_consumed_and_stock_on_hand_agree(self) -> None:
        item = _line(beginning_balance=40, total_received_quantity=25, total_losses_and_adjustments=-5, stock_on_hand=12)
        item.total_consumed_quantity = calculator.calculate_total_consumed_quantity(item)
        self.assertEqual(item.total_consumed_quantity, 48)
        self.assertEqual(calculator.calculate_stock_on_hand(item), 12)
        self.assertEqual(calculator.calculate_total(item), 65)

    def test_losses_and_adjustments_follow_reason_sign(self) -> None:
        reasons = [
            StockAdjustmentReason(reason_id="found", additive=True),
            StockAdjustmentReason(reason_id="expired", additive=False),
        ]
        item = _line(
            stock_adjustments=[
                StockAdjustment(reason_id="found", quantity=10),
                StockAdjustment(reason_id="expired", quantity=25),
                StockAdjustment(reason_id="unknown", quantity=99),
            ]
        )
        self.assertEqual(calculator.calculate_total_losses_and_adjustments(item, reasons), -15)
        self.assertEqual(calculator.calculate_total_losses_and_adjustments(_line(), reasons), 0)

    def test_adjusted_consumption_scales_for_stockout_days(self) -> None:
        cases = [
            (100, 0, 100),
            (100, 15, 200),
            (100, 10, 200),
            (100, 20, 300),
            (100, 30, 100),
            (0, 15, 0),
        ]
        for consumed, stockout_days, expected in cases:
            with self.subTest(consumed=consumed, stockout_days=stockout_days):
                item = _line(total_consumed_quantity=consumed, total_stockout_days=stockout_days)
                self.assertEqual(calculator.calculate_adjusted_consumption(item, 1), expected)

    def test_adjusted_consumption_uses_period_length(self) -> None:
        item = _line(total_consumed_quantity=100, total_stockout_days=30)
        self.assertEqual(calculator.calculate_adjusted_consumption(item, 2), 200)

    def test_average_consumption_rounds_half_up(self) -> None:
        self.assertEqual(calculator.calculate_average_consumption([1, 2]), 2)
        self.assertEqual(calculator.calculate_average_consumption([10, 20, 31]), 20)
        with self.assertRaises(ValueError):
            calculator.calculate_average_consumption([])

    def test_maximum_stock_and_order_quantity(self) -> None:
        item = _line(max_periods_of_stock=Decimal("1.5"), average_consumption=15)
        self.assertEqual(calculator.calculate_maximum_stock_quantity(item), 23)
        self.assertEqual(calculator.calculate_maximum_stock_quantity(_line(average_consumption=5)), 0)

        self.assertEqual(
            calculator.calculate_calculated_order_quantity(_line(maximum_stock_quantity=50, stock_on_hand=20)),
            30,
        )
        self.assertEqual(
            calculator.calculate_calculated_order_quantity(_line(maximum_stock_quantity=10, stock_on_hand=30)),
            0,
        )

    def test_packs_to_ship_rounding(self) -> None:
        self.assertEqual(calculator.calculate_packs_to_ship(0, 10), 0)
        self.assertEqual(calculator.calculate_packs_to_ship(25, 0), 0)
        self.assertEqual(calculator.calculate_packs_to_ship(20, 10), 2)
        self.assertEqual(calculator.calculate_packs_to_ship(25, 10, 0), 3)
        self.assertEqual(calculator.calculate_packs_to_ship(25, 10, 5), 2)
        self.assertEqual(calculator.calculate_packs_to_ship(3, 10, 5, round_to_zero=False), 1)
        self.assertEqual(calculator.calculate_packs_to_ship(3, 10, 5, round_to_zero=True), 0)

    def test_order_quantity_for_packs_depends_on_status(self) -> None:
        item = _line(requested_quantity=12, approved_quantity=8, calculated_order_quantity=30)
        self.assertEqual(calculator.order_quantity_for_packs(item, rules.INITIATED), 12)
        self.assertEqual(calculator.order_quantity_for_packs(item, rules.AUTHORIZED), 8)
        self.assertEqual(
            calculator.order_quantity_for_packs(_line(calculated_order_quantity=30), rules.SUBMITTED),
            30,
        )

    @override_settings(REQUISITION_CURRENCY_CODE="USD", REQUISITION_DEFAULT_PRICE_PER_PACK=Decimal("1.25"))
    def test_total_cost(self) -> None:
        self.assertEqual(calculator.calculate_total_cost(_line()), Money.zero("USD"))
        self.assertEqual(calculator.calculate_total_cost(_line(packs_to_ship=4)).amount, Decimal("5.00"))
        item = _line(packs_to_ship=3, price_per_pack=Money.of("2.50", "USD"))
        self.assertEqual(calculator.calculate_total_cost(item).amount, Decimal("7.50"))


class MoneyTests(SimpleTestCase):
    def test_amount_quantized_half_up(self) -> None:
        value = Money.of("1.005", "usd")
        self.assertEqual(value.amount, Decimal("1.01"))
        self.assertEqual(value.currency, "USD")
        self.assertEqual(Money.of(0.1 + 0.2, "USD").amount, Decimal("0.30"))

    def test_parse(self) -> None:
        self.assertIsNone(Money.parse(""))
        self.assertEqual(Money.parse("EUR 3.5"), Money(Decimal("3.50"), "EUR"))
        self.assertEqual(Money.parse("4", "USD").amount, Decimal("4.00"))
        with self.assertRaises(ValueError):
            Money.parse("abc", "USD")

    def test_addition_requires_same_currency(self) -> None:
        with self.assertRaises(ValueError):
            Money.of("1", "USD") + Money.of("1", "EUR")
        self.assertEqual(
            total([Money.of("1.10", "USD"), None, Money.of("2", "USD")], "USD").amount,
            Decimal("3.10"),
        )


class TemplateTests(SimpleTestCase):
    def test_column_label_validation(self) -> None:
        self.assertEqual(validate_column_label("Stock on hand 2"), "Stock on hand 2")
        for label in ("", "   ", "bad-label", "Quantity!"):
            with self.subTest(label=label):
                with self.assertRaises(ValidationFailure):
                    validate_column_label(label)

    def test_model_clean_reports_label_error(self) -> None:
        column = RequisitionTemplateColumn(
            program_id="prog",
            column_name=Column.REMARKS.value,
            label="Remarks?",
            source_code=SOURCE_USER_INPUT,
        )
        with self.assertRaises(ValidationError) as ctx:
            column.clean()
        self.assertIn("label", ctx.exception.message_dict)

    def test_column_lookup_by_wire_or_enum_name(self) -> None:
        self.assertEqual(Column.from_name("stockOnHand"), Column.STOCK_ON_HAND)
        self.assertEqual(Column.from_name("stock_on_hand"), Column.STOCK_ON_HAND)
        self.assertIsNone(Column.from_name("bogus"))

    def test_template_queries(self) -> None:
        template = RequisitionTemplate.build(
            displayed=[Column.STOCK_ON_HAND],
            calculated=[Column.STOCK_ON_HAND, Column.TOTAL_COST],
            hidden=[Column.TOTAL_COST],
        )
        self.assertTrue(template.is_column_in_template_and_displayed(Column.STOCK_ON_HAND))
        self.assertTrue(template.is_column_calculated(Column.TOTAL_COST))
        self.assertFalse(template.is_column_displayed(Column.TOTAL_COST))
        self.assertFalse(template.is_column_in_template(Column.REMARKS))
        self.assertEqual(template.hidden_columns(), [Column.TOTAL_COST])


class StatusChangeTests(SimpleTestCase):
    def test_latest_prefers_newest_then_last_appended(self) -> None:
        now = timezone.now()
        first = StatusChange("r1", rules.INITIATED, "u1", created_date=now - timedelta(minutes=5))
        second = StatusChange("r1", rules.SUBMITTED, "u1", created_date=now)
        third = StatusChange("r1", rules.AUTHORIZED, "u1", created_date=now)

        self.assertIsNone(latest([]))
        self.assertEqual(latest([second, first]), second)
        self.assertEqual(latest([first, second, third]), third)


@override_settings(REQUISITION_CURRENCY_CODE="USD", REQUISITION_DEFAULT_PRICE_PER_PACK=Decimal("0"))
class RequisitionStateMachineTests(SimpleTestCase):
    def _initiated(self, template=None, **fields) -> Requisition:
        requisition = _requisition(**fields)
        requisition.initiate(
            template or RequisitionTemplate.build(displayed=[Column.REQUESTED_QUANTITY]),
            [],
            [],
            1,
            None,
            {},
            "u1",
        )
        return requisition

    def test_initiate_seeds_lines_from_reference_data(self) -> None:
        previous = _requisition(
            line_items=[_line("p1", stock_on_hand=10, approved_quantity=5)],
        )
        template = RequisitionTemplate.build(
            displayed=[Column.BEGINNING_BALANCE, Column.STOCK_ON_HAND, Column.TOTAL_RECEIVED_QUANTITY]
        )
        pod = ProofOfDelivery(
            status="CONFIRMED",
            lines=(ProofOfDeliveryLine(product_id="p1", quantity_accepted=7),),
        )
        products = [
            ApprovedProduct(product_id="p1", commodity_type_id="ct1"),
            ApprovedProduct(product_id="p2"),
        ]
        requisition = _requisition()

        requisition.initiate(template, products, [previous], 2, pod, {"ct1": 50}, "u1", {"p1": 3})

        self.assertEqual(requisition.status, rules.INITIATED)
        self.assertEqual(requisition.months_in_period, 2)
        self.assertEqual(len(requisition.status_changes), 1)
        self.assertIsNone(requisition.status_changes[0].previous_status_change_id)
        first, second = requisition.line_items
        self.assertEqual(first.beginning_balance, 15)
        self.assertEqual(first.total_received_quantity, 7)
        self.assertEqual(first.stock_on_hand, 3)
        self.assertEqual(first.ideal_stock_amount, 50)
        self.assertEqual(first.requisition_id, requisition.id)
        self.assertEqual(second.beginning_balance, 0)
        self.assertIsNone(second.total_received_quantity)
        self.assertEqual(requisition.previous_requisition_ids, [previous.id])

    def test_initiate_ignores_unconfirmed_delivery_and_hidden_beginning_balance(self) -> None:
        previous = _requisition(line_items=[_line("p1", stock_on_hand=10)])
        pod = ProofOfDelivery(status="INITIATED", lines=(ProofOfDeliveryLine("p1", 7),))
        requisition = _requisition()

        requisition.initiate(
            RequisitionTemplate.build(hidden=[Column.BEGINNING_BALANCE]),
            [ApprovedProduct(product_id="p1")],
            [previous],
            1,
            pod,
            {},
            "u1",
        )

        item = requisition.line_items[0]
        self.assertIsNone(item.beginning_balance)
        self.assertIsNone(item.total_received_quantity)

    def test_emergency_initiate_has_no_lines(self) -> None:
        requisition = _requisition(emergency=True)
        requisition.initiate(
            RequisitionTemplate.build(), [ApprovedProduct(product_id="p1")], [], 1, None, {}, "u1"
        )
        self.assertEqual(requisition.line_items, [])
        self.assertEqual(requisition.status, rules.INITIATED)

    def test_initiate_twice_fails(self) -> None:
        requisition = self._initiated()
        with self.assertRaises(InvalidStateTransition):
            requisition.initiate(RequisitionTemplate.build(), [], [], 1, None, {}, "u1")

    def test_initiate_requires_initiator(self) -> None:
        with self.assertRaises(ValidationFailure):
            _requisition().initiate(RequisitionTemplate.build(), [], [], 1, None, {}, "")

    def test_initiate_requires_positive_months_in_period(self) -> None:
        for months in (0, -1, None):
            with self.subTest(months=months):
                requisition = _requisition()
                with self.assertRaises(ValidationFailure) as ctx:
                    requisition.initiate(RequisitionTemplate.build(), [], [], months, None, {}, "u1")
                self.assertEqual(ctx.exception.field, "months_in_period")
                self.assertEqual(requisition.status_changes, [])

    def test_submit_links_status_changes(self) -> None:
        requisition = self._initiated()
        requisition.submit([], "u2")

        self.assertEqual(requisition.status, rules.SUBMITTED)
        first, second = requisition.status_changes
        self.assertEqual(second.status, rules.SUBMITTED)
        self.assertEqual(second.author_id, "u2")
        self.assertEqual(second.previous_status_change_id, first.id)
        self.assertEqual(requisition.get_latest_status_change(), second)

    def test_submit_with_skip_authorize_populates_approved(self) -> None:
        requisition = self._initiated()
        requisition.line_items = [_line("p1", requested_quantity=12)]

        requisition.submit([], "u7", skip_authorize=True)

        self.assertEqual(requisition.status, rules.AUTHORIZED)
        self.assertEqual(requisition.line_items[0].approved_quantity, 12)
        self.assertEqual(
            [change.status for change in requisition.status_changes],
            [rules.INITIATED, rules.AUTHORIZED],
        )
        self.assertEqual(requisition.get_latest_status_change().author_id, "u7")

    def test_submit_twice_fails(self) -> None:
        requisition = self._initiated()
        requisition.submit([], "u1")
        with self.assertRaises(InvalidStateTransition):
            requisition.submit([], "u1")
        self.assertEqual(len(requisition.status_changes), 2)

    def test_is_deletable_by_status(self) -> None:
        for status in rules.STATUSES:
            with self.subTest(status=status):
                expected = status in {rules.INITIATED, rules.REJECTED, rules.SKIPPED, rules.SUBMITTED}
                self.assertEqual(_requisition(status=status).is_deletable(), expected)

    def test_authorize_uses_calculated_order_quantity_when_not_requested(self) -> None:
        template = RequisitionTemplate.build(
            displayed=[Column.REQUESTED_QUANTITY, Column.CALCULATED_ORDER_QUANTITY]
        )
        requisition = self._initiated(template)
        requisition.line_items = [
            _line("p1", requested_quantity=4),
            _line("p2", stock_on_hand=0, maximum_stock_quantity=0),
        ]
        requisition.submit([], "u1")
        requisition.authorize([], "u2")

        self.assertEqual(requisition.status, rules.AUTHORIZED)
        self.assertEqual(requisition.line_items[0].approved_quantity, 4)
        self.assertEqual(requisition.line_items[1].approved_quantity, 0)

    def test_guards_reject_out_of_order_transitions(self) -> None:
        requisition = self._initiated()
        with self.assertRaises(InvalidStateTransition):
            requisition.authorize([], "u1")
        with self.assertRaises(InvalidStateTransition):
            requisition.approve(None, [], [], "u1")
        with self.assertRaises(InvalidStateTransition):
            requisition.release("u1")
        self.assertEqual(len(requisition.status_changes), 1)

    def test_approve_escalates_to_parent_node(self) -> None:
        requisition = self._initiated()
        requisition.submit([], "u1")
        requisition.authorize([], "u1")

        changes_before = len(requisition.status_changes)

        requisition.approve("sn-parent", [], [], "u2")

        self.assertEqual(requisition.status, rules.IN_APPROVAL)
        self.assertEqual(len(requisition.status_changes), changes_before + 1)
        self.assertEqual(requisition.get_latest_status_change().status, rules.IN_APPROVAL)
        self.assertEqual(requisition.get_latest_status_change().author_id, "u2")

        requisition.approve(None, [], [], "u3")
        self.assertEqual(requisition.status, rules.APPROVED)
        self.assertEqual(len(requisition.status_changes), changes_before + 2)
        self.assertEqual(requisition.get_latest_status_change().status, rules.APPROVED)
        self.assertEqual(requisition.supervisory_node_id, "sn-parent")
        self.assertIsNone(requisition.supplying_facility_id)

    def test_final_approval_picks_supply_line(self) -> None:
        requisition = self._initiated()
        requisition.submit([], "u1")
        requisition.authorize([], "u1")
        lines = [
            SupplyLine(supervisory_node_id="sn1", program_id="other", supplying_facility_id="wh0"),
            SupplyLine(supervisory_node_id="sn9", program_id="prog", supplying_facility_id="wh9"),
            SupplyLine(supervisory_node_id="sn1", program_id="prog", supplying_facility_id="wh1"),
        ]

        changes_before = len(requisition.status_changes)

        requisition.approve(None, [], lines, "u2")

        self.assertEqual(requisition.status, rules.APPROVED)
        self.assertEqual(len(requisition.status_changes), changes_before + 1)
        latest_change = requisition.get_latest_status_change()
        self.assertEqual(latest_change.status, rules.APPROVED)
        self.assertEqual(latest_change.previous_status_change_id, requisition.status_changes[-2].id)
        self.assertEqual(requisition.supplying_facility_id, "wh1")

        requisition.release("u3")
        self.assertEqual(requisition.status, rules.RELEASED)
        self.assertFalse(requisition.is_deletable())

    def test_reject_returns_to_submitter(self) -> None:
        requisition = self._initiated()
        requisition.submit([], "u1")
        requisition.authorize([], "u1")
        requisition.reject([], "u2")

        self.assertEqual(requisition.status, rules.REJECTED)
        self.assertTrue(requisition.is_deletable())
        requisition.submit([], "u1")
        self.assertEqual(requisition.status, rules.SUBMITTED)

    def _stocked(self, status: str) -> Requisition:
        template = RequisitionTemplate.build(
            displayed=[
                Column.BEGINNING_BALANCE,
                Column.TOTAL_RECEIVED_QUANTITY,
                Column.TOTAL_CONSUMED_QUANTITY,
                Column.TOTAL_LOSSES_AND_ADJUSTMENTS,
                Column.STOCK_ON_HAND,
                Column.TOTAL,
                Column.REQUESTED_QUANTITY,
                Column.AVERAGE_CONSUMPTION,
                Column.MAXIMUM_STOCK_QUANTITY,
                Column.CALCULATED_ORDER_QUANTITY,
                Column.PACKS_TO_SHIP,
                Column.TOTAL_COST,
            ],
            calculated=[Column.STOCK_ON_HAND],
        )
        requisition = _requisition(status=status, template=template)
        requisition.stock_adjustment_reasons = [
            StockAdjustmentReason(reason_id="expired", additive=False)
        ]
        requisition.line_items = [
            _line(
                "p1",
                id="l1",
                beginning_balance=100,
                total_received_quantity=50,
                total_consumed_quantity=60,
                requested_quantity=40,
                approved_quantity=40,
                max_periods_of_stock=Decimal("2"),
                stock_adjustments=[StockAdjustment(reason_id="expired", quantity=5)],
            )
        ]
        return requisition

    def test_reject_recalculates_like_authorize(self) -> None:
        product = ApprovedProduct(product_id="p1", net_content=10, price_per_pack=Money.of("3", "USD"))
        authorized = self._stocked(rules.SUBMITTED)
        rejected = self._stocked(rules.AUTHORIZED)

        authorized.authorize([product], "u1")
        rejected.reject([product], "u2")

        self.assertEqual(rejected.status, rules.REJECTED)
        for name in (
            "total_losses_and_adjustments",
            "total_consumed_quantity",
            "stock_on_hand",
            "total",
            "adjusted_consumption",
            "average_consumption",
            "maximum_stock_quantity",
            "calculated_order_quantity",
            "packs_to_ship",
            "price_per_pack",
            "total_cost",
        ):
            with self.subTest(field=name):
                self.assertEqual(
                    getattr(rejected.line_items[0], name), getattr(authorized.line_items[0], name)
                )
        self.assertEqual(rejected.line_items[0].stock_on_hand, 85)
        self.assertEqual(rejected.line_items[0].packs_to_ship, 4)

    def test_stock_on_hand_identity_after_authorize_and_approve(self) -> None:
        requisition = self._stocked(rules.SUBMITTED)

        requisition.authorize([], "u1")
        item = requisition.line_items[0]
        item.total_consumed_quantity = 70
        requisition.approve("sn-parent", [], [], "u2")

        item = requisition.line_items[0]
        self.assertEqual(item.total_losses_and_adjustments, -5)
        self.assertEqual(
            item.stock_on_hand,
            item.beginning_balance
            + item.total_received_quantity
            + item.total_losses_and_adjustments
            - item.total_consumed_quantity,
        )
        self.assertEqual(item.stock_on_hand, 75)

    def test_skip(self) -> None:
        with self.assertRaises(ValidationFailure):
            self._initiated().skip(False, "u1")
        with self.assertRaises(ValidationFailure):
            self._initiated(emergency=True).skip(True, "u1")

        requisition = self._initiated()
        requisition.skip(True, "u1")
        self.assertEqual(requisition.status, rules.SKIPPED)
        self.assertTrue(requisition.is_deletable())

    def test_submit_recalculates_line(self) -> None:
        template = RequisitionTemplate.build(
            displayed=[
                Column.BEGINNING_BALANCE,
                Column.TOTAL_RECEIVED_QUANTITY,
                Column.TOTAL_CONSUMED_QUANTITY,
                Column.TOTAL_LOSSES_AND_ADJUSTMENTS,
                Column.STOCK_ON_HAND,
                Column.TOTAL,
                Column.AVERAGE_CONSUMPTION,
                Column.MAXIMUM_STOCK_QUANTITY,
                Column.CALCULATED_ORDER_QUANTITY,
                Column.REQUESTED_QUANTITY,
                Column.PACKS_TO_SHIP,
                Column.PRICE_PER_PACK,
                Column.TOTAL_COST,
            ],
            calculated=[Column.TOTAL_CONSUMED_QUANTITY],
        )
        requisition = self._initiated(template)
        requisition.stock_adjustment_reasons = [
            StockAdjustmentReason(reason_id="found", additive=True),
            StockAdjustmentReason(reason_id="expired", additive=False),
        ]
        requisition.line_items = [
            _line(
                "p1",
                beginning_balance=100,
                total_received_quantity=50,
                stock_on_hand=30,
                max_periods_of_stock=Decimal("2"),
                previous_adjusted_consumptions=[90],
                stock_adjustments=[
                    StockAdjustment(reason_id="found", quantity=10),
                    StockAdjustment(reason_id="expired", quantity=20),
                ],
            )
        ]
        product = ApprovedProduct(
            product_id="p1", net_content=10, price_per_pack=Money.of("2.50", "USD")
        )

        requisition.submit([product], "u1")

        item = requisition.line_items[0]
        self.assertEqual(item.total_losses_and_adjustments, -10)
        self.assertEqual(item.total_consumed_quantity, 110)
        self.assertEqual(item.total, 150)
        self.assertEqual(item.adjusted_consumption, 110)
        self.assertEqual(item.average_consumption, 100)
        self.assertEqual(item.maximum_stock_quantity, 200)
        self.assertEqual(item.calculated_order_quantity, 170)
        self.assertEqual(item.packs_to_ship, 17)
        self.assertEqual(item.price_per_pack, Money.of("2.50", "USD"))
        self.assertEqual(item.total_cost.amount, Decimal("42.50"))
        self.assertEqual(requisition.get_total_cost().amount, Decimal("42.50"))

    def test_recalculation_clears_hidden_columns(self) -> None:
        template = RequisitionTemplate.build(
            displayed=[Column.REQUESTED_QUANTITY], hidden=[Column.TOTAL_STOCKOUT_DAYS]
        )
        requisition = self._initiated(template)
        requisition.line_items = [_line("p1", total_stockout_days=5, remarks="keep")]

        requisition.submit([], "u1")

        item = requisition.line_items[0]
        self.assertIsNone(item.total_stockout_days)
        self.assertEqual(item.remarks, "keep")

    def test_total_costs_skip_skipped_lines(self) -> None:
        requisition = _requisition(
            line_items=[
                _line("p1", total_cost=Money.of("5", "USD")),
                _line("p2", total_cost=Money.of("3", "USD"), non_full_supply=True),
                _line("p3", total_cost=Money.of("100", "USD"), skipped=True),
            ]
        )
        self.assertEqual(requisition.get_total_cost().amount, Decimal("8.00"))
        self.assertEqual(requisition.get_full_supply_total_cost().amount, Decimal("5.00"))
        self.assertEqual(requisition.get_non_full_supply_total_cost().amount, Decimal("3.00"))
        self.assertEqual([item.product_id for item in requisition.skipped_line_items()], ["p3"])
        self.assertEqual(
            [item.product_id for item in requisition.skipped_full_supply_line_items()], ["p3"]
        )
        self.assertEqual(requisition.skipped_non_full_supply_line_items(), [])
        self.assertEqual(_requisition().get_total_cost(), Money.zero("USD"))

    def test_update_from_regular_requisition(self) -> None:
        requisition = self._initiated()
        requisition.line_items = [
            _line("p1", id="l1"),
            _line("p2", id="l2"),
            _line("p3", id="l3", non_full_supply=True),
        ]
        incoming = _requisition(
            line_items=[
                _line("p1", id="l1", requested_quantity=40),
                _line("p9", id="lx", requested_quantity=1),
                _line("p4", id="l4", non_full_supply=True, requested_quantity=6),
            ],
            date_physical_stock_count_completed=date(2024, 1, 31),
        )

        requisition.update_from(incoming, [], update_stock_date=False)

        self.assertEqual(
            [item.product_id for item in requisition.line_items], ["p1", "p4", "p2"]
        )
        self.assertEqual(requisition.line_items[0].id, "l1")
        self.assertEqual(requisition.line_items[2].id, "l2")
        self.assertEqual(requisition.line_items[0].requested_quantity, 40)
        added = requisition.line_items[1]
        self.assertTrue(added.non_full_supply)
        self.assertNotIn(added.id, {"l1", "l2", "l3", "l4", "lx"})
        self.assertEqual(added.requested_quantity, 6)
        self.assertTrue(all(item.requisition_id == requisition.id for item in requisition.line_items))
        self.assertIsNone(requisition.date_physical_stock_count_completed)

        incoming.line_items[2].id = added.id
        requisition.update_from(incoming, [], update_stock_date=True)
        self.assertEqual(requisition.date_physical_stock_count_completed, date(2024, 1, 31))
        self.assertEqual([item.id for item in requisition.line_items], ["l1", added.id, "l2"])

    def test_update_from_emergency_keeps_only_non_full_supply(self) -> None:
        requisition = self._initiated(emergency=True)
        incoming = _requisition(
            line_items=[
                _line("p1", id="a"),
                _line("p2", id="b", non_full_supply=True, requested_quantity=3),
            ]
        )

        requisition.update_from(incoming, [], update_stock_date=False)

        self.assertEqual([item.product_id for item in requisition.line_items], ["p2"])
        self.assertNotEqual(requisition.line_items[0].id, "b")
        self.assertEqual(requisition.line_items[0].requested_quantity, 3)

    def test_update_from_refuses_repeated_line_ids(self) -> None:
        requisition = self._initiated()
        requisition.line_items = [_line("p1", id="l1", requested_quantity=1)]
        incoming = _requisition(
            line_items=[
                _line("p1", id="l1", requested_quantity=5),
                _line("p1", id="l1", requested_quantity=9),
            ]
        )

        with self.assertRaises(ValidationFailure) as ctx:
            requisition.update_from(incoming, [], update_stock_date=False)

        self.assertEqual(ctx.exception.field, "line_items")
        self.assertEqual([item.id for item in requisition.line_items], ["l1"])
        self.assertEqual(requisition.line_items[0].requested_quantity, 1)

    def test_update_from_keeps_catalog_price(self) -> None:
        requisition = self._initiated()
        requisition.line_items = [
            _line("p1", id="l1", packs_to_ship=3, price_per_pack=Money.of("2", "USD"))
        ]
        incoming = _requisition(
            line_items=[
                _line("p1", id="l1", price_per_pack=Money.parse("EUR 1.00")),
                _line("p5", non_full_supply=True, price_per_pack=Money.parse("EUR 1.00")),
            ]
        )

        requisition.update_from(incoming, [], update_stock_date=False)

        first, added = requisition.line_items
        self.assertEqual(first.price_per_pack, Money.of("2", "USD"))
        self.assertIsNone(added.price_per_pack)
        self.assertEqual(requisition.get_total_cost(), Money.of("6", "USD"))

    def test_update_from_refused_after_approval(self) -> None:
        requisition = _requisition(status=rules.APPROVED)
        with self.assertRaises(InvalidStateTransition):
            requisition.update_from(_requisition(), [], update_stock_date=False)

    def test_previous_adjusted_consumptions(self) -> None:
        history = [
            _requisition(line_items=[_line("p1", adjusted_consumption=10)]),
            _requisition(line_items=[_line("p1", adjusted_consumption=20)]),
            _requisition(line_items=[_line("p1", adjusted_consumption=99, skipped=True)]),
            _requisition(line_items=[_line("p1", adjusted_consumption=30), _line("p2", adjusted_consumption=7)]),
        ]
        requisition = _requisition(line_items=[_line("p1")], previous_requisitions=tuple(history))

        requisition.set_previous_adjusted_consumptions(3)
        self.assertEqual(requisition.line_items[0].previous_adjusted_consumptions, [20, 30])

        requisition.set_previous_adjusted_consumptions(0)
        self.assertEqual(requisition.line_items[0].previous_adjusted_consumptions, [])


class PermissionServiceTests(SimpleTestCase):
    role_rights = {
        "STOREROOM_MANAGER": {"REQUISITION_CREATE", "REQUISITION_DELETE", "REQUISITION_VIEW"},
        "PROGRAM_SUPERVISOR": {"REQUISITION_AUTHORIZE", "REQUISITION_APPROVE", "REQUISITION_VIEW"},
        "WAREHOUSE_CLERK": {"ORDERS_EDIT"},
        "SYSTEM_ADMIN": {"REQUISITION_TEMPLATES_MANAGE"},
    }

    def _service(self, *assignments: RoleAssignment) -> PermissionService:
        return PermissionService(
            RightAssignmentValidator(assignments, self.role_rights),
            RoleAssignmentValidator(assignments, self.role_rights),
            user_id="u1",
        )

    def test_init_scoped_to_program_and_facility(self) -> None:
        service = self._service(RoleAssignment("STOREROOM_MANAGER", program_id="prog", facility_id="fac"))

        self.assertTrue(service.can_init_requisition("prog", "fac").is_success())
        result = service.can_init_requisition("prog", "other")
        self.assertFalse(result.is_success())
        with self.assertRaises(MissingPermission):
            result.throw_if_error()

    def test_node_scoped_approver(self) -> None:
        service = self._service(RoleAssignment("PROGRAM_SUPERVISOR", program_id="prog", supervisory_node_id="sn1"))

        self.assertTrue(service.can_approve_requisition(_requisition()).is_success())
        self.assertTrue(service.can_reject_requisition(_requisition()).is_success())
        self.assertFalse(service.can_approve_requisition(_requisition(supervisory_node_id="sn2")).is_success())
        self.assertFalse(service.can_authorize_requisition(_requisition()).is_success())

    def test_update_right_depends_on_status(self) -> None:
        service = self._service(RoleAssignment("STOREROOM_MANAGER", program_id="prog", facility_id="fac"))

        self.assertTrue(service.can_update_requisition(_requisition()).is_success())
        result = service.can_update_requisition(_requisition(status=rules.SUBMITTED))
        self.assertEqual(result.right_name, "REQUISITION_AUTHORIZE")
        with self.assertRaises(MissingPermission) as ctx:
            result.throw_if_error()
        self.assertEqual(ctx.exception.status, rules.SUBMITTED)
        self.assertFalse(service.can_update_requisition(_requisition(status=rules.RELEASED)).is_success())

    def test_delete_needs_second_right_by_status(self) -> None:
        service = self._service(RoleAssignment("STOREROOM_MANAGER"))

        self.assertTrue(service.can_delete_requisition(_requisition()).is_success())
        self.assertTrue(service.can_delete_requisition(_requisition(status=rules.SKIPPED)).is_success())
        result = service.can_delete_requisition(_requisition(status=rules.SUBMITTED))
        self.assertEqual(result.right_name, "REQUISITION_AUTHORIZE")

    def test_release_and_convert_scoped_to_warehouse(self) -> None:
        service = self._service(RoleAssignment("WAREHOUSE_CLERK", warehouse_id="wh1"))

        self.assertTrue(service.can_release_requisition(_requisition(supplying_facility_id="wh1")).is_success())
        self.assertFalse(service.can_release_requisition(_requisition()).is_success())
        self.assertTrue(service.can_convert_to_order(["wh1"]).is_success())
        self.assertFalse(service.can_convert_to_order(["wh1", "wh2"]).is_success())

    def test_template_management_and_view(self) -> None:
        admin = self._service(RoleAssignment("SYSTEM_ADMIN"))
        self.assertTrue(admin.can_manage_requisition_template().is_success())
        self.assertFalse(admin.can_view_requisition(_requisition()).is_success())

        viewer = self._service(RoleAssignment("STOREROOM_MANAGER", facility_id="fac"))
        self.assertTrue(viewer.can_view_requisition(_requisition()).is_success())
        self.assertFalse(viewer.can_manage_requisition_template().is_success())

    def test_approval_scopes_mirror_role_checks(self) -> None:
        service = self._service(
            RoleAssignment("PROGRAM_SUPERVISOR", program_id="prog", supervisory_node_id="sn1"),
            RoleAssignment("PROGRAM_SUPERVISOR", facility_id="fac"),
            RoleAssignment("PROGRAM_SUPERVISOR", warehouse_id="wh1"),
            RoleAssignment("STOREROOM_MANAGER", facility_id="fac2"),
        )

        self.assertEqual(
            service.approval_scopes(),
            [{"program_id": "prog", "supervisory_node_id": "sn1"}, {"facility_id": "fac"}],
        )
        self.assertEqual(self._service(RoleAssignment("PROGRAM_SUPERVISOR")).approval_scopes(), [{}])
        self.assertEqual(self._service(RoleAssignment("STOREROOM_MANAGER")).approval_scopes(), [])

    def test_order_warehouse_ids(self) -> None:
        service = self._service(
            RoleAssignment("WAREHOUSE_CLERK", warehouse_id="wh1"),
            RoleAssignment("WAREHOUSE_CLERK", warehouse_id="wh2"),
            RoleAssignment("WAREHOUSE_CLERK", warehouse_id="wh1"),
            RoleAssignment("WAREHOUSE_CLERK", program_id="prog"),
        )

        self.assertEqual(service.order_warehouse_ids(), ["wh1", "wh2"])
        self.assertIsNone(self._service(RoleAssignment("WAREHOUSE_CLERK")).order_warehouse_ids())
        self.assertEqual(self._service(RoleAssignment("STOREROOM_MANAGER")).order_warehouse_ids(), [])


@override_settings(REQUISITION_CURRENCY_CODE="USD")
class RepositoryTests(TestCase):
    def _saved(self, **fields) -> Requisition:
        requisition = _requisition(**fields)
        requisition.initiate(RequisitionTemplate.build(), [], [], 1, None, {}, "u1")
        return repository.save(requisition, "u1")

    def test_save_and_get_round_trip(self) -> None:
        requisition = _requisition()
        requisition.initiate(
            RequisitionTemplate.build(),
            [ApprovedProduct(product_id="p1", price_per_pack=Money.of("1.20", "USD")), ApprovedProduct(product_id="p2")],
            [],
            1,
            None,
            {},
            "u1",
        )
        requisition.line_items[0].stock_adjustments = [StockAdjustment(reason_id="r1", quantity=4)]
        requisition.line_items[0].previous_adjusted_consumptions = [5, 6]
        repository.save(requisition, "u1")

        loaded = repository.get(requisition.id)

        self.assertEqual(loaded.version, 1)
        self.assertEqual(loaded.status, rules.INITIATED)
        self.assertEqual([item.product_id for item in loaded.line_items], ["p1", "p2"])
        first = loaded.line_items[0]
        self.assertEqual(first.price_per_pack, Money.of("1.20", "USD"))
        self.assertEqual(first.stock_adjustments, [StockAdjustment(reason_id="r1", quantity=4)])
        self.assertEqual(first.previous_adjusted_consumptions, [5, 6])
        self.assertEqual(len(loaded.status_changes), 1)

    def test_stale_save_raises_version_mismatch(self) -> None:
        requisition = self._saved()
        first = repository.get(requisition.id)
        second = repository.get(requisition.id)

        first.submit([], "u1")
        repository.save(first, "u1")
        self.assertEqual(first.version, 2)

        second.skip(True, "u2")
        with self.assertRaises(VersionMismatch):
            repository.save(second, "u2")

        stored = repository.get(requisition.id)
        self.assertEqual(stored.status, rules.SUBMITTED)
        self.assertEqual(len(stored.status_changes), 2)

    def test_save_of_deleted_requisition_raises_not_found(self) -> None:
        requisition = self._saved()
        repository.delete(requisition)

        with self.assertRaises(RequisitionNotFound):
            repository.save(requisition, "u1")
        with self.assertRaises(RequisitionNotFound):
            repository.get(requisition.id)

    def test_delete_refuses_non_deletable(self) -> None:
        requisition = self._saved()
        requisition.status = rules.APPROVED
        with self.assertRaises(ValidationFailure):
            repository.delete(requisition)

    def test_find_previous_returns_oldest_first(self) -> None:
        now = timezone.now()
        oldest = self._saved(created_date=now - timedelta(days=90))
        middle = self._saved(created_date=now - timedelta(days=60))
        newest = self._saved(created_date=now - timedelta(days=30))
        self._saved(created_date=now - timedelta(days=10), emergency=True)
        self._saved(created_date=now - timedelta(days=5), facility_id="elsewhere")

        previous = repository.find_previous("fac", "prog", now, 2)

        self.assertEqual([item.id for item in previous], [middle.id, newest.id])
        self.assertEqual(repository.find_previous("fac", "prog", now, 0), [])
        self.assertEqual(
            [item.id for item in repository.find_previous("fac", "prog", now, 5, exclude_id=newest.id)],
            [oldest.id, middle.id],
        )

    def test_get_last_regular(self) -> None:
        now = timezone.now()
        self._saved(created_date=now - timedelta(days=2))
        latest_regular = self._saved(created_date=now - timedelta(days=1))
        self._saved(created_date=now, emergency=True)

        self.assertEqual(repository.get_last_regular("fac", "prog").id, latest_regular.id)
        self.assertIsNone(repository.get_last_regular("fac", "nothing"))
        with self.assertRaises(ValidationFailure):
            repository.get_last_regular(None, "prog")

    def test_search_filters_and_pages(self) -> None:
        now = timezone.now()
        for offset in range(3):
            self._saved(created_date=now - timedelta(days=offset), processing_period_id=f"period-{offset}")
        submitted = self._saved(processing_period_id="period-9")
        submitted.submit([], "u1")
        repository.save(submitted, "u1")

        results, count = repository.search(facility_id="fac", statuses=["initiated"], page_size=2)
        self.assertEqual(count, 3)
        self.assertEqual(len(results), 2)

        results, count = repository.search(facility_id="fac", statuses=["INITIATED"], page=2, page_size=2)
        self.assertEqual(len(results), 1)

        results, count = repository.search(period_id="period-9")
        self.assertEqual([item.id for item in results], [submitted.id])

    def _saved_as(self, status: str, **fields) -> Requisition:
        requisition = self._saved(**fields)
        requisition.status = status
        return repository.save(requisition, "u1")

    def test_search_for_approval_by_scope(self) -> None:
        at_node = self._saved_as(rules.AUTHORIZED)
        escalated = self._saved_as(
            rules.IN_APPROVAL, supervisory_node_id="sn2", facility_id="fac2"
        )
        self._saved_as(rules.INITIATED, processing_period_id="period-2")
        other_program = self._saved_as(rules.AUTHORIZED, program_id="other")

        results, count = repository.search_for_approval(
            [{"program_id": "prog", "supervisory_node_id": "sn1"}]
        )
        self.assertEqual([item.id for item in results], [at_node.id])
        self.assertEqual(count, 1)

        results, count = repository.search_for_approval(
            [{"supervisory_node_id": "sn1"}, {"facility_id": "fac2"}]
        )
        self.assertEqual(
            {item.id for item in results}, {at_node.id, escalated.id, other_program.id}
        )

        results, count = repository.search_for_approval([{}], page_size=2)
        self.assertEqual(count, 3)
        self.assertEqual(len(results), 2)

        self.assertEqual(repository.search_for_approval([]), ([], 0))

    def test_search_approved(self) -> None:
        first = self._saved_as(rules.APPROVED, supplying_facility_id="wh1")
        second = self._saved_as(rules.APPROVED, supplying_facility_id="wh2", facility_id="fac2")
        self._saved_as(rules.RELEASED, supplying_facility_id="wh1", processing_period_id="period-2")

        results, count = repository.search_approved()
        self.assertEqual(count, 2)

        results, count = repository.search_approved(supplying_facility_ids=["wh1"])
        self.assertEqual([item.id for item in results], [first.id])

        results, count = repository.search_approved(facility_id="fac2", program_id="prog")
        self.assertEqual([item.id for item in results], [second.id])

        self.assertEqual(repository.search_approved(supplying_facility_ids=[]), ([], 0))

    def test_find_template_skips_unknown_columns(self) -> None:
        RequisitionTemplateColumn.objects.create(
            program_id="prog",
            column_name=Column.STOCK_ON_HAND.value,
            label="Stock on hand",
            source_code=SOURCE_CALCULATED,
            is_displayed=True,
            create_by_id="u1",
            update_by_id="u1",
        )
        RequisitionTemplateColumn.objects.create(
            program_id="prog",
            column_name="legacyColumn",
            label="Legacy",
            source_code=SOURCE_USER_INPUT,
            create_by_id="u1",
            update_by_id="u1",
        )

        template = repository.find_template("prog")

        self.assertEqual(list(template.columns), [Column.STOCK_ON_HAND])
        self.assertTrue(template.is_column_calculated(Column.STOCK_ON_HAND))
        self.assertEqual(template.columns[Column.STOCK_ON_HAND].label, "Stock on hand")


_DEV_AUTH = dict(
    AUTH_ENABLED=False,
    DEV_AUTH_ENABLED=True,
    DEV_AUTH_USER_ID="dev-user",
    DEBUG=True,
    AUTH_USE_DB_RBAC=False,
    REQUISITION_CURRENCY_CODE="USD",
    REQUISITION_SKIP_AUTHORIZATION=False,
)

_TEMPLATE_COLUMNS = [
    (Column.REQUESTED_QUANTITY, SOURCE_USER_INPUT),
    (Column.BEGINNING_BALANCE, SOURCE_USER_INPUT),
    (Column.TOTAL_RECEIVED_QUANTITY, SOURCE_USER_INPUT),
    (Column.TOTAL_CONSUMED_QUANTITY, SOURCE_USER_INPUT),
    (Column.STOCK_ON_HAND, SOURCE_USER_INPUT),
    (Column.TOTAL_STOCKOUT_DAYS, SOURCE_USER_INPUT),
    (Column.PACKS_TO_SHIP, SOURCE_CALCULATED),
    (Column.PRICE_PER_PACK, SOURCE_USER_INPUT),
    (Column.TOTAL_COST, SOURCE_CALCULATED),
]


@override_settings(DEV_AUTH_ROLES=["STOREROOM_MANAGER"], **_DEV_AUTH)
class RequisitionApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        for order, (column, source) in enumerate(_TEMPLATE_COLUMNS):
            RequisitionTemplateColumn.objects.create(
                program_id="prog",
                column_name=column.value,
                label=column.name.replace("_", " ").title(),
                source_code=source,
                is_displayed=True,
                display_order=order,
                create_by_id="admin",
                update_by_id="admin",
            )
        self.products = [
            ApprovedProduct(product_id="p1", program_id="prog", net_content=10, price_per_pack=Money.of("2.00", "USD"))
        ]
        self.reference_data = patch.multiple(
            "requisition.services.data_access",
            get_months_in_period=lambda period_id: (1, []),
            get_approved_products=lambda facility_id, program_id: (self.products, []),
            get_proof_of_delivery=lambda requisition_id: (None, []),
            get_ideal_stock_amounts=lambda facility_id, period_id: ({}, []),
            get_stock_on_hand=lambda facility_id, program_id: ({"p1": 5}, []),
            get_home_supervisory_node=lambda facility_id, program_id: ("sn1", []),
            get_stock_adjustment_reasons=lambda program_id: ([], []),
            get_supervisory_parent_node=lambda node_id: (None, []),
            get_supply_lines=lambda program_id, node_id=None: (
                [SupplyLine(supervisory_node_id="sn1", program_id="prog", supplying_facility_id="wh1")],
                [],
            ),
            is_period_skippable=lambda program_id: (True, []),
        )
        self.reference_data.start()
        self.addCleanup(self.reference_data.stop)

    def _initiate(self, period_id: str = "period-1", **extra):
        payload = {"program_id": "prog", "facility_id": "fac", "period_id": period_id}
        payload.update(extra)
        return self.client.post("/api/v1/requisitions/initiate", payload, format="json")

    def test_initiate_requires_fields(self) -> None:
        response = self.client.post("/api/v1/requisitions/initiate", {}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(set(response.json()["errors"]), {"program_id", "facility_id", "period_id"})

    def test_initiate_creates_requisition(self) -> None:
        with self.assertLogs("lmis.audit", level="INFO") as logs:
            response = self._initiate()

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "INITIATED")
        self.assertEqual(body["version"], 1)
        self.assertEqual(body["supervisory_node_id"], "sn1")
        self.assertTrue(body["deletable"])
        self.assertEqual(body["warnings"], [])
        self.assertEqual(len(body["line_items"]), 1)
        self.assertEqual(body["line_items"][0]["stock_on_hand"], 5)
        self.assertEqual(body["line_items"][0]["price_per_pack"], {"amount": "2.00", "currency": "USD"})
        self.assertEqual(body["latest_status_change"]["status"], "INITIATED")
        self.assertEqual(body["latest_status_change"]["author_id"], "dev-user")
        self.assertIn("requisition_initiated", logs.output[0])

    def test_duplicate_regular_requisition_rejected(self) -> None:
        self.assertEqual(self._initiate().status_code, 201)

        response = self._initiate()

        self.assertEqual(response.status_code, 400)
        self.assertIn("period_id", response.json()["errors"])
        self.assertEqual(self._initiate(emergency=True).status_code, 201)

    def test_initiate_without_template_fails(self) -> None:
        response = self.client.post(
            "/api/v1/requisitions/initiate",
            {"program_id": "unconfigured", "facility_id": "fac", "period_id": "period-1"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("program_id", response.json()["errors"])

    def test_full_lifecycle(self) -> None:
        created = self._initiate().json()
        requisition_id = created["id"]
        line_id = created["line_items"][0]["id"]
        base = f"/api/v1/requisitions/{requisition_id}"

        response = self.client.put(
            base,
            {
                "version": 1,
                "line_items": [
                    {"id": line_id, "product_id": "p1", "requested_quantity": 25, "stock_on_hand": 5}
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["version"], 2)
        self.assertEqual(response.json()["line_items"][0]["requested_quantity"], 25)

        response = self.client.post(f"{base}/submit", {"version": 2}, format="json")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "SUBMITTED")
        self.assertEqual(body["line_items"][0]["packs_to_ship"], 3)
        self.assertEqual(body["total_cost"], {"amount": "6.00", "currency": "USD"})

        with self.settings(DEV_AUTH_ROLES=["PROGRAM_SUPERVISOR"]):
            response = self.client.post(f"{base}/authorize", {}, format="json")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "AUTHORIZED")
            self.assertEqual(response.json()["line_items"][0]["approved_quantity"], 25)
            self.assertFalse(response.json()["deletable"])

            response = self.client.post(f"{base}/approve", {}, format="json")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "APPROVED")
            self.assertEqual(response.json()["supplying_facility_id"], "wh1")

        with self.settings(DEV_AUTH_ROLES=["WAREHOUSE_CLERK"]):
            response = self.client.post(f"{base}/release", {}, format="json")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "RELEASED")

            response = self.client.get(f"{base}/status-changes")
            self.assertEqual(response.status_code, 200)
            statuses = [change["status"] for change in response.json()["status_changes"]]
            self.assertEqual(statuses, ["INITIATED", "SUBMITTED", "AUTHORIZED", "APPROVED", "RELEASED"])

    def test_stale_version_conflicts(self) -> None:
        requisition_id = self._initiate().json()["id"]

        response = self.client.post(
            f"/api/v1/requisitions/{requisition_id}/submit", {"version": 7}, format="json"
        )

        self.assertEqual(response.status_code, 409)
        self.assertIn("version_mismatch", response.json()["errors"])

    def test_wrong_status_conflicts(self) -> None:
        requisition_id = self._initiate().json()["id"]

        with self.settings(DEV_AUTH_ROLES=["PROGRAM_SUPERVISOR"]):
            response = self.client.post(f"/api/v1/requisitions/{requisition_id}/approve", {}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertIn("invalid_transition", response.json()["errors"])

    def test_missing_right_forbidden(self) -> None:
        requisition_id = self._initiate().json()["id"]

        response = self.client.post(f"/api/v1/requisitions/{requisition_id}/approve", {}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_update_in_submitted_needs_authorize_right(self) -> None:
        created = self._initiate().json()
        requisition_id = created["id"]
        self.client.post(f"/api/v1/requisitions/{requisition_id}/submit", {}, format="json")

        response = self.client.put(
            f"/api/v1/requisitions/{requisition_id}",
            {"line_items": [{"id": created["line_items"][0]["id"], "product_id": "p1"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertIn("no_permission", response.json()["errors"])

    def test_invalid_line_item_rejected(self) -> None:
        requisition_id = self._initiate().json()["id"]

        response = self.client.put(
            f"/api/v1/requisitions/{requisition_id}",
            {"line_items": [{"product_id": "p1", "requested_quantity": "many"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("requested_quantity", response.json()["errors"])

    def test_skip_and_delete(self) -> None:
        requisition_id = self._initiate().json()["id"]
        base = f"/api/v1/requisitions/{requisition_id}"

        response = self.client.post(f"{base}/skip", {}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "SKIPPED")

        self.assertEqual(self.client.delete(base).status_code, 204)
        response = self.client.get(base)
        self.assertEqual(response.status_code, 404)
        self.assertIn("not_found", response.json()["errors"])

    def test_search(self) -> None:
        self._initiate("period-1")
        self._initiate("period-2")

        response = self.client.get("/api/v1/requisitions/search", {"status": "INITIATED", "facility_id": "fac"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 2)
        self.assertEqual(body["page"], 1)
        self.assertEqual(len(body["results"]), 2)
        self.assertNotIn("line_items", body["results"][0])

        response = self.client.get("/api/v1/requisitions/search", {"status": "PENDING"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("status", response.json()["errors"])

    def test_search_hides_requisitions_outside_scope(self) -> None:
        self._initiate()

        with patch(
            "requisition.services.permissions.resolve_role_assignments",
            return_value=(
                [RoleAssignment("STOREROOM_MANAGER", facility_id="other")],
                {"STOREROOM_MANAGER": {"REQUISITION_VIEW"}},
            ),
        ):
            response = self.client.get("/api/v1/requisitions/search")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"], [])

    def test_update_ignores_client_price(self) -> None:
        created = self._initiate().json()
        line_id = created["line_items"][0]["id"]

        response = self.client.put(
            f"/api/v1/requisitions/{created['id']}",
            {
                "line_items": [
                    {
                        "id": line_id,
                        "product_id": "p1",
                        "requested_quantity": 20,
                        "price_per_pack": {"amount": "1.00", "currency": "EUR"},
                    },
                    {
                        "product_id": "p7",
                        "non_full_supply": True,
                        "price_per_pack": "EUR 1.00",
                    },
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["line_items"][0]["price_per_pack"], {"amount": "2.00", "currency": "USD"})
        self.assertIsNone(body["line_items"][1]["price_per_pack"])
        self.assertEqual(body["total_cost"]["currency"], "USD")

        response = self.client.post(f"/api/v1/requisitions/{created['id']}/submit", {}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_cost"], {"amount": "4.00", "currency": "USD"})

    def test_update_with_repeated_line_ids_rejected(self) -> None:
        created = self._initiate().json()
        line_id = created["line_items"][0]["id"]
        base = f"/api/v1/requisitions/{created['id']}"

        response = self.client.put(
            base,
            {
                "line_items": [
                    {"id": line_id, "product_id": "p1", "requested_quantity": 1},
                    {"id": line_id, "product_id": "p1", "requested_quantity": 2},
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("line_items", response.json()["errors"])
        body = self.client.get(base).json()
        self.assertEqual(body["version"], 1)
        self.assertEqual([item["id"] for item in body["line_items"]], [line_id])

    def test_new_line_gets_server_id(self) -> None:
        created = self._initiate().json()
        other = self._initiate("period-2").json()
        foreign_line_id = other["line_items"][0]["id"]

        response = self.client.put(
            f"/api/v1/requisitions/{created['id']}",
            {
                "line_items": [
                    {"id": foreign_line_id, "product_id": "p7", "non_full_supply": True}
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        ids = [item["id"] for item in response.json()["line_items"]]
        self.assertEqual(len(ids), 2)
        self.assertNotIn(foreign_line_id, ids)
        other_ids = [
            item["id"]
            for item in self.client.get(f"/api/v1/requisitions/{other['id']}").json()["line_items"]
        ]
        self.assertEqual(other_ids, [foreign_line_id])

    def test_transition_refused_without_reference_data(self) -> None:
        requisition_id = self._initiate().json()["id"]
        base = f"/api/v1/requisitions/{requisition_id}"

        with patch(
            "requisition.services.data_access.get_stock_adjustment_reasons",
            return_value=([], [data_access.DB_UNAVAILABLE]),
        ):
            response = self.client.post(f"{base}/submit", {}, format="json")
            self.assertEqual(response.status_code, 400)
            self.assertIn("reference_data", response.json()["errors"])

            response = self.client.put(base, {"line_items": []}, format="json")
            self.assertEqual(response.status_code, 400)

        with patch(
            "requisition.services.data_access.get_approved_products",
            return_value=([], [data_access.DB_UNAVAILABLE]),
        ):
            response = self.client.post(f"{base}/submit", {}, format="json")
            self.assertEqual(response.status_code, 400)

        body = self.client.get(base).json()
        self.assertEqual(body["status"], "INITIATED")
        self.assertEqual(body["version"], 1)

    def _authorized(self) -> str:
        requisition_id = self._initiate().json()["id"]
        self.client.post(f"/api/v1/requisitions/{requisition_id}/submit", {}, format="json")
        with self.settings(DEV_AUTH_ROLES=["PROGRAM_SUPERVISOR"]):
            response = self.client.post(
                f"/api/v1/requisitions/{requisition_id}/authorize", {}, format="json"
            )
        self.assertEqual(response.status_code, 200)
        return requisition_id

    def test_requisitions_for_approval(self) -> None:
        requisition_id = self._authorized()
        self._initiate("period-2")

        self.assertEqual(self.client.get("/api/v1/requisitions/for-approval").status_code, 403)

        with self.settings(DEV_AUTH_ROLES=["PROGRAM_SUPERVISOR"]):
            response = self.client.get("/api/v1/requisitions/for-approval")
            self.assertEqual(response.status_code, 200)
            body = response.json()
            self.assertEqual(body["count"], 1)
            self.assertEqual([item["id"] for item in body["results"]], [requisition_id])

            with patch(
                "requisition.services.permissions.resolve_role_assignments",
                return_value=(
                    [RoleAssignment("PROGRAM_SUPERVISOR", supervisory_node_id="sn2")],
                    {"PROGRAM_SUPERVISOR": {"REQUISITION_APPROVE"}},
                ),
            ):
                response = self.client.get("/api/v1/requisitions/for-approval")
            self.assertEqual(response.json()["results"], [])

    def test_approved_requisitions(self) -> None:
        requisition_id = self._authorized()
        with self.settings(DEV_AUTH_ROLES=["PROGRAM_SUPERVISOR"]):
            self.client.post(f"/api/v1/requisitions/{requisition_id}/approve", {}, format="json")

        self.assertEqual(self.client.get("/api/v1/requisitions/approved").status_code, 403)

        with self.settings(DEV_AUTH_ROLES=["WAREHOUSE_CLERK"]):
            response = self.client.get("/api/v1/requisitions/approved", {"program_id": "prog"})
            self.assertEqual(response.status_code, 200)
            self.assertEqual([item["id"] for item in response.json()["results"]], [requisition_id])

            response = self.client.get("/api/v1/requisitions/approved", {"warehouse_id": "wh2"})
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["count"], 0)

            scoped = (
                [RoleAssignment("WAREHOUSE_CLERK", warehouse_id="wh1")],
                {"WAREHOUSE_CLERK": {"ORDERS_EDIT"}},
            )
            with patch(
                "requisition.services.permissions.resolve_role_assignments", return_value=scoped
            ):
                response = self.client.get("/api/v1/requisitions/approved", {"warehouse_id": "wh2"})
                self.assertEqual(response.status_code, 403)
                self.assertIn("no_permission", response.json()["errors"])

                response = self.client.get("/api/v1/requisitions/approved")
                self.assertEqual(response.json()["count"], 1)


class ReferenceDataTests(TestCase):
    def test_failed_lookup_rolls_back_only_its_savepoint(self) -> None:
        depths = []

        def failing_cursor():
            depths.append(len(db_connection.savepoint_ids))
            raise DatabaseError("relation stock_adjustment_reason does not exist")

        with patch("requisition.services.data_access._is_sqlite", return_value=False), patch(
            "requisition.services.data_access.connection"
        ) as fake_connection:
            fake_connection.cursor.side_effect = failing_cursor
            with transaction.atomic():
                outer_depth = len(db_connection.savepoint_ids)
                reasons, warnings = data_access.get_stock_adjustment_reasons("prog")
                self.assertFalse(db_connection.needs_rollback)
                self.assertEqual(RequisitionTemplateColumn.objects.count(), 0)

        self.assertEqual(reasons, [])
        self.assertEqual(warnings, [data_access.DB_UNAVAILABLE])
        self.assertEqual(depths, [outer_depth + 1])
