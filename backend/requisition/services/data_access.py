import logging
import os
from decimal import Decimal
from typing import Dict, List, Tuple

from django.conf import settings
from django.db import DatabaseError, connection, transaction

from requisition import rules
from requisition.domain import (
    ApprovedProduct,
    ProofOfDelivery,
    ProofOfDeliveryLine,
    StockAdjustmentReason,
    SupplyLine,
)
from requisition.money import Money

logger = logging.getLogger(__name__)

DB_UNAVAILABLE = "db_unavailable_reference_stub"


def _is_sqlite() -> bool:
    if os.getenv("DJANGO_USE_SQLITE", "0") == "1":
        return True
    return settings.DATABASES["default"]["ENGINE"].endswith("sqlite3")


def _to_int(value, default: int = 0) -> int:
    if value is None:
        return default
    return int(value)


def _to_str(value) -> str | None:
    if value is None:
        return None
    return str(value)


def get_approved_products(
    facility_id: str, program_id: str
) -> Tuple[List[ApprovedProduct], List[str]]:
    """Full supply products the facility is approved to requisition for the program."""
    if _is_sqlite():
        return [], [DB_UNAVAILABLE]

    products: List[ApprovedProduct] = []
    currency = rules.get_currency_code()
    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT o.orderable_id, po.program_id, o.net_content,
                       o.pack_rounding_threshold, o.round_to_zero,
                       o.commodity_type_id, po.price_per_pack, fap.max_periods_of_stock
                FROM facility_approved_product fap
                JOIN facility f ON f.facility_type_id = fap.facility_type_id
                JOIN program_orderable po
                  ON po.orderable_id = fap.orderable_id
                 AND po.program_id = fap.program_id
                JOIN orderable o ON o.orderable_id = fap.orderable_id
                WHERE f.facility_id = %s
                  AND fap.program_id = %s
                  AND po.full_supply = TRUE
                  AND po.active = TRUE
                ORDER BY po.display_order, o.orderable_id
                """,
                [facility_id, program_id],
            )
            for row in cursor.fetchall():
                products.append(
                    ApprovedProduct(
                        product_id=str(row[0]),
                        program_id=_to_str(row[1]),
                        net_content=_to_int(row[2], 1),
                        pack_rounding_threshold=_to_int(row[3]),
                        round_to_zero=bool(row[4]),
                        commodity_type_id=_to_str(row[5]),
                        price_per_pack=Money(row[6], currency) if row[6] is not None else None,
                        max_periods_of_stock=Decimal(str(row[7])) if row[7] is not None else None,
                    )
                )
    except DatabaseError as exc:
        logger.warning("Approved products query failed: %s", exc)
        return [], [DB_UNAVAILABLE]

    return products, []


def get_supervisory_parent_node(supervisory_node_id: str | None) -> Tuple[str | None, List[str]]:
    if not supervisory_node_id:
        return None, []
    if _is_sqlite():
        return None, [DB_UNAVAILABLE]

    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT parent_id
                FROM supervisory_node
                WHERE supervisory_node_id = %s
                """,
                [supervisory_node_id],
            )
            row = cursor.fetchone()
    except DatabaseError as exc:
        logger.warning("Supervisory node query failed: %s", exc)
        return None, [DB_UNAVAILABLE]

    return (_to_str(row[0]) if row else None), []


def get_home_supervisory_node(facility_id: str, program_id: str) -> Tuple[str | None, List[str]]:
    if _is_sqlite():
        return None, [DB_UNAVAILABLE]

    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT sn.supervisory_node_id
                FROM requisition_group_member rgm
                JOIN requisition_group_program_schedule rgps
                  ON rgps.requisition_group_id = rgm.requisition_group_id
                JOIN supervisory_node sn
                  ON sn.requisition_group_id = rgm.requisition_group_id
                WHERE rgm.facility_id = %s
                  AND rgps.program_id = %s
                LIMIT 1
                """,
                [facility_id, program_id],
            )
            row = cursor.fetchone()
    except DatabaseError as exc:
        logger.warning("Home supervisory node query failed: %s", exc)
        return None, [DB_UNAVAILABLE]

    return (_to_str(row[0]) if row else None), []


def get_supply_lines(
    program_id: str, supervisory_node_id: str | None = None
) -> Tuple[List[SupplyLine], List[str]]:
    if _is_sqlite():
        return [], [DB_UNAVAILABLE]

    lines: List[SupplyLine] = []
    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT supervisory_node_id, program_id, supplying_facility_id
                FROM supply_line
                WHERE program_id = %s
                  AND (%s IS NULL OR supervisory_node_id = %s)
                ORDER BY supply_line_id
                """,
                [program_id, supervisory_node_id, supervisory_node_id],
            )
            for row in cursor.fetchall():
                lines.append(
                    SupplyLine(
                        supervisory_node_id=_to_str(row[0]),
                        program_id=str(row[1]),
                        supplying_facility_id=str(row[2]),
                    )
                )
    except DatabaseError as exc:
        logger.warning("Supply lines query failed: %s", exc)
        return [], [DB_UNAVAILABLE]

    return lines, []


def get_stock_adjustment_reasons(program_id: str) -> Tuple[List[StockAdjustmentReason], List[str]]:
    if _is_sqlite():
        return [], [DB_UNAVAILABLE]

    reasons: List[StockAdjustmentReason] = []
    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT reason_id, additive, name
                FROM stock_adjustment_reason
                WHERE program_id = %s
                ORDER BY display_order, name
                """,
                [program_id],
            )
            for reason_id, additive, name in cursor.fetchall():
                reasons.append(
                    StockAdjustmentReason(
                        reason_id=str(reason_id), additive=bool(additive), name=name
                    )
                )
    except DatabaseError as exc:
        logger.warning("Stock adjustment reasons query failed: %s", exc)
        return [], [DB_UNAVAILABLE]

    return reasons, []


def get_proof_of_delivery(
    requisition_id: str | None,
) -> Tuple[ProofOfDelivery | None, List[str]]:
    """Proof of delivery of the order fulfilling ``requisition_id``, if any."""
    if not requisition_id:
        return None, []
    if _is_sqlite():
        return None, [DB_UNAVAILABLE]

    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT pod.proof_of_delivery_id, pod.status_code
                FROM proof_of_delivery pod
                JOIN fulfillment_order fo ON fo.order_id = pod.order_id
                WHERE fo.external_id = %s
                ORDER BY pod.create_dtime DESC
                LIMIT 1
                """,
                [requisition_id],
            )
            header = cursor.fetchone()
            if header is None:
                return None, []

            cursor.execute(
                """
                SELECT orderable_id, quantity_accepted
                FROM proof_of_delivery_line
                WHERE proof_of_delivery_id = %s
                """,
                [header[0]],
            )
            lines = tuple(
                ProofOfDeliveryLine(
                    product_id=str(product_id),
                    quantity_accepted=_to_int(quantity, 0) if quantity is not None else None,
                )
                for product_id, quantity in cursor.fetchall()
            )
    except DatabaseError as exc:
        logger.warning("Proof of delivery query failed: %s", exc)
        return None, [DB_UNAVAILABLE]

    return ProofOfDelivery(status=str(header[1] or ""), lines=lines), []


def get_ideal_stock_amounts(
    facility_id: str, period_id: str
) -> Tuple[Dict[str, int], List[str]]:
    """Ideal stock amounts keyed by commodity type."""
    if _is_sqlite():
        return {}, [DB_UNAVAILABLE]

    amounts: Dict[str, int] = {}
    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT commodity_type_id, amount
                FROM ideal_stock_amount
                WHERE facility_id = %s
                  AND processing_period_id = %s
                """,
                [facility_id, period_id],
            )
            for commodity_type_id, amount in cursor.fetchall():
                amounts[str(commodity_type_id)] = _to_int(amount)
    except DatabaseError as exc:
        logger.warning("Ideal stock amount query failed: %s", exc)
        return {}, [DB_UNAVAILABLE]

    return amounts, []


def get_stock_on_hand(
    facility_id: str, program_id: str
) -> Tuple[Dict[str, int], List[str]]:
    if _is_sqlite():
        return {}, [DB_UNAVAILABLE]

    stock: Dict[str, int] = {}
    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT orderable_id, SUM(stock_on_hand) AS qty
                FROM stock_card_summary
                WHERE facility_id = %s
                  AND program_id = %s
                GROUP BY orderable_id
                """,
                [facility_id, program_id],
            )
            for product_id, qty in cursor.fetchall():
                stock[str(product_id)] = _to_int(qty)
    except DatabaseError as exc:
        logger.warning("Stock on hand query failed: %s", exc)
        return {}, [DB_UNAVAILABLE]

    return stock, []


def get_months_in_period(period_id: str) -> Tuple[int, List[str]]:
    if _is_sqlite():
        return 1, [DB_UNAVAILABLE]

    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                """
                SELECT duration_in_months
                FROM processing_period
                WHERE processing_period_id = %s
                """,
                [period_id],
            )
            row = cursor.fetchone()
    except DatabaseError as exc:
        logger.warning("Processing period query failed: %s", exc)
        return 1, [DB_UNAVAILABLE]

    if not row or row[0] is None:
        return 1, ["processing_period_not_found"]
    return max(_to_int(row[0], 1), 1), []


def is_period_skippable(program_id: str) -> Tuple[bool, List[str]]:
    if _is_sqlite():
        return False, [DB_UNAVAILABLE]

    try:
        with transaction.atomic(), connection.cursor() as cursor:
            cursor.execute(
                "SELECT periods_skippable FROM program WHERE program_id = %s",
                [program_id],
            )
            row = cursor.fetchone()
    except DatabaseError as exc:
        logger.warning("Program query failed: %s", exc)
        return False, [DB_UNAVAILABLE]

    return bool(row and row[0]), []
