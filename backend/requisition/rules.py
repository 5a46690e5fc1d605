from decimal import Decimal
from typing import FrozenSet

from django.conf import settings

DEFAULT_CURRENCY_CODE = "USD"
DEFAULT_PERIODS_TO_AVERAGE = 3
DAYS_PER_MONTH = 30

# Statuses in lifecycle order.
INITIATED = "INITIATED"
SUBMITTED = "SUBMITTED"
AUTHORIZED = "AUTHORIZED"
IN_APPROVAL = "IN_APPROVAL"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
RELEASED = "RELEASED"
SKIPPED = "SKIPPED"

STATUSES = (
    INITIATED,
    SUBMITTED,
    AUTHORIZED,
    IN_APPROVAL,
    APPROVED,
    REJECTED,
    RELEASED,
    SKIPPED,
)

DELETABLE_STATUSES: FrozenSet[str] = frozenset({INITIATED, REJECTED, SKIPPED, SUBMITTED})
PRE_AUTHORIZE_STATUSES: FrozenSet[str] = frozenset({INITIATED, SUBMITTED, REJECTED})
# Statuses in which line items may still be edited.
EDITABLE_STATUSES: FrozenSet[str] = frozenset(
    {INITIATED, REJECTED, SUBMITTED, AUTHORIZED, IN_APPROVAL}
)

# Allowed source statuses per transition.
TRANSITION_GUARDS = {
    "initiate": frozenset({INITIATED}),
    "submit": frozenset({INITIATED, REJECTED}),
    "authorize": frozenset({SUBMITTED}),
    "approve": frozenset({AUTHORIZED, IN_APPROVAL}),
    "reject": frozenset({AUTHORIZED, IN_APPROVAL}),
    "release": frozenset({APPROVED}),
    "skip": frozenset({INITIATED}),
}

PROOF_OF_DELIVERY_CONFIRMED = "CONFIRMED"


def get_currency_code() -> str:
    return str(getattr(settings, "REQUISITION_CURRENCY_CODE", DEFAULT_CURRENCY_CODE)).upper()


def get_default_price_per_pack() -> Decimal:
    raw = getattr(settings, "REQUISITION_DEFAULT_PRICE_PER_PACK", Decimal("0"))
    return Decimal(str(raw))


def get_periods_to_average() -> int:
    value = getattr(settings, "REQUISITION_PERIODS_TO_AVERAGE", DEFAULT_PERIODS_TO_AVERAGE)
    return max(int(value), 0)


def skip_authorization_enabled() -> bool:
    return bool(getattr(settings, "REQUISITION_SKIP_AUTHORIZATION", False))


def stock_count_date_enabled() -> bool:
    return bool(getattr(settings, "REQUISITION_DATE_PHYSICAL_STOCK_COUNT_ENABLED", False))
