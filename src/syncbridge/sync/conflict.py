"""Conflict resolution for contested status fields.

Pure, deterministic functions deciding which platform's value of a status
field wins. The orchestrator decides whether the two sides disagree and
applies the result; nothing here performs I/O.

Rules:
- Fulfillment: higher ordinal wins (PENDING < PROCESSING < SHIPPED < DELIVERED).
  CANCELLED and FAILED are terminal and outrank every ordered status, so a
  terminal order is never walked back to an in-flight state.
- Payment: FAILED or REFUNDED on either side wins unconditionally (irreversible
  financial events). Otherwise higher ordinal wins, with VOIDED terminal and
  outranking the ordered statuses.
- Ties (same rank, or two different terminal statuses) go to ``tie_side``,
  Platform A unless configured otherwise.
"""

from __future__ import annotations

from datetime import datetime
from typing import NamedTuple

from src.syncbridge.sync.schemas import (
    ConflictStrategy,
    FulfillmentStatus,
    PaymentStatus,
    Platform,
)

# Terminal statuses share the top rank so they tie with each other.
_TERMINAL_RANK = 100

FULFILLMENT_PRIORITY: dict[FulfillmentStatus, int] = {
    FulfillmentStatus.PENDING: 0,
    FulfillmentStatus.PROCESSING: 1,
    FulfillmentStatus.SHIPPED: 2,
    FulfillmentStatus.DELIVERED: 3,
    FulfillmentStatus.CANCELLED: _TERMINAL_RANK,
    FulfillmentStatus.FAILED: _TERMINAL_RANK,
}

PAYMENT_PRIORITY: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.AUTHORIZED: 1,
    PaymentStatus.PAID: 2,
    PaymentStatus.PARTIALLY_REFUNDED: 3,
    PaymentStatus.REFUNDED: 4,
    PaymentStatus.FAILED: _TERMINAL_RANK,
    PaymentStatus.VOIDED: _TERMINAL_RANK,
}

IRREVERSIBLE_PAYMENT_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.REFUNDED})


class Resolution(NamedTuple):
    """Winning value of a contested field and the side holding it."""

    value: FulfillmentStatus | PaymentStatus
    side: Platform


def _by_rank(a, b, ranks: dict, tie_side: Platform) -> Resolution:
    rank_a = ranks[a]
    rank_b = ranks[b]
    if rank_a > rank_b:
        return Resolution(a, Platform.A)
    if rank_b > rank_a:
        return Resolution(b, Platform.B)
    return Resolution(a, Platform.A) if tie_side is Platform.A else Resolution(b, Platform.B)


def resolve_fulfillment(
    a: FulfillmentStatus,
    b: FulfillmentStatus,
    tie_side: Platform = Platform.A,
) -> Resolution:
    """Decide the winning fulfillment status.

    Args:
        a: Status currently held by Platform A.
        b: Status currently held by Platform B.
        tie_side: Platform that wins ties.

    Returns:
        Resolution with the winning status and the side holding it.
    """
    return _by_rank(a, b, FULFILLMENT_PRIORITY, tie_side)


def resolve_payment(
    a: PaymentStatus,
    b: PaymentStatus,
    tie_side: Platform = Platform.A,
) -> Resolution:
    """Decide the winning payment status.

    FAILED/REFUNDED win over anything else regardless of argument order;
    when both sides hold one of them, ``tie_side`` decides.
    """
    a_final = a in IRREVERSIBLE_PAYMENT_STATUSES
    b_final = b in IRREVERSIBLE_PAYMENT_STATUSES
    if a_final and not b_final:
        return Resolution(a, Platform.A)
    if b_final and not a_final:
        return Resolution(b, Platform.B)
    if a_final and b_final:
        return Resolution(a, Platform.A) if tie_side is Platform.A else Resolution(b, Platform.B)
    return _by_rank(a, b, PAYMENT_PRIORITY, tie_side)


def resolve_field(
    field: str,
    a,
    b,
    *,
    strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
    tie_side: Platform = Platform.A,
    a_updated_at: datetime | None = None,
    b_updated_at: datetime | None = None,
) -> Resolution | None:
    """Resolve ``field`` ("fulfillment_status" or "payment_status") under a task strategy.

    Returns None when the strategy is SKIP, meaning the entity should be left
    untouched. Irreversible payment statuses win under every other strategy.
    """
    if field == "fulfillment_status":
        resolver = resolve_fulfillment
    elif field == "payment_status":
        resolver = resolve_payment
    else:
        msg = f"No conflict resolver for field '{field}'"
        raise ValueError(msg)

    if strategy is ConflictStrategy.SKIP:
        return None

    if field == "payment_status" and (
        a in IRREVERSIBLE_PAYMENT_STATUSES or b in IRREVERSIBLE_PAYMENT_STATUSES
    ):
        return resolve_payment(a, b, tie_side)

    if strategy is ConflictStrategy.PLATFORM_A_WINS:
        return Resolution(a, Platform.A)
    if strategy is ConflictStrategy.PLATFORM_B_WINS:
        return Resolution(b, Platform.B)
    if strategy is ConflictStrategy.NEWEST_WINS and a_updated_at and b_updated_at:
        if a_updated_at > b_updated_at:
            return Resolution(a, Platform.A)
        if b_updated_at > a_updated_at:
            return Resolution(b, Platform.B)

    return resolver(a, b, tie_side)
