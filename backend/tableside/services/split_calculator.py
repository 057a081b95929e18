"""Pure money arithmetic for splitting a bill and allocating tips.

Nothing here touches the database; ``SplitPaymentService`` feeds it rows and
persists what it returns.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from tableside.core.exceptions import ValidationError
from tableside.core.money import ZERO, floor_to_unit, minor_unit, quantize, to_decimal
from tableside.models import ContributionStatus, OrderStatus, SplitStatus
from tableside.services.order_service import OrderRecord

RESIDUAL_NONE = "none"
RESIDUAL_FIRST = "first_participant"


@dataclass(frozen=True)
class Payer:
    participant_id: int
    name: str


@dataclass(frozen=True)
class Share:
    participant_id: int
    name: str
    amount: Decimal


def _require_payers(payers: Sequence[Payer]) -> None:
    if not payers:
        raise ValidationError("A split needs at least one participant")
    ids = [p.participant_id for p in payers]
    if len(ids) != len(set(ids)):
        raise ValidationError("Each participant can appear only once in a split")


def _non_negative(amount, what: str, currency: str) -> Decimal:
    try:
        value = quantize(amount, currency)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if value < ZERO:
        raise ValidationError(f"{what} cannot be negative")
    return value


def _equal_parts(amount: Decimal, count: int, currency: str, residual_policy: str) -> List[Decimal]:
    """``count`` parts of ``amount / count`` rounded down to the minor unit.

    Rounding down keeps the parts from ever adding up to more than ``amount``;
    with ``first_participant`` the residual moves onto the first part so they
    add up to ``amount`` exactly.
    """
    each = floor_to_unit(amount / count, currency)
    parts = [each] * count
    if residual_policy == RESIDUAL_FIRST:
        parts[0] = quantize(amount - each * (count - 1), currency)
    return parts


def equal_split(
    total,
    payers: Sequence[Payer],
    currency: str,
    residual_policy: str = RESIDUAL_NONE,
) -> List[Share]:
    _require_payers(payers)
    total = _non_negative(total, "Total amount", currency)
    parts = _equal_parts(total, len(payers), currency, residual_policy)
    return [Share(p.participant_id, p.name, amount) for p, amount in zip(payers, parts)]


def custom_split(
    total,
    payers: Sequence[Payer],
    custom_amounts: Mapping[int, object],
    currency: str,
    strict: bool = False,
) -> List[Share]:
    """Caller-chosen amounts per participant.

    The sum is only reconciled against ``total`` when ``strict`` is set.
    """
    _require_payers(payers)
    total = _non_negative(total, "Total amount", currency)
    known = {p.participant_id for p in payers}
    unknown = set(custom_amounts) - known
    if unknown:
        raise ValidationError(f"Custom amounts given for participants not in the split: {sorted(unknown)}")
    missing = known - set(custom_amounts)
    if missing:
        raise ValidationError(f"Custom amounts missing for participants: {sorted(missing)}")

    shares = [
        Share(p.participant_id, p.name, _non_negative(custom_amounts[p.participant_id], "Amount", currency))
        for p in payers
    ]
    if strict:
        assigned = sum((s.amount for s in shares), ZERO)
        if abs(assigned - total) >= minor_unit(currency):
            raise ValidationError(f"Custom amounts ({assigned}) don't match total ({total})")
    return shares


def by_order_split(
    total,
    payers: Sequence[Payer],
    orders: Iterable[OrderRecord],
    currency: str,
    residual_policy: str = RESIDUAL_NONE,
) -> List[Share]:
    """Each payer covers their own orders; the unattributed rest is shared equally.

    Without any order attributable to a payer this is an equal split.
    """
    _require_payers(payers)
    total = _non_negative(total, "Total amount", currency)
    own: Dict[int, Decimal] = {p.participant_id: ZERO for p in payers}
    for order in orders:
        if order.status == OrderStatus.CANCELLED.value or order.participant_id not in own:
            continue
        own[order.participant_id] += to_decimal(order.total_amount)

    attributed = sum(own.values(), ZERO)
    if attributed == ZERO:
        return equal_split(total, payers, currency, residual_policy)

    remainder = total - attributed
    if remainder < ZERO:
        raise ValidationError(f"Order totals ({attributed}) exceed the bill total ({total})")

    extra = _equal_parts(remainder, len(payers), currency, residual_policy)
    return [
        Share(p.participant_id, p.name, quantize(own[p.participant_id] + e, currency))
        for p, e in zip(payers, extra)
    ]


def allocate_tip(
    tip,
    base_amounts: Mapping[int, Decimal],
    distribution: str,
    currency: str,
    custom_tips: Optional[Mapping[int, object]] = None,
    residual_policy: str = RESIDUAL_NONE,
) -> Dict[int, Decimal]:
    """Split ``tip`` over contributions keyed by id.

    ``equal`` gives everyone ``tip / N`` rounded down; ``proportional`` weights by
    the current amount (equal when every amount is zero); ``custom`` takes the
    caller's per-contribution tips as given.
    """
    if not base_amounts:
        raise ValidationError("No contributions to tip")
    keys = list(base_amounts)

    if distribution == "custom":
        if not custom_tips:
            raise ValidationError("Custom tip distribution needs per-participant tips")
        unknown = set(custom_tips) - set(keys)
        if unknown:
            raise ValidationError(f"Tips given for participants not in the split: {sorted(unknown)}")
        return {k: _non_negative(custom_tips.get(k, ZERO), "Tip", currency) for k in keys}

    tip = _non_negative(tip, "Tip amount", currency)
    if distribution == "equal":
        return dict(zip(keys, _equal_parts(tip, len(keys), currency, residual_policy)))

    if distribution == "proportional":
        base_total = sum(base_amounts.values(), ZERO)
        if base_total == ZERO:
            return dict(zip(keys, _equal_parts(tip, len(keys), currency, residual_policy)))
        allocated = {k: floor_to_unit(tip * base_amounts[k] / base_total, currency) for k in keys}
        if residual_policy == RESIDUAL_FIRST:
            allocated[keys[0]] += tip - sum(allocated.values(), ZERO)
        return allocated

    raise ValidationError(f"Unknown tip distribution: {distribution}")


def derive_split_status(contribution_statuses: Sequence[str]) -> str:
    """``completed`` iff every contribution is paid, ``partial`` if any is, else ``pending``."""
    paid = [s == ContributionStatus.PAID.value for s in contribution_statuses]
    if paid and all(paid):
        return SplitStatus.COMPLETED.value
    if any(paid):
        return SplitStatus.PARTIAL.value
    return SplitStatus.PENDING.value
