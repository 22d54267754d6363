"""Pure arithmetic behind the entry and inventory screens.

Nothing in this module touches the workbook. Callers hand in whatever the
form holds (strings, decimals, ``None``) and receive ``Decimal`` results.
Two parsing modes exist side by side:

* live recomputation (:func:`coerce_decimal`, :func:`compute_amount`) treats
  anything unusable as zero so a half-typed form still renders totals;
* submission (:func:`parse_decimal`) raises :class:`InvalidNumericInput` so the
  entry cannot be finalized with a bad value.

Quantities and rates are capped at :data:`MAX_INPUT` and money amounts at
:data:`MAX_AMOUNT`. Within those caps every product, split and sum stays exact
in the default 28 digit decimal context.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

from . import log
from .constants import AdjustmentType
from .errors import BusinessRuleViolation, InsufficientInventory, InvalidNumericInput


CENT = Decimal("0.01")
ZERO = Decimal("0")

# Exclusive upper bounds on the magnitude of parsed values.
MAX_INPUT = Decimal("1e12")
MAX_AMOUNT = MAX_INPUT * MAX_INPUT

NumericInput = Union[Decimal, int, float, str, None]


def _to_decimal(raw: Any) -> Optional[Decimal]:
    """Return ``raw`` as a finite ``Decimal`` or ``None`` when it is unusable."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        candidate = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            candidate = Decimal(text)
        except InvalidOperation:
            return None
    if not candidate.is_finite():
        return None
    return candidate


def to_money(value: Decimal) -> Decimal:
    """Quantize ``value`` to two decimal places using half-up rounding.

    The precision grows with the magnitude of ``value`` so any finite amount
    can be quantized, however large.
    """

    digits = max(value.adjusted() + 3, 28)
    return value.quantize(CENT, rounding=ROUND_HALF_UP, context=Context(prec=digits))


def coerce_decimal(raw: NumericInput, *, limit: Decimal = MAX_INPUT) -> Decimal:
    """Parse form input for live recomputation.

    Missing, non-numeric, non-finite, negative and oversized (``>= limit``)
    values all collapse to zero instead of raising, which keeps derived totals
    renderable while the user is still typing.
    """

    value = _to_decimal(raw)
    if value is None or value < ZERO or value >= limit:
        return ZERO
    return value


def parse_decimal(
    raw: NumericInput,
    *,
    field: str,
    allow_zero: bool = True,
    limit: Decimal = MAX_INPUT,
) -> Decimal:
    """Parse form input at submission time.

    Args:
        raw: Value held by the form field.
        field: Field name reported back in the raised error.
        allow_zero: When ``False`` the value must be strictly positive.
        limit: Exclusive upper bound; :data:`MAX_AMOUNT` for money fields.

    Returns:
        Decimal: The parsed, non-negative value.

    Raises:
        InvalidNumericInput: If the value is missing, non-numeric, negative,
            too large, or zero while ``allow_zero`` is ``False``.
    """

    value = _to_decimal(raw)
    if value is None:
        log.warning("Rejected non-numeric value for '%s': %r", field, raw)
        raise InvalidNumericInput(field, raw)
    if value < ZERO:
        log.warning("Rejected negative value for '%s': %s", field, value)
        raise InvalidNumericInput(field, raw, f"'{field}' must be zero or positive")
    if value >= limit:
        log.warning("Rejected oversized value for '%s': %s", field, value)
        raise InvalidNumericInput(field, raw, f"'{field}' must be less than {limit:,.0f}")
    if not allow_zero and value == ZERO:
        log.warning("Rejected zero value for '%s'", field)
        raise InvalidNumericInput(field, raw, f"'{field}' must be greater than zero")
    return value


def compute_amount(quantity: NumericInput, rate_per_unit: NumericInput) -> Decimal:
    """Return ``quantity * rate_per_unit`` rounded to two decimals.

    Used for every monetary pair on an entry: the principal total, each
    labor-type cost and the commission. Calls share no state.
    """

    return to_money(coerce_decimal(quantity) * coerce_decimal(rate_per_unit))


def resolve_commission_rate(
    agent_id: Optional[str],
    agent_directory: Mapping[str, Any],
) -> Optional[Decimal]:
    """Look up the commission rate configured for a collection agent.

    Returns ``None`` when no agent is selected, the agent is not in the
    directory, or the agent has no usable rate.
    """

    if not agent_id:
        return None
    rate = _to_decimal(agent_directory.get(agent_id))
    if rate is None or rate < ZERO:
        return None
    return rate


def compute_commission(
    quantity: NumericInput,
    agent_id: Optional[str],
    agent_directory: Mapping[str, Any],
) -> Decimal:
    """Commission for ``quantity`` at the agent's rate, or ``0.00`` without one."""

    rate = resolve_commission_rate(agent_id, agent_directory)
    if rate is None:
        return to_money(ZERO)
    return compute_amount(quantity, rate)


def compute_net(
    total_amount: NumericInput,
    cost_amounts: Iterable[NumericInput],
    is_expense: bool,
) -> Decimal:
    """Signed net result of an entry.

    Revenue entries yield ``total - costs``. Expense entries pay out both the
    principal and the costs, yielding ``-total - costs``.
    """

    total = coerce_decimal(total_amount, limit=MAX_AMOUNT)
    costs = sum((coerce_decimal(amount, limit=MAX_AMOUNT) for amount in cost_amounts), ZERO)
    net = -total - costs if is_expense else total - costs
    return to_money(net)


def format_currency(amount: NumericInput) -> str:
    """Render a rupee amount the way the entry screens display it."""

    value = _to_decimal(amount) or ZERO
    sign = "-" if value < ZERO else ""
    return f"{sign}₹{abs(to_money(value)):,.2f}"


# ---------------------------------------------------------------------------
# Inventory quantity transformation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdjustmentOutcome:
    """Result of applying one adjustment to a stock quantity."""

    previous_quantity: Decimal
    new_quantity: Decimal
    error: Optional[BusinessRuleViolation] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_adjustment_type(adjustment_type: Union[AdjustmentType, str]) -> AdjustmentType:
    """Convert user input into an :class:`AdjustmentType` member."""

    if isinstance(adjustment_type, AdjustmentType):
        return adjustment_type
    try:
        return AdjustmentType(str(adjustment_type).strip().upper())
    except ValueError as exc:
        log.error("Unsupported adjustment type provided: %s", adjustment_type)
        raise BusinessRuleViolation(f"Unsupported adjustment type: {adjustment_type}") from exc


def transform_quantity(
    current_quantity: NumericInput,
    adjustment_type: Union[AdjustmentType, str],
    amount: NumericInput,
) -> Decimal:
    """Dispatch table for a stock adjustment.

    COUNT replaces the quantity, ADD increments it, REMOVE and LOSS decrement
    it with a floor at zero. The floor only matters when
    :func:`validate_adjustment` was skipped.
    """

    kind = normalize_adjustment_type(adjustment_type)
    current = coerce_decimal(current_quantity)
    delta = coerce_decimal(amount)
    if kind is AdjustmentType.COUNT:
        return delta
    if kind is AdjustmentType.ADD:
        return current + delta
    return max(ZERO, current - delta)


def validate_adjustment(
    current_quantity: NumericInput,
    adjustment_type: Union[AdjustmentType, str],
    amount: NumericInput,
) -> Decimal:
    """Check an adjustment before it is applied and return the parsed amount.

    Raises:
        InvalidNumericInput: If ``amount`` is unusable, or an ADD would push
            the stock to :data:`MAX_INPUT`. Zero is accepted only for COUNT,
            where it explicitly empties the record.
        InsufficientInventory: If a REMOVE or LOSS exceeds the current stock.
    """

    kind = normalize_adjustment_type(adjustment_type)
    value = parse_decimal(amount, field="quantity", allow_zero=kind is AdjustmentType.COUNT)
    current = coerce_decimal(current_quantity)
    if kind is AdjustmentType.ADD and current + value >= MAX_INPUT:
        log.warning("Rejected ADD of %s on %s: stock would exceed %s", value, current, MAX_INPUT)
        raise InvalidNumericInput("quantity", amount, f"Stock must stay below {MAX_INPUT:,.0f}")
    if kind in (AdjustmentType.REMOVE, AdjustmentType.LOSS) and value > current:
        log.warning("Rejected %s of %s with only %s on hand", kind.value, value, current)
        raise InsufficientInventory(current, value)
    return value


def apply_adjustment(
    current_quantity: NumericInput,
    adjustment_type: Union[AdjustmentType, str],
    amount: NumericInput,
) -> AdjustmentOutcome:
    """Validate and apply an adjustment in one call.

    On a validation failure the quantity is left untouched and the error is
    carried on the outcome rather than clamped away.
    """

    previous = coerce_decimal(current_quantity)
    try:
        value = validate_adjustment(previous, adjustment_type, amount)
    except BusinessRuleViolation as exc:
        return AdjustmentOutcome(previous_quantity=previous, new_quantity=previous, error=exc)
    kind = normalize_adjustment_type(adjustment_type)
    new_quantity = transform_quantity(previous, kind, value)
    log.debug("Adjusted quantity %s -> %s (%s %s)", previous, new_quantity, kind.value, value)
    return AdjustmentOutcome(previous_quantity=previous, new_quantity=new_quantity)
