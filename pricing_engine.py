"""
eSIM Pricing Engine
===================
Core calculation pipeline:
  1. Bundle selection (closest duration from above, least waste)
  2. Base cost + markup (cost-split rate or fixed markup table)
  3. Unused-days discount
  4. Rule engine pass (discounts, markups, processing overrides, floors)
  5. Processing fee by payment method
  6. Final revenue, profit and constraint enforcement

This is the SINGLE SOURCE OF TRUTH for price computation.
Admin screens, simulators and the HTTP layer MUST call this engine, never
re-derive discount or processing math themselves.

All arithmetic is Decimal. Nothing is rounded inside the pipeline; money is
rounded half-up to cents only when a result is serialized.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import logging

from pricing_rules import (
    ActionType,
    ConditionOperator,
    PaymentMethod,
    PricingRule,
    RuleAction,
    RuleCategory,
    RuleCondition,
    RuleModelError,
    parse_bool,
)

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')

DEFAULT_UNUSED_DAYS_RATE = Decimal('0.1')


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Decimal) -> float:
    return float(to_decimal(value).quantize(CENT, ROUND_HALF_UP))


def percent(value: Any) -> Decimal:
    """Percentage points (1.4) to a fraction (0.014)."""
    return to_decimal(value) / HUNDRED


# =====================================================
# EXCEPTIONS
# =====================================================

class PricingEngineError(Exception):
    """Base exception for pricing engine errors"""
    pass

class InvalidArgumentError(PricingEngineError):
    pass

class NotFoundError(PricingEngineError):
    pass

class ConstraintUnsatisfiableError(PricingEngineError):
    """A profit or price floor could not be met after the correction pass."""

    def __init__(self, message: str, result: 'PricingResult' = None):
        super().__init__(message)
        self.result = result


# =====================================================
# REFERENCE DATA
# =====================================================

@dataclass(frozen=True)
class Bundle:
    name: str
    country_id: str
    duration_days: int
    base_cost: Decimal
    is_unlimited: bool = False
    data_amount: Optional[str] = None
    bundle_group: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bundle':
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        try:
            duration = int(pick('durationDays', 'duration_days', default=0))
            base_cost = to_decimal(pick('baseCost', 'base_cost', default=0))
        except (TypeError, ValueError, InvalidOperation):
            raise InvalidArgumentError(f"Malformed bundle: {data}")

        if duration < 1:
            raise InvalidArgumentError(f"Bundle {data.get('name')} has invalid duration {duration}")

        return cls(
            name=str(pick('name', default='')),
            country_id=str(pick('countryId', 'country_id', default='')),
            duration_days=duration,
            base_cost=base_cost,
            is_unlimited=bool(pick('isUnlimited', 'is_unlimited', default=False)),
            data_amount=pick('dataAmount', 'data_amount'),
            bundle_group=str(pick('bundleGroup', 'bundle_group', default='')),
        )


class MarkupTable:
    """
    Flat dollar markups keyed by (bundle_group, duration_days).

    Lookup falls back to the nearest lower duration inside the same group,
    so a 10-day bundle in a group priced at 7 and 15 days takes the 7-day
    markup.
    """

    def __init__(self, entries: Optional[Dict[Tuple[str, int], Any]] = None):
        self._entries = {
            (str(group), int(days)): to_decimal(amount)
            for (group, days), amount in (entries or {}).items()
        }

    @classmethod
    def from_matrix(cls, matrix: Dict[str, Dict[Any, Any]]) -> 'MarkupTable':
        """
        Build from {"Standard - Unlimited Essential": {"7": 2.5, "15": 4}}.

        Raises InvalidArgumentError for a malformed matrix or a non-finite amount.
        """
        if not isinstance(matrix, dict):
            raise InvalidArgumentError(f"markupMatrix must be an object, got {matrix!r}")

        entries = {}
        for group, by_days in matrix.items():
            if not isinstance(by_days, dict):
                raise InvalidArgumentError(f"markupMatrix['{group}'] must map days to amounts")
            for days, amount in by_days.items():
                try:
                    value = to_decimal(amount)
                    duration = int(days)
                except (InvalidOperation, TypeError, ValueError):
                    value = None
                if value is None or isinstance(amount, bool) or not value.is_finite():
                    raise InvalidArgumentError(
                        f"markupMatrix['{group}']['{days}'] is not a valid amount: {amount!r}"
                    )
                entries[(group, duration)] = value
        return cls(entries)

    def lookup(self, bundle_group: str, duration_days: int, nearest: bool = True) -> Optional[Decimal]:
        exact = self._entries.get((bundle_group, duration_days))
        if exact is not None or not nearest:
            return exact

        lower = [
            days for (group, days) in self._entries
            if group == bundle_group and days < duration_days
        ]
        if not lower:
            return None
        return self._entries[(bundle_group, max(lower))]


@dataclass(frozen=True)
class ProcessingFeeConfig:
    """
    Payment gateway rates in percentage points.

    Premium networks stack on the foreign card rate:
        AMEX   = foreign_cards_rate + premium_amex_rate
        DINERS = foreign_cards_rate + premium_diners_rate
    BIT is its own rail and uses bit_payment_rate alone.
    """
    israeli_cards_rate: Optional[Decimal] = Decimal('1.4')
    foreign_cards_rate: Optional[Decimal] = Decimal('3.9')
    premium_diners_rate: Optional[Decimal] = Decimal('0.3')
    premium_amex_rate: Optional[Decimal] = Decimal('0.8')
    bit_payment_rate: Optional[Decimal] = Decimal('0.1')
    default_rate: Decimal = Decimal('1.4')
    fixed_fee_nis: Decimal = ZERO
    fixed_fee_foreign: Decimal = ZERO

    _FIELDS = {
        'israeli_cards_rate': 'israeliCardsRate',
        'foreign_cards_rate': 'foreignCardsRate',
        'premium_diners_rate': 'premiumDinersRate',
        'premium_amex_rate': 'premiumAmexRate',
        'bit_payment_rate': 'bitPaymentRate',
        'default_rate': 'defaultRate',
        'fixed_fee_nis': 'fixedFeeNIS',
        'fixed_fee_foreign': 'fixedFeeForeign',
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessingFeeConfig':
        kwargs = {}
        for snake, camel in cls._FIELDS.items():
            raw = data.get(camel, data.get(snake))
            if raw is not None:
                kwargs[snake] = to_decimal(raw)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            camel: (float(getattr(self, snake)) if getattr(self, snake) is not None else None)
            for snake, camel in self._FIELDS.items()
        }

    def rate_for(self, payment_method: PaymentMethod) -> Decimal:
        """Fractional processing rate for a payment method."""
        if payment_method == PaymentMethod.ISRAELI_CARD:
            parts = [self.israeli_cards_rate]
        elif payment_method == PaymentMethod.FOREIGN_CARD:
            parts = [self.foreign_cards_rate]
        elif payment_method == PaymentMethod.AMEX:
            parts = [self.foreign_cards_rate, self.premium_amex_rate]
        elif payment_method == PaymentMethod.DINERS:
            parts = [self.foreign_cards_rate, self.premium_diners_rate]
        elif payment_method == PaymentMethod.BIT:
            parts = [self.bit_payment_rate]
        else:
            raise InvalidArgumentError(f"Unknown payment method: {payment_method}")

        if any(p is None for p in parts):
            logger.warning(f"No configured rate for {payment_method.value}, using default {self.default_rate}%")
            return percent(self.default_rate)
        return percent(sum(parts, ZERO))

    def fixed_fee_for(self, payment_method: PaymentMethod) -> Decimal:
        if payment_method in (PaymentMethod.ISRAELI_CARD, PaymentMethod.BIT):
            return self.fixed_fee_nis
        return self.fixed_fee_foreign


@dataclass(frozen=True)
class PricingConfig:
    unused_days_rate: Decimal = DEFAULT_UNUSED_DAYS_RATE
    # Markup share of the selling price; None means use the markup table
    cost_split_percent: Optional[Decimal] = None


def parse_payment_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    if value is None or value == '':
        return PaymentMethod.ISRAELI_CARD
    try:
        return PaymentMethod(str(value).strip().upper())
    except ValueError:
        raise InvalidArgumentError(f"Unknown payment method: {value}")


def _parse_days(raw: Any) -> int:
    """Whole days only: 7, 7.0 and "7" pass, 5.7 and True do not."""
    if raw is None or isinstance(raw, bool):
        raise InvalidArgumentError(f"requestedDays must be an integer, got {raw!r}")
    try:
        days = Decimal(str(raw).strip())
    except InvalidOperation:
        raise InvalidArgumentError(f"requestedDays must be an integer, got {raw!r}")
    if not days.is_finite() or days != days.to_integral_value():
        raise InvalidArgumentError(f"requestedDays must be an integer, got {raw!r}")
    return int(days)


def _parse_flag(raw: Any, label: str) -> bool:
    try:
        return parse_bool(raw, label)
    except RuleModelError as e:
        raise InvalidArgumentError(str(e))


@dataclass(frozen=True)
class PricingContext:
    country_id: str
    requested_days: int
    payment_method: PaymentMethod = PaymentMethod.ISRAELI_CARD
    region_id: Optional[str] = None
    bundle_group_filter: Optional[str] = None
    is_new_user: bool = False
    strategy_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricingContext':
        if not isinstance(data, dict):
            raise InvalidArgumentError("Pricing context must be an object")

        country_id = data.get('countryId', data.get('country_id'))
        if not country_id:
            raise InvalidArgumentError("Missing required field: countryId")

        raw_days = data.get('requestedDays', data.get('numOfDays', data.get('requested_days')))
        requested_days = _parse_days(raw_days)
        if requested_days < 1:
            raise InvalidArgumentError(f"requestedDays must be at least 1, got {requested_days}")

        return cls(
            country_id=str(country_id),
            requested_days=requested_days,
            payment_method=parse_payment_method(data.get('paymentMethod', data.get('payment_method'))),
            region_id=data.get('regionId', data.get('region_id')),
            bundle_group_filter=data.get('bundleGroupFilter', data.get('bundleGroup', data.get('bundle_group_filter'))),
            is_new_user=_parse_flag(data.get('isNewUser', data.get('is_new_user')), 'isNewUser'),
            strategy_id=data.get('strategyId', data.get('strategy_id')),
            attributes=dict(data.get('attributes') or {}),
        )


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable inputs for one calculation."""
    bundles: Tuple[Bundle, ...]
    rules: Tuple[PricingRule, ...]
    markup_table: MarkupTable
    fee_config: ProcessingFeeConfig
    country_name: Optional[str] = None


# =====================================================
# RESULTS
# =====================================================

@dataclass(frozen=True)
class AppliedRule:
    id: str
    name: str
    category: RuleCategory
    impact: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category.value,
            'impact': money(self.impact),
        }


@dataclass(frozen=True)
class PricingStep:
    order: int
    name: str
    price_before: Decimal
    price_after: Decimal

    @property
    def impact(self) -> Decimal:
        return self.price_after - self.price_before

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order': self.order,
            'name': self.name,
            'priceBefore': money(self.price_before),
            'priceAfter': money(self.price_after),
            'impact': money(self.impact),
        }


@dataclass(frozen=True)
class PricingResult:
    bundle_name: str
    bundle_group: str
    country_name: str
    duration: int
    requested_days: int
    payment_method: PaymentMethod
    cost: Decimal
    markup: Decimal
    total_cost: Decimal
    unused_days: int
    unused_days_discount: Decimal
    discount_per_day: Decimal
    discount_rate: Decimal
    discount_value: Decimal
    price_after_discount: Decimal
    processing_rate: Decimal
    processing_cost: Decimal
    revenue_after_processing: Decimal
    final_price: Decimal
    final_revenue: Decimal
    net_profit: Decimal
    final_processing_cost: Decimal
    applied_rules: Tuple[AppliedRule, ...] = ()
    steps: Tuple[PricingStep, ...] = ()
    constraint_violated: bool = False
    violated_constraints: Tuple[str, ...] = ()

    def raise_for_constraints(self) -> 'PricingResult':
        if self.constraint_violated:
            raise ConstraintUnsatisfiableError(
                f"Unsatisfied constraints for {self.bundle_name}: {', '.join(self.violated_constraints)}",
                result=self,
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bundleName': self.bundle_name,
            'bundleGroup': self.bundle_group,
            'countryName': self.country_name,
            'duration': self.duration,
            'requestedDays': self.requested_days,
            'paymentMethod': self.payment_method.value,
            'cost': money(self.cost),
            'costPlus': money(self.markup),
            'markup': money(self.markup),
            'totalCost': money(self.total_cost),
            'unusedDays': self.unused_days,
            'unusedDaysDiscount': money(self.unused_days_discount),
            'discountPerDay': money(self.discount_per_day),
            'discountRate': float(self.discount_rate),
            'discountValue': money(self.discount_value),
            'priceAfterDiscount': money(self.price_after_discount),
            'processingRate': float(self.processing_rate),
            'processingCost': money(self.processing_cost),
            'finalProcessingCost': money(self.final_processing_cost),
            'revenueAfterProcessing': money(self.revenue_after_processing),
            'finalPrice': money(self.final_price),
            'finalRevenue': money(self.final_revenue),
            'netProfit': money(self.net_profit),
            'appliedRules': [r.to_dict() for r in self.applied_rules],
            'steps': [s.to_dict() for s in self.steps],
            'constraintViolated': self.constraint_violated,
            'violatedConstraints': list(self.violated_constraints),
        }


@dataclass(frozen=True)
class SimulationResult:
    """
    Dry run of one rule. result.applied_rules holds only the simulated rule's
    entries; the system rules priced alongside it are listed in baseline_rules.
    """
    result: PricingResult
    matched: bool
    effective: bool
    baseline_rules: Tuple[AppliedRule, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data['matched'] = self.matched
        data['effective'] = self.effective
        data['baselineRules'] = [r.to_dict() for r in self.baseline_rules]
        return data


@dataclass(frozen=True)
class BatchItem:
    context: Any
    result: Optional[PricingResult] = None
    error: Optional[PricingEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {'success': True, 'result': self.result.to_dict()}
        return {
            'success': False,
            'error': str(self.error),
            'errorType': type(self.error).__name__,
        }


# =====================================================
# STAGE 1: BUNDLE SELECTION
# =====================================================

def _cheapest(bundles: List[Bundle]) -> Bundle:
    # min() keeps the first of equal costs, i.e. catalog order
    return min(bundles, key=lambda b: b.base_cost)


def select_bundle(
    country_id: str,
    requested_days: int,
    available_bundles: Iterable[Bundle],
    bundle_group_filter: Optional[str] = None
) -> Tuple[Bundle, int]:
    """
    Pick the bundle that covers the request with the least waste.

    Returns:
        (bundle, unused_days)
    """
    if requested_days < 1:
        raise InvalidArgumentError(f"requestedDays must be at least 1, got {requested_days}")

    candidates = [
        b for b in available_bundles
        if str(b.country_id) == str(country_id)
        and (not bundle_group_filter or b.bundle_group == bundle_group_filter)
    ]
    if not candidates:
        scope = f" in group '{bundle_group_filter}'" if bundle_group_filter else ''
        raise NotFoundError(f"No bundles for country {country_id}{scope}")

    exact = [b for b in candidates if b.duration_days == requested_days]
    if exact:
        return _cheapest(exact), 0

    longer = [b for b in candidates if b.duration_days > requested_days]
    if longer:
        shortest = min(b.duration_days for b in longer)
        bundle = _cheapest([b for b in longer if b.duration_days == shortest])
        return bundle, shortest - requested_days

    longest = max(b.duration_days for b in candidates)
    bundle = _cheapest([b for b in candidates if b.duration_days == longest])
    logger.warning(
        f"No bundle covers {requested_days} days for {country_id}; "
        f"falling back to longest available ({bundle.name}, {longest} days)"
    )
    return bundle, 0


# =====================================================
# STAGE 2: MARKUP
# =====================================================

@dataclass(frozen=True)
class MarkupBreakdown:
    markup: Decimal
    total_cost: Decimal


def apply_markup(
    base_cost: Any,
    markup_source: Union[MarkupTable, Decimal, float, None],
    bundle: Optional[Bundle] = None
) -> MarkupBreakdown:
    """
    markup_source:
        MarkupTable       -> flat amount for (bundle_group, duration_days)
        rate in [0, 1)    -> cost split, total = base / (1 - rate)
        None              -> no markup
    """
    base = to_decimal(base_cost)

    if isinstance(markup_source, MarkupTable):
        if bundle is None:
            raise InvalidArgumentError("Markup table lookup requires the selected bundle")
        markup = markup_source.lookup(bundle.bundle_group, bundle.duration_days)
        if markup is None:
            logger.warning(
                f"No markup configured for {bundle.bundle_group!r} ({bundle.duration_days} days), using 0"
            )
            markup = ZERO
    elif markup_source is None:
        markup = ZERO
    else:
        rate = to_decimal(markup_source)
        if not ZERO <= rate < ONE:
            raise InvalidArgumentError(f"Cost split percent must be in [0, 1), got {rate}")
        markup = base / (ONE - rate) - base

    return MarkupBreakdown(markup=markup, total_cost=base + markup)


# =====================================================
# STAGE 3: UNUSED-DAYS DISCOUNT
# =====================================================

@dataclass(frozen=True)
class UnusedDaysDiscount:
    discount_value: Decimal
    price: Decimal


def apply_unused_days_discount(
    total_cost: Any,
    unused_days: int,
    selected_bundle_duration: int,
    per_day_rate: Any = DEFAULT_UNUSED_DAYS_RATE
) -> UnusedDaysDiscount:
    total = to_decimal(total_cost)
    if unused_days <= 0:
        return UnusedDaysDiscount(discount_value=ZERO, price=total)
    if selected_bundle_duration < 1:
        raise InvalidArgumentError(f"Bundle duration must be at least 1, got {selected_bundle_duration}")

    fraction = Decimal(unused_days) / Decimal(selected_bundle_duration)
    discount = total * fraction * to_decimal(per_day_rate)
    return UnusedDaysDiscount(discount_value=discount, price=total - discount)


# =====================================================
# STAGE 4: RULE ENGINE
# =====================================================

@dataclass(frozen=True)
class PriceState:
    """Running price state folded over by rule actions."""
    cost: Decimal
    markup: Decimal
    duration_days: int
    unused_days: int
    unused_days_rate: Decimal
    base_processing_rate: Decimal
    discount_rate: Decimal = ZERO
    fixed_discount: Decimal = ZERO
    processing_rate_override: Optional[Decimal] = None
    unused_days_rate_override: Optional[Decimal] = None
    minimum_profit: Optional[Decimal] = None
    minimum_price: Optional[Decimal] = None

    @property
    def total_cost(self) -> Decimal:
        return self.cost + self.markup

    @property
    def unused_days_discount(self) -> Decimal:
        return apply_unused_days_discount(
            self.total_cost, self.unused_days, self.duration_days, self.effective_unused_days_rate
        ).discount_value

    @property
    def effective_unused_days_rate(self) -> Decimal:
        if self.unused_days_rate_override is not None:
            return self.unused_days_rate_override
        return self.unused_days_rate

    @property
    def rule_discount_value(self) -> Decimal:
        return self.total_cost * self.discount_rate + self.fixed_discount

    @property
    def discount_value(self) -> Decimal:
        return self.unused_days_discount + self.rule_discount_value

    @property
    def price_after_discount(self) -> Decimal:
        return max(ZERO, self.total_cost - self.discount_value)

    @property
    def processing_rate(self) -> Decimal:
        if self.processing_rate_override is not None:
            return self.processing_rate_override
        return self.base_processing_rate


@dataclass(frozen=True)
class EvaluationResult:
    applied_rules: Tuple[AppliedRule, ...]
    matched_rule_ids: Tuple[str, ...]
    state: PriceState
    markup_delta: Decimal

    @property
    def discount_rate(self) -> Decimal:
        return self.state.discount_rate

    @property
    def discount_value(self) -> Decimal:
        return self.state.rule_discount_value

    @property
    def processing_rate_override(self) -> Optional[Decimal]:
        return self.state.processing_rate_override

    @property
    def minimum_profit(self) -> Optional[Decimal]:
        return self.state.minimum_profit

    @property
    def minimum_price(self) -> Optional[Decimal]:
        return self.state.minimum_price


_MISSING = object()


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value)
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower()
    return str(value)


def _values_equal(left: Any, right: Any) -> bool:
    a, b = _as_number(left), _as_number(right)
    if a is not None and b is not None:
        return a == b
    return _as_text(left) == _as_text(right)


class RuleEngine:
    """
    Dynamic pricing rule processor.
    Selects active rules whose conditions all match the context, orders
    them by priority (higher first, ties keep input order) and folds their
    actions into the running price state.

    Rules NEVER replace the pipeline stages: markup, unused-days discount and
    processing always run; rules adjust them.
    """

    def __init__(self, rules: Iterable[PricingRule]):
        self.rules = list(rules)

    # -------------------------------------------------
    # CONTEXT
    # -------------------------------------------------

    @staticmethod
    def flatten_context(context: PricingContext, bundle: Bundle, state: PriceState) -> Dict[str, Any]:
        bundle_facts = {
            'name': bundle.name,
            'group': bundle.bundle_group,
            'durationDays': bundle.duration_days,
            'cost': bundle.base_cost,
            'isUnlimited': bundle.is_unlimited,
            'dataAmount': bundle.data_amount,
            'countryId': bundle.country_id,
        }
        pricing_facts = {
            'cost': state.cost,
            'markup': state.markup,
            'totalCost': state.total_cost,
            'unusedDays': state.unused_days,
            'unusedDaysDiscount': state.unused_days_discount,
            'priceAfterDiscount': state.price_after_discount,
        }
        facts = {
            'countryId': context.country_id,
            'regionId': context.region_id,
            'requestedDays': context.requested_days,
            'paymentMethod': context.payment_method.value,
            'isNewUser': context.is_new_user,
            'bundleGroup': bundle.bundle_group,
            'duration': bundle.duration_days,
            'unusedDays': state.unused_days,
            'isExactMatch': state.unused_days == 0 and bundle.duration_days == context.requested_days,
            'cost': state.cost,
            'markup': state.markup,
            'totalCost': state.total_cost,
            'bundle': bundle_facts,
            'pricing': pricing_facts,
            'attributes': dict(context.attributes),
        }
        return facts

    @staticmethod
    def resolve_field(facts: Dict[str, Any], path: str) -> Any:
        """Dotted-path lookup; returns _MISSING when any segment is absent."""
        current = facts
        for part in path.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return _MISSING
        return current

    # -------------------------------------------------
    # CONDITIONS
    # -------------------------------------------------

    @classmethod
    def evaluate_condition(cls, condition: RuleCondition, facts: Dict[str, Any]) -> bool:
        """
        A condition on an absent (or null) field only matches NOT_EXISTS.
        Ordering operators need numbers on both sides, otherwise no match.
        """
        op = condition.operator
        actual = cls.resolve_field(facts, condition.field)
        present = actual is not _MISSING and actual is not None

        if op == ConditionOperator.EXISTS:
            return present
        if op == ConditionOperator.NOT_EXISTS:
            return not present
        if not present:
            return False

        expected = condition.value

        if op == ConditionOperator.EQUALS:
            return _values_equal(actual, expected)
        elif op == ConditionOperator.NOT_EQUALS:
            return not _values_equal(actual, expected)
        elif op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            options = expected if isinstance(expected, (list, tuple)) else [expected]
            found = any(_values_equal(actual, option) for option in options)
            return found if op == ConditionOperator.IN else not found
        elif op == ConditionOperator.BETWEEN:
            if not isinstance(expected, (list, tuple)) or len(expected) != 2:
                return False
            value, low, high = _as_number(actual), _as_number(expected[0]), _as_number(expected[1])
            if value is None or low is None or high is None:
                return False
            return low <= value <= high
        elif op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN,
                    ConditionOperator.GREATER_THAN_OR_EQUAL, ConditionOperator.LESS_THAN_OR_EQUAL):
            value, target = _as_number(actual), _as_number(expected)
            if value is None or target is None:
                return False
            if op == ConditionOperator.GREATER_THAN:
                return value > target
            if op == ConditionOperator.LESS_THAN:
                return value < target
            if op == ConditionOperator.GREATER_THAN_OR_EQUAL:
                return value >= target
            return value <= target

        raise InvalidArgumentError(f"Unsupported condition operator: {op}")

    @classmethod
    def matches(cls, rule: PricingRule, facts: Dict[str, Any]) -> bool:
        return all(cls.evaluate_condition(c, facts) for c in rule.conditions)

    def select_rules(self, facts: Dict[str, Any], now: datetime) -> List[PricingRule]:
        effective = [r for r in self.rules if r.is_effective(now)]
        matched = [r for r in effective if self.matches(r, facts)]
        # sorted() is stable, so equal priorities keep input order
        return sorted(matched, key=lambda r: r.priority, reverse=True)

    # -------------------------------------------------
    # ACTIONS
    # -------------------------------------------------

    @staticmethod
    def apply_action(action: RuleAction, state: PriceState, bundle: Bundle) -> PriceState:
        value = to_decimal(action.value)
        action_type = action.type

        if action_type == ActionType.ADD_MARKUP:
            matrix = (action.metadata or {}).get('markupMatrix')
            if matrix:
                # exact (group, days) cell only; a missing cell adds nothing
                amount = MarkupTable.from_matrix(matrix).lookup(
                    bundle.bundle_group, bundle.duration_days, nearest=False
                )
                value = amount if amount is not None else ZERO
            return replace(state, markup=state.markup + value)

        elif action_type == ActionType.APPLY_DISCOUNT_PERCENTAGE:
            return replace(state, discount_rate=state.discount_rate + percent(value))

        elif action_type == ActionType.APPLY_FIXED_DISCOUNT:
            return replace(state, fixed_discount=state.fixed_discount + value)

        elif action_type == ActionType.SET_DISCOUNT_PER_UNUSED_DAY:
            if state.unused_days_rate_override is not None:
                return state
            return replace(state, unused_days_rate_override=percent(value))

        elif action_type == ActionType.SET_PROCESSING_RATE:
            # Rules arrive in descending priority; the first writer keeps the rate
            if state.processing_rate_override is not None:
                return state
            return replace(state, processing_rate_override=percent(value))

        elif action_type == ActionType.SET_MINIMUM_PROFIT:
            floor = value if state.minimum_profit is None else max(state.minimum_profit, value)
            return replace(state, minimum_profit=floor)

        elif action_type == ActionType.SET_MINIMUM_PRICE:
            floor = value if state.minimum_price is None else max(state.minimum_price, value)
            return replace(state, minimum_price=floor)

        raise InvalidArgumentError(f"Unsupported action type: {action_type}")

    @staticmethod
    def _impact(before: PriceState, after: PriceState) -> Decimal:
        price_delta = after.price_after_discount - before.price_after_discount
        if price_delta != ZERO:
            return price_delta
        # Processing-only rules: report the change in gateway fee
        return after.price_after_discount * (after.processing_rate - before.processing_rate)

    # -------------------------------------------------
    # MAIN ENTRY
    # -------------------------------------------------

    def evaluate(
        self,
        context: PricingContext,
        bundle: Bundle,
        state: PriceState,
        now: datetime
    ) -> EvaluationResult:
        facts = self.flatten_context(context, bundle, state)
        selected = self.select_rules(facts, now)
        initial_markup = state.markup
        applied = []

        for rule in selected:
            before = state
            for action in rule.actions:
                state = self.apply_action(action, state, bundle)

            if state != before:
                impact = self._impact(before, state)
                applied.append(AppliedRule(
                    id=rule.id, name=rule.name, category=rule.category, impact=impact
                ))
                logger.info(f"Rule applied: [{rule.id}] {rule.name} (impact={impact:.4f})")
            else:
                logger.debug(f"Rule matched without effect: [{rule.id}] {rule.name}")

        return EvaluationResult(
            applied_rules=tuple(applied),
            matched_rule_ids=tuple(r.id for r in selected),
            state=state,
            markup_delta=state.markup - initial_markup,
        )


# =====================================================
# STAGE 5: PROCESSING FEE
# =====================================================

@dataclass(frozen=True)
class ProcessingBreakdown:
    rate: Decimal
    cost: Decimal
    revenue: Decimal
    fixed_fee: Decimal = ZERO


def _processing_at(price: Decimal, rate: Decimal, fixed_fee: Decimal) -> ProcessingBreakdown:
    cost = price * rate + fixed_fee
    return ProcessingBreakdown(rate=rate, cost=cost, revenue=price - cost, fixed_fee=fixed_fee)


def apply_processing(
    price_after_discount: Any,
    payment_method: Any,
    fee_config: Optional[ProcessingFeeConfig] = None,
    processing_rate_override: Optional[Decimal] = None
) -> ProcessingBreakdown:
    """
    Rate resolution: rule override > payment-method rate > configured default.
    """
    fee_config = fee_config or ProcessingFeeConfig()
    method = parse_payment_method(payment_method)

    if processing_rate_override is not None:
        rate = to_decimal(processing_rate_override)
    else:
        rate = fee_config.rate_for(method)

    return _processing_at(to_decimal(price_after_discount), rate, fee_config.fixed_fee_for(method))


# =====================================================
# STAGE 6: FINALIZE + CONSTRAINTS
# =====================================================

@dataclass(frozen=True)
class Finalization:
    final_price: Decimal
    processing: ProcessingBreakdown
    final_revenue: Decimal
    net_profit: Decimal
    adjustment: Decimal = ZERO
    violated_constraints: Tuple[str, ...] = ()

    @property
    def constraint_violated(self) -> bool:
        return bool(self.violated_constraints)


def finalize(
    price_after_discount: Any,
    processing: ProcessingBreakdown,
    cost: Any,
    total_cost: Any,
    minimum_profit: Optional[Decimal] = None,
    minimum_price: Optional[Decimal] = None
) -> Finalization:
    """
    Net profit is revenue after processing minus supplier cost.

    When a floor is breached the price is raised (discount given back) just
    enough to meet it, never above total_cost, and processing is recomputed
    once. Floors still unmet after that single pass are reported, not raised.
    """
    price = to_decimal(price_after_discount)
    cost = to_decimal(cost)
    total_cost = to_decimal(total_cost)
    target = price

    if minimum_price is not None and price < minimum_price:
        target = max(target, to_decimal(minimum_price))

    if minimum_profit is not None and processing.revenue - cost < minimum_profit:
        if processing.rate < ONE:
            required = (cost + to_decimal(minimum_profit) + processing.fixed_fee) / (ONE - processing.rate)
            target = max(target, required.quantize(CENT, ROUND_CEILING))
        else:
            target = max(target, total_cost)

    adjustment = ZERO
    if target > price:
        corrected = min(target, max(total_cost, price))
        adjustment = corrected - price
        if adjustment > ZERO:
            logger.info(f"Constraint correction: price {price:.4f} -> {corrected:.4f}")
            price = corrected
            processing = _processing_at(price, processing.rate, processing.fixed_fee)

    net_profit = processing.revenue - cost

    violated = []
    if minimum_price is not None and price < minimum_price:
        violated.append(ActionType.SET_MINIMUM_PRICE.value)
    if minimum_profit is not None and net_profit < minimum_profit:
        violated.append(ActionType.SET_MINIMUM_PROFIT.value)
    if violated:
        logger.warning(f"Constraints unsatisfiable after correction: {', '.join(violated)}")

    return Finalization(
        final_price=price,
        processing=processing,
        final_revenue=processing.revenue,
        net_profit=net_profit,
        adjustment=adjustment,
        violated_constraints=tuple(violated),
    )


# =====================================================
# PIPELINE
# =====================================================

def run_pipeline(
    context: PricingContext,
    snapshot: CatalogSnapshot,
    config: PricingConfig,
    now: datetime,
    rules: Optional[Iterable[PricingRule]] = None
) -> Tuple[PricingResult, EvaluationResult]:
    """Pure calculation over a snapshot. Stages run strictly in order."""
    bundle, unused_days = select_bundle(
        context.country_id, context.requested_days, snapshot.bundles, context.bundle_group_filter
    )

    if config.cost_split_percent is not None:
        markup = apply_markup(bundle.base_cost, config.cost_split_percent, bundle)
    else:
        markup = apply_markup(bundle.base_cost, snapshot.markup_table, bundle)

    unused = apply_unused_days_discount(
        markup.total_cost, unused_days, bundle.duration_days, config.unused_days_rate
    )

    state = PriceState(
        cost=bundle.base_cost,
        markup=markup.markup,
        duration_days=bundle.duration_days,
        unused_days=unused_days,
        unused_days_rate=config.unused_days_rate,
        base_processing_rate=snapshot.fee_config.rate_for(context.payment_method),
    )
    engine = RuleEngine(snapshot.rules if rules is None else rules)
    evaluation = engine.evaluate(context, bundle, state, now)
    state = evaluation.state

    processing = apply_processing(
        state.price_after_discount,
        context.payment_method,
        snapshot.fee_config,
        state.processing_rate_override,
    )
    final = finalize(
        state.price_after_discount,
        processing,
        state.cost,
        state.total_cost,
        state.minimum_profit,
        state.minimum_price,
    )

    applied_rules = evaluation.applied_rules
    if final.adjustment > ZERO:
        applied_rules = applied_rules + (AppliedRule(
            id='constraint-correction',
            name='Minimum price/profit adjustment',
            category=RuleCategory.CONSTRAINT,
            impact=final.adjustment,
        ),)

    steps = [
        PricingStep(0, 'Bundle Selection', ZERO, bundle.base_cost),
        PricingStep(1, 'Markup', bundle.base_cost, markup.total_cost),
        PricingStep(2, 'Unused Days Discount', markup.total_cost, unused.price),
        PricingStep(3, 'Pricing Rules', unused.price, state.price_after_discount),
        PricingStep(4, 'Constraint Adjustment', state.price_after_discount, final.final_price),
        PricingStep(5, 'Processing Fee', final.final_price, final.final_revenue),
    ]

    unused_discount = state.unused_days_discount
    result = PricingResult(
        bundle_name=bundle.name,
        bundle_group=bundle.bundle_group,
        country_name=snapshot.country_name or context.country_id,
        duration=bundle.duration_days,
        requested_days=context.requested_days,
        payment_method=context.payment_method,
        cost=state.cost,
        markup=state.markup,
        total_cost=state.total_cost,
        unused_days=unused_days,
        unused_days_discount=unused_discount,
        discount_per_day=unused_discount / unused_days if unused_days > 0 else ZERO,
        discount_rate=state.discount_rate,
        discount_value=state.discount_value,
        price_after_discount=state.price_after_discount,
        processing_rate=processing.rate,
        processing_cost=processing.cost,
        revenue_after_processing=processing.revenue,
        final_price=final.final_price,
        final_revenue=final.final_revenue,
        net_profit=final.net_profit,
        final_processing_cost=final.processing.cost,
        applied_rules=applied_rules,
        steps=tuple(steps),
        constraint_violated=final.constraint_violated,
        violated_constraints=final.violated_constraints,
    )
    return result, evaluation


# =====================================================
# MAIN PRICING ENGINE
# =====================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PricingEngine:
    """
    Binds the pure pipeline to a catalog source.

    The source supplies bundles, the active rule list, the markup table and
    the processing fee config (see catalog_store). Each call takes an
    immutable snapshot of those and computes over it, so concurrent calls
    share nothing mutable.
    """

    def __init__(self, source, config: Optional[PricingConfig] = None):
        self.source = source
        self.config = config or PricingConfig()

    # -------------------------------------------------
    # SNAPSHOTS
    # -------------------------------------------------

    def _snapshot(
        self,
        context: PricingContext,
        bundles_by_country: Dict[str, Tuple[Bundle, ...]],
        rules_by_strategy: Dict[Optional[str], Tuple[PricingRule, ...]],
        markup_table: MarkupTable,
        fee_config: ProcessingFeeConfig
    ) -> CatalogSnapshot:
        country_id = context.country_id
        if country_id not in bundles_by_country:
            bundles_by_country[country_id] = tuple(self.source.get_bundles_for_country(country_id))
        if context.strategy_id not in rules_by_strategy:
            try:
                rules_by_strategy[context.strategy_id] = tuple(
                    self.source.get_active_rules(context.strategy_id)
                )
            except RuleModelError as e:
                raise InvalidArgumentError(f"Strategy {context.strategy_id}: {e}")
        return CatalogSnapshot(
            bundles=bundles_by_country[country_id],
            rules=rules_by_strategy[context.strategy_id],
            markup_table=markup_table,
            fee_config=fee_config,
            country_name=self.source.get_country_name(country_id),
        )

    def snapshot(self, context: PricingContext) -> CatalogSnapshot:
        return self._snapshot(
            context, {}, {},
            self.source.get_markup_table(),
            self.source.get_processing_fee_config(),
        )

    @staticmethod
    def _coerce(context: Union[PricingContext, Dict[str, Any]]) -> PricingContext:
        if isinstance(context, PricingContext):
            if context.requested_days < 1:
                raise InvalidArgumentError(
                    f"requestedDays must be at least 1, got {context.requested_days}"
                )
            return context
        return PricingContext.from_dict(context)

    # -------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------

    def calculate_price(
        self,
        context: Union[PricingContext, Dict[str, Any]],
        now: Optional[datetime] = None
    ) -> PricingResult:
        context = self._coerce(context)
        now = now or _utcnow()
        result, _ = run_pipeline(context, self.snapshot(context), self.config, now)
        logger.info(
            f"Price calculated: {result.bundle_name} for {context.country_id}/{context.requested_days}d "
            f"{context.payment_method.value} -> price={result.final_price:.2f}, profit={result.net_profit:.2f}"
        )
        return result

    def calculate_batch_prices(
        self,
        contexts: Iterable[Union[PricingContext, Dict[str, Any]]],
        now: Optional[datetime] = None,
        max_workers: Optional[int] = None
    ) -> List[BatchItem]:
        """
        Price many contexts against one snapshot. Results keep input order;
        a failing entry is reported in its own BatchItem.
        """
        contexts = list(contexts)
        now = now or _utcnow()
        markup_table = self.source.get_markup_table()
        fee_config = self.source.get_processing_fee_config()
        bundles_by_country = {}
        rules_by_strategy = {}

        prepared = []
        for raw in contexts:
            try:
                context = self._coerce(raw)
                snapshot = self._snapshot(
                    context, bundles_by_country, rules_by_strategy, markup_table, fee_config
                )
                prepared.append((raw, context, snapshot, None))
            except PricingEngineError as e:
                prepared.append((raw, None, None, e))

        def price_one(entry) -> BatchItem:
            raw, context, snapshot, error = entry
            if error is not None:
                return BatchItem(context=raw, error=error)
            try:
                result, _ = run_pipeline(context, snapshot, self.config, now)
                return BatchItem(context=context, result=result)
            except PricingEngineError as e:
                logger.warning(f"Batch entry failed for {context.country_id}/{context.requested_days}d: {e}")
                return BatchItem(context=context, error=e)

        if max_workers and max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                items = list(pool.map(price_one, prepared))
        else:
            items = [price_one(entry) for entry in prepared]

        failed = sum(1 for item in items if not item.ok)
        logger.info(f"Batch priced: {len(items)} context(s), {failed} failed")
        return items

    def simulate_rule(
        self,
        rule: PricingRule,
        context: Union[PricingContext, Dict[str, Any]],
        now: Optional[datetime] = None
    ) -> SimulationResult:
        """
        Run the full pipeline with only ``rule`` plus the system
        (non-editable) rules active. Reads the source, never writes it.
        """
        context = self._coerce(context)
        now = now or _utcnow()
        snapshot = self.snapshot(context)

        system_rules = [r for r in snapshot.rules if r.is_system and r.id != rule.id]
        result, _ = run_pipeline(
            context, snapshot, self.config, now, rules=[rule] + system_rules
        )
        own = tuple(r for r in result.applied_rules if r.id == rule.id)
        baseline = tuple(r for r in result.applied_rules if r.id != rule.id)
        matched = bool(own)
        logger.info(f"Rule simulated: [{rule.id}] {rule.name} matched={matched}")
        return SimulationResult(
            result=replace(result, applied_rules=own),
            matched=matched,
            effective=rule.is_effective(now),
            baseline_rules=baseline,
        )
