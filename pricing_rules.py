"""
Pricing Rule Model
==================
Rules are conditional pricing transformations:
  - a set of conditions matched against the flattened pricing context
  - a set of actions folded into the running price state
  - a priority (0-100, higher runs first)
  - an optional validity window

Strategies package rules into ordered blocks with per-block priority and
config overrides. The engine only ever sees the resolved, ordered rule list.

Wire format is the camelCase dict used by the admin API:
    {
        "id": "r-1", "name": "Summer promo", "category": "DISCOUNT",
        "conditions": [{"field": "paymentMethod", "operator": "EQUALS", "value": "BIT"}],
        "actions": [{"type": "APPLY_DISCOUNT_PERCENTAGE", "value": 10}],
        "priority": 50, "isActive": true, "isEditable": true,
        "validFrom": "2025-06-01T00:00:00Z", "validUntil": null
    }
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import math
import uuid

logger = logging.getLogger(__name__)


class RuleModelError(ValueError):
    """Raised when a rule payload cannot be turned into a PricingRule."""
    pass


# =====================================================
# ENUMS
# =====================================================

class ConditionOperator(str, Enum):
    EQUALS = 'EQUALS'
    NOT_EQUALS = 'NOT_EQUALS'
    GREATER_THAN = 'GREATER_THAN'
    LESS_THAN = 'LESS_THAN'
    GREATER_THAN_OR_EQUAL = 'GREATER_THAN_OR_EQUAL'
    LESS_THAN_OR_EQUAL = 'LESS_THAN_OR_EQUAL'
    IN = 'IN'
    NOT_IN = 'NOT_IN'
    BETWEEN = 'BETWEEN'
    EXISTS = 'EXISTS'
    NOT_EXISTS = 'NOT_EXISTS'


class ActionType(str, Enum):
    ADD_MARKUP = 'ADD_MARKUP'
    APPLY_DISCOUNT_PERCENTAGE = 'APPLY_DISCOUNT_PERCENTAGE'
    APPLY_FIXED_DISCOUNT = 'APPLY_FIXED_DISCOUNT'
    SET_DISCOUNT_PER_UNUSED_DAY = 'SET_DISCOUNT_PER_UNUSED_DAY'
    SET_PROCESSING_RATE = 'SET_PROCESSING_RATE'
    SET_MINIMUM_PROFIT = 'SET_MINIMUM_PROFIT'
    SET_MINIMUM_PRICE = 'SET_MINIMUM_PRICE'


class RuleCategory(str, Enum):
    DISCOUNT = 'DISCOUNT'
    CONSTRAINT = 'CONSTRAINT'
    FEE = 'FEE'
    BUNDLE_ADJUSTMENT = 'BUNDLE_ADJUSTMENT'


class PaymentMethod(str, Enum):
    ISRAELI_CARD = 'ISRAELI_CARD'
    FOREIGN_CARD = 'FOREIGN_CARD'
    BIT = 'BIT'
    AMEX = 'AMEX'
    DINERS = 'DINERS'


LIST_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}
VALUELESS_OPERATORS = {ConditionOperator.EXISTS, ConditionOperator.NOT_EXISTS}

# Only one of these can be in effect per calculation
EXCLUSIVE_ACTIONS = {
    ActionType.SET_PROCESSING_RATE,
    ActionType.SET_DISCOUNT_PER_UNUSED_DAY,
}

MIN_PRIORITY = 0
MAX_PRIORITY = 100


# =====================================================
# RULE MODEL
# =====================================================

@dataclass(frozen=True)
class RuleCondition:
    field: str
    operator: ConditionOperator
    value: Any = None


@dataclass(frozen=True)
class RuleAction:
    type: ActionType
    value: float
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PricingRule:
    id: str
    name: str
    category: RuleCategory
    conditions: Tuple[RuleCondition, ...] = ()
    actions: Tuple[RuleAction, ...] = ()
    priority: int = 50
    is_active: bool = True
    is_editable: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    description: str = ''

    @property
    def is_system(self) -> bool:
        return not self.is_editable

    def is_within_validity(self, now: datetime) -> bool:
        if self.valid_from and _aware(self.valid_from) > _aware(now):
            return False
        if self.valid_until and _aware(self.valid_until) < _aware(now):
            return False
        return True

    def is_effective(self, now: datetime) -> bool:
        """Active flag set and the validity window contains ``now``."""
        return self.is_active and self.is_within_validity(now)


@dataclass(frozen=True)
class StrategyBlock:
    rule: PricingRule
    priority: int
    is_enabled: bool = True
    config_overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PricingStrategy:
    id: str
    name: str
    version: int = 1
    blocks: Tuple[StrategyBlock, ...] = ()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise RuleModelError(f"Invalid datetime: {value}")


def _parse_enum(enum_cls, raw: Any, label: str):
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise RuleModelError(f"Unknown {label} '{raw}' (expected one of: {allowed})")


_TRUE_STRINGS = {'true', '1', 'yes', 'on'}
_FALSE_STRINGS = {'false', '0', 'no', 'off', ''}


def parse_bool(value: Any, label: str, default: bool = False) -> bool:
    """Booleans from JSON, form posts and text columns; "false" is False."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise RuleModelError(f"{label} must be a boolean, got {value!r}")


# =====================================================
# SERIALIZATION
# =====================================================

def condition_from_dict(data: Dict[str, Any]) -> RuleCondition:
    if not data.get('field'):
        raise RuleModelError("Condition is missing 'field'")
    operator = _parse_enum(ConditionOperator, data.get('operator', 'EQUALS'), 'operator')
    value = data.get('value')
    if operator in LIST_OPERATORS or operator == ConditionOperator.BETWEEN:
        if isinstance(value, (list, tuple)):
            value = tuple(value)
    return RuleCondition(field=str(data['field']), operator=operator, value=value)


def action_from_dict(data: Dict[str, Any]) -> RuleAction:
    action_type = _parse_enum(ActionType, data.get('type'), 'action type')
    try:
        value = float(data.get('value', 0))
    except (TypeError, ValueError):
        raise RuleModelError(f"Action {action_type.value} has non-numeric value: {data.get('value')}")
    metadata = data.get('metadata')
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata) if metadata else None
        except json.JSONDecodeError as e:
            raise RuleModelError(f"Action {action_type.value} has malformed metadata: {e}")
    if metadata is not None and not isinstance(metadata, dict):
        raise RuleModelError(f"Action {action_type.value} metadata must be an object")
    return RuleAction(type=action_type, value=value, metadata=metadata)


def rule_from_dict(data: Dict[str, Any]) -> PricingRule:
    """
    Build a PricingRule from a camelCase wire dict or a snake_case DB row.
    JSON columns may arrive as text and are decoded here.
    """
    def pick(camel, snake, default=None):
        if camel in data:
            return data[camel]
        return data.get(snake, default)

    name = str(data.get('name') or '').strip()
    if not name:
        raise RuleModelError("Rule is missing 'name'")

    conditions = data.get('conditions', data.get('conditions_json')) or []
    actions = data.get('actions', data.get('actions_json')) or []
    if isinstance(conditions, str):
        conditions = json.loads(conditions)
    if isinstance(actions, str):
        actions = json.loads(actions)
    if isinstance(actions, dict):
        actions = [actions]

    try:
        priority = int(data.get('priority', 50))
    except (TypeError, ValueError):
        raise RuleModelError(f"Rule priority must be an integer, got {data.get('priority')!r}")

    return PricingRule(
        id=str(data.get('id') or uuid.uuid4()),
        name=name,
        category=_parse_enum(RuleCategory, data.get('category', 'DISCOUNT'), 'category'),
        conditions=tuple(condition_from_dict(c) for c in conditions),
        actions=tuple(action_from_dict(a) for a in actions),
        priority=priority,
        is_active=parse_bool(pick('isActive', 'is_active'), 'isActive', True),
        is_editable=parse_bool(pick('isEditable', 'is_editable'), 'isEditable', True),
        valid_from=parse_datetime(pick('validFrom', 'valid_from')),
        valid_until=parse_datetime(pick('validUntil', 'valid_until')),
        description=str(data.get('description') or ''),
    )


def rule_to_dict(rule: PricingRule) -> Dict[str, Any]:
    def dump_value(value):
        return list(value) if isinstance(value, tuple) else value

    return {
        'id': rule.id,
        'name': rule.name,
        'description': rule.description,
        'category': rule.category.value,
        'conditions': [
            {'field': c.field, 'operator': c.operator.value, 'value': dump_value(c.value)}
            for c in rule.conditions
        ],
        'actions': [
            {'type': a.type.value, 'value': a.value, 'metadata': a.metadata}
            for a in rule.actions
        ],
        'priority': rule.priority,
        'isActive': rule.is_active,
        'isEditable': rule.is_editable,
        'validFrom': rule.valid_from.isoformat() if rule.valid_from else None,
        'validUntil': rule.valid_until.isoformat() if rule.valid_until else None,
    }


# =====================================================
# VALIDATION
# =====================================================

def _markup_matrix_errors(matrix: Any) -> List[str]:
    """markupMatrix must be {bundleGroup: {days: amount}} with finite numeric amounts."""
    if not isinstance(matrix, dict):
        return ["markupMatrix must map bundle groups to {days: amount}"]

    errors = []
    for group, by_days in matrix.items():
        if not isinstance(by_days, dict):
            errors.append(f"markupMatrix['{group}'] must map days to amounts")
            continue
        for days, amount in by_days.items():
            try:
                int(days)
            except (TypeError, ValueError):
                errors.append(f"markupMatrix['{group}'] has non-integer duration {days!r}")
            try:
                number = float(amount)
            except (TypeError, ValueError):
                errors.append(f"markupMatrix['{group}']['{days}'] must be a number, got {amount!r}")
                continue
            if isinstance(amount, bool) or not math.isfinite(number):
                errors.append(f"markupMatrix['{group}']['{days}'] must be a number, got {amount!r}")
    return errors


def validate_rule(rule: PricingRule) -> List[str]:
    """Return a list of human-readable problems; empty means the rule is valid."""
    errors = []

    if not rule.name.strip():
        errors.append("Rule name is required")

    if not MIN_PRIORITY <= rule.priority <= MAX_PRIORITY:
        errors.append(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

    if not rule.actions:
        errors.append("At least one action is required")

    for cond in rule.conditions:
        if cond.operator in LIST_OPERATORS and not isinstance(cond.value, (list, tuple)):
            errors.append(f"Condition on '{cond.field}': {cond.operator.value} requires a list value")
        elif cond.operator == ConditionOperator.BETWEEN:
            if not isinstance(cond.value, (list, tuple)) or len(cond.value) != 2:
                errors.append(f"Condition on '{cond.field}': BETWEEN requires [min, max]")
        elif cond.operator not in VALUELESS_OPERATORS and cond.value is None:
            errors.append(f"Condition on '{cond.field}': {cond.operator.value} requires a value")

    for action in rule.actions:
        if action.type == ActionType.APPLY_DISCOUNT_PERCENTAGE and not 0 <= action.value <= 100:
            errors.append("Discount percentage must be between 0 and 100")
        elif action.type in (ActionType.SET_PROCESSING_RATE, ActionType.SET_DISCOUNT_PER_UNUSED_DAY) \
                and not 0 <= action.value < 100:
            errors.append(f"{action.type.value} must be a percentage between 0 and 100")
        elif action.type in (ActionType.APPLY_FIXED_DISCOUNT, ActionType.SET_MINIMUM_PRICE,
                             ActionType.SET_MINIMUM_PROFIT) and action.value < 0:
            errors.append(f"{action.type.value} cannot be negative")
        elif action.type == ActionType.ADD_MARKUP and (action.metadata or {}).get('markupMatrix') is not None:
            errors.extend(_markup_matrix_errors(action.metadata['markupMatrix']))

    if rule.valid_from and rule.valid_until and _aware(rule.valid_from) > _aware(rule.valid_until):
        errors.append("validFrom must be before validUntil")

    return errors


# =====================================================
# ADMIN OPERATIONS
# =====================================================

def clone_rule(rule: PricingRule, new_name: Optional[str] = None) -> PricingRule:
    """Copy a rule under a new id. Clones start inactive and editable."""
    return replace(
        rule,
        id=str(uuid.uuid4()),
        name=new_name or f"{rule.name} (Copy)",
        is_active=False,
        is_editable=True,
    )


def _conditions_overlap(a: PricingRule, b: PricingRule) -> bool:
    """
    Two rules can fire together unless some field is pinned to
    incompatible EQUALS/IN values by both.
    """
    def pinned(rule):
        values = {}
        for cond in rule.conditions:
            if cond.operator == ConditionOperator.EQUALS:
                values[cond.field] = {str(cond.value)}
            elif cond.operator == ConditionOperator.IN and isinstance(cond.value, (list, tuple)):
                values[cond.field] = {str(v) for v in cond.value}
        return values

    pinned_a = pinned(a)
    pinned_b = pinned(b)
    for key in pinned_a.keys() & pinned_b.keys():
        if not pinned_a[key] & pinned_b[key]:
            return False
    return True


def find_conflicting_rules(rule: PricingRule, rules: List[PricingRule]) -> List[PricingRule]:
    """
    Other active rules that may match the same context and set the same
    exclusive action (processing rate, unused-day rate), so only one of
    them can win.
    """
    exclusive = {a.type for a in rule.actions} & EXCLUSIVE_ACTIONS
    if not exclusive:
        return []

    conflicts = []
    for other in rules:
        if other.id == rule.id or not other.is_active:
            continue
        if not exclusive & {a.type for a in other.actions}:
            continue
        if _conditions_overlap(rule, other):
            conflicts.append(other)
    return conflicts


# =====================================================
# STRATEGY RESOLUTION
# =====================================================

def _apply_overrides(rule: PricingRule, overrides: Dict[str, Any]) -> PricingRule:
    """
    Merge block-level config overrides into a rule.
      {"value": 5}                        -> every action value
      {"APPLY_DISCOUNT_PERCENTAGE": 5}    -> that action type's value
      {"isActive": false}                 -> rule activation
    """
    if not overrides:
        return rule

    actions = []
    for action in rule.actions:
        value = overrides.get(action.type.value, overrides.get('value', action.value))
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise RuleModelError(
                f"Override for {action.type.value} on rule {rule.id} must be numeric, got {value!r}"
            )
        actions.append(replace(action, value=value))

    is_active = overrides.get('isActive', overrides.get('is_active'))
    return replace(rule, actions=tuple(actions), is_active=parse_bool(is_active, 'isActive', rule.is_active))


def resolve_strategy(strategy: PricingStrategy) -> List[PricingRule]:
    """Turn a strategy into the ordered active rule list the engine consumes."""
    resolved = []
    for block in strategy.blocks:
        if not block.is_enabled:
            continue
        rule = _apply_overrides(block.rule, block.config_overrides)
        resolved.append(replace(rule, priority=block.priority))

    resolved.sort(key=lambda r: r.priority, reverse=True)
    logger.info(
        f"Strategy resolved: [{strategy.id}] {strategy.name} v{strategy.version} "
        f"-> {len(resolved)} rule(s)"
    )
    return resolved
