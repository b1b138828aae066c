"""
Catalog Sources
===============
Where the pricing engine gets its reference data:
  - bundles per country
  - the active rule list (optionally resolved from a strategy)
  - the fixed markup table
  - the processing fee configuration

InMemoryCatalog backs tests and the simulator; PostgresCatalog reads the
production tables through psycopg2. Both also carry the rule CRUD used by
the admin routes.

Active rule lists are cached for PRICING_RULES_CACHE_TTL seconds. Every
rule write clears the cache.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import json
import logging
import threading
import time

import psycopg2

from pricing_config import DB_CONFIG, RULES_CACHE_TTL
from pricing_engine import (
    Bundle,
    InvalidArgumentError,
    MarkupTable,
    NotFoundError,
    ProcessingFeeConfig,
)
from pricing_rules import (
    PricingRule,
    PricingStrategy,
    StrategyBlock,
    resolve_strategy,
    rule_from_dict,
)

logger = logging.getLogger(__name__)


# =====================================================
# DATABASE
# =====================================================

def get_db():
    return psycopg2.connect(**DB_CONFIG)


def rows_to_dicts(cursor, rows):
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, r)) for r in rows]


def _decode_json(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value.strip() else default
    return value


# =====================================================
# RULE CACHE
# =====================================================

class RuleCache:
    """Thread-safe TTL cache of resolved rule lists."""

    def __init__(self, ttl: float = RULES_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[Any, Tuple[float, Tuple[PricingRule, ...]]] = {}
        self._lock = threading.Lock()

    def get(self, key) -> Optional[Tuple[PricingRule, ...]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, rules = entry
            if self.clock() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return rules

    def put(self, key, rules: Iterable[PricingRule]) -> Tuple[PricingRule, ...]:
        rules = tuple(rules)
        with self._lock:
            self._entries[key] = (self.clock(), rules)
        return rules

    def clear(self):
        with self._lock:
            self._entries.clear()


_rules_cache = RuleCache()


def clear_rules_cache():
    _rules_cache.clear()
    logger.info("Pricing rules cache cleared")


def _ensure_editable(rule: PricingRule):
    if rule.is_system:
        raise InvalidArgumentError(f"Rule {rule.id} is a system rule and cannot be modified")


# =====================================================
# IN-MEMORY SOURCE
# =====================================================

class InMemoryCatalog:
    """Snapshot source held in memory. Rule writes are guarded by a lock."""

    def __init__(
        self,
        bundles: Iterable[Bundle] = (),
        rules: Iterable[PricingRule] = (),
        markup_table: Optional[MarkupTable] = None,
        fee_config: Optional[ProcessingFeeConfig] = None,
        countries: Optional[Dict[str, str]] = None,
        strategies: Iterable[PricingStrategy] = ()
    ):
        self.bundles = list(bundles)
        self.markup_table = markup_table or MarkupTable()
        self.fee_config = fee_config or ProcessingFeeConfig()
        self.countries = dict(countries or {})
        self.strategies = {s.id: s for s in strategies}
        self._rules: Dict[str, PricingRule] = {r.id: r for r in rules}
        self._lock = threading.Lock()

    # -------------------------------------------------
    # ENGINE CONTRACT
    # -------------------------------------------------

    def get_bundles_for_country(self, country_id: str) -> List[Bundle]:
        return [b for b in self.bundles if str(b.country_id) == str(country_id)]

    def get_active_rules(self, strategy_id: Optional[str] = None) -> List[PricingRule]:
        if strategy_id:
            strategy = self.strategies.get(strategy_id)
            if strategy is None:
                raise NotFoundError(f"Pricing strategy {strategy_id} not found")
            return resolve_strategy(strategy)
        with self._lock:
            return [r for r in self._rules.values() if r.is_active]

    def get_markup_table(self) -> MarkupTable:
        return self.markup_table

    def get_processing_fee_config(self) -> ProcessingFeeConfig:
        return self.fee_config

    def get_country_name(self, country_id: str) -> Optional[str]:
        return self.countries.get(country_id)

    # -------------------------------------------------
    # RULE ADMIN
    # -------------------------------------------------

    def list_rules(self) -> List[PricingRule]:
        with self._lock:
            rules = list(self._rules.values())
        return sorted(rules, key=lambda r: r.priority, reverse=True)

    def get_rule(self, rule_id: str) -> PricingRule:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Pricing rule {rule_id} not found")
        return rule

    def create_rule(self, rule: PricingRule) -> PricingRule:
        with self._lock:
            if rule.id in self._rules:
                raise InvalidArgumentError(f"Pricing rule {rule.id} already exists")
            self._rules[rule.id] = rule
        clear_rules_cache()
        return rule

    def update_rule(self, rule_id: str, rule: PricingRule) -> PricingRule:
        _ensure_editable(self.get_rule(rule_id))
        updated = replace(rule, id=rule_id)
        with self._lock:
            self._rules[rule_id] = updated
        clear_rules_cache()
        return updated

    def toggle_rule(self, rule_id: str, active: bool) -> PricingRule:
        updated = replace(self.get_rule(rule_id), is_active=bool(active))
        with self._lock:
            self._rules[rule_id] = updated
        clear_rules_cache()
        return updated

    def delete_rule(self, rule_id: str):
        _ensure_editable(self.get_rule(rule_id))
        with self._lock:
            del self._rules[rule_id]
        clear_rules_cache()

    def close(self):
        pass


# =====================================================
# POSTGRES SOURCE
# =====================================================

RULE_COLUMNS = """id, name, description, category, conditions_json, actions_json, priority,
                  active AS is_active, editable AS is_editable, valid_from, valid_until"""


class PostgresCatalog:
    """
    psycopg2-backed source. A connection is opened per call and always
    closed in ``finally``.
    """

    def __init__(self, connect: Callable = get_db, cache: Optional[RuleCache] = None):
        self.connect = connect
        self.cache = cache or _rules_cache

    def _query(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        db = self.connect()
        cur = db.cursor()
        try:
            cur.execute(sql, params)
            return rows_to_dicts(cur, cur.fetchall())
        finally:
            db.close()

    def _write(self, sql: str, params: tuple = ()) -> int:
        db = self.connect()
        cur = db.cursor()
        try:
            cur.execute(sql, params)
            db.commit()
            return cur.rowcount
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -------------------------------------------------
    # ENGINE CONTRACT
    # -------------------------------------------------

    def get_bundles_for_country(self, country_id: str) -> List[Bundle]:
        rows = self._query(
            """SELECT name, country_id, duration_days, base_cost, is_unlimited,
                      data_amount, bundle_group
               FROM bundles WHERE country_id=%s AND active=TRUE
               ORDER BY duration_days ASC, base_cost ASC, name ASC""",
            (country_id,)
        )
        return [Bundle.from_dict(r) for r in rows]

    def _load_active_rules(self) -> List[PricingRule]:
        rows = self._query(
            f"""SELECT {RULE_COLUMNS} FROM pricing_rules
                WHERE active=TRUE AND deleted=FALSE
                ORDER BY priority DESC, created_at ASC"""
        )
        return [rule_from_dict(r) for r in rows]

    def _load_strategy(self, strategy_id: str) -> PricingStrategy:
        rows = self._query(
            "SELECT id, name, version FROM pricing_strategies WHERE id=%s AND deleted=FALSE",
            (strategy_id,)
        )
        if not rows:
            raise NotFoundError(f"Pricing strategy {strategy_id} not found")
        strategy = rows[0]

        block_rows = self._query(
            """SELECT b.priority AS block_priority, b.is_enabled, b.config_overrides,
                       r.id, r.name, r.description, r.category, r.conditions_json,
                       r.actions_json, r.priority, r.active AS is_active,
                       r.editable AS is_editable, r.valid_from, r.valid_until
                FROM strategy_blocks b
                JOIN pricing_rules r ON r.id = b.rule_id
                WHERE b.strategy_id=%s AND r.deleted=FALSE
                ORDER BY b.position ASC""",
            (strategy_id,)
        )
        blocks = tuple(
            StrategyBlock(
                rule=rule_from_dict(row),
                priority=int(row['block_priority']),
                is_enabled=bool(row['is_enabled']),
                config_overrides=_decode_json(row.get('config_overrides'), {}),
            )
            for row in block_rows
        )
        return PricingStrategy(
            id=str(strategy['id']),
            name=strategy['name'],
            version=int(strategy.get('version') or 1),
            blocks=blocks,
        )

    def get_active_rules(self, strategy_id: Optional[str] = None) -> List[PricingRule]:
        key = ('strategy', strategy_id) if strategy_id else 'active'
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        if strategy_id:
            rules = resolve_strategy(self._load_strategy(strategy_id))
        else:
            rules = self._load_active_rules()
        logger.info(f"Loaded {len(rules)} pricing rule(s) for {key}")
        return list(self.cache.put(key, rules))

    def get_markup_table(self) -> MarkupTable:
        rows = self._query("SELECT bundle_group, duration_days, markup_amount FROM markup_table")
        return MarkupTable({
            (r['bundle_group'], int(r['duration_days'])): r['markup_amount'] for r in rows
        })

    def get_processing_fee_config(self) -> ProcessingFeeConfig:
        rows = self._query(
            """SELECT israeli_cards_rate, foreign_cards_rate, premium_diners_rate,
                      premium_amex_rate, bit_payment_rate, default_rate,
                      fixed_fee_nis, fixed_fee_foreign
               FROM processing_fee_configurations
               WHERE is_active=TRUE
               ORDER BY created_at DESC LIMIT 1"""
        )
        if not rows:
            logger.warning("No active processing fee configuration, using defaults")
            return ProcessingFeeConfig()
        return ProcessingFeeConfig.from_dict(rows[0])

    def get_country_name(self, country_id: str) -> Optional[str]:
        rows = self._query("SELECT name FROM countries WHERE id=%s", (country_id,))
        return rows[0]['name'] if rows else None

    # -------------------------------------------------
    # RULE ADMIN
    # -------------------------------------------------

    def list_rules(self) -> List[PricingRule]:
        rows = self._query(
            f"""SELECT {RULE_COLUMNS} FROM pricing_rules WHERE deleted=FALSE
                ORDER BY priority DESC, created_at ASC"""
        )
        return [rule_from_dict(r) for r in rows]

    def get_rule(self, rule_id: str) -> PricingRule:
        rows = self._query(
            f"SELECT {RULE_COLUMNS} FROM pricing_rules WHERE id=%s AND deleted=FALSE",
            (rule_id,)
        )
        if not rows:
            raise NotFoundError(f"Pricing rule {rule_id} not found")
        return rule_from_dict(rows[0])

    @staticmethod
    def _rule_params(rule: PricingRule) -> tuple:
        conditions = [
            {'field': c.field, 'operator': c.operator.value,
             'value': list(c.value) if isinstance(c.value, tuple) else c.value}
            for c in rule.conditions
        ]
        actions = [
            {'type': a.type.value, 'value': a.value, 'metadata': a.metadata}
            for a in rule.actions
        ]
        return (
            rule.name, rule.description, rule.category.value,
            json.dumps(conditions), json.dumps(actions), rule.priority,
            rule.is_active, rule.is_editable, rule.valid_from, rule.valid_until,
        )

    def create_rule(self, rule: PricingRule) -> PricingRule:
        self._write(
            """INSERT INTO pricing_rules
               (name, description, category, conditions_json, actions_json, priority,
                active, editable, valid_from, valid_until, id, created_at)
               VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)""",
            self._rule_params(rule) + (rule.id, datetime.now(timezone.utc))
        )
        clear_rules_cache()
        logger.info(f"Pricing rule created: [{rule.id}] {rule.name}")
        return rule

    def update_rule(self, rule_id: str, rule: PricingRule) -> PricingRule:
        _ensure_editable(self.get_rule(rule_id))
        self._write(
            """UPDATE pricing_rules SET name=%s, description=%s, category=%s,
               conditions_json=%s, actions_json=%s, priority=%s, active=%s,
               editable=%s, valid_from=%s, valid_until=%s
               WHERE id=%s AND deleted=FALSE""",
            self._rule_params(rule) + (rule_id,)
        )
        clear_rules_cache()
        logger.info(f"Pricing rule updated: [{rule_id}] {rule.name}")
        return replace(rule, id=rule_id)

    def toggle_rule(self, rule_id: str, active: bool) -> PricingRule:
        count = self._write(
            "UPDATE pricing_rules SET active=%s WHERE id=%s AND deleted=FALSE",
            (bool(active), rule_id)
        )
        if count == 0:
            raise NotFoundError(f"Pricing rule {rule_id} not found")
        clear_rules_cache()
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str):
        _ensure_editable(self.get_rule(rule_id))
        self._write("UPDATE pricing_rules SET deleted=TRUE, active=FALSE WHERE id=%s", (rule_id,))
        clear_rules_cache()
        logger.info(f"Pricing rule deleted: [{rule_id}]")

    def close(self):
        pass
