"""
Tests for the catalog sources. PostgresCatalog runs against scripted fake
psycopg2 connections, so no database is needed.
"""

import json
from decimal import Decimal

import pytest

from catalog_store import InMemoryCatalog, PostgresCatalog, RuleCache, clear_rules_cache
from conftest import ESSENTIAL, make_rule
from pricing_engine import InvalidArgumentError, NotFoundError, ProcessingFeeConfig
from pricing_rules import PaymentMethod


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.description = None
        self.rowcount = 0
        self._rows = []

    def execute(self, sql, params=()):
        self.db.executed.append((' '.join(sql.split()), params))
        columns, rows, rowcount = self.db.responses.pop(0) if self.db.responses else ([], [], 0)
        self.description = [(c,) for c in columns]
        self._rows = rows
        self.rowcount = rowcount

    def fetchall(self):
        return list(self._rows)


class FakeDatabase:
    """Hands out connections that replay queued (columns, rows, rowcount) responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def connect(self):
        return self

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed += 1


RULE_COLS = ['id', 'name', 'description', 'category', 'conditions_json', 'actions_json',
             'priority', 'is_active', 'is_editable', 'valid_from', 'valid_until']


def rule_row(rule_id='r1', name='Promo', editable=True, priority=50):
    return (rule_id, name, '', 'DISCOUNT', '[]',
            json.dumps([{'type': 'APPLY_DISCOUNT_PERCENTAGE', 'value': 10}]),
            priority, True, editable, None, None)


class TestRuleCache:

    def test_entries_expire(self):
        clock = [100.0]
        cache = RuleCache(ttl=60, clock=lambda: clock[0])
        cache.put('active', [make_rule('A')])
        assert len(cache.get('active')) == 1
        clock[0] += 59
        assert cache.get('active') is not None
        clock[0] += 1
        assert cache.get('active') is None


class TestPostgresCatalog:

    def test_bundles_for_country(self):
        db = FakeDatabase((
            ['name', 'country_id', 'duration_days', 'base_cost', 'is_unlimited', 'data_amount', 'bundle_group'],
            [('US 7', 'US', 7, Decimal('5.00'), True, None, ESSENTIAL)],
            1,
        ))
        bundles = PostgresCatalog(connect=db.connect).get_bundles_for_country('US')

        assert bundles[0].duration_days == 7
        assert bundles[0].base_cost == Decimal('5.00')
        assert db.executed[0][1] == ('US',)
        assert db.closed == 1

    def test_active_rules_are_cached_until_cleared(self):
        db = FakeDatabase(
            (RULE_COLS, [rule_row('r1'), rule_row('r2', 'Other', priority=10)], 2),
            (RULE_COLS, [rule_row('r1')], 1),
        )
        catalog = PostgresCatalog(connect=db.connect)

        assert [r.id for r in catalog.get_active_rules()] == ['r1', 'r2']
        assert [r.id for r in catalog.get_active_rules()] == ['r1', 'r2']
        assert len(db.executed) == 1

        clear_rules_cache()
        assert [r.id for r in catalog.get_active_rules()] == ['r1']
        assert len(db.executed) == 2

    def test_strategy_rules(self):
        db = FakeDatabase(
            (['id', 'name', 'version'], [('s1', 'Summer', 2)], 1),
            (['block_priority', 'is_enabled', 'config_overrides'] + RULE_COLS,
             [(90, True, '{"value": 25}') + rule_row('r1'),
              (10, False, None) + rule_row('r2', 'Disabled')], 2),
        )
        rules = PostgresCatalog(connect=db.connect).get_active_rules('s1')

        assert [(r.id, r.priority) for r in rules] == [('r1', 90)]
        assert rules[0].actions[0].value == 25.0

    def test_unknown_strategy(self):
        db = FakeDatabase((['id', 'name', 'version'], [], 0))
        with pytest.raises(NotFoundError):
            PostgresCatalog(connect=db.connect).get_active_rules('nope')

    def test_markup_table(self):
        db = FakeDatabase((
            ['bundle_group', 'duration_days', 'markup_amount'],
            [(ESSENTIAL, 7, Decimal('2.00')), (ESSENTIAL, 15, Decimal('3.00'))],
            2,
        ))
        table = PostgresCatalog(connect=db.connect).get_markup_table()
        assert table.lookup(ESSENTIAL, 10) == Decimal('2.00')

    def test_fee_config_row(self):
        db = FakeDatabase((
            ['israeli_cards_rate', 'foreign_cards_rate', 'premium_diners_rate', 'premium_amex_rate',
             'bit_payment_rate', 'default_rate', 'fixed_fee_nis', 'fixed_fee_foreign'],
            [(Decimal('1.2'), Decimal('3.5'), Decimal('0.3'), Decimal('1.0'),
              Decimal('0.2'), Decimal('1.4'), Decimal('0'), Decimal('0.25'))],
            1,
        ))
        config = PostgresCatalog(connect=db.connect).get_processing_fee_config()
        assert config.rate_for(PaymentMethod.AMEX) == Decimal('0.045')
        assert config.fixed_fee_for(PaymentMethod.AMEX) == Decimal('0.25')

    def test_fee_config_defaults_when_none_active(self):
        db = FakeDatabase(([], [], 0))
        assert PostgresCatalog(connect=db.connect).get_processing_fee_config() == ProcessingFeeConfig()

    def test_get_rule_not_found(self):
        db = FakeDatabase((RULE_COLS, [], 0))
        with pytest.raises(NotFoundError):
            PostgresCatalog(connect=db.connect).get_rule('missing')

    def test_create_rule_writes_json_and_commits(self):
        db = FakeDatabase(([], [], 1))
        rule = make_rule('New', [{'type': 'ADD_MARKUP', 'value': 1}],
                         [{'field': 'countryId', 'operator': 'IN', 'value': ['US']}])
        PostgresCatalog(connect=db.connect).create_rule(rule)

        sql, params = db.executed[0]
        assert sql.startswith('INSERT INTO pricing_rules')
        assert json.loads(params[3]) == [{'field': 'countryId', 'operator': 'IN', 'value': ['US']}]
        assert params[10] == rule.id
        assert db.commits == 1

    def test_soft_delete(self):
        db = FakeDatabase((RULE_COLS, [rule_row('r1')], 1), ([], [], 1))
        PostgresCatalog(connect=db.connect).delete_rule('r1')
        assert db.executed[1] == ('UPDATE pricing_rules SET deleted=TRUE, active=FALSE WHERE id=%s', ('r1',))

    def test_system_rules_cannot_be_deleted(self):
        db = FakeDatabase((RULE_COLS, [rule_row('sys', editable=False)], 1))
        with pytest.raises(InvalidArgumentError):
            PostgresCatalog(connect=db.connect).delete_rule('sys')
        assert db.commits == 0

    def test_toggle_missing_rule(self):
        db = FakeDatabase(([], [], 0))
        with pytest.raises(NotFoundError):
            PostgresCatalog(connect=db.connect).toggle_rule('missing', False)

    def test_failed_write_rolls_back(self):
        class BrokenDatabase(FakeDatabase):
            def cursor(self):
                cursor = super().cursor()

                def fail(sql, params=()):
                    raise RuntimeError('connection lost')
                cursor.execute = fail
                return cursor

        db = BrokenDatabase()
        with pytest.raises(RuntimeError):
            PostgresCatalog(connect=db.connect).toggle_rule('r1', True)
        assert db.rollbacks == 1
        assert db.closed == 1


class TestInMemoryCatalog:

    def test_crud(self):
        catalog = InMemoryCatalog()
        rule = catalog.create_rule(make_rule('Promo', [{'type': 'ADD_MARKUP', 'value': 1}]))

        with pytest.raises(InvalidArgumentError):
            catalog.create_rule(rule)

        assert catalog.toggle_rule(rule.id, False).is_active is False
        assert catalog.get_active_rules() == []

        updated = catalog.update_rule(rule.id, make_rule('Renamed', [{'type': 'ADD_MARKUP', 'value': 2}]))
        assert updated.id == rule.id
        assert catalog.get_rule(rule.id).name == 'Renamed'

        catalog.delete_rule(rule.id)
        with pytest.raises(NotFoundError):
            catalog.get_rule(rule.id)

    def test_system_rule_is_read_only(self):
        system = make_rule('Fee', [{'type': 'ADD_MARKUP', 'value': 1}], isEditable=False)
        catalog = InMemoryCatalog(rules=[system])
        with pytest.raises(InvalidArgumentError):
            catalog.update_rule(system.id, make_rule('Hack', [{'type': 'ADD_MARKUP', 'value': 0}]))
        with pytest.raises(InvalidArgumentError):
            catalog.delete_rule(system.id)

    def test_list_rules_by_priority(self):
        catalog = InMemoryCatalog(rules=[
            make_rule('Low', priority=10),
            make_rule('High', priority=90),
        ])
        assert [r.name for r in catalog.list_rules()] == ['High', 'Low']
