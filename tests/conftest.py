"""
Shared fixtures for the pricing engine test suite.

Catalog data mirrors a small production snapshot: one country with a
7/15/30-day Essential ladder, a second country with a single bundle, and
the default gateway fee table.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from catalog_store import InMemoryCatalog, clear_rules_cache
from pricing_engine import (
    Bundle,
    MarkupTable,
    PricingConfig,
    PricingEngine,
    ProcessingFeeConfig,
)
from pricing_rules import rule_from_dict


NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
ESSENTIAL = 'Standard - Unlimited Essential'


def make_rule(name='Rule', actions=None, conditions=None, **fields):
    data = {
        'id': fields.pop('id', name.lower().replace(' ', '-')),
        'name': name,
        'category': fields.pop('category', 'DISCOUNT'),
        'conditions': conditions or [],
        'actions': actions or [],
    }
    data.update(fields)
    return rule_from_dict(data)


@pytest.fixture(autouse=True)
def _reset_rules_cache():
    clear_rules_cache()
    yield
    clear_rules_cache()


@pytest.fixture
def bundles():
    return [
        Bundle('US 7 days', 'US', 7, Decimal('5.00'), True, None, ESSENTIAL),
        Bundle('US 15 days', 'US', 15, Decimal('9.00'), True, None, ESSENTIAL),
        Bundle('US 30 days', 'US', 30, Decimal('15.00'), True, None, ESSENTIAL),
        Bundle('IL 10 days', 'IL', 10, Decimal('4.00'), False, '5GB', 'Standard Fixed'),
    ]


@pytest.fixture
def markup_table():
    return MarkupTable({
        (ESSENTIAL, 7): Decimal('2.00'),
        (ESSENTIAL, 15): Decimal('3.00'),
        (ESSENTIAL, 30): Decimal('5.00'),
        ('Standard Fixed', 10): Decimal('1.00'),
    })


@pytest.fixture
def fee_config():
    return ProcessingFeeConfig()


@pytest.fixture
def catalog(bundles, markup_table, fee_config):
    return InMemoryCatalog(
        bundles=bundles,
        markup_table=markup_table,
        fee_config=fee_config,
        countries={'US': 'United States', 'IL': 'Israel'},
    )


@pytest.fixture
def engine(catalog):
    return PricingEngine(catalog, PricingConfig())
