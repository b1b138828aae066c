from decimal import Decimal

import pytest

from pricing_config import load_pricing_config
from pricing_engine import InvalidArgumentError


class TestLoadPricingConfig:

    def test_defaults(self):
        config = load_pricing_config({})
        assert config.unused_days_rate == Decimal('0.1')
        assert config.cost_split_percent is None

    def test_overrides(self):
        config = load_pricing_config({'PRICING_UNUSED_DAYS_RATE': '0.25', 'PRICING_COST_SPLIT_PERCENT': '0.3'})
        assert config.unused_days_rate == Decimal('0.25')
        assert config.cost_split_percent == Decimal('0.3')

    def test_blank_cost_split_means_markup_table(self):
        assert load_pricing_config({'PRICING_COST_SPLIT_PERCENT': ''}).cost_split_percent is None

    @pytest.mark.parametrize('env', [
        {'PRICING_COST_SPLIT_PERCENT': '1'},
        {'PRICING_UNUSED_DAYS_RATE': '-0.1'},
    ])
    def test_out_of_range(self, env):
        with pytest.raises(InvalidArgumentError):
            load_pricing_config(env)
