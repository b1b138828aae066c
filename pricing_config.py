"""
Environment-driven settings for the pricing service.
"""

from decimal import Decimal
import os

from pricing_engine import DEFAULT_UNUSED_DAYS_RATE, InvalidArgumentError, PricingConfig

# =====================================================
# DATABASE
# =====================================================

DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', 5432)),
    'database': os.environ.get('DB_NAME', 'esim_pricing'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASS', ''),
}

# =====================================================
# SERVICE
# =====================================================

SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
LOG_LEVEL = os.environ.get('PRICING_LOG_LEVEL', 'INFO').upper()
PORT = int(os.environ.get('PORT', 5001))
RULES_CACHE_TTL = float(os.environ.get('PRICING_RULES_CACHE_TTL', 60))


def load_pricing_config(environ=None) -> PricingConfig:
    """Read pricing knobs at call time so tests can patch the environment."""
    environ = os.environ if environ is None else environ

    unused_days_rate = Decimal(str(environ.get('PRICING_UNUSED_DAYS_RATE', DEFAULT_UNUSED_DAYS_RATE)))
    if unused_days_rate < 0:
        raise InvalidArgumentError(f"PRICING_UNUSED_DAYS_RATE must be >= 0, got {unused_days_rate}")

    raw_split = environ.get('PRICING_COST_SPLIT_PERCENT')
    cost_split = None
    if raw_split not in (None, ''):
        cost_split = Decimal(str(raw_split))
        if not Decimal('0') <= cost_split < Decimal('1'):
            raise InvalidArgumentError(f"PRICING_COST_SPLIT_PERCENT must be in [0, 1), got {cost_split}")

    return PricingConfig(unused_days_rate=unused_days_rate, cost_split_percent=cost_split)
