"""
eSIM Pricing Engine - Flask Backend
===================================
HTTP boundary over pricing_engine:
  - POST /calculate                      single price with full breakdown
  - POST /calculate/batch                many contexts, one snapshot
  - POST /api/pricing-rules/simulate     dry-run a draft rule
  - POST /api/pricing-rules/validate     rule shape checks
  - /api/pricing-rules[...]              rule CRUD, toggle, clone, conflicts
  - GET  /api/processing-fees            active gateway fee config

Error mapping:
  NotFoundError                         -> 404
  InvalidArgumentError / bad rule data  -> 400
  anything else                         -> 500 (logged with traceback)
"""

from flask import Flask, request, jsonify
from flask_cors import CORS
import json
import logging

from catalog_store import PostgresCatalog, clear_rules_cache
from pricing_config import LOG_LEVEL, PORT, SECRET_KEY, load_pricing_config
from pricing_engine import (
    InvalidArgumentError,
    NotFoundError,
    PricingEngine,
)
from pricing_rules import (
    clone_rule,
    find_conflicting_rules,
    parse_bool,
    parse_datetime,
    rule_from_dict,
    rule_to_dict,
    validate_rule,
)

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = SECRET_KEY
CORS(app)


def get_catalog():
    return PostgresCatalog()


def get_engine(catalog) -> PricingEngine:
    return PricingEngine(catalog, load_pricing_config())


def _error(message, status, **extra):
    body = {'success': False, 'error': message}
    body.update(extra)
    return jsonify(body), status


def _handle(e: Exception, action: str):
    if isinstance(e, NotFoundError):
        logger.warning(f"{action}: {e}")
        return _error(str(e), 404)
    # RuleModelError and JSON decode errors are ValueErrors
    if isinstance(e, (InvalidArgumentError, ValueError)):
        logger.warning(f"{action}: {e}")
        return _error(str(e), 400)
    logger.error(f"Error {action}: {e}", exc_info=True)
    return _error(f'Server error: {str(e)}', 500)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidArgumentError('No data provided')
    return payload


def _parse_rule(data: dict):
    """Parse and validate a rule payload; raises InvalidArgumentError with the problem list."""
    rule = rule_from_dict(data)
    errors = validate_rule(rule)
    if errors:
        raise InvalidArgumentError('; '.join(errors))
    return rule


# =====================================================
# PRICE CALCULATION
# =====================================================

@app.route('/calculate', methods=['POST'])
def calculate():
    """
    Payload:
        {"countryId": "US", "requestedDays": 5, "paymentMethod": "ISRAELI_CARD",
         "bundleGroup": "...", "isNewUser": false, "now": "2025-06-01T00:00:00Z"}
    """
    catalog = None
    try:
        payload = _json_body()
        logger.info(f"Calculate request: {json.dumps(payload, default=str)}")
        catalog = get_catalog()
        result = get_engine(catalog).calculate_price(payload, now=parse_datetime(payload.get('now')))
        body = result.to_dict()
        body['success'] = True
        return jsonify(body)
    except Exception as e:
        return _handle(e, 'calculating price')
    finally:
        if catalog:
            catalog.close()


@app.route('/calculate/batch', methods=['POST'])
def calculate_batch():
    catalog = None
    try:
        payload = _json_body()
        contexts = payload.get('contexts')
        if not isinstance(contexts, list):
            raise InvalidArgumentError("'contexts' must be a list")
        max_workers = payload.get('maxWorkers')
        if max_workers is not None:
            try:
                max_workers = int(max_workers)
            except (TypeError, ValueError):
                raise InvalidArgumentError(f"maxWorkers must be an integer, got {max_workers!r}")

        catalog = get_catalog()
        items = get_engine(catalog).calculate_batch_prices(
            contexts, now=parse_datetime(payload.get('now')), max_workers=max_workers
        )
        return jsonify({
            'success': True,
            'count': len(items),
            'failed': sum(1 for item in items if not item.ok),
            'results': [item.to_dict() for item in items],
        })
    except Exception as e:
        return _handle(e, 'calculating batch')
    finally:
        if catalog:
            catalog.close()


# =====================================================
# RULE SIMULATION + VALIDATION
# =====================================================

@app.route('/api/pricing-rules/simulate', methods=['POST'])
def simulate_pricing_rule():
    catalog = None
    try:
        payload = _json_body()
        rule = _parse_rule(payload.get('rule') or {})
        catalog = get_catalog()
        simulation = get_engine(catalog).simulate_rule(
            rule, payload.get('context') or {}, now=parse_datetime(payload.get('now'))
        )
        body = simulation.to_dict()
        body['success'] = True
        return jsonify(body)
    except Exception as e:
        return _handle(e, 'simulating pricing rule')
    finally:
        if catalog:
            catalog.close()


@app.route('/api/pricing-rules/validate', methods=['POST'])
def validate_pricing_rule():
    try:
        rule = rule_from_dict(_json_body())
    except Exception as e:
        return _handle(e, 'validating pricing rule')
    errors = validate_rule(rule)
    return jsonify({'valid': not errors, 'errors': errors})


# =====================================================
# PRICING RULES - CRUD
# =====================================================

@app.route('/api/pricing-rules', methods=['GET'])
def list_pricing_rules():
    catalog = get_catalog()
    try:
        return jsonify([rule_to_dict(r) for r in catalog.list_rules()])
    except Exception as e:
        return _handle(e, 'listing pricing rules')
    finally:
        catalog.close()


@app.route('/api/pricing-rules', methods=['POST'])
def create_pricing_rule():
    catalog = get_catalog()
    try:
        rule = catalog.create_rule(_parse_rule(_json_body()))
        return jsonify({'id': rule.id, 'message': 'Rule created', 'rule': rule_to_dict(rule)}), 201
    except Exception as e:
        return _handle(e, 'creating pricing rule')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/<rule_id>', methods=['PUT'])
def update_pricing_rule(rule_id):
    catalog = get_catalog()
    try:
        rule = catalog.update_rule(rule_id, _parse_rule(_json_body()))
        return jsonify({'message': 'Rule updated', 'rule': rule_to_dict(rule)})
    except Exception as e:
        return _handle(e, f'updating pricing rule {rule_id}')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/<rule_id>/toggle', methods=['PATCH'])
def toggle_pricing_rule(rule_id):
    catalog = get_catalog()
    try:
        data = _json_body()
        if 'active' not in data:
            raise InvalidArgumentError("Missing required field: active")
        rule = catalog.toggle_rule(rule_id, parse_bool(data['active'], 'active'))
        return jsonify({'message': 'Toggled', 'rule': rule_to_dict(rule)})
    except Exception as e:
        return _handle(e, f'toggling pricing rule {rule_id}')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/<rule_id>', methods=['DELETE'])
def delete_pricing_rule(rule_id):
    catalog = get_catalog()
    try:
        catalog.delete_rule(rule_id)
        return jsonify({'message': 'Deleted'})
    except Exception as e:
        return _handle(e, f'deleting pricing rule {rule_id}')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/<rule_id>/clone', methods=['POST'])
def clone_pricing_rule(rule_id):
    catalog = get_catalog()
    try:
        data = request.get_json(silent=True) or {}
        clone = catalog.create_rule(clone_rule(catalog.get_rule(rule_id), data.get('name')))
        return jsonify({'id': clone.id, 'message': 'Rule cloned', 'rule': rule_to_dict(clone)}), 201
    except Exception as e:
        return _handle(e, f'cloning pricing rule {rule_id}')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/<rule_id>/conflicts', methods=['GET'])
def pricing_rule_conflicts(rule_id):
    catalog = get_catalog()
    try:
        rule = catalog.get_rule(rule_id)
        conflicts = find_conflicting_rules(rule, catalog.list_rules())
        return jsonify({'id': rule_id, 'conflicts': [rule_to_dict(r) for r in conflicts]})
    except Exception as e:
        return _handle(e, f'finding conflicts for pricing rule {rule_id}')
    finally:
        catalog.close()


@app.route('/api/pricing-rules/cache', methods=['DELETE'])
def clear_pricing_rules_cache():
    clear_rules_cache()
    return jsonify({'message': 'Cache cleared'})


# =====================================================
# PROCESSING FEES
# =====================================================

@app.route('/api/processing-fees', methods=['GET'])
def get_processing_fees():
    catalog = get_catalog()
    try:
        return jsonify(catalog.get_processing_fee_config().to_dict())
    except Exception as e:
        return _handle(e, 'loading processing fees')
    finally:
        catalog.close()


# =====================================================
# ENTRY POINT
# =====================================================

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=PORT)
