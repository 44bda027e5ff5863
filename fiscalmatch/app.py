import logging
from collections import Counter

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from fiscalmatch import issuance
from fiscalmatch.bank_client import PrivatBankClient
from fiscalmatch.batch import create_waybill_receipts, verify_order_payments
from fiscalmatch.classifier import STATUSES, classify
from fiscalmatch.config import Config, PaymentRules
from fiscalmatch.exceptions import FiscalMatchError
from fiscalmatch.fiscal_client import CheckboxClient
from fiscalmatch.issuance import CheckIssuer
from fiscalmatch.logging_config import setup_logging
from fiscalmatch.models import BankTransaction, PaymentMatch, db
from fiscalmatch.orders import InMemoryOrderStore
from fiscalmatch.payments import list_payments, list_uncovered_payments
from fiscalmatch.sync import refresh_since_last_sync, sync_bank_transactions

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')

_ERROR_STATUS = {
    issuance.INVALID_AMOUNT: 400,
    issuance.REASON_REQUIRED: 400,
    issuance.NOT_FOUND: 404,
    issuance.ALREADY_MATCHED: 409,
    issuance.ALREADY_ISSUED: 409,
}


def services():
    return current_app.extensions['fiscalmatch']


def _payload():
    return request.get_json(silent=True) or {}


def _result_response(result):
    data = result.to_dict()
    if result.success or result.skipped:
        return jsonify(data), 200
    # anything not listed came back from the fiscal API
    return jsonify(data), _ERROR_STATUS.get(result.error, 502)


@api.route('/status', methods=['GET'])
def get_status():
    rules = services()['rules']
    counts = Counter()
    income = BankTransaction.query.filter_by(type='income').all()
    matches = {match.bank_transaction_id: match for match in PaymentMatch.query.all()}
    for tx in income:
        counts[classify(tx, matches.get(tx.id), rules).status] += 1

    last_sync = db.session.query(db.func.max(BankTransaction.synced_at)).scalar()
    status = {
        'total': BankTransaction.query.count(),
        'income': len(income),
        'matches': len(matches),
        'lastSyncedAt': last_sync.isoformat() if last_sync else None,
    }
    status.update({name: counts[name] for name in STATUSES})
    return jsonify(status)


@api.route('/payments', methods=['GET'])
def get_payments():
    days = request.args.get('days', 7, type=int)
    limit = request.args.get('limit', 250, type=int)
    return jsonify(list_payments(
        services()['rules'], days=days, limit=limit,
        max_amount=current_app.config['DISPLAY_MAX_AMOUNT'],
    ))


@api.route('/payments/uncovered', methods=['GET'])
def get_uncovered_payments():
    days = request.args.get('days', 7, type=int)
    return jsonify(list_uncovered_payments(services()['rules'], days=days))


@api.route('/payments/<transaction_id>/preview-check', methods=['POST'])
def preview_check(transaction_id):
    if db.session.get(BankTransaction, issuance.parse_transaction_id(transaction_id) or 0) is None:
        return jsonify({'success': False, 'error': issuance.NOT_FOUND}), 404
    result = services()['issuer'].preview_check(_payload().get('amount'))
    return jsonify(result), 200 if result['success'] else 400


@api.route('/payments/<transaction_id>/issue-check', methods=['POST'])
def issue_check(transaction_id):
    data = _payload()
    result = services()['issuer'].issue_check(transaction_id, data.get('amount'), data.get('order'))
    return _result_response(result)


@api.route('/payments/<transaction_id>/skip-check', methods=['POST'])
def skip_check(transaction_id):
    result = services()['issuer'].skip_check(transaction_id, _payload().get('reason'))
    return _result_response(result)


@api.route('/sync', methods=['POST'])
def sync():
    days_back = _payload().get('daysBack')
    bank_client = services()['bank_client']
    if days_back:
        try:
            days_back = int(days_back) if not isinstance(days_back, bool) else None
        except (TypeError, ValueError):
            days_back = None
        if days_back is None or days_back < 1:
            return jsonify({'success': False, 'error': 'daysBack must be a positive integer'}), 400
        result = sync_bank_transactions(bank_client, days_back, current_app.config)
    else:
        result = refresh_since_last_sync(bank_client, current_app.config)
    return jsonify(result), 200 if result['success'] else 502


@api.route('/verify-order-payments', methods=['POST'])
def verify_orders():
    data = _payload()
    config = current_app.config
    result = verify_order_payments(
        data.get('orderIds'),
        services()['order_store'],
        issuer=services()['issuer'],
        auto_create_checks=bool(data.get('autoCreateChecks')),
        group_size=config['ORDER_FETCH_GROUP_SIZE'],
        lookback_days=config['MATCH_LOOKBACK_DAYS'],
        delay=config['FISCAL_CALL_DELAY'],
    )
    return jsonify(result), 200 if result['success'] else 400


@api.route('/receipts/waybill', methods=['POST'])
def waybill_receipts():
    orders = _payload().get('orders')
    if not orders:
        return jsonify({'success': False, 'error': 'Orders data required'}), 400
    result = create_waybill_receipts(
        orders, services()['fiscal_client'], services()['order_store'],
        delay=current_app.config['FISCAL_CALL_DELAY'],
    )
    return jsonify(result), 200 if result['success'] else 502


def handle_error(error):
    if isinstance(error, HTTPException):
        return jsonify({'success': False, 'error': error.description}), error.code

    logger.exception('Unhandled error in %s %s', request.method, request.path)
    body = {'success': False, 'error': str(error) or error.__class__.__name__}
    if isinstance(error, FiscalMatchError):
        body['code'] = error.code
    return jsonify(body), 500


def create_app(config_overrides=None, fiscal_client=None, bank_client=None, order_store=None, rng=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    setup_logging(app.config['LOG_LEVEL'], app.config['LOG_JSON'])
    db.init_app(app)

    rules = PaymentRules.from_config(app.config)
    fiscal_client = fiscal_client or CheckboxClient.from_config(app.config)
    app.extensions['fiscalmatch'] = {
        'rules': rules,
        'fiscal_client': fiscal_client,
        'bank_client': bank_client or PrivatBankClient.from_config(app.config),
        'order_store': order_store or InMemoryOrderStore(),
        'issuer': CheckIssuer(fiscal_client, rules, rng=rng, max_amount=app.config['MAX_TRANSACTION_AMOUNT']),
    }

    app.register_blueprint(api)
    app.register_error_handler(Exception, handle_error)

    with app.app_context():
        db.create_all()
    return app


if __name__ == '__main__':
    create_app().run(port=8000, debug=True)
