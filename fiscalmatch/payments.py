import logging
from collections import Counter
from datetime import timedelta
from decimal import Decimal

from fiscalmatch.check_state import extract_payment_code, resolve_check_fields
from fiscalmatch.classifier import STATUSES, classify, matched_order_id
from fiscalmatch.models import BankTransaction, PaymentMatch, utcnow

logger = logging.getLogger(__name__)


def _income_since(since):
    return (
        BankTransaction.query
        .filter(BankTransaction.type == 'income')
        .filter(BankTransaction.transaction_datetime >= since)
    )


def _matches_for(transactions):
    ids = [tx.id for tx in transactions]
    if not ids:
        return {}
    return {
        match.bank_transaction_id: match
        for match in PaymentMatch.query.filter(PaymentMatch.bank_transaction_id.in_(ids))
    }


def payment_to_dict(tx, match, fields):
    return {
        'id': tx.id,
        'externalId': tx.external_id,
        'date': tx.transaction_datetime.isoformat(),
        'amount': float(tx.amount),
        'currency': tx.currency,
        'description': tx.description or '',
        'counterpartyName': tx.counterparty_name or '',
        'counterpartyAccount': tx.counterparty_account or '',
        'paymentCode': extract_payment_code(tx.counterparty_account),
        'matchedOrderId': matched_order_id(tx, match),
        'checkReceiptId': fields.receipt_id,
        'checkIssuedAt': fields.issued_at.isoformat() if fields.issued_at else None,
        'checkSkipReason': fields.skip_reason,
    }


def list_payments(rules, days=7, limit=250, max_amount=Decimal('10000'), now=None):
    since = (now or utcnow()) - timedelta(days=days)
    transactions = (
        _income_since(since)
        .filter(BankTransaction.amount > 0)
        .filter(BankTransaction.amount <= max_amount)
        .order_by(BankTransaction.transaction_datetime.desc())
        .limit(limit)
        .all()
    )
    matches = _matches_for(transactions)

    payments = []
    counts = Counter()
    for tx in transactions:
        match = matches.get(tx.id)
        status = classify(tx, match, rules)
        counts[status.status] += 1
        payment = payment_to_dict(tx, match, resolve_check_fields(tx, match))
        payment.update(status.to_dict())
        payments.append(payment)

    summary = {'total': len(payments)}
    summary.update({status: counts[status] for status in STATUSES})
    logger.info('Listed %d payments for the last %d days', len(payments), days)
    return {'success': True, 'payments': payments, 'summary': summary}


def list_uncovered_payments(rules, days=7, now=None):
    """Income payments with a payment code that still need a check."""
    since = (now or utcnow()) - timedelta(days=days)
    transactions = _income_since(since).order_by(BankTransaction.transaction_datetime.desc()).all()
    matches = _matches_for(transactions)

    payments = []
    for tx in transactions:
        account = tx.counterparty_account or ''
        code = extract_payment_code(account)
        if code is None or rules.is_excluded_code(code) or rules.is_nova_poshta(account):
            continue

        match = matches.get(tx.id)
        fields = resolve_check_fields(tx, match)
        if fields.issued or fields.skipped:
            continue
        payments.append(payment_to_dict(tx, match, fields))

    logger.info('Found %d uncovered payments for the last %d days', len(payments), days)
    return {'success': True, 'payments': payments, 'count': len(payments)}
