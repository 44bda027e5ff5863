import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from fiscalmatch.models import BankTransaction, PaymentMatch, db, utcnow

logger = logging.getLogger(__name__)

AMOUNT_EPSILON = Decimal('0.01')
DATE_WINDOW = timedelta(days=7)
DAY_PENALTY = 5
MIN_CONFIDENCE = 50
MAX_CONFIDENCE = 100


def calculate_confidence(order_amount, transaction_amount, days_difference):
    confidence = 100.0

    # 1. Amount, as a share of the order total
    order_amount = Decimal(str(order_amount))
    if order_amount > 0:
        difference = abs(Decimal(str(transaction_amount)) - order_amount)
        confidence -= float(difference / order_amount) * 100

    # 2. Date, every day past the first
    if days_difference > 1:
        confidence -= (days_difference - 1) * DAY_PENALTY

    # Anything that got this far is at least a plausible match
    return int(round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))))


def days_between(first, second):
    return abs((first - second).total_seconds()) / 86400


def is_candidate(order, transaction, epsilon=AMOUNT_EPSILON, window=DATE_WINDOW):
    amount_match = abs(Decimal(str(transaction.amount)) - order.total) < epsilon
    date_match = abs(transaction.transaction_datetime - order.created_at) < window
    return amount_match and date_match


def unclaimed_income_transactions(since):
    claimed = db.session.query(PaymentMatch.bank_transaction_id)
    return (
        BankTransaction.query
        .filter(BankTransaction.type == 'income')
        .filter(BankTransaction.transaction_datetime > since)
        .filter(BankTransaction.matched_order_id.is_(None))
        .filter(~BankTransaction.id.in_(claimed))
        .order_by(BankTransaction.transaction_datetime)
        .all()
    )


@dataclass
class OrderMatchResult:
    order_id: str
    order_name: str
    order_amount: Decimal
    order_date: object
    financial_status: str = ''
    already_verified: bool = False
    matches: list = field(default_factory=list)

    def to_dict(self):
        return {
            'orderId': self.order_id,
            'orderName': self.order_name,
            'orderAmount': float(self.order_amount),
            'orderDate': self.order_date.isoformat(),
            'financialStatus': self.financial_status,
            'alreadyVerified': self.already_verified,
            'matchCount': len(self.matches),
            'matches': self.matches,
        }


def _claim(order, transaction):
    days = days_between(transaction.transaction_datetime, order.created_at)
    amount_difference = abs(Decimal(str(transaction.amount)) - order.total)
    confidence = calculate_confidence(order.total, transaction.amount, days)

    match = PaymentMatch(
        order_id=order.id,
        bank_transaction_id=transaction.id,
        match_confidence=confidence,
        verified_at=utcnow(),
        matched_by='auto',
        order_amount=order.total,
        transaction_amount=transaction.amount,
        amount_difference=amount_difference,
        days_difference=round(days, 2),
        notes=f'Auto-matched to order {order.name}',
    )
    db.session.add(match)
    try:
        db.session.commit()
    except IntegrityError:
        # Claimed by a concurrent run
        db.session.rollback()
        logger.warning('Transaction %s already claimed, skipping for order %s', transaction.id, order.id)
        return None

    transaction.matched_order_id = order.id
    db.session.commit()
    return match


def match_orders(orders, transactions=None, lookback_days=30, now=None):
    if transactions is None:
        since = (now or utcnow()) - timedelta(days=lookback_days)
        transactions = unclaimed_income_transactions(since)

    order_ids = [order.id for order in orders]
    verified = {
        row[0] for row in
        db.session.query(PaymentMatch.order_id).filter(PaymentMatch.order_id.in_(order_ids))
    }
    tx_ids = [tx.id for tx in transactions]
    claimed = {tx.id for tx in transactions if tx.matched_order_id}
    claimed.update(
        row[0] for row in
        db.session.query(PaymentMatch.bank_transaction_id).filter(PaymentMatch.bank_transaction_id.in_(tx_ids))
    )

    logger.info('Matching %d orders against %d transactions', len(orders), len(transactions))

    results = []
    for order in orders:
        result = OrderMatchResult(order.id, order.name, order.total, order.created_at, order.financial_status)
        if order.id in verified:
            result.already_verified = True
            results.append(result)
            continue

        for tx in transactions:
            if tx.id in claimed or tx.type != 'income':
                continue
            if not is_candidate(order, tx):
                continue

            claimed.add(tx.id)
            match = _claim(order, tx)
            if match is None:
                continue

            logger.info('Order %s matched to transaction %s (confidence %s)',
                        order.name, tx.id, match.match_confidence)
            result.matches.append({
                'matchId': match.id,
                'transactionId': tx.id,
                'amount': float(tx.amount),
                'date': tx.transaction_datetime.isoformat(),
                'description': tx.description or '',
                'confidence': match.match_confidence,
            })

        if result.matches:
            verified.add(order.id)
        results.append(result)

    return results
