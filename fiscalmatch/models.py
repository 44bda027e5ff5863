from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    # Timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BankTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(100), unique=True, nullable=False)  # bank ID, REF or synthesized
    transaction_datetime = db.Column(db.DateTime, nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='UAH')
    type = db.Column(db.Enum('income', 'expense', name='transaction_type_enum'), nullable=False)
    reference = db.Column(db.String(100), default='')
    counterparty_account = db.Column(db.String(100), default='')
    counterparty_name = db.Column(db.String(255), default='')
    description = db.Column(db.Text, default='')
    raw_data = db.Column(db.JSON)
    matched_order_id = db.Column(db.String(50))

    # Authoritative check state; PaymentMatch keeps the older copy
    check_receipt_id = db.Column(db.String(100))
    check_issued_at = db.Column(db.DateTime)
    check_skip_reason = db.Column(db.String(500))

    status = db.Column(db.Enum('processed', 'pending', 'failed', name='transaction_status_enum'),
                       nullable=False, default='processed')
    synced_at = db.Column(db.DateTime)

    def __repr__(self):
        return f"<BankTransaction {self.id} {self.external_id} {self.amount}>"


class PaymentMatch(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(50), index=True)  # empty for manual issuance before an order match
    bank_transaction_id = db.Column(db.Integer, db.ForeignKey('bank_transaction.id'),
                                    unique=True, nullable=False)
    match_confidence = db.Column(db.Integer, nullable=False, default=100)
    verified_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    matched_by = db.Column(db.Enum('manual', 'auto', name='matched_by_enum'), nullable=False, default='manual')
    order_amount = db.Column(db.Numeric(12, 2))
    transaction_amount = db.Column(db.Numeric(12, 2))
    amount_difference = db.Column(db.Numeric(12, 2))
    days_difference = db.Column(db.Float)
    notes = db.Column(db.String(500))

    check_issued = db.Column(db.Boolean, nullable=False, default=False)
    check_issued_at = db.Column(db.DateTime)
    check_receipt_id = db.Column(db.String(100))
    check_fiscal_code = db.Column(db.String(100))
    check_receipt_url = db.Column(db.String(500))
    check_skipped = db.Column(db.Boolean, nullable=False, default=False)
    check_skip_reason = db.Column(db.String(500))

    bank_transaction = db.relationship('BankTransaction', backref=db.backref('payment_match', uselist=False))

    def __repr__(self):
        return f"<PaymentMatch {self.id} order={self.order_id} tx={self.bank_transaction_id}>"
