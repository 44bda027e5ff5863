"""
Fiscal check issuance for a single bank payment.

``CheckIssuer.issue_check`` is safe to call again after any failure: the check
state on the records only changes after Checkbox has returned a receipt, and a
payment that already has a receipt returns it instead of creating another one.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fiscalmatch.check_state import (
    CheckState,
    CheckStateKind,
    IssuedReceipt,
    persist_check_state,
    resolve_check_fields,
    resolve_check_state,
    transition,
)
from fiscalmatch.distributor import DEFAULT_POLICY, distribute, to_major, verify_total
from fiscalmatch.exceptions import FiscalApiError
from fiscalmatch.models import BankTransaction, PaymentMatch, db, utcnow
from fiscalmatch.orders import normalize_order_id
from fiscalmatch.receipts import build_sell_receipt, preview_items

logger = logging.getLogger(__name__)

ALREADY_ISSUED = 'Check already issued for this transaction'
INVALID_AMOUNT = 'Invalid amount for check issuance'
NOT_FOUND = 'Bank transaction not found'
ALREADY_MATCHED = 'Transaction already matched to another order'
REASON_REQUIRED = 'Skip reason is required'


@dataclass
class IssueResult:
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    receipt_id: Optional[str] = None
    fiscal_code: Optional[str] = None
    receipt_url: Optional[str] = None
    issued_at: Optional[object] = None
    already_issued: bool = False
    skipped: bool = False
    skipped_reason: Optional[str] = None
    items_count: Optional[int] = None
    total_amount: Optional[Decimal] = None
    warnings: list = field(default_factory=list)

    @classmethod
    def failure(cls, error):
        return cls(success=False, error=error)

    @classmethod
    def from_receipt(cls, receipt, **kwargs):
        return cls(
            receipt_id=receipt.receipt_id,
            fiscal_code=receipt.fiscal_code,
            receipt_url=receipt.receipt_url,
            issued_at=receipt.issued_at,
            **kwargs,
        )

    def to_dict(self):
        data = {
            'success': self.success,
            'error': self.error,
            'message': self.message,
            'receiptId': self.receipt_id,
            'fiscalCode': self.fiscal_code,
            'receiptUrl': self.receipt_url,
            'issuedAt': self.issued_at.isoformat() if self.issued_at else None,
            'alreadyIssued': self.already_issued or None,
            'skipped': self.skipped or None,
            'skippedReason': self.skipped_reason,
            'itemsCount': self.items_count,
            'totalAmount': float(self.total_amount) if self.total_amount is not None else None,
            'warnings': self.warnings or None,
        }
        return {key: value for key, value in data.items() if value is not None}


def parse_amount(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def parse_transaction_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CheckIssuer:
    def __init__(self, fiscal_client, rules, rng=None, policy=DEFAULT_POLICY, max_amount=Decimal('1000000')):
        self.fiscal_client = fiscal_client
        self.rules = rules
        self.rng = rng
        self.policy = policy
        self.max_amount = max_amount

    def _amount_allowed(self, amount):
        return amount is not None and 0 < amount <= self.max_amount

    def _load(self, transaction_id):
        tx_id = parse_transaction_id(transaction_id)
        tx = db.session.get(BankTransaction, tx_id) if tx_id is not None else None
        if tx is None:
            return None, None
        match = PaymentMatch.query.filter_by(bank_transaction_id=tx.id).first()
        return tx, match

    def _load_or_create_match(self, tx, match, amount, order_id, notes):
        if match is not None:
            return match

        logger.info('Creating payment match for transaction %s', tx.id)
        match = PaymentMatch(
            bank_transaction_id=tx.id,
            order_id=order_id,
            matched_by='manual',
            verified_at=utcnow(),
            notes=notes,
            transaction_amount=amount,
        )
        db.session.add(match)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            match = PaymentMatch.query.filter_by(bank_transaction_id=tx.id).one()
        return match

    def _skipped_result(self, reason, success=False):
        return IssueResult(success=success, skipped=True, skipped_reason=reason,
                           error=None if success else reason)

    def _record_skip(self, tx, match, state, reason, amount=None):
        fields = resolve_check_fields(tx, match)
        if fields.skipped:
            # first recorded reason stays
            return fields.skip_reason

        target = transition(state, CheckState.skipped(reason))
        match = self._load_or_create_match(tx, match, amount, None, 'Created when check issuance was skipped')
        persist_check_state(target, transaction=tx, match=match)
        db.session.commit()
        logger.info('Check skipped for transaction %s: %s', tx.id, reason)
        return reason

    def _dual_write(self, state, tx, match):
        warnings = []
        try:
            persist_check_state(state, match=match)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Receipt %s not saved on payment match %s', state.receipt.receipt_id, match.id)
            warnings.append(f'Receipt {state.receipt.receipt_id} not saved on payment match')

        try:
            persist_check_state(state, transaction=tx)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Receipt %s not saved on bank transaction %s', state.receipt.receipt_id, tx.id)
            warnings.append(f'Receipt {state.receipt.receipt_id} not saved on bank transaction')
        return warnings

    def issue_check(self, transaction_id, amount, order_context=None):
        amount = parse_amount(amount)
        if not self._amount_allowed(amount):
            return IssueResult.failure(INVALID_AMOUNT)

        logger.info('Issuing check for transaction %s, amount %s UAH', transaction_id, amount)

        tx, match = self._load(transaction_id)
        if tx is None:
            logger.error('Bank transaction not found: %s', transaction_id)
            return IssueResult.failure(NOT_FOUND)

        state = resolve_check_state(tx, match, self.rules)

        if state.kind == CheckStateKind.ISSUED:
            logger.info('Check already issued for transaction %s', tx.id)
            return IssueResult.from_receipt(state.receipt, success=True, already_issued=True,
                                            message=ALREADY_ISSUED)

        if state.kind in (CheckStateKind.NOVA_POSHTA, CheckStateKind.EXCLUDED):
            reason = self._record_skip(tx, match, state, state.reason, amount)
            return self._skipped_result(reason)

        if state.kind == CheckStateKind.SKIPPED:
            return self._skipped_result(state.reason)

        order_id = None
        if order_context and order_context.get('id'):
            order_id = normalize_order_id(order_context['id'])
        if match is not None and match.order_id and order_id and match.order_id != order_id:
            logger.warning('Transaction %s already matched to order %s', tx.id, match.order_id)
            return IssueResult.failure(ALREADY_MATCHED)

        match = self._load_or_create_match(
            tx, match, amount, order_id, 'Created via manual check issuance from payments page'
        )

        # A mismatch here is a bug in the distributor, let it propagate
        items = distribute(amount, self.rng, self.policy)
        total_minor = verify_total(items, amount)
        body = build_sell_receipt(items)
        logger.debug('Receipt body prepared with %d items', len(items))

        try:
            self.fiscal_client.sign_in()
            self.fiscal_client.ensure_shift_open()
            receipt = self.fiscal_client.create_sell_receipt(body)
        except (FiscalApiError, requests.RequestException) as e:
            logger.error('Check issuance failed for transaction %s: %s', tx.id, e)
            return IssueResult.failure(str(e))

        issued = transition(state, CheckState.issued(IssuedReceipt(
            receipt_id=receipt.id,
            issued_at=utcnow(),
            fiscal_code=receipt.fiscal_code,
            receipt_url=receipt.receipt_url,
        )))
        warnings = self._dual_write(issued, tx, match)

        logger.info('Receipt %s issued for transaction %s', receipt.id, tx.id)
        return IssueResult.from_receipt(
            issued.receipt,
            success=True,
            items_count=len(items),
            total_amount=to_major(total_minor),
            warnings=warnings,
        )

    def skip_check(self, transaction_id, reason):
        reason = (reason or '').strip()
        if not reason:
            return IssueResult.failure(REASON_REQUIRED)

        tx, match = self._load(transaction_id)
        if tx is None:
            return IssueResult.failure(NOT_FOUND)

        state = resolve_check_state(tx, match, self.rules)
        if state.kind == CheckStateKind.ISSUED:
            return IssueResult.from_receipt(state.receipt, success=False, already_issued=True,
                                            error=ALREADY_ISSUED)
        if state.kind == CheckStateKind.SKIPPED:
            return self._skipped_result(state.reason, success=True)

        recorded = self._record_skip(tx, match, state, reason)
        return self._skipped_result(recorded, success=True)

    def preview_check(self, amount):
        amount = parse_amount(amount)
        if not self._amount_allowed(amount):
            return {'success': False, 'error': 'Invalid amount for check preview'}

        items = distribute(amount, self.rng, self.policy)
        total_minor = verify_total(items, amount)
        return {
            'success': True,
            'items': preview_items(items),
            'totalAmountUAH': float(to_major(total_minor)),
            'totalAmountKopecks': total_minor,
        }
