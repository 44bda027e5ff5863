import json
import logging
import math
import re
import secrets
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError

from fiscalmatch.exceptions import TransactionValidationError
from fiscalmatch.models import BankTransaction, db, utcnow

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r'^(\d{2})[.-](\d{2})[.-](\d{4})$')
TIME_PATTERN = re.compile(r'^(\d{2}):(\d{2})$')
TRANSACTION_TYPES = ('income', 'expense')


@dataclass
class IngestSummary:
    processed: int = 0
    created: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def error(self, message):
        logger.error(message)
        self.errors.append(message)

    def warn(self, message):
        logger.warning(message)
        self.warnings.append(message)

    def to_dict(self):
        return {
            'processed': self.processed,
            'created': self.created,
            'duplicates': self.duplicates,
            'skipped': self.skipped,
            'errors': len(self.errors),
            'warnings': len(self.warnings),
        }


def parse_date(date_str):
    """DD-MM-YYYY (or DD.MM.YYYY) to a date, None when missing or invalid."""
    if not date_str:
        return None
    match = DATE_PATTERN.match(str(date_str).strip())
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    if year < 1900:
        return None
    try:
        return datetime(year, month, day).date()
    except ValueError:
        return None


def parse_time(time_str):
    """HH:MM to (hours, minutes), None when malformed or out of range."""
    match = TIME_PATTERN.match(_text(time_str).strip())
    if not match:
        return None
    hours, minutes = (int(part) for part in match.groups())
    if hours > 23 or minutes > 59:
        return None
    return hours, minutes


def parse_transaction_datetime(date_str, time_str=None):
    """Returns (datetime, warning); raises TransactionValidationError on a bad date."""
    if not date_str:
        raise TransactionValidationError('Missing date')
    parsed = parse_date(date_str)
    if parsed is None:
        raise TransactionValidationError(f'Invalid date: {date_str}')

    warning = None
    hours, minutes = 0, 0
    if time_str:
        parsed_time = parse_time(time_str)
        if parsed_time is None:
            warning = f'Invalid time {time_str}, using 00:00'
        else:
            hours, minutes = parsed_time
    return datetime(parsed.year, parsed.month, parsed.day, hours, minutes), warning


def parse_amount(value, maximum):
    if isinstance(value, bool) or value is None:
        raise TransactionValidationError(f'Amount is not numeric: {value!r}')
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise TransactionValidationError(f'Amount is not numeric: {value!r}')
    if not amount.is_finite():
        raise TransactionValidationError(f'Amount is not numeric: {value!r}')
    if amount < 0:
        raise TransactionValidationError(f'Negative amount: {amount}')
    if amount > maximum:
        raise TransactionValidationError(f'Amount exceeds database maximum ({maximum}): {amount}')
    return amount.quantize(Decimal('0.01'))


def derive_external_id(raw, counter, source='privatbank'):
    """Returns (external_id, synthesized)."""
    for key in ('id', 'reference'):
        value = raw.get(key)
        if value is not None and str(value) != '':
            return str(value), False
    token = f"{source}_{int(time.time() * 1000)}_{secrets.token_hex(4)}_{counter}"
    return token, True


def _json_safe(raw):
    return json.loads(json.dumps(raw, default=str))


def _text(value):
    return '' if value is None else str(value)


def _clip(value, limit):
    return _text(value).strip()[:limit]


def find_by_external_id(external_id):
    return BankTransaction.query.filter_by(external_id=external_id).first()


def _ingest_one(raw, position, summary, max_amount, synced_at):
    external_id, synthesized = derive_external_id(raw, position)
    if synthesized:
        summary.warn(f'Generated fallback externalId for transaction: {external_id}')
    external_id = external_id.strip()
    if not external_id:
        summary.error(f'Empty externalId for transaction at position {position}')
        return

    if find_by_external_id(external_id):
        logger.debug('Skipping duplicate transaction: %s', external_id)
        summary.duplicates += 1
        return

    try:
        transaction_datetime, time_warning = parse_transaction_datetime(raw.get('date'), raw.get('time'))
        amount = parse_amount(raw.get('amount', 0), max_amount)
    except TransactionValidationError as e:
        summary.error(f'Failed to validate transaction {external_id}: {e}')
        return

    if time_warning:
        summary.warn(f'{time_warning} for transaction {external_id}')
    if amount == 0:
        summary.warn(f'Zero amount for transaction {external_id}')

    tx_type = raw.get('type')
    if tx_type not in TRANSACTION_TYPES:
        summary.error(f'Invalid transaction type for {external_id}: {tx_type}')
        return

    tx = BankTransaction(
        external_id=external_id,
        transaction_datetime=transaction_datetime,
        amount=amount,
        currency=(_clip(raw.get('currency'), 3) or 'UAH').upper(),
        type=tx_type,
        description=_text(raw.get('description'))[:1000],
        reference=_clip(raw.get('reference'), 100),
        counterparty_account=_clip(raw.get('counterpartyAccount'), 100),
        counterparty_name=_clip(raw.get('counterpartyName'), 255),
        raw_data=_json_safe(raw),
        status='processed',
        synced_at=synced_at,
    )
    db.session.add(tx)
    try:
        db.session.commit()
    except IntegrityError:
        # Another sync inserted it after our probe
        db.session.rollback()
        logger.debug('Duplicate on insert: %s', external_id)
        summary.duplicates += 1
        return

    logger.debug('Created transaction record: %s (%s)', tx.id, external_id)
    summary.created += 1


def ingest(raw_transactions, max_amount=Decimal('1000000'), synced_at=None):
    summary = IngestSummary()
    synced_at = synced_at or utcnow()

    for raw in raw_transactions:
        summary.processed += 1

        if not isinstance(raw, dict):
            summary.error(f'Invalid transaction structure at index {summary.processed - 1}')
            continue

        try:
            _ingest_one(raw, summary.processed, summary, max_amount, synced_at)
        except Exception as e:
            # one broken record must not stop the rest of the batch
            db.session.rollback()
            summary.error(f'Failed to process transaction at position {summary.processed}: {e}')

    return summary


def sync_bank_transactions(bank_client, days_back=3, config=None):
    config = config or {}
    if not config.get('BANK_SYNC_ENABLED', True):
        logger.info('Bank sync disabled, skipping')
        return {
            'success': True,
            'message': 'Bank sync disabled',
            'summary': IngestSummary().to_dict(),
        }

    started = time.monotonic()
    logger.info('Syncing bank transactions for the last %s days', days_back)

    fetch_result = bank_client.fetch_transactions(days_back)
    if not fetch_result.get('success'):
        error = f"Failed to fetch transactions: {fetch_result.get('message')}"
        logger.error(error)
        return {'success': False, 'error': error, 'summary': dict(IngestSummary().to_dict(), errors=1)}

    summary = ingest(
        fetch_result.get('transactions') or [],
        max_amount=config.get('MAX_TRANSACTION_AMOUNT', Decimal('1000000')),
    )
    result_summary = dict(
        summary.to_dict(),
        duration=f'{int((time.monotonic() - started) * 1000)}ms',
        period=fetch_result.get('period'),
    )
    logger.info('Bank transaction sync completed: %s', result_summary)

    result = {
        'success': True,
        'message': (
            f'Sync completed: {summary.created} new transactions created, '
            f'{summary.duplicates} duplicates skipped, {len(summary.errors)} errors, '
            f'{len(summary.warnings)} warnings'
        ),
        'summary': result_summary,
    }
    if summary.errors:
        result['errors'] = summary.errors
    if summary.warnings:
        result['warnings'] = summary.warnings
    return result


def days_since_last_sync(now=None):
    now = now or utcnow()
    last = db.session.query(db.func.max(BankTransaction.synced_at)).scalar()
    if last is None:
        last = now - timedelta(days=1)
    days = math.ceil((now - last).total_seconds() / 86400)
    return max(1, min(days, 10))


def refresh_since_last_sync(bank_client, config=None, now=None):
    days = days_since_last_sync(now)
    logger.info('Refreshing bank data, fetching %s days', days)
    return sync_bank_transactions(bank_client, days_back=days, config=config)


if __name__ == '__main__':
    from fiscalmatch.app import create_app
    from fiscalmatch.bank_client import PrivatBankClient

    app = create_app()
    days_back = int(sys.argv[1]) if len(sys.argv) > 1 else 3
    with app.app_context():
        result = sync_bank_transactions(PrivatBankClient.from_config(app.config), days_back, app.config)
    print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
