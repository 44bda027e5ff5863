import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

import requests

from fiscalmatch.exceptions import BankFeedError

logger = logging.getLogger(__name__)


def format_bank_date(value):
    return value.strftime('%d-%m-%Y')


def _amount(raw):
    try:
        return abs(Decimal(str(raw)))
    except (InvalidOperation, ValueError):
        return Decimal('0')


def map_transaction(tx):
    return {
        'id': tx.get('ID') or tx.get('REF'),
        'date': tx.get('DAT_OD'),
        'time': tx.get('TIM_P'),
        'amount': _amount(tx.get('SUM') or '0'),
        'currency': tx.get('CCY') or 'UAH',
        'type': 'income' if tx.get('TRANTYPE') == 'C' else 'expense',
        'description': tx.get('OSND') or '',
        'reference': tx.get('REF'),
        'counterpartyAccount': tx.get('AUT_CNTR_ACC'),
        'counterpartyName': tx.get('AUT_CNTR_NAM'),
        'raw': tx,
    }


class PrivatBankClient:
    def __init__(self, url, client_id, token, page_limit=100, timeout=30):
        self.base_url = url.rstrip('/')
        self.client_id = client_id
        self.token = token
        self.page_limit = page_limit
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            config['PRIVATBANK_API_URL'],
            config['PRIVATBANK_ID'],
            config['PRIVATBANK_TOKEN'],
            page_limit=config['PRIVATBANK_PAGE_LIMIT'],
            timeout=config['HTTP_TIMEOUT'],
        )

    def get(self, endpoint, params=None):
        url = f"{self.base_url}/{endpoint}"
        headers = {
            'Id': self.client_id,
            'Token': self.token,
            'Content-Type': 'application/json; charset=utf-8',
        }
        try:
            response = requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise BankFeedError('Request timeout. PrivatBank API took too long to respond.',
                                'TIMEOUT_ERROR') from e
        except requests.ConnectionError as e:
            raise BankFeedError('Network error. Unable to connect to PrivatBank API.',
                                'NETWORK_ERROR') from e

        if response.status_code in (401, 403):
            raise BankFeedError('Authentication failed. Please check your PrivatBank credentials.',
                                'AUTHENTICATION_ERROR', response.status_code)
        if response.status_code == 400:
            raise BankFeedError('Bad request. Please check the date format or parameters.',
                                'BAD_REQUEST', response.status_code)
        if not response.ok:
            try:
                message = response.json().get('message') or 'Unknown error'
            except ValueError:
                message = 'Unknown error'
            raise BankFeedError(f'API error: {response.status_code} - {message}',
                                'API_ERROR', response.status_code)
        return response.json()

    def fetch_raw_transactions(self, start_date, end_date):
        params = {
            'startDate': format_bank_date(start_date),
            'endDate': format_bank_date(end_date),
            'limit': self.page_limit,
        }
        transactions = []
        while True:
            data = self.get('statements/transactions', params=params) or {}
            page = data.get('transactions')
            if isinstance(page, list):
                transactions.extend(page)
            if not data.get('exist_next_page') or not data.get('next_page_id'):
                break
            params = dict(params, followId=data['next_page_id'])
        return transactions

    def fetch_transactions(self, days_back=2, today=None):
        """Bank feed contract: {success, transactions, count, period} or {success: False, message, error}."""
        if not self.client_id or not self.token:
            return {
                'success': False,
                'message': 'PrivatBank credentials not configured. '
                           'Please set PRIVATBANK_ID and PRIVATBANK_TOKEN environment variables.',
                'error': 'CONFIGURATION_ERROR',
            }

        end_date = today or date.today()
        start_date = end_date - timedelta(days=int(days_back or 2))
        period = {'startDate': format_bank_date(start_date), 'endDate': format_bank_date(end_date)}
        logger.info("Fetching PrivatBank transactions from %s to %s", period['startDate'], period['endDate'])

        try:
            raw = self.fetch_raw_transactions(start_date, end_date)
        except BankFeedError as e:
            logger.error("Error fetching PrivatBank transactions: %s", e)
            return {'success': False, 'message': str(e), 'error': e.error_code}

        transactions = [map_transaction(tx) for tx in raw]
        logger.info("Fetched %d transactions", len(transactions))
        return {
            'success': True,
            'transactions': transactions,
            'count': len(transactions),
            'period': period,
        }
