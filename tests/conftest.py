import itertools
import random
import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from werkzeug.serving import make_server

from fiscalmatch.app import create_app
from fiscalmatch.bank_client import PrivatBankClient
from fiscalmatch.config import PaymentRules
from fiscalmatch.fiscal_client import CheckboxClient, Receipt
from fiscalmatch.models import BankTransaction, PaymentMatch, db, utcnow
from fiscalmatch.orders import InMemoryOrderStore
from mock_api.server import MockState, create_mock_app

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'FISCAL_CALL_DELAY': 0,
    'LOG_LEVEL': 'DEBUG',
    'LOG_JSON': False,
    'BANK_SYNC_ENABLED': True,
}

NOVA_POSHTA_ACCOUNT = 'UA813005280000026548000000014'


def iban(code):
    # payment code sits at characters 15..18
    return f'UA2930529900000{code}3866100110'


class FakeFiscalClient:
    """Counts calls; fails every receipt with ``error`` when set."""

    def __init__(self, error=None):
        self.error = error
        self.sign_ins = 0
        self.shift_checks = 0
        self.sell_bodies = []
        self.waybill_bodies = []

    def sign_in(self, force=False):
        self.sign_ins += 1
        return 'token'

    def ensure_shift_open(self):
        self.shift_checks += 1
        return {'id': 'shift-1', 'status': 'OPENED'}

    def _receipt(self, bodies, body):
        if self.error is not None:
            raise self.error
        bodies.append(body)
        number = len(self.sell_bodies) + len(self.waybill_bodies)
        return Receipt(
            id=f'receipt-{number}',
            status='CREATED',
            fiscal_code=f'FC-{number}',
            receipt_url=f'https://check.example/receipt-{number}',
        )

    def create_sell_receipt(self, body):
        return self._receipt(self.sell_bodies, body)

    def create_waybill_receipt(self, body):
        return self._receipt(self.waybill_bodies, body)


@pytest.fixture
def rules():
    return PaymentRules(excluded_codes=('2600', '2902', '2909', '2920'), nova_poshta_account=NOVA_POSHTA_ACCOUNT)


@pytest.fixture
def mock_state():
    return MockState()


@pytest.fixture
def mock_server(mock_state):
    server = make_server('127.0.0.1', 0, create_mock_app(mock_state), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f'http://127.0.0.1:{server.server_port}'
    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def fiscal_client(mock_server):
    return CheckboxClient(f'{mock_server}/checkbox/api/v1', 'test-license', 'cashier', 'secret', timeout=5)


@pytest.fixture
def bank_client(mock_server):
    return PrivatBankClient(f'{mock_server}/privatbank/api', 'bank-id', 'bank-token', page_limit=2, timeout=5)


@pytest.fixture
def fake_fiscal_client():
    return FakeFiscalClient()


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def app(fiscal_client, bank_client, order_store):
    app = create_app(
        TEST_CONFIG,
        fiscal_client=fiscal_client,
        bank_client=bank_client,
        order_store=order_store,
        rng=random.Random(42),
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_transaction(app):
    counter = itertools.count(1)

    def make(**fields):
        number = next(counter)
        values = {
            'external_id': f'TX{number}',
            'transaction_datetime': utcnow() - timedelta(hours=1),
            'amount': Decimal('500.00'),
            'type': 'income',
            'counterparty_account': iban('2620'),
            'counterparty_name': 'Customer',
            'description': f'Payment {number}',
            'synced_at': utcnow(),
        }
        values.update(fields)
        tx = BankTransaction(**values)
        db.session.add(tx)
        db.session.commit()
        return tx

    return make


@pytest.fixture
def make_match(app):
    def make(transaction, **fields):
        values = {
            'bank_transaction_id': transaction.id,
            'matched_by': 'manual',
            'verified_at': utcnow(),
        }
        values.update(fields)
        match = PaymentMatch(**values)
        db.session.add(match)
        db.session.commit()
        return match

    return make
