import threading

import pytest

from fiscalmatch.exceptions import FiscalApiError, FiscalAuthError, FiscalReceiptRejected
from fiscalmatch.fiscal_client import CheckboxClient, FiscalSession
from fiscalmatch.receipts import build_sell_receipt, build_waybill_receipt
from fiscalmatch.distributor import ReceiptItem

ITEMS = [ReceiptItem('Перехідник HDMI-VGA', 45000), ReceiptItem('Кабель SCART', 30050)]


def test_sign_in_is_reused(fiscal_client, mock_state):
    first = fiscal_client.sign_in()
    second = fiscal_client.sign_in()

    assert first == second
    assert mock_state.sign_ins == 1


def test_force_sign_in(fiscal_client, mock_state):
    fiscal_client.sign_in()
    fiscal_client.sign_in(force=True)
    assert mock_state.sign_ins == 2


def test_bad_credentials(mock_server):
    client = CheckboxClient(f'{mock_server}/checkbox/api/v1', 'license', 'cashier', 'wrong', timeout=5)
    with pytest.raises(FiscalAuthError):
        client.sign_in()


def test_concurrent_refresh_signs_in_once():
    calls = []
    release = threading.Event()

    def slow_sign_in():
        calls.append(1)
        release.wait(timeout=5)
        return 'token', 3600

    session = FiscalSession()
    tokens = []
    workers = [threading.Thread(target=lambda: tokens.append(session.get_token(slow_sign_in))) for _ in range(5)]
    for worker in workers:
        worker.start()
    release.set()
    for worker in workers:
        worker.join(timeout=5)

    assert len(calls) == 1
    assert tokens == ['token'] * 5


def test_token_expires():
    now = [0.0]
    session = FiscalSession(clock=lambda: now[0])
    issued = iter(['first', 'second'])

    def sign_in():
        return next(issued), 120

    assert session.get_token(sign_in) == 'first'
    now[0] = 59.0
    assert session.get_token(sign_in) == 'first'
    now[0] = 61.0
    assert session.get_token(sign_in) == 'second'


def test_ensure_shift_opens_once(fiscal_client, mock_state):
    fiscal_client.sign_in()
    shift = fiscal_client.ensure_shift_open()
    again = fiscal_client.ensure_shift_open()

    assert shift['status'] == 'OPENED'
    assert again['id'] == shift['id']
    assert mock_state.shifts_opened == 1


def test_shift_check_failure_still_opens(fiscal_client, mock_state):
    mock_state.shift_probe_error = 500
    shift = fiscal_client.ensure_shift_open()
    assert shift['status'] == 'OPENED'
    assert mock_state.shifts_opened == 1


def test_shift_opened_concurrently_is_reused(fiscal_client, mock_state, monkeypatch):
    mock_state.shift = {'id': 'other-worker', 'status': 'OPENED'}
    real_check = fiscal_client.check_shift
    calls = []

    def stale_check():
        calls.append(1)
        # first shift check ran before the other worker opened its shift
        return None if len(calls) == 1 else real_check()

    monkeypatch.setattr(fiscal_client, 'check_shift', stale_check)

    shift = fiscal_client.ensure_shift_open()

    assert shift['id'] == 'other-worker'
    assert mock_state.shifts_opened == 0


def test_create_sell_receipt(fiscal_client, mock_state):
    fiscal_client.ensure_shift_open()
    receipt = fiscal_client.create_sell_receipt(build_sell_receipt(ITEMS))

    assert receipt.status == 'CREATED'
    assert receipt.fiscal_code.startswith('TEST-')
    [stored] = mock_state.receipts
    assert stored['kind'] == 'sell'
    assert stored['body']['payments'] == [{'type': 'CASHLESS', 'value': 75050}]
    assert stored['body']['goods'][1]['good'] == {'code': '0002', 'name': 'Кабель SCART', 'price': 30050}
    assert stored['body']['goods'][1]['quantity'] == 1000


def test_create_waybill_receipt(fiscal_client, mock_state):
    fiscal_client.ensure_shift_open()
    receipt = fiscal_client.create_waybill_receipt(build_waybill_receipt(ITEMS, '20450000000001'))

    assert receipt.id
    [stored] = mock_state.receipts
    assert stored['kind'] == 'ettn'
    assert stored['body']['payments'][0]['ettn'] == '20450000000001'


def test_rejected_receipt(fiscal_client, mock_state):
    mock_state.receipt_status = 'ERROR'
    fiscal_client.ensure_shift_open()
    with pytest.raises(FiscalReceiptRejected):
        fiscal_client.create_sell_receipt(build_sell_receipt(ITEMS))


def test_receipt_http_error(fiscal_client, mock_state):
    mock_state.receipt_error = 422
    fiscal_client.ensure_shift_open()
    with pytest.raises(FiscalApiError) as excinfo:
        fiscal_client.create_sell_receipt(build_sell_receipt(ITEMS))
    assert excinfo.value.status_code == 422
    assert 'Failed to create sell receipt: 422' in str(excinfo.value)


def test_sign_in_without_token(fiscal_client, mock_state):
    mock_state.signin_without_token = True
    with pytest.raises(FiscalAuthError, match='no access token'):
        fiscal_client.sign_in()


def test_receipt_without_id(fiscal_client, monkeypatch):
    monkeypatch.setattr(fiscal_client, '_request', lambda *args, **kwargs: {'status': 'CREATED'})
    with pytest.raises(FiscalApiError, match='no receipt id'):
        fiscal_client.create_sell_receipt(build_sell_receipt(ITEMS))
