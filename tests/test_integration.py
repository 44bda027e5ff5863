from datetime import datetime, timedelta

import pytest

from fiscalmatch.check_state import resolve_check_fields
from fiscalmatch.models import BankTransaction, PaymentMatch, utcnow

from conftest import NOVA_POSHTA_ACCOUNT, iban


@pytest.fixture(autouse=True)
def setup_data(mock_state, order_store):
    # 1. Setup mock bank feed
    today = datetime.now().strftime('%d-%m-%Y')
    mock_state.bank_transactions = [
        # pays order 1001
        {'ID': 'BAN1', 'DAT_OD': today, 'TIM_P': '09:10', 'SUM': '1450.50', 'CCY': 'UAH', 'TRANTYPE': 'C',
         'OSND': 'Оплата замовлення 1001', 'AUT_CNTR_ACC': iban('2620'), 'AUT_CNTR_NAM': 'Client A'},
        # pays order 1002, payment code never needs a check
        {'ID': 'BAN2', 'DAT_OD': today, 'TIM_P': '09:20', 'SUM': '800.00', 'CCY': 'UAH', 'TRANTYPE': 'C',
         'OSND': 'Оплата 1002', 'AUT_CNTR_ACC': iban('2902'), 'AUT_CNTR_NAM': 'Client B'},
        # Nova Poshta cash on delivery
        {'ID': 'BAN3', 'DAT_OD': today, 'TIM_P': '10:00', 'SUM': '640.00', 'CCY': 'UAH', 'TRANTYPE': 'C',
         'OSND': 'Післяплата', 'AUT_CNTR_ACC': NOVA_POSHTA_ACCOUNT, 'AUT_CNTR_NAM': 'Nova Poshta'},
        # outgoing
        {'ID': 'BAN4', 'DAT_OD': today, 'TIM_P': '11:00', 'SUM': '-1450.50', 'CCY': 'UAH', 'TRANTYPE': 'D',
         'OSND': 'Rent'},
        # no match
        {'ID': 'BAN5', 'DAT_OD': today, 'TIM_P': '12:00', 'SUM': '99.00', 'CCY': 'UAH', 'TRANTYPE': 'C',
         'OSND': 'Unknown', 'AUT_CNTR_ACC': iban('2620')},
    ]

    # 2. Setup orders
    created = (utcnow() - timedelta(hours=1)).isoformat() + 'Z'
    for number, amount in (('1001', '1450.50'), ('1002', '800.00'), ('1003', '5000.00')):
        order_store.add({
            'id': f'gid://shopify/Order/{number}',
            'name': f'#{number}',
            'currentTotalPriceSet': {'shopMoney': {'amount': amount}},
            'createdAt': created,
            'shopId': 'shop-1',
        })


def test_integration_sync_match_issue(client, mock_state, order_store):
    # Sync bank feed
    sync = client.post('/api/sync', json={'daysBack': 2}).get_json()
    assert sync['success']
    assert sync['summary']['created'] == 5
    assert BankTransaction.query.count() == 5

    # Match orders and issue checks
    response = client.post('/api/verify-order-payments', json={
        'orderIds': ['gid://shopify/Order/1001', 'gid://shopify/Order/1002', 'gid://shopify/Order/1003'],
        'autoCreateChecks': True,
    })
    assert response.status_code == 200
    data = response.get_json()
    assert data['summary']['ordersWithMatches'] == 2
    assert data['summary']['checksIssued'] == 1

    # BAN1 should have a receipt on both records
    ban1 = BankTransaction.query.filter_by(external_id='BAN1').one()
    match1 = PaymentMatch.query.filter_by(bank_transaction_id=ban1.id).one()
    assert ban1.matched_order_id == '1001'
    assert ban1.check_receipt_id is not None
    assert match1.check_issued
    assert match1.check_receipt_id == ban1.check_receipt_id
    assert mock_state.receipt_count('sell') == 1
    assert mock_state.receipts[0]['body']['payments'][0]['value'] == 145050
    assert f'Receipt ID: {ban1.check_receipt_id}' in order_store.note_for('1001')

    # BAN2 should be skipped for its payment code
    ban2 = BankTransaction.query.filter_by(external_id='BAN2').one()
    assert 'payment code 2902' in resolve_check_fields(ban2).skip_reason
    assert order_store.note_for('1002') == ''

    # Listing reflects all of it
    payments = client.get('/api/payments').get_json()
    statuses = {payment['externalId']: payment['status'] for payment in payments['payments']}
    assert statuses == {
        'BAN1': 'check_issued',
        'BAN2': 'excluded_code',
        'BAN3': 'nova_poshta',
        'BAN5': 'needs_check',
    }

    uncovered = client.get('/api/payments/uncovered').get_json()
    assert [payment['externalId'] for payment in uncovered['payments']] == ['BAN5']

    # Running it again changes nothing
    again = client.post('/api/verify-order-payments', json={
        'orderIds': ['1001', '1002'], 'autoCreateChecks': True,
    }).get_json()
    assert all(result['alreadyVerified'] for result in again['results'])
    assert mock_state.receipt_count('sell') == 1
