from collections import namedtuple
from datetime import datetime

import pytest

from fiscalmatch.check_state import (
    CheckState,
    CheckStateKind,
    IssuedReceipt,
    extract_payment_code,
    persist_check_state,
    resolve_check_fields,
    resolve_check_state,
    transition,
)
from fiscalmatch.exceptions import IllegalCheckTransition

from conftest import NOVA_POSHTA_ACCOUNT, iban

# Mocks
Transaction = namedtuple(
    'Transaction',
    ['counterparty_account', 'check_receipt_id', 'check_issued_at', 'check_skip_reason'],
    defaults=('', None, None, None),
)
Match = namedtuple(
    'Match',
    ['check_issued', 'check_issued_at', 'check_receipt_id', 'check_fiscal_code',
     'check_receipt_url', 'check_skipped', 'check_skip_reason'],
    defaults=(False, None, None, None, None, False, None),
)


class Record:
    def __init__(self, **fields):
        self.__dict__.update(fields)


def test_payment_code():
    assert extract_payment_code('UA293052990000029023866100110') == '2902'
    assert extract_payment_code('UA2930529900000') is None
    assert extract_payment_code(None) is None


def test_transaction_fields_win():
    tx = Transaction(check_receipt_id='tx-receipt', check_issued_at=datetime(2025, 1, 2))
    match = Match(check_issued=True, check_receipt_id='match-receipt', check_fiscal_code='FC-1')

    fields = resolve_check_fields(tx, match)

    assert fields.issued
    assert fields.receipt_id == 'tx-receipt'
    assert fields.fiscal_code == 'FC-1'


def test_match_is_fallback():
    fields = resolve_check_fields(Transaction(), Match(check_issued=True, check_receipt_id='legacy'))
    assert fields.issued
    assert fields.receipt_id == 'legacy'


def test_skip_read_from_either_record():
    assert resolve_check_fields(Transaction(check_skip_reason='Cash')).skip_reason == 'Cash'
    fields = resolve_check_fields(Transaction(), Match(check_skipped=True, check_skip_reason='Refund'))
    assert fields.skipped
    assert fields.skip_reason == 'Refund'


def test_nothing_recorded():
    fields = resolve_check_fields(Transaction(), None)
    assert not fields.issued
    assert not fields.skipped


def test_state_priority(rules):
    issued = Transaction(counterparty_account=NOVA_POSHTA_ACCOUNT, check_receipt_id='r-1')
    assert resolve_check_state(issued, None, rules).kind == CheckStateKind.ISSUED

    nova = Transaction(counterparty_account=NOVA_POSHTA_ACCOUNT)
    assert resolve_check_state(nova, None, rules).kind == CheckStateKind.NOVA_POSHTA

    excluded = Transaction(counterparty_account=iban('2902'), check_skip_reason='Manual')
    state = resolve_check_state(excluded, None, rules)
    assert state.kind == CheckStateKind.EXCLUDED
    assert 'payment code 2902' in state.reason

    skipped = Transaction(counterparty_account=iban('2620'), check_skip_reason='Manual')
    assert resolve_check_state(skipped, None, rules).kind == CheckStateKind.SKIPPED

    assert resolve_check_state(Transaction(counterparty_account=iban('2620')), None, rules).kind == \
        CheckStateKind.NEEDS_CHECK


def test_terminal_states_are_final():
    receipt = IssuedReceipt('r-1')
    issued = transition(CheckState.needs_check(), CheckState.issued(receipt))
    assert issued.is_terminal

    with pytest.raises(IllegalCheckTransition):
        transition(issued, CheckState.skipped('late'))
    with pytest.raises(IllegalCheckTransition):
        transition(CheckState.skipped('cash'), CheckState.issued(receipt))
    with pytest.raises(IllegalCheckTransition):
        transition(CheckState.excluded('code'), CheckState.issued(receipt))


def test_persist_writes_both_records():
    tx = Record(check_receipt_id=None, check_issued_at=None, check_skip_reason=None)
    match = Record()
    when = datetime(2025, 5, 1, 12, 0)
    state = CheckState.issued(IssuedReceipt('r-9', when, 'FC-9', 'https://check.example/r-9'))

    persist_check_state(state, transaction=tx, match=match)

    assert (tx.check_receipt_id, tx.check_issued_at) == ('r-9', when)
    assert match.check_issued
    assert match.check_fiscal_code == 'FC-9'
    assert match.check_receipt_url == 'https://check.example/r-9'


def test_persist_refuses_non_terminal():
    with pytest.raises(ValueError):
        persist_check_state(CheckState.needs_check(), transaction=Record())
