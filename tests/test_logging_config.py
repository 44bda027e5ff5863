import json
import logging
import sys

from fiscalmatch.logging_config import JSONFormatter


def test_json_formatter():
    record = logging.LogRecord('fiscalmatch.issuance', logging.INFO, __file__, 10,
                               'Receipt %s issued', ('r-1',), None)
    record.transaction_id = 7

    data = json.loads(JSONFormatter().format(record))

    assert data['message'] == 'Receipt r-1 issued'
    assert data['level'] == 'INFO'
    assert data['service'] == 'fiscalmatch'
    assert data['extra'] == {'transaction_id': 7}


def test_json_formatter_exception():
    try:
        raise ValueError('bad amount')
    except ValueError:
        record = logging.LogRecord('fiscalmatch', logging.ERROR, __file__, 1, 'failed', (), sys.exc_info())

    data = json.loads(JSONFormatter().format(record))

    assert data['exception']['type'] == 'ValueError'
    assert data['exception']['message'] == 'bad amount'
