"""
Fake Checkbox and PrivatBank APIs for local development and tests.

    /checkbox/api/v1/...         cashier sign-in, shifts, sell and ETTN receipts
    /privatbank/api/statements/  autoclient transaction statements with paging
"""

import json
import threading
import uuid

from flask import Flask, jsonify, request

CHECKBOX_PREFIX = '/checkbox/api/v1'
PRIVATBANK_PREFIX = '/privatbank/api'


class MockState:
    def __init__(self, bank_transactions=None, page_size=2, login='cashier', password='secret',
                 bank_id='bank-id', bank_token='bank-token'):
        self.lock = threading.Lock()
        self.login = login
        self.password = password
        self.bank_id = bank_id
        self.bank_token = bank_token
        self.bank_transactions = list(bank_transactions or [])
        self.page_size = page_size

        self.sign_ins = 0
        self.tokens = set()
        self.shift = None
        self.shifts_opened = 0
        self.receipts = []

        # failure switches flipped by tests
        self.receipt_error = None
        self.receipt_status = 'CREATED'
        self.shift_probe_error = None
        self.bank_error = None
        self.signin_without_token = False
        self.empty_shift_open = False

    def receipt_count(self, kind=None):
        with self.lock:
            return len([r for r in self.receipts if kind is None or r['kind'] == kind])


def create_mock_app(state=None):
    app = Flask(__name__)
    state = state or MockState()
    app.config['MOCK_STATE'] = state

    def authorized():
        header = request.headers.get('Authorization', '')
        return header.startswith('Bearer ') and header[len('Bearer '):] in state.tokens

    def unauthorized():
        return jsonify({'message': 'Not authenticated'}), 401

    @app.route(f'{CHECKBOX_PREFIX}/cashier/signin', methods=['POST'])
    def signin():
        data = request.get_json(silent=True) or {}
        if data.get('login') != state.login or data.get('password') != state.password:
            return jsonify({'message': 'Invalid credentials'}), 401
        if state.signin_without_token:
            return jsonify({'detail': 'ok'})
        token = uuid.uuid4().hex
        with state.lock:
            state.sign_ins += 1
            state.tokens.add(token)
        return jsonify({'type': 'bearer', 'token_type': 'bearer', 'access_token': token})

    @app.route(f'{CHECKBOX_PREFIX}/cashier/shift', methods=['GET'])
    def current_shift():
        if not authorized():
            return unauthorized()
        if state.shift_probe_error:
            return jsonify({'message': 'Shift service unavailable'}), state.shift_probe_error
        return jsonify(state.shift)

    @app.route(f'{CHECKBOX_PREFIX}/shifts', methods=['POST'])
    def open_shift():
        if not authorized():
            return unauthorized()
        if not request.headers.get('X-License-Key'):
            return jsonify({'message': 'License key required'}), 403
        if state.empty_shift_open:
            return '', 200
        with state.lock:
            if state.shift is not None:
                return jsonify({'message': 'Shift already opened'}), 400
            state.shift = {'id': (request.get_json(silent=True) or {}).get('id'), 'status': 'OPENED'}
            state.shifts_opened += 1
            return jsonify(state.shift)

    def create_receipt(kind, body):
        if not authorized():
            return unauthorized()
        if state.receipt_error:
            return jsonify({'message': 'Receipt service error'}), state.receipt_error
        if state.shift is None:
            return jsonify({'message': 'Shift is not opened'}), 400

        receipt_id = str(uuid.uuid4())
        receipt = {
            'id': receipt_id,
            'status': state.receipt_status,
            'fiscal_code': f'TEST-{receipt_id[:8]}',
            'fiscal_date': None,
            'receipt_url': f'https://check.example/{receipt_id}',
        }
        with state.lock:
            state.receipts.append({'kind': kind, 'body': body, 'receipt': receipt})
        return jsonify(receipt), 201

    @app.route(f'{CHECKBOX_PREFIX}/receipts/sell', methods=['POST'])
    def sell_receipt():
        return create_receipt('sell', request.get_json(silent=True))

    @app.route(f'{CHECKBOX_PREFIX}/np/ettn', methods=['POST'])
    def ettn_receipt():
        data = request.get_json(silent=True) or {}
        return create_receipt('ettn', data.get('receipt_body'))

    @app.route(f'{PRIVATBANK_PREFIX}/statements/transactions', methods=['GET'])
    def statements():
        if request.headers.get('Id') != state.bank_id or request.headers.get('Token') != state.bank_token:
            return jsonify({'message': 'Unauthorized'}), 401
        if state.bank_error:
            return jsonify({'message': 'Bank error'}), state.bank_error
        if not request.args.get('startDate') or not request.args.get('endDate'):
            return jsonify({'message': 'startDate and endDate are required'}), 400

        start = int(request.args.get('followId') or 0)
        page = state.bank_transactions[start:start + state.page_size]
        has_next = start + state.page_size < len(state.bank_transactions)
        return jsonify({
            'status': 'SUCCESS',
            'type': 'transactions',
            'exist_next_page': has_next,
            'next_page_id': str(start + state.page_size) if has_next else None,
            'transactions': page,
        })

    return app


if __name__ == '__main__':
    bank = []
    try:
        with open('mock_bank.json') as f:
            bank = json.load(f)
    except FileNotFoundError:
        print("Warning: mock_bank.json not found. Serving empty list.")

    create_mock_app(MockState(bank)).run(port=5000)
