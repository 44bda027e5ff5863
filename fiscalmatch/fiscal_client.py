import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import requests

from fiscalmatch.exceptions import FiscalApiError, FiscalAuthError, FiscalReceiptRejected

logger = logging.getLogger(__name__)

CLIENT_NAME = "fiscalmatch"


@dataclass
class Receipt:
    id: str
    status: Optional[str] = None
    fiscal_code: Optional[str] = None
    fiscal_date: Optional[str] = None
    receipt_url: Optional[str] = None

    @classmethod
    def from_response(cls, data):
        return cls(
            id=data.get('id'),
            status=data.get('status'),
            fiscal_code=data.get('fiscal_code'),
            fiscal_date=data.get('fiscal_date'),
            receipt_url=data.get('receipt_url'),
        )


class FiscalSession:
    """
    Bearer token shared by everything in the process.

    Refreshes go through one lock, so callers arriving while a sign-in is in
    flight wait for it and reuse its token instead of signing in again.
    """

    def __init__(self, ttl=3600, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._token = None
        self._expires_at = 0.0

    @property
    def valid(self):
        return self._token is not None and self._clock() < self._expires_at

    def get_token(self, sign_in, force=False):
        if not force and self.valid:
            return self._token
        with self._lock:
            if not force and self.valid:
                return self._token
            token, expires_in = sign_in()
            self._token = token
            # refresh a minute early
            self._expires_at = self._clock() + max((expires_in or self.ttl) - 60, 0)
            return self._token

    def invalidate(self):
        with self._lock:
            self._token = None
            self._expires_at = 0.0


class CheckboxClient:
    def __init__(self, base_url, license_key, login, password, session=None, timeout=30):
        self.base_url = base_url.rstrip('/')
        self.license_key = license_key
        self.login = login
        self.password = password
        self.session = session or FiscalSession()
        self.timeout = timeout
        self.http = requests.Session()

    @classmethod
    def from_config(cls, config, session=None):
        return cls(
            config['CHECKBOX_API_URL'],
            config['CHECKBOX_LICENSE_KEY'],
            config['CHECKBOX_LOGIN'],
            config['CHECKBOX_PASSWORD'],
            session=session or FiscalSession(ttl=config['CHECKBOX_TOKEN_TTL']),
            timeout=config['HTTP_TIMEOUT'],
        )

    def _headers(self, license=True):
        headers = {
            'Content-Type': 'application/json',
            'X-Client-Name': CLIENT_NAME,
            'Authorization': f'Bearer {self.sign_in()}',
        }
        if license:
            headers['X-License-Key'] = self.license_key
        return headers

    def _request(self, method, endpoint, what, license=True, json=None):
        url = f"{self.base_url}/{endpoint}"
        response = self.http.request(method, url, headers=self._headers(license), json=json,
                                     timeout=self.timeout)
        if not response.ok:
            raise FiscalApiError(f"Failed to {what}: {response.status_code} - {response.text}",
                                 status_code=response.status_code, body=response.text)
        if not response.content:
            return None
        return response.json()

    def _sign_in(self):
        logger.info("Signing in to Checkbox API")
        response = self.http.post(
            f"{self.base_url}/cashier/signin",
            json={'login': self.login, 'password': self.password},
            headers={'Content-Type': 'application/json', 'X-Client-Name': CLIENT_NAME},
            timeout=self.timeout,
        )
        if not response.ok:
            raise FiscalAuthError(f"Authentication failed: {response.status_code}",
                                  status_code=response.status_code, body=response.text)
        data = response.json() if response.content else {}
        token = data.get('access_token') if isinstance(data, dict) else None
        if not token:
            raise FiscalAuthError("Authentication failed: no access token in response",
                                  status_code=response.status_code, body=response.text)
        return token, data.get('expires_in')

    def sign_in(self, force=False):
        return self.session.get_token(self._sign_in, force=force)

    def check_shift(self):
        shift = self._request('GET', 'cashier/shift', 'check shift', license=False)
        if not isinstance(shift, dict) or shift.get('status') == 'CLOSED':
            return None
        return shift

    def open_shift(self):
        logger.info("Opening new shift")
        shift = self._request('POST', 'shifts', 'open shift', json={'id': str(uuid.uuid4())})
        if not isinstance(shift, dict):
            raise FiscalApiError("Failed to open shift: empty response")
        logger.info("Shift opened: %s", shift.get('id'))
        return shift

    def ensure_shift_open(self):
        try:
            shift = self.check_shift()
        except FiscalApiError as e:
            logger.info("Shift probe failed (%s), opening a new shift", e)
            shift = None

        if shift is not None:
            logger.debug("Active shift found: %s", shift.get('id'))
            return shift

        try:
            return self.open_shift()
        except FiscalApiError:
            # Another worker may have opened it between our probe and open
            shift = self.check_shift()
            if shift is None:
                raise
            logger.info("Shift %s was opened concurrently, reusing it", shift.get('id'))
            return shift

    def _receipt(self, data, kind):
        receipt = Receipt.from_response(data if isinstance(data, dict) else {})
        if not receipt.id:
            raise FiscalApiError(f"{kind} creation failed: no receipt id in response", body=data)
        if receipt.status and receipt.status != 'CREATED':
            raise FiscalReceiptRejected(f"{kind} creation failed with status: {receipt.status}",
                                        body=data)
        logger.info("%s created: %s", kind, receipt.id)
        return receipt

    def create_sell_receipt(self, body):
        data = self._request('POST', 'receipts/sell', 'create sell receipt', json=body)
        return self._receipt(data, 'Sell receipt')

    def create_waybill_receipt(self, body):
        data = self._request('POST', 'np/ettn', 'create receipt', json={'receipt_body': body})
        return self._receipt(data, 'Receipt')
