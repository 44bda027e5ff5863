"""
Order store collaborator.

Orders live in the shop (Shopify); this side only reads id, name, total and
creation time, and appends notes. ``InMemoryOrderStore`` stands in for the
shop during development and tests.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)

GID_PREFIX = 'gid://shopify/Order/'


def normalize_order_id(order_id):
    order_id = str(order_id)
    if order_id.startswith(GID_PREFIX):
        return order_id.rsplit('/', 1)[-1]
    return order_id


def parse_timestamp(value):
    """ISO timestamp to naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _money(price_set):
    shop_money = (price_set or {}).get('shopMoney') or (price_set or {}).get('shop_money') or {}
    return Decimal(str(shop_money.get('amount') or '0'))


@dataclass
class Order:
    id: str
    name: str
    total: Decimal
    created_at: datetime
    shop_id: Optional[str] = None
    financial_status: str = ''
    line_items: list = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload):
        price_set = payload.get('currentTotalPriceSet') or payload.get('totalPriceSet')
        return cls(
            id=normalize_order_id(payload['id']),
            name=payload.get('name') or '',
            total=_money(price_set),
            created_at=parse_timestamp(payload['createdAt']),
            shop_id=payload.get('shopId'),
            financial_status=payload.get('financialStatus') or '',
            line_items=payload.get('lineItems') or [],
        )


class OrderStore(ABC):
    @abstractmethod
    def find_orders(self, order_ids):
        """Orders for the given ids; unknown ids are left out."""

    @abstractmethod
    def update_order_note(self, order_id, shop_id, note, mark_as_paid=False):
        """Append ``note`` to the order, optionally marking it paid."""


class InMemoryOrderStore(OrderStore):
    def __init__(self, orders=None):
        self._orders = {}
        self._lock = threading.Lock()
        for payload in orders or []:
            self.add(payload)

    def add(self, payload):
        order = payload if isinstance(payload, Order) else Order.from_payload(payload)
        entry = {'order': order, 'note': '', 'paid': False}
        with self._lock:
            self._orders[order.id] = entry
        return order

    def find_orders(self, order_ids):
        wanted = [normalize_order_id(order_id) for order_id in order_ids]
        with self._lock:
            return [self._orders[order_id]['order'] for order_id in wanted if order_id in self._orders]

    def update_order_note(self, order_id, shop_id, note, mark_as_paid=False):
        order_id = normalize_order_id(order_id)
        with self._lock:
            entry = self._orders.get(order_id)
            if entry is None:
                raise KeyError(f'Order {order_id} not found')
            entry['note'] = f"{entry['note']}\n\n{note}" if entry['note'] else note
            if mark_as_paid:
                entry['paid'] = True
        logger.info('Updated note for order %s', order_id)
        return {'id': order_id, 'note': entry['note'], 'paid': entry['paid']}

    def note_for(self, order_id):
        with self._lock:
            return self._orders[normalize_order_id(order_id)]['note']
