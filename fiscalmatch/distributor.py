"""
Split a payment total into receipt line items.

A single payment becomes one line when it is small, otherwise several lines
with varied, rounded prices. All arithmetic is done in kopecks so the lines
always add up to the payment exactly.
"""

import logging
import random
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from fiscalmatch.exceptions import DistributionMismatch, DistributionOverflow

logger = logging.getLogger(__name__)

MINOR_UNITS = 100
CENT = Decimal('0.01')


@dataclass(frozen=True)
class DistributionPolicy:
    single_item_threshold: int = 1000  # UAH
    min_price: int = 300
    max_price: int = 900
    # (cumulative probability, low, high), bounds inclusive, in UAH
    price_buckets: tuple = ((0.2, 300, 450), (0.8, 450, 700), (1.0, 700, 900))
    rounding_step: int = 10
    max_iterations: int = 1000
    product_name: str = 'Перехідник HDMI to VGA'


DEFAULT_POLICY = DistributionPolicy()


@dataclass(frozen=True)
class ReceiptItem:
    name: str
    price: int  # kopecks per unit
    quantity: int = 1

    @property
    def total(self):
        return self.price * self.quantity

    @property
    def price_uah(self):
        return to_major(self.price)

    @property
    def total_uah(self):
        return to_major(self.total)


def to_minor(amount):
    return int(Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP) * MINOR_UNITS)


def to_major(minor):
    return (Decimal(minor) / MINOR_UNITS).quantize(CENT)


def _round_to_step(units, step):
    # half-up, prices are never negative here
    return (units + step // 2) // step * step


def _draw_price(rng, policy):
    roll = rng.random()
    for cutoff, low, high in policy.price_buckets:
        if roll < cutoff:
            return rng.randint(low, high)
    _, low, high = policy.price_buckets[-1]
    return rng.randint(low, high)


def distribute(total, rng=None, policy=DEFAULT_POLICY):
    total_minor = to_minor(total)
    if total_minor <= 0:
        raise ValueError(f"Amount to distribute must be positive, got {total}")

    if total_minor <= policy.single_item_threshold * MINOR_UNITS:
        return [ReceiptItem(policy.product_name, total_minor)]

    rng = rng or random.Random()
    max_minor = policy.max_price * MINOR_UNITS
    min_minor = policy.min_price * MINOR_UNITS

    # every pass places at least min_price unless the remainder is smaller;
    # callers cap the total at MAX_TRANSACTION_AMOUNT, so this stays bounded
    limit = max(policy.max_iterations, total_minor // min_minor + 1)

    items = []
    remaining = total_minor
    for _ in range(limit):
        if remaining <= max_minor:
            price = remaining
        else:
            if remaining <= max_minor + min_minor:
                units = remaining // (2 * MINOR_UNITS)
            else:
                units = _draw_price(rng, policy)
            price = _round_to_step(units, policy.rounding_step) * MINOR_UNITS

        price = min(price, remaining)
        if price <= 0:
            price = min(remaining, MINOR_UNITS)

        items.append(ReceiptItem(policy.product_name, price))
        remaining -= price
        if remaining == 0:
            logger.debug("Distributed %s UAH into %d items", to_major(total_minor), len(items))
            return items

    raise DistributionOverflow(to_major(total_minor), limit)


def items_total(items):
    return sum(item.total for item in items)


def verify_total(items, total):
    """Raise when the items drift more than 1 UAH away from the payment."""
    expected = to_minor(total)
    actual = items_total(items)
    if abs(actual - expected) > MINOR_UNITS:
        raise DistributionMismatch(to_major(expected), to_major(actual))
    return actual
